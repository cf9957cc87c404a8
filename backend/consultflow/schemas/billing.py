"""
Billing terms as a closed tagged union.

Raw billing payloads are validated once, here, into either PerBookingTerms
or MonthlyTerms; everything downstream matches on the variant.
"""

from decimal import Decimal, InvalidOperation
from typing import Annotated, Literal, Optional, Union

from pydantic import Field, TypeAdapter, field_validator

from ..core.config import settings
from .base import StandardizedModel, to_money

LEAD_HOURS_AFTER_CONSULTATION = -1


class _TermsBase(StandardizedModel):
    amount: Decimal = Field(ge=0)
    currency: str = Field(default_factory=lambda: settings.default_currency)

    @field_validator("amount", mode="before")
    @classmethod
    def _round_amount(cls, value):
        if isinstance(value, bool):
            raise ValueError("amount must be a number")
        try:
            return to_money(value)
        except (InvalidOperation, TypeError, ValueError):
            raise ValueError("amount must be a number")

    @field_validator("currency")
    @classmethod
    def _supported_currency(cls, value: str) -> str:
        code = value.strip().upper()
        if code not in settings.supported_currencies:
            raise ValueError(f"Unsupported currency: {value}")
        return code


class PerBookingTerms(_TermsBase):
    """One charge per booking; the payment email follows ``lead_hours``."""

    cadence: Literal["per_booking"] = "per_booking"
    lead_hours: Optional[int] = None

    @field_validator("lead_hours", mode="before")
    @classmethod
    def _valid_lead_hours(cls, value):
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError("lead_hours must be an integer or null")
        if value < LEAD_HOURS_AFTER_CONSULTATION:
            raise ValueError("lead_hours must be -1, 0 or a positive number of hours")
        return value


class MonthlyTerms(_TermsBase):
    """Aggregated into one invoice per client and calendar month."""

    cadence: Literal["monthly"] = "monthly"


BillingTerms = Annotated[Union[PerBookingTerms, MonthlyTerms], Field(discriminator="cadence")]

billing_terms_adapter: TypeAdapter[BillingTerms] = TypeAdapter(BillingTerms)


class ResolvedBilling(StandardizedModel):
    """Terms resolved for a (practitioner, client) pair, plus the audit id."""

    billing_settings_id: str
    terms: BillingTerms
    vat_rate_percent: Optional[Decimal] = None
    first_consultation_amount: Optional[Decimal] = None
    suppress_payment_email: bool = False

    @property
    def cadence(self) -> str:
        return self.terms.cadence

    @property
    def lead_hours(self) -> Optional[int]:
        if isinstance(self.terms, PerBookingTerms):
            return self.terms.lead_hours
        return None
