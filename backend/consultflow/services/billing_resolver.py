# backend/consultflow/services/billing_resolver.py
"""
Billing Resolver for Consultflow

Resolves the billing terms that apply to a (practitioner, client) pair:
client-specific settings, else the practitioner default, else a lazily
created zero-amount default.
"""

from decimal import Decimal
import logging
from typing import Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import BillingCadence
from ..models.billing_settings import BillingSettings
from ..repositories.factory import RepositoryFactory
from ..schemas.billing import BillingTerms, MonthlyTerms, PerBookingTerms, ResolvedBilling
from .base import BaseService, Clock

logger = logging.getLogger(__name__)


def terms_from_settings(row: BillingSettings) -> BillingTerms:
    """Build the tagged terms value from a stored settings row."""
    amount = row.consultation_price if row.consultation_price is not None else Decimal("0")
    currency = row.currency or settings.default_currency
    if row.billing_type == BillingCadence.MONTHLY.value:
        return MonthlyTerms(amount=amount, currency=currency)
    return PerBookingTerms(amount=amount, currency=currency, lead_hours=row.payment_email_lead_hours)


class BillingResolver(BaseService):
    """Read-only apart from the lazy default; never touches bookings or bills."""

    def __init__(self, db: Session, clock: Optional[Clock] = None):
        super().__init__(db, clock)
        self.billing_settings_repository = RepositoryFactory.create_billing_settings_repository(db)

    @BaseService.measure_operation("resolve_billing")
    def resolve(self, practitioner_id: str, client_id: str) -> ResolvedBilling:
        row = self.billing_settings_repository.get_for_client(practitioner_id, client_id)
        source = "client"
        if row is None:
            row = self.billing_settings_repository.get_practitioner_default(practitioner_id)
            source = "default"
        if row is None:
            row = self.billing_settings_repository.get_or_create_practitioner_default(
                practitioner_id, settings.default_currency
            )
            source = "auto_default"
            self.logger.info(f"Created zero-amount default billing settings for practitioner {practitioner_id}")

        self.logger.debug(
            "Resolved billing settings %s (%s) for practitioner %s client %s",
            row.id,
            source,
            practitioner_id,
            client_id,
        )
        return ResolvedBilling(
            billing_settings_id=row.id,
            terms=terms_from_settings(row),
            vat_rate_percent=row.vat_rate_percent,
            first_consultation_amount=row.first_consultation_amount,
            suppress_payment_email=bool(row.suppress_payment_email),
        )
