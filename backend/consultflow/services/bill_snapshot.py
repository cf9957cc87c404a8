# backend/consultflow/services/bill_snapshot.py
"""
Bill Snapshot Writer for Consultflow

Copies the resolved billing terms into an immutable bill for one booking.
Tax is computed here once and never recomputed.
"""

from datetime import datetime
from decimal import Decimal
import logging
from typing import Optional

from sqlalchemy.orm import Session

from ..core.enums import BillingCadence, BillStatus
from ..models.bill import Bill
from ..models.booking import Booking
from ..models.practitioner import Client
from ..repositories.factory import RepositoryFactory
from ..schemas.base import to_money
from ..schemas.billing import BillingTerms
from .base import BaseService, Clock

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


def compute_tax(amount: Decimal, tax_rate_percent: Decimal) -> Decimal:
    if amount <= 0 or tax_rate_percent <= 0:
        return ZERO
    return to_money(amount * tax_rate_percent / Decimal("100"))


def initial_bill_status(
    cadence: str, amount: Decimal, email_scheduled_at: Optional[datetime], now: datetime
) -> BillStatus:
    """``scheduled`` hands the payment email to the sweeper; ``pending`` to the creation-time send."""
    if cadence == BillingCadence.MONTHLY.value:
        return BillStatus.SCHEDULED
    if email_scheduled_at is not None and email_scheduled_at > now and amount > 0:
        return BillStatus.SCHEDULED
    return BillStatus.PENDING


class BillSnapshotWriter(BaseService):
    def __init__(self, db: Session, clock: Optional[Clock] = None):
        super().__init__(db, clock)
        self.bill_repository = RepositoryFactory.create_bill_repository(db)
        self.billing_settings_repository = RepositoryFactory.create_billing_settings_repository(db)

    @BaseService.measure_operation("create_bill_snapshot")
    def create(
        self,
        booking: Booking,
        terms: BillingTerms,
        client: Client,
        email_scheduled_at: Optional[datetime] = None,
    ) -> Bill:
        amount = to_money(terms.amount)
        tax_rate = self.billing_settings_repository.get_vat_rate(booking.practitioner_id, client.id)
        tax_rate = to_money(tax_rate) if tax_rate is not None else ZERO
        status = initial_bill_status(terms.cadence, amount, email_scheduled_at, self.now())

        bill = self.bill_repository.create(
            practitioner_id=booking.practitioner_id,
            client_id=client.id,
            booking_id=booking.id,
            amount=amount,
            currency=terms.currency,
            tax_rate_percent=tax_rate,
            tax_amount=compute_tax(amount, tax_rate),
            billing_type=terms.cadence,
            status=status.value,
            email_scheduled_at=email_scheduled_at,
        )
        self.logger.info(
            f"Created bill {bill.id} for booking {booking.id}: {amount} {terms.currency} ({terms.cadence}, {status.value})"
        )
        return bill
