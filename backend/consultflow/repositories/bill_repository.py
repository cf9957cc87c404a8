"""
Bill Repository for Consultflow

Data access for bill snapshots, including:
- the atomic claim used by the scheduled payment-email sweeper
- status transitions (sent, paid, canceled, refunded)
- monthly candidate selection for invoice aggregation
"""

from datetime import datetime
import logging
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import PAYABLE_BILL_STATUSES, BillingCadence, BillStatus
from ..core.exceptions import RepositoryException
from ..models.bill import Bill
from ..models.booking import Booking
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)

_CLAIMABLE_STATUSES = (BillStatus.SCHEDULED.value, BillStatus.PENDING.value)
_TERMINAL_FOR_CANCEL = (BillStatus.PAID.value, BillStatus.CANCELED.value, BillStatus.REFUNDED.value)
_EXCLUDED_FROM_INVOICING = (BillStatus.CANCELED.value, BillStatus.REFUNDED.value)
_PAYABLE_STATUSES = tuple(status.value for status in PAYABLE_BILL_STATUSES)


class BillRepository(BaseRepository[Bill]):
    def __init__(self, db: Session):
        super().__init__(db, Bill)
        self.logger = logging.getLogger(__name__)

    def get_by_booking_id(self, booking_id: str) -> Optional[Bill]:
        query = self.db.query(Bill).filter(Bill.booking_id == booking_id)
        return self._execute_first(query)

    def get_for_invoice(self, invoice_id: str) -> List[Bill]:
        query = self.db.query(Bill).filter(Bill.invoice_id == invoice_id).order_by(Bill.created_at)
        return self._execute_query(query)

    # ========== Email sweeper ==========

    def claim_due_bills_for_email(
        self, now: datetime, limit: int, stale_before: datetime
    ) -> List[Bill]:
        """
        Atomically lock up to ``limit`` due bills and return them.

        A single UPDATE ... WHERE (unlocked or lock older than stale_before)
        AND due ... RETURNING, so overlapping sweeper runs can never claim the
        same row. Monthly bills are invoiced separately and never claimed.
        """
        due_ids = (
            select(Bill.id)
            .where(
                Bill.status.in_(_CLAIMABLE_STATUSES),
                Bill.billing_type == BillingCadence.PER_BOOKING.value,
                Bill.amount > 0,
                Bill.email_scheduled_at.is_not(None),
                Bill.email_scheduled_at <= now,
                or_(Bill.email_send_locked_at.is_(None), Bill.email_send_locked_at < stale_before),
            )
            .order_by(Bill.email_scheduled_at)
            .limit(limit)
        )
        stmt = (
            update(Bill)
            .where(
                Bill.id.in_(due_ids),
                or_(Bill.email_send_locked_at.is_(None), Bill.email_send_locked_at < stale_before),
            )
            .values(email_send_locked_at=now)
            .returning(Bill)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        try:
            claimed = list(self.db.scalars(stmt).all())
            self.db.flush()
            return claimed
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to claim due bills: {str(e)}")
            raise RepositoryException(f"Failed to claim due bills: {str(e)}")

    def release_lock(self, bill_id: str) -> None:
        try:
            self.db.execute(
                update(Bill)
                .where(Bill.id == bill_id)
                .values(email_send_locked_at=None)
                .execution_options(synchronize_session="fetch")
            )
            self.db.flush()
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to release email lock for bill {bill_id}: {str(e)}")
            raise RepositoryException(f"Failed to release bill lock: {str(e)}")

    def mark_sent(self, bill_id: str, sent_at: datetime) -> Optional[Bill]:
        return self.update(
            bill_id, status=BillStatus.SENT.value, sent_at=sent_at, email_send_locked_at=None
        )

    # ========== Status transitions ==========

    def mark_paid(self, bill_id: str, paid_at: datetime) -> Optional[Bill]:
        return self.update(bill_id, status=BillStatus.PAID.value, paid_at=paid_at)

    def mark_paid_if_payable(self, bill_id: str, paid_at: datetime) -> bool:
        """
        Move a scheduled, pending or sent bill to paid in one conditional UPDATE.

        Returns False when the bill is already paid, canceled, refunded or
        disputed; the row is left untouched.
        """
        try:
            result = self.db.execute(
                update(Bill)
                .where(Bill.id == bill_id, Bill.status.in_(_PAYABLE_STATUSES))
                .values(status=BillStatus.PAID.value, paid_at=paid_at, email_send_locked_at=None)
                .execution_options(synchronize_session="fetch")
            )
            self.db.flush()
            return bool(result.rowcount)
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to mark bill {bill_id} paid: {str(e)}")
            raise RepositoryException(f"Failed to mark bill paid: {str(e)}")

    def mark_refunded(
        self, bill_id: str, refund_id: str, refunded_at: datetime, reason: Optional[str] = None
    ) -> Optional[Bill]:
        return self.update(
            bill_id,
            status=BillStatus.REFUNDED.value,
            refund_id=refund_id,
            refunded_at=refunded_at,
            refund_reason=reason,
        )

    def cancel_unpaid_for_booking(self, booking_id: str) -> int:
        """Cancel every bill of the booking that is not paid, canceled or refunded."""
        try:
            result = self.db.execute(
                update(Bill)
                .where(Bill.booking_id == booking_id, Bill.status.not_in(_TERMINAL_FOR_CANCEL))
                .values(status=BillStatus.CANCELED.value, email_send_locked_at=None)
                .execution_options(synchronize_session="fetch")
            )
            self.db.flush()
            return int(result.rowcount or 0)
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to cancel bills for booking {booking_id}: {str(e)}")
            raise RepositoryException(f"Failed to cancel bills: {str(e)}")

    def mark_paid_for_invoice(self, invoice_id: str, paid_at: datetime) -> int:
        try:
            result = self.db.execute(
                update(Bill)
                .where(Bill.invoice_id == invoice_id, Bill.status.not_in(_EXCLUDED_FROM_INVOICING))
                .values(status=BillStatus.PAID.value, paid_at=paid_at)
                .execution_options(synchronize_session="fetch")
            )
            self.db.flush()
            return int(result.rowcount or 0)
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to mark bills paid for invoice {invoice_id}: {str(e)}")
            raise RepositoryException(f"Failed to mark invoice bills paid: {str(e)}")

    # ========== Monthly invoicing ==========

    def find_monthly_candidates(
        self,
        practitioner_id: str,
        client_id: str,
        invoice_id: Optional[str],
        period_start: datetime,
        period_end: datetime,
    ) -> List[Bill]:
        """
        Monthly bills for the pair whose booking starts in [period_start, period_end).

        Bills already linked to ``invoice_id`` stay candidates so that
        re-running the aggregator keeps them; bills linked elsewhere are left
        alone.
        """
        query = (
            self.db.query(Bill)
            .join(Booking, Booking.id == Bill.booking_id)
            .filter(
                Bill.practitioner_id == practitioner_id,
                Bill.client_id == client_id,
                Bill.billing_type == BillingCadence.MONTHLY.value,
                Bill.status.not_in(_EXCLUDED_FROM_INVOICING),
                or_(Bill.invoice_id.is_(None), Bill.invoice_id == invoice_id),
                Booking.start_time >= period_start,
                Booking.start_time < period_end,
            )
            .order_by(Booking.start_time, Bill.id)
        )
        return self._execute_query(query)

    def link_to_invoice(self, bill_ids: Sequence[str], invoice_id: str) -> None:
        if not bill_ids:
            return
        try:
            self.db.execute(
                update(Bill)
                .where(Bill.id.in_(list(bill_ids)))
                .values(invoice_id=invoice_id)
                .execution_options(synchronize_session="fetch")
            )
            self.db.flush()
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to link bills to invoice {invoice_id}: {str(e)}")
            raise RepositoryException(f"Failed to link bills: {str(e)}")

    def unlink_from_invoice(self, invoice_id: str, keep_bill_ids: Sequence[str]) -> List[str]:
        """Unlink bills of ``invoice_id`` that are not in ``keep_bill_ids``; returns their ids."""
        try:
            conditions = [Bill.invoice_id == invoice_id]
            if keep_bill_ids:
                conditions.append(Bill.id.not_in(list(keep_bill_ids)))
            stale_ids = [row[0] for row in self.db.query(Bill.id).filter(and_(*conditions)).all()]
            if stale_ids:
                self.db.execute(
                    update(Bill)
                    .where(Bill.id.in_(stale_ids))
                    .values(invoice_id=None)
                    .execution_options(synchronize_session="fetch")
                )
                self.db.flush()
            return stale_ids
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to unlink bills from invoice {invoice_id}: {str(e)}")
            raise RepositoryException(f"Failed to unlink bills: {str(e)}")

    def find_monthly_groups(self, period_start: datetime, period_end: datetime) -> List[Tuple[str, str]]:
        """Distinct (practitioner_id, client_id) pairs with monthly bills in the period."""
        try:
            rows = (
                self.db.query(Bill.practitioner_id, Bill.client_id)
                .join(Booking, Booking.id == Bill.booking_id)
                .filter(
                    Bill.billing_type == BillingCadence.MONTHLY.value,
                    Bill.status.not_in(_EXCLUDED_FROM_INVOICING),
                    Booking.start_time >= period_start,
                    Booking.start_time < period_end,
                )
                .distinct()
                .order_by(Bill.practitioner_id, Bill.client_id)
                .all()
            )
            return [(row[0], row[1]) for row in rows]
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to list monthly billing groups: {str(e)}")
            raise RepositoryException(f"Failed to list monthly groups: {str(e)}")
