# backend/consultflow/services/payment_email_scheduler.py
"""
Payment Email Scheduler for Consultflow

Decides when the payment request for a bill goes out, sends it, and runs
the sweeper that delivers requests scheduled for later.

Sweeper protocol:
1. Claim a batch of due bills with one atomic UPDATE ... RETURNING that sets
   ``email_send_locked_at`` (committed before any email leaves).
2. Send each claimed bill's email.
3. On success mark the bill ``sent`` (clears the lock); on failure release
   the lock so the next sweep retries it. Locks older than the TTL are
   treated as abandoned.
"""

from datetime import datetime, timedelta
import logging
from typing import Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import EmailCommunicationStatus, EmailKind
from ..integrations.protocols import NotificationResult, NotificationSink
from ..models.bill import Bill
from ..models.booking import Booking
from ..models.practitioner import Client, Practitioner
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..schemas.billing import LEAD_HOURS_AFTER_CONSULTATION
from ..schemas.payment import SweepResult
from .advisory import run_advisory
from .base import BaseService, Clock

logger = logging.getLogger(__name__)


def compute_scheduled_at(
    lead_hours: Optional[int], start: datetime, end: datetime, now: datetime
) -> Optional[datetime]:
    """
    When the payment request should be sent.

    null or 0: immediately; -1: at the end of the consultation;
    N > 0: N hours before the start. Any other value has no schedule.
    """
    if lead_hours is None or lead_hours == 0:
        return now
    if lead_hours == LEAD_HOURS_AFTER_CONSULTATION:
        return end
    if lead_hours > 0:
        return start - timedelta(hours=lead_hours)
    return None


def is_due(scheduled_at: Optional[datetime], now: datetime) -> bool:
    return scheduled_at is None or scheduled_at <= now


def booking_payment_url(booking_id: str) -> str:
    return f"{settings.public_base_url}/api/v1/payments/bookings/{booking_id}"


def invoice_payment_url(invoice_id: str) -> str:
    return f"{settings.public_base_url}/api/v1/payments/invoices/{invoice_id}"


class PaymentEmailScheduler(BaseService):
    def __init__(self, db: Session, notifier: NotificationSink, clock: Optional[Clock] = None):
        super().__init__(db, clock)
        self.notifier = notifier
        self.bill_repository = RepositoryFactory.create_bill_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.payment_repository = RepositoryFactory.create_payment_repository(db)

    def _log_communication(
        self, bill: Bill, recipient: str, result: NotificationResult, kind: EmailKind
    ) -> None:
        run_advisory(
            "email_log",
            self.payment_repository.log_email,
            practitioner_id=bill.practitioner_id,
            client_id=bill.client_id,
            booking_id=bill.booking_id,
            bill_id=bill.id,
            email_type=kind.value,
            recipient_email=recipient,
            subject=result.subject,
            status=(EmailCommunicationStatus.SENT if result.success else EmailCommunicationStatus.FAILED).value,
            provider_message_id=result.message_id,
            error_message=result.error,
            context={"bill_id": bill.id},
        )

    @BaseService.measure_operation("send_payment_request")
    def send_payment_request(
        self,
        bill: Bill,
        booking: Booking,
        client: Client,
        practitioner: Practitioner,
        *,
        path: str = "creation",
    ) -> NotificationResult:
        """
        Send the payment request for ``bill`` and mark it ``sent`` on success.

        Notifier failures come back as an unsuccessful result; deciding
        whether that is fatal is the caller's job.
        """
        payment_url = booking_payment_url(booking.id)
        try:
            result = self.notifier.send(
                EmailKind.PAYMENT_REQUEST,
                client.email,
                {
                    "client_name": client.name,
                    "practitioner_name": practitioner.name,
                    "practitioner_email": practitioner.email,
                    "start_time": booking.start_time,
                    "amount": bill.total_amount,
                    "currency": bill.currency,
                    "payment_url": payment_url,
                    "after_consultation": booking.end_time <= self.now(),
                },
            )
        except Exception as e:
            self.logger.error(f"Notifier raised while sending payment request for bill {bill.id}: {str(e)}")
            result = NotificationResult(success=False, error=str(e))

        prometheus_metrics.inc_payment_email(path, "sent" if result.success else "failed")
        self._log_communication(bill, client.email, result, EmailKind.PAYMENT_REQUEST)
        if result.success:
            self.bill_repository.mark_sent(bill.id, self.now())
            self.logger.info(f"Payment request for bill {bill.id} sent to {client.email}")
        else:
            self.logger.warning(f"Payment request for bill {bill.id} failed: {result.error}")
        return result

    @BaseService.measure_operation("send_due_bills")
    def send_due_bills(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> SweepResult:
        """Sweep bills whose payment email is due and send them."""
        now = now or self.now()
        stale_before = now - timedelta(minutes=settings.bill_email_lock_ttl_minutes)
        with self.transaction():
            claimed = self.bill_repository.claim_due_bills_for_email(
                now, limit or settings.bill_email_batch_size, stale_before
            )
        result = SweepResult(claimed=len(claimed))
        if claimed:
            self.logger.info(f"Claimed {len(claimed)} due bill(s) for payment email")

        for bill in claimed:
            sent = False
            try:
                booking = self.booking_repository.get_with_parties(bill.booking_id)
                if booking is None:
                    self.logger.warning(f"Bill {bill.id} references missing booking {bill.booking_id}")
                    continue
                with self.transaction():
                    outcome = self.send_payment_request(
                        bill, booking, booking.client, booking.practitioner, path="sweeper"
                    )
                sent = outcome.success
            except Exception as e:
                self.logger.error(f"Failed to process scheduled bill {bill.id}: {str(e)}")
            finally:
                if sent:
                    result.sent += 1
                else:
                    result.failed += 1
                    result.failed_bill_ids.append(bill.id)
                    with self.transaction():
                        self.bill_repository.release_lock(bill.id)
        return result
