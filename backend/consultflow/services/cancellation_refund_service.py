# backend/consultflow/services/cancellation_refund_service.py
"""
Cancellation and Refund Coordinator for Consultflow

Reverses payment state for a booking:
- cancel_payment: expire pending checkout sessions, cancel unpaid bills
- refund_booking: refund the paid bill (never twice) and issue a credit note
- cancel_booking: the full cancel flow (calendar, payment/refund, status, email)
- mark_booking_paid_manually: record a payment taken outside the processor
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from ..core.enums import (
    BillingCadence,
    BillStatus,
    BookingStatus,
    EmailCommunicationStatus,
    EmailKind,
    InvoiceStatus,
)
from ..core.exceptions import (
    BillAlreadyRefundedException,
    ConflictException,
    NotFoundException,
    NoPaidBillException,
)
from ..integrations.protocols import CalendarService, NotificationSink, PaymentProcessor
from ..models.bill import Bill
from ..models.booking import Booking
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..schemas.payment import BookingCancellationResult, PaymentCancellationResult, RefundResult
from .advisory import run_advisory
from .base import BaseService, Clock
from .calendar_event_reconciler import CalendarEventReconciler
from .invoice_service import InvoiceService

logger = logging.getLogger(__name__)

DEFAULT_REFUND_REASON = "requested_by_customer"


def manual_refund_id(timestamp_ms: int, booking_id: str) -> str:
    return f"manual_refund_{timestamp_ms}_{booking_id[:8]}"


class CancellationRefundService(BaseService):
    def __init__(
        self,
        db: Session,
        processor: PaymentProcessor,
        notifier: Optional[NotificationSink] = None,
        calendar: Optional[CalendarService] = None,
        invoice_service: Optional[InvoiceService] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(db, clock)
        self.processor = processor
        self.notifier = notifier
        self.invoice_service = invoice_service or InvoiceService(db, clock=clock)
        self.calendar_reconciler = CalendarEventReconciler(db, calendar, clock) if calendar is not None else None
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.bill_repository = RepositoryFactory.create_bill_repository(db)
        self.invoice_repository = RepositoryFactory.create_invoice_repository(db)
        self.payment_repository = RepositoryFactory.create_payment_repository(db)

    def _get_booking(self, booking_id: str) -> Booking:
        booking = self.booking_repository.get_with_parties(booking_id)
        if booking is None:
            raise NotFoundException(f"Booking {booking_id} not found")
        return booking

    # ========== Payment cancellation ==========

    @BaseService.measure_operation("cancel_payment")
    def cancel_payment(self, booking_id: str) -> PaymentCancellationResult:
        """Expire pending checkout sessions (best effort) and cancel unpaid bills."""
        booking = self._get_booking(booking_id)
        connected_account = booking.practitioner.stripe_account_id if booking.practitioner else None

        sessions = self.payment_repository.list_pending_for_booking(booking_id)
        for session in sessions:
            run_advisory(
                "expire_checkout_session",
                self.processor.expire_session,
                session.stripe_session_id,
                connected_account_id=connected_account,
                context={"booking_id": booking_id, "session_id": session.stripe_session_id},
            )
        with self.transaction():
            for session in sessions:
                self.payment_repository.mark_cancelled(session)
            canceled_bills = self.bill_repository.cancel_unpaid_for_booking(booking_id)

        self.logger.info(
            f"Cancelled {len(sessions)} payment session(s) and {canceled_bills} bill(s) for booking {booking_id}"
        )
        return PaymentCancellationResult(
            booking_id=booking_id, cancelled_sessions=len(sessions), canceled_bills=canceled_bills
        )

    # ========== Refund ==========

    @BaseService.measure_operation("refund_booking")
    def refund_booking(self, booking_id: str, reason: Optional[str] = None) -> RefundResult:
        """
        Refund the paid bill of a booking.

        Raises:
            BillAlreadyRefundedException: the bill was refunded before (no processor call)
            NoPaidBillException: nothing has been paid
            ExternalServiceException: the processor refund failed (nothing changed)
        """
        booking = self._get_booking(booking_id)
        bill = self.bill_repository.get_by_booking_id(booking_id)
        if bill is not None and bill.status == BillStatus.REFUNDED.value:
            raise BillAlreadyRefundedException(booking_id, bill.id)
        if bill is None or bill.status != BillStatus.PAID.value:
            raise NoPaidBillException(booking_id)

        now = self.now()
        completed = self.payment_repository.get_completed_for_booking(booking_id)
        if completed is not None and completed.stripe_payment_intent_id:
            refund_id = self.processor.refund(
                completed.stripe_payment_intent_id,
                reason=DEFAULT_REFUND_REASON,
                metadata={"booking_id": booking_id, "bill_id": bill.id, "reason": reason or ""},
                connected_account_id=booking.practitioner.stripe_account_id if booking.practitioner else None,
            )
            prometheus_metrics.inc_refund("stripe")
        else:
            refund_id = manual_refund_id(int(now.timestamp() * 1000), booking_id)
            prometheus_metrics.inc_refund("manual")

        credit_note_id: Optional[str] = None
        with self.transaction():
            self.bill_repository.mark_refunded(bill.id, refund_id, now, reason)
            credit_note = self._rectify_invoice(bill, reason or "Refund")
            credit_note_id = credit_note.id if credit_note is not None else None

        self.logger.info(f"Refunded bill {bill.id} for booking {booking_id} ({refund_id})")
        if self.notifier is not None:
            with self.transaction():
                run_advisory(
                    "refund_email",
                    self._notify,
                    EmailKind.REFUND,
                    booking,
                    bill,
                    {"credit_note_number": credit_note.display_number if credit_note_id else None},
                    context={"booking_id": booking_id},
                )
        return RefundResult(
            booking_id=booking_id,
            bill_id=bill.id,
            refund_id=refund_id,
            amount=bill.total_amount,
            credit_note_id=credit_note_id,
        )

    def _rectify_invoice(self, bill: Bill, reason: str):
        """Mark the linked invoice refunded and issue its credit note."""
        if not bill.invoice_id:
            return None
        invoice = self.invoice_repository.get_by_id(bill.invoice_id)
        if invoice is None or invoice.status not in (InvoiceStatus.ISSUED.value, InvoiceStatus.PAID.value):
            return None
        self.invoice_service.mark_refunded(invoice)
        if invoice.billing_type == BillingCadence.MONTHLY.value:
            return self.invoice_service.create_credit_note(
                invoice, reason=reason, subtotal=bill.amount, tax_total=bill.tax_amount
            )
        return self.invoice_service.create_credit_note(invoice, reason=reason)

    # ========== Full cancellation ==========

    @BaseService.measure_operation("cancel_booking")
    def cancel_booking(self, booking_id: str, reason: Optional[str] = None) -> BookingCancellationResult:
        booking = self._get_booking(booking_id)
        if booking.status == BookingStatus.CANCELED.value:
            return BookingCancellationResult(booking_id=booking_id, status=booking.status, already_canceled=True)

        was_pending = booking.status == BookingStatus.PENDING.value
        bill = self.bill_repository.get_by_booking_id(booking_id)

        refund: Optional[RefundResult] = None
        payment_cancellation: Optional[PaymentCancellationResult] = None
        if bill is not None and bill.status == BillStatus.PAID.value:
            # A failed refund aborts the cancellation
            refund = self.refund_booking(booking_id, reason)
        else:
            payment_cancellation = self.cancel_payment(booking_id)

        with self.transaction():
            self.booking_repository.update_status(booking_id, BookingStatus.CANCELED.value)

        if self.calendar_reconciler is not None:
            with self.transaction():
                run_advisory(
                    "calendar_cancel",
                    self.calendar_reconciler.cancel_for_booking,
                    booking,
                    delete=was_pending,
                    context={"booking_id": booking_id},
                )
        if self.notifier is not None and bill is not None:
            with self.transaction():
                run_advisory(
                    "cancellation_email",
                    self._notify,
                    EmailKind.CANCELLATION,
                    booking,
                    bill,
                    {"refunded": refund is not None},
                    context={"booking_id": booking_id},
                )

        self.logger.info(f"Booking {booking_id} canceled (refunded={refund is not None})")
        return BookingCancellationResult(
            booking_id=booking_id,
            status=BookingStatus.CANCELED.value,
            refund=refund,
            payment_cancellation=payment_cancellation,
        )

    # ========== Manual payment ==========

    @BaseService.measure_operation("mark_booking_paid_manually")
    def mark_booking_paid_manually(self, booking_id: str) -> Bill:
        booking = self._get_booking(booking_id)
        if booking.status == BookingStatus.CANCELED.value:
            raise ConflictException("Booking has been canceled", code="BOOKING_CANCELED", details={"booking_id": booking_id})
        bill = self.bill_repository.get_by_booking_id(booking_id)
        if bill is None:
            raise NotFoundException(f"No bill found for booking {booking_id}")
        if bill.status == BillStatus.PAID.value:
            return bill
        if bill.status not in (BillStatus.SCHEDULED.value, BillStatus.PENDING.value, BillStatus.SENT.value):
            raise ConflictException(
                f"Bill is {bill.status} and cannot be marked paid",
                code="BILL_NOT_PAYABLE",
                details={"booking_id": booking_id, "bill_id": bill.id},
            )

        with self.transaction():
            self.bill_repository.mark_paid(bill.id, self.now())
            if booking.status == BookingStatus.PENDING.value:
                self.booking_repository.update_status(booking_id, BookingStatus.SCHEDULED.value)
        self.logger.info(f"Booking {booking_id} marked as paid manually")
        return bill

    def _notify(self, kind: EmailKind, booking: Booking, bill: Bill, extra: dict) -> None:
        client = booking.client
        result = self.notifier.send(
            kind,
            client.email,
            {
                "client_name": client.name,
                "practitioner_name": booking.practitioner.name,
                "start_time": booking.start_time,
                "amount": bill.total_amount,
                "currency": bill.currency,
                **extra,
            },
        )
        self.payment_repository.log_email(
            practitioner_id=booking.practitioner_id,
            client_id=booking.client_id,
            booking_id=booking.id,
            bill_id=bill.id,
            email_type=kind.value,
            recipient_email=client.email,
            subject=result.subject,
            status=(EmailCommunicationStatus.SENT if result.success else EmailCommunicationStatus.FAILED).value,
            provider_message_id=result.message_id,
            error_message=result.error,
        )
        if not result.success:
            raise RuntimeError(result.error or f"{kind.value} email failed")
