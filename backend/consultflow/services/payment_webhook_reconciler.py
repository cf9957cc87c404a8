# backend/consultflow/services/payment_webhook_reconciler.py
"""
Payment Webhook Reconciler for Consultflow

Applies verified ``checkout.session.completed`` events. Payment state
(session, bill, booking, invoice) is authoritative and committed first;
receipt email, analytics, PDF and calendar confirmation are advisory and
can never roll the payment back. Handlers always acknowledge.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..core.enums import (
    PAYABLE_BILL_STATUSES,
    BillStatus,
    BookingStatus,
    EmailCommunicationStatus,
    EmailKind,
    InvoiceStatus,
    PaymentSessionStatus,
)
from ..core.exceptions import ConsistencyViolation
from ..integrations.protocols import (
    AnalyticsSink,
    CalendarService,
    NotificationResult,
    NotificationSink,
    PaymentProcessor,
    WebhookEvent,
)
from ..models.bill import Bill
from ..models.booking import Booking
from ..models.invoice import Invoice
from ..models.payment import PaymentSession
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..monitoring.sentry import capture_tagged_exception
from ..repositories.factory import RepositoryFactory
from ..schemas.base import to_cents
from ..schemas.payment import WebhookResponse
from .advisory import report_consistency_violation, run_advisory
from .base import BaseService, Clock
from .calendar_event_reconciler import CalendarEventReconciler
from .invoice_service import InvoiceService

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"

STATUS_SUCCESS = "success"
STATUS_DUPLICATE = "duplicate"
STATUS_NEEDS_REVIEW = "needs_review"


class PaymentWebhookReconciler(BaseService):
    def __init__(
        self,
        db: Session,
        processor: PaymentProcessor,
        notifier: NotificationSink,
        calendar: CalendarService,
        analytics: Optional[AnalyticsSink] = None,
        invoice_service: Optional[InvoiceService] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(db, clock)
        self.processor = processor
        self.notifier = notifier
        self.analytics = analytics
        self.invoice_service = invoice_service or InvoiceService(db, clock=clock)
        self.calendar_reconciler = CalendarEventReconciler(db, calendar, clock)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.bill_repository = RepositoryFactory.create_bill_repository(db)
        self.invoice_repository = RepositoryFactory.create_invoice_repository(db)
        self.payment_repository = RepositoryFactory.create_payment_repository(db)

    @BaseService.measure_operation("handle_webhook_event")
    def handle_event(self, event: WebhookEvent) -> WebhookResponse:
        """Route one verified event. Never raises; failures are reported in the response."""
        if event.type != CHECKOUT_COMPLETED:
            prometheus_metrics.inc_webhook_event(event.type, "ignored")
            return WebhookResponse(status="ignored", event_type=event.type)

        try:
            if event.metadata.get("invoice_id"):
                response = self.handle_invoice_checkout_completed(event)
            elif event.metadata.get("booking_id"):
                response = self.handle_booking_checkout_completed(event)
            else:
                self.logger.warning(f"Checkout event {event.id} has no booking_id or invoice_id metadata")
                prometheus_metrics.inc_webhook_event(event.type, "unmatched")
                return WebhookResponse(status="ignored", event_type=event.type, message="No booking or invoice metadata")
        except Exception as e:
            self.logger.error(f"Webhook {event.id} reconciliation failed: {str(e)}", exc_info=True)
            capture_tagged_exception(e, stage="webhook_reconcile", context={"event_id": event.id, **event.metadata})
            prometheus_metrics.inc_webhook_event(event.type, "error")
            return WebhookResponse(status="error", event_type=event.type, message=str(e))

        prometheus_metrics.inc_webhook_event(
            event.type, "processed" if response.status == STATUS_SUCCESS else response.status
        )
        return response

    def _session_for(self, event: WebhookEvent) -> Optional[PaymentSession]:
        session_id = event.data.get("id")
        if not session_id:
            return None
        return self.payment_repository.get_by_stripe_session_id(str(session_id))

    def _receipt_url(self, event: WebhookEvent) -> Optional[str]:
        payment_intent_id = event.data.get("payment_intent")
        if not payment_intent_id or not event.account:
            return None
        return run_advisory(
            "receipt_url",
            self.processor.get_receipt_url,
            str(payment_intent_id),
            connected_account_id=event.account,
            context={"event_id": event.id},
        )

    def _needs_review(self, event: WebhookEvent, message: str, **context: Any) -> WebhookResponse:
        report_consistency_violation(
            ConsistencyViolation(
                message,
                context={"event_id": event.id, "checkout_session_id": event.data.get("id"), **context},
            ),
            stage="webhook_reconcile",
        )
        return WebhookResponse(status=STATUS_NEEDS_REVIEW, event_type=event.type, message=message)

    @staticmethod
    def _duplicate(event: WebhookEvent, message: str) -> WebhookResponse:
        return WebhookResponse(status=STATUS_DUPLICATE, event_type=event.type, message=message)

    # ========== Booking path ==========

    @staticmethod
    def _booking_conflict(booking: Booking, bill: Optional[Bill]) -> Optional[str]:
        if booking.status == BookingStatus.CANCELED.value:
            return f"Payment received for canceled booking {booking.id}"
        if bill is None:
            return None
        if bill.status == BillStatus.PAID.value:
            return f"Payment received for booking {booking.id} whose bill {bill.id} is already paid"
        if BillStatus(bill.status) not in PAYABLE_BILL_STATUSES:
            return f"Payment received for booking {booking.id} whose bill {bill.id} is {bill.status}"
        return None

    def handle_booking_checkout_completed(self, event: WebhookEvent) -> WebhookResponse:
        """
        Mark a booking's bill paid and confirm the booking.

        A session that is already completed is a redelivery and only
        acknowledged. A payment for a canceled booking, or for a bill that is
        no longer payable, leaves booking and bill untouched: the session keeps
        the payment intent so the charge can be refunded by hand, and the
        event is reported for review.
        """
        booking_id = event.metadata["booking_id"]
        payment_intent_id = event.data.get("payment_intent")
        now = self.now()

        with self.transaction():
            booking = self.booking_repository.get_with_parties(booking_id)
            if booking is None:
                raise LookupError(f"Booking {booking_id} not found for checkout event {event.id}")
            session = self._session_for(event) or self.payment_repository.get_pending_for_booking(booking_id)
            if session is not None and session.status == PaymentSessionStatus.COMPLETED.value:
                self.logger.info(f"Checkout {session.stripe_session_id} for booking {booking_id} already applied")
                return self._duplicate(event, f"Booking {booking_id} payment already recorded")

            bill = self.bill_repository.get_by_booking_id(booking.id)
            conflict = self._booking_conflict(booking, bill)
            if session is not None:
                self.payment_repository.mark_completed(session, payment_intent_id, now)
            if conflict is None:
                if booking.status == BookingStatus.PENDING.value:
                    self.booking_repository.update_status(booking.id, BookingStatus.SCHEDULED.value)
                if bill is not None and not self.bill_repository.mark_paid_if_payable(bill.id, now):
                    conflict = f"Bill {bill.id} for booking {booking_id} stopped being payable during checkout"

        if conflict is not None:
            return self._needs_review(
                event,
                conflict,
                booking_id=booking_id,
                bill_id=bill.id if bill is not None else None,
                bill_status=bill.status if bill is not None else None,
                payment_intent_id=payment_intent_id,
            )

        self.logger.info(f"Booking {booking_id} paid via checkout {event.data.get('id')}")
        receipt_url = self._receipt_url(event)

        if bill is not None:
            with self.transaction():
                run_advisory(
                    "invoice_on_payment",
                    self.invoice_service.ensure_invoice_for_bill_on_payment,
                    bill,
                    session,
                    receipt_url,
                    context={"booking_id": booking_id},
                )
            with self.transaction():
                run_advisory(
                    "receipt_email",
                    self._send_receipt,
                    booking,
                    bill,
                    receipt_url,
                    context={"booking_id": booking_id},
                )

        if self.analytics is not None:
            run_advisory(
                "analytics",
                self.analytics.track,
                "payment_completed",
                booking.practitioner_id,
                {"booking_id": booking_id, "amount": str(bill.total_amount) if bill else None},
            )

        with self.transaction():
            run_advisory(
                "calendar_confirm",
                self.calendar_reconciler.confirm_on_payment,
                booking,
                context={"booking_id": booking_id},
            )
        return WebhookResponse(status=STATUS_SUCCESS, event_type=event.type, message=f"Booking {booking_id} marked as paid")

    def _send_receipt(self, booking: Booking, bill: Bill, receipt_url: Optional[str]) -> None:
        client = booking.client
        result = self.notifier.send(
            EmailKind.RECEIPT,
            client.email,
            {
                "client_name": client.name,
                "practitioner_name": booking.practitioner.name,
                "start_time": booking.start_time,
                "amount": bill.total_amount,
                "currency": bill.currency,
                "receipt_url": receipt_url,
            },
        )
        self._log_email(
            bill.practitioner_id,
            EmailKind.RECEIPT,
            client.email,
            result,
            booking_id=booking.id,
            bill_id=bill.id,
            client_id=client.id,
        )
        if not result.success:
            raise RuntimeError(result.error or "receipt email failed")

    # ========== Invoice path ==========

    @staticmethod
    def _paid_cents(event: WebhookEvent, session: Optional[PaymentSession]) -> Optional[int]:
        amount_total = event.data.get("amount_total")
        if amount_total is not None:
            return int(amount_total)
        if session is not None:
            return to_cents(session.amount)
        return None

    def handle_invoice_checkout_completed(self, event: WebhookEvent) -> WebhookResponse:
        """
        Mark a monthly invoice and its bills paid.

        The paid amount must equal the invoice total; a checkout created
        before the invoice changed is recorded on its session and reported,
        and the invoice stays unpaid.
        """
        invoice_id = event.metadata["invoice_id"]
        payment_intent_id = event.data.get("payment_intent")
        now = self.now()
        receipt_url = self._receipt_url(event)

        with self.transaction():
            invoice = self.invoice_repository.get_by_id(invoice_id)
            if invoice is None:
                raise LookupError(f"Invoice {invoice_id} not found for checkout event {event.id}")
            session = self._session_for(event) or self.payment_repository.get_pending_for_invoice(invoice_id)
            if session is not None and session.status == PaymentSessionStatus.COMPLETED.value:
                self.logger.info(f"Checkout {session.stripe_session_id} for invoice {invoice_id} already applied")
                return self._duplicate(event, f"Invoice {invoice_id} payment already recorded")

            paid_cents = self._paid_cents(event, session)
            conflict: Optional[str] = None
            if invoice.status not in (InvoiceStatus.DRAFT.value, InvoiceStatus.ISSUED.value):
                conflict = f"Payment received for invoice {invoice_id} which is {invoice.status}"
            elif paid_cents is not None and paid_cents != to_cents(invoice.total):
                conflict = (
                    f"Payment of {paid_cents} cents does not match invoice {invoice_id} "
                    f"total of {to_cents(invoice.total)} cents"
                )
            if session is not None:
                self.payment_repository.mark_completed(session, payment_intent_id, now)
            if conflict is None:
                self.invoice_service.finalize_monthly_on_payment(invoice, session, receipt_url)

        if conflict is not None:
            return self._needs_review(
                event,
                conflict,
                invoice_id=invoice_id,
                invoice_status=invoice.status,
                paid_cents=paid_cents,
                payment_intent_id=payment_intent_id,
            )

        self.logger.info(f"Invoice {invoice_id} paid via checkout {event.data.get('id')}")
        with self.transaction():
            run_advisory(
                "monthly_receipt_email",
                self._send_monthly_receipt,
                invoice,
                context={"invoice_id": invoice_id},
            )
        if self.analytics is not None:
            run_advisory(
                "analytics",
                self.analytics.track,
                "invoice_paid",
                invoice.practitioner_id,
                {"invoice_id": invoice_id, "amount": str(invoice.total)},
            )
        return WebhookResponse(status=STATUS_SUCCESS, event_type=event.type, message=f"Invoice {invoice_id} marked as paid")

    def _send_monthly_receipt(self, invoice: Invoice) -> None:
        data: Dict[str, Any] = {
            "client_name": invoice.client_name,
            "period_label": invoice.period_start.strftime("%Y-%m") if invoice.period_start else "",
            "invoice_number": invoice.display_number,
            "amount": invoice.total,
            "currency": invoice.currency,
            "receipt_url": invoice.receipt_url,
        }
        result = self.notifier.send(EmailKind.MONTHLY_RECEIPT, invoice.client_email, data)
        self._log_email(
            invoice.practitioner_id,
            EmailKind.MONTHLY_RECEIPT,
            invoice.client_email,
            result,
            invoice_id=invoice.id,
            client_id=invoice.client_id,
        )
        if not result.success:
            raise RuntimeError(result.error or "monthly receipt email failed")

    def _log_email(
        self, practitioner_id: str, kind: EmailKind, recipient: str, result: NotificationResult, **ids: Optional[str]
    ) -> None:
        self.payment_repository.log_email(
            practitioner_id=practitioner_id,
            email_type=kind.value,
            recipient_email=recipient,
            subject=result.subject,
            status=(EmailCommunicationStatus.SENT if result.success else EmailCommunicationStatus.FAILED).value,
            provider_message_id=result.message_id,
            error_message=result.error,
            **ids,
        )
