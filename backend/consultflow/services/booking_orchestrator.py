# backend/consultflow/services/booking_orchestrator.py
"""
Booking Orchestrator for Consultflow

Top-level workflow for creating a booking:

    validate -> resolve parties -> resolve billing -> booking -> bill
    -> calendar (advisory) -> payment email (authoritative)

The booking and its bill are committed together. If the creation-time
payment email then fails, both are deleted again before the error is
raised, so no booking is left claiming payment was requested when it
was not.

It also carries the manual follow-ups on an existing booking: confirming
it without payment and resending its payment request.
"""

from decimal import Decimal
import logging
from typing import Optional

from sqlalchemy.orm import Session

from ..core.enums import PAYABLE_BILL_STATUSES, BillingCadence, BillStatus, BookingStatus
from ..core.exceptions import ConflictException, NotFoundException, PaymentEmailSendException
from ..integrations.protocols import AnalyticsSink, CalendarService, NotificationSink
from ..models.bill import Bill
from ..models.booking import Booking
from ..models.calendar import CalendarEvent
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..monitoring.sentry import capture_tagged_exception
from ..repositories.factory import RepositoryFactory
from ..schemas.base import to_money
from ..schemas.billing import BillingTerms, PerBookingTerms, ResolvedBilling
from ..schemas.booking import CreateBookingRequest, CreateBookingResult
from .advisory import run_advisory
from .base import BaseService, Clock
from .bill_snapshot import BillSnapshotWriter
from .billing_resolver import BillingResolver
from .booking_factory import BookingFactory, validate_time_window
from .calendar_event_reconciler import CalendarEventReconciler, choose_calendar_variant
from .payment_email_scheduler import PaymentEmailScheduler, booking_payment_url, compute_scheduled_at, is_due

logger = logging.getLogger(__name__)


def effective_terms(request: CreateBookingRequest, resolved: ResolvedBilling) -> BillingTerms:
    """
    Terms snapshotted for this booking.

    Explicit request terms replace the resolved ones; a first consultation
    uses ``first_consultation_amount`` when set; ``override_amount`` wins
    over both.
    """
    terms = request.billing or resolved.terms
    amount: Decimal = terms.amount
    if request.billing is None and request.consultation_type == "first" and resolved.first_consultation_amount is not None:
        amount = resolved.first_consultation_amount
    if request.override_amount is not None:
        amount = request.override_amount
    return terms.model_copy(update={"amount": to_money(amount)})


class BookingOrchestrator(BaseService):
    def __init__(
        self,
        db: Session,
        notifier: NotificationSink,
        calendar: CalendarService,
        analytics: Optional[AnalyticsSink] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(db, clock)
        self.analytics = analytics
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.bill_repository = RepositoryFactory.create_bill_repository(db)
        self.calendar_repository = RepositoryFactory.create_calendar_repository(db)
        self.billing_resolver = BillingResolver(db, clock)
        self.booking_factory = BookingFactory(db, clock)
        self.bill_writer = BillSnapshotWriter(db, clock)
        self.calendar_reconciler = CalendarEventReconciler(db, calendar, clock)
        self.email_scheduler = PaymentEmailScheduler(db, notifier, clock)

    @BaseService.measure_operation("create_booking")
    def create_booking(self, request: CreateBookingRequest) -> CreateBookingResult:
        """
        Create a booking, its bill snapshot, calendar event and payment request.

        Raises:
            ValidationException: invalid time window (nothing written)
            NotFoundException: unknown practitioner or client (nothing written)
            PaymentEmailSendException: the payment request could not be sent;
                the booking and bill have been removed
        """
        start, _ = validate_time_window(request.start_time, request.end_time)

        practitioner = self.booking_repository.get_practitioner(request.practitioner_id)
        if practitioner is None:
            raise NotFoundException(f"Practitioner {request.practitioner_id} not found")
        client = self.booking_repository.get_client(request.practitioner_id, request.client_id)
        if client is None:
            raise NotFoundException(f"Client {request.client_id} not found")

        now = self.now()
        is_past = start < now

        with self.transaction():
            resolved = self.billing_resolver.resolve(practitioner.id, client.id)
            terms = effective_terms(request, resolved)
            suppress_email = request.suppress_payment_email or resolved.suppress_payment_email
            lead_hours = terms.lead_hours if isinstance(terms, PerBookingTerms) else None

            booking = self.booking_factory.create(
                request,
                cadence=terms.cadence,
                amount=terms.amount,
                suppress_email=suppress_email,
                billing_settings_id=resolved.billing_settings_id,
                is_past=is_past,
            )
            scheduled_at = None
            if terms.cadence == BillingCadence.PER_BOOKING.value and not suppress_email:
                scheduled_at = compute_scheduled_at(lead_hours, booking.start_time, booking.end_time, now)
            bill = self.bill_writer.create(booking, terms, client, email_scheduled_at=scheduled_at)
            if terms.amount == 0:
                self.bill_repository.mark_paid(bill.id, now)

        prometheus_metrics.inc_booking_created(booking.status)
        self.logger.info(f"Booking {booking.id} created ({terms.cadence}, {terms.amount} {terms.currency})")

        variant = choose_calendar_variant(
            cadence=terms.cadence,
            amount=terms.amount,
            is_past=is_past,
            suppress_email=suppress_email,
            lead_hours=lead_hours,
        )
        calendar_event: Optional[CalendarEvent] = None
        if variant is not None:
            with self.transaction():
                calendar_event = run_advisory(
                    "calendar_stage",
                    self.calendar_reconciler.stage,
                    variant,
                    booking,
                    client,
                    practitioner,
                    context={"booking_id": booking.id, "variant": variant.value},
                )

        self._track("booking_created", booking, terms.amount, terms.cadence)

        if terms.amount == 0:
            return self._result(booking, bill, requires_payment=False)
        if terms.cadence == BillingCadence.MONTHLY.value:
            return self._result(booking, bill, requires_payment=False)
        if suppress_email or not is_due(scheduled_at, now):
            return self._result(booking, bill, requires_payment=True)

        try:
            with self.transaction():
                outcome = self.email_scheduler.send_payment_request(
                    bill, booking, client, practitioner, path="creation"
                )
        except Exception as e:
            self._compensate(booking, bill, calendar_event, reason=str(e))
            raise PaymentEmailSendException(client.email, str(e)) from e
        if not outcome.success:
            self._compensate(booking, bill, calendar_event, reason=outcome.error)
            raise PaymentEmailSendException(client.email, outcome.error)

        return self._result(booking, bill, requires_payment=True, payment_url=booking_payment_url(booking.id))

    def _get_open_booking(self, booking_id: str) -> Booking:
        booking = self.booking_repository.get_with_parties(booking_id)
        if booking is None:
            raise NotFoundException(f"Booking {booking_id} not found")
        if booking.status == BookingStatus.CANCELED.value:
            raise ConflictException(
                "Booking has been canceled", code="BOOKING_CANCELED", details={"booking_id": booking_id}
            )
        return booking

    @BaseService.measure_operation("confirm_booking")
    def confirm_booking(self, booking_id: str) -> Booking:
        """
        Confirm a pending booking without recording a payment.

        The booking moves to ``scheduled`` and its pending calendar hold is
        promoted; the bill keeps its status. Confirming a booking that is
        no longer pending only retries the calendar promotion.
        """
        booking = self._get_open_booking(booking_id)
        if booking.status == BookingStatus.PENDING.value:
            with self.transaction():
                self.booking_repository.update_status(booking.id, BookingStatus.SCHEDULED.value)
            self.logger.info(f"Booking {booking_id} confirmed manually")

        with self.transaction():
            run_advisory(
                "calendar_confirm",
                self.calendar_reconciler.confirm_on_payment,
                booking,
                context={"booking_id": booking_id},
            )
        return booking

    @BaseService.measure_operation("resend_payment_email")
    def resend_payment_email(self, booking_id: str) -> Bill:
        """
        Send the payment request for an unpaid per-booking bill again.

        Raises:
            NotFoundException: unknown booking or no bill
            ConflictException: canceled booking, monthly bill or bill not payable
            PaymentEmailSendException: the email could not be delivered
        """
        booking = self._get_open_booking(booking_id)
        bill = self.bill_repository.get_by_booking_id(booking_id)
        if bill is None:
            raise NotFoundException(f"No bill found for booking {booking_id}")
        if bill.billing_type == BillingCadence.MONTHLY.value:
            raise ConflictException(
                "Monthly bills are paid through their invoice",
                code="MONTHLY_BILL",
                details={"booking_id": booking_id, "bill_id": bill.id},
            )
        if BillStatus(bill.status) not in PAYABLE_BILL_STATUSES or bill.total_amount <= 0:
            raise ConflictException(
                f"Bill is {bill.status} and has nothing to pay",
                code="BILL_NOT_PAYABLE",
                details={"booking_id": booking_id, "bill_id": bill.id},
            )

        with self.transaction():
            outcome = self.email_scheduler.send_payment_request(
                bill, booking, booking.client, booking.practitioner, path="resend"
            )
        if not outcome.success:
            raise PaymentEmailSendException(booking.client.email, outcome.error)
        return bill

    def _result(
        self,
        booking: Booking,
        bill: Bill,
        *,
        requires_payment: bool,
        payment_url: Optional[str] = None,
    ) -> CreateBookingResult:
        return CreateBookingResult(
            booking_id=booking.id,
            bill_id=bill.id,
            booking_status=booking.status,
            bill_status=bill.status,
            requires_payment=requires_payment,
            payment_url=payment_url,
        )

    def _track(self, event: str, booking: Booking, amount: Decimal, cadence: str) -> None:
        if self.analytics is None:
            return
        run_advisory(
            "analytics",
            self.analytics.track,
            event,
            booking.practitioner_id,
            {
                "booking_id": booking.id,
                "client_id": booking.client_id,
                "status": booking.status,
                "amount": str(amount),
                "cadence": cadence,
            },
        )

    def _compensate(
        self,
        booking: Booking,
        bill: Bill,
        calendar_event: Optional[CalendarEvent],
        *,
        reason: Optional[str],
    ) -> None:
        """Delete the committed booking and bill in one transaction; cleanup errors are logged, not raised."""
        booking_id, bill_id = booking.id, bill.id
        self.logger.warning(f"Payment email failed for booking {booking_id} ({reason}); rolling back creation")
        prometheus_metrics.inc_booking_compensation()

        if calendar_event is not None:
            run_advisory(
                "calendar_compensation",
                self.calendar_reconciler.delete_external,
                booking.practitioner_id,
                calendar_event.google_event_id,
                context={"booking_id": booking_id},
            )

        # Bill and booking go together or not at all
        try:
            with self.transaction():
                self.bill_repository.delete(bill_id)
                self.booking_repository.delete_with_calendar_events(booking_id)
        except Exception as cleanup_error:
            self.logger.error(
                f"Failed to delete booking {booking_id} and bill {bill_id} during compensation: {cleanup_error}"
            )
            capture_tagged_exception(
                cleanup_error, stage="compensation", context={"booking_id": booking_id, "bill_id": bill_id}
            )
