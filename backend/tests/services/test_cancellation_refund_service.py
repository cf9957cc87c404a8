from datetime import datetime, timezone
from decimal import Decimal

import pytest

from consultflow.core.enums import (
    BillStatus,
    BookingStatus,
    CalendarEventStatus,
    DocumentKind,
    EmailKind,
    InvoiceStatus,
    PaymentSessionStatus,
)
from consultflow.core.exceptions import (
    BillAlreadyRefundedException,
    ConflictException,
    ExternalServiceException,
    NoPaidBillException,
    NotFoundException,
)
from consultflow.models.bill import Bill
from consultflow.models.booking import Booking
from consultflow.models.calendar import CalendarEvent
from consultflow.models.invoice import Invoice
from consultflow.models.payment import PaymentSession
from tests.factories.billing_factories import booking_request
from tests.helpers.flows import checkout_completed_event, pay_booking

START = datetime(2025, 1, 10, 10, 0, tzinfo=timezone.utc)


def _bill(db, booking_id: str) -> Bill:
    return db.query(Bill).filter(Bill.booking_id == booking_id).one()


@pytest.fixture
def pending_booking(orchestrator, practitioner, client, per_booking_settings):
    return orchestrator.create_booking(booking_request(practitioner, client, START))


@pytest.fixture
def paid_booking(pending_booking, checkout_service, reconciler):
    pay_booking(checkout_service, reconciler, pending_booking.booking_id, payment_intent="pi_paid")
    return pending_booking


class TestCancelPendingBooking:
    def test_cancels_sessions_and_bills_without_refund(
        self, db, pending_booking, checkout_service, refund_service, processor
    ):
        checkout = checkout_service.checkout_for_booking(pending_booking.booking_id)

        result = refund_service.cancel_booking(pending_booking.booking_id, reason="client asked")

        assert result.status == BookingStatus.CANCELED.value
        assert result.refund is None
        assert result.payment_cancellation.cancelled_sessions == 1
        assert result.payment_cancellation.canceled_bills == 1
        assert processor.refunds == []
        assert processor.expired == [checkout.session_id]

        session = db.query(PaymentSession).filter(PaymentSession.stripe_session_id == checkout.session_id).one()
        assert session.status == PaymentSessionStatus.CANCELLED.value
        assert _bill(db, pending_booking.booking_id).status == BillStatus.CANCELED.value
        assert db.get(Booking, pending_booking.booking_id).status == BookingStatus.CANCELED.value

    def test_placeholder_calendar_event_is_deleted(self, db, pending_booking, refund_service, calendar):
        refund_service.cancel_booking(pending_booking.booking_id)

        assert calendar.deleted == ["gcal_1"]
        assert calendar.cancelled == []
        event = db.query(CalendarEvent).filter(CalendarEvent.booking_id == pending_booking.booking_id).one()
        assert event.event_status == CalendarEventStatus.CANCELLED.value

    def test_cancellation_email_is_sent(self, pending_booking, refund_service, notifier):
        refund_service.cancel_booking(pending_booking.booking_id)

        assert notifier.kinds()[-1] == EmailKind.CANCELLATION
        assert notifier.sent[-1][2]["refunded"] is False

    def test_expire_failure_still_cancels(self, db, pending_booking, checkout_service, refund_service, processor):
        checkout_service.checkout_for_booking(pending_booking.booking_id)
        processor.fail_expire = True

        result = refund_service.cancel_booking(pending_booking.booking_id)

        assert result.payment_cancellation.cancelled_sessions == 1
        assert _bill(db, pending_booking.booking_id).status == BillStatus.CANCELED.value

    def test_second_cancel_is_a_no_op(self, pending_booking, refund_service, notifier):
        refund_service.cancel_booking(pending_booking.booking_id)
        sent_before = len(notifier.sent)

        again = refund_service.cancel_booking(pending_booking.booking_id)

        assert again.already_canceled is True
        assert len(notifier.sent) == sent_before

    def test_unknown_booking(self, refund_service):
        with pytest.raises(NotFoundException):
            refund_service.cancel_booking("01HNOTABOOKING000000000000")


class TestCancelPaidBooking:
    def test_refunds_and_cancels_confirmed_event(self, db, paid_booking, refund_service, processor, calendar):
        result = refund_service.cancel_booking(paid_booking.booking_id, reason="illness")

        assert result.refund is not None
        assert result.refund.refund_id == "re_test_1"
        assert processor.refunds[0]["payment_intent_id"] == "pi_paid"
        assert processor.refunds[0]["metadata"]["reason"] == "illness"
        assert _bill(db, paid_booking.booking_id).status == BillStatus.REFUNDED.value
        assert calendar.cancelled == ["gcal_1"]
        assert calendar.deleted == []

    def test_refund_failure_aborts_cancellation(self, db, paid_booking, refund_service, processor):
        processor.fail_refund = True

        with pytest.raises(ExternalServiceException):
            refund_service.cancel_booking(paid_booking.booking_id)

        assert db.get(Booking, paid_booking.booking_id).status == BookingStatus.SCHEDULED.value
        assert _bill(db, paid_booking.booking_id).status == BillStatus.PAID.value


class TestRefund:
    def test_refund_then_second_refund_is_rejected(self, db, paid_booking, refund_service, processor):
        first = refund_service.refund_booking(paid_booking.booking_id)

        bill = _bill(db, paid_booking.booking_id)
        assert bill.status == BillStatus.REFUNDED.value
        assert bill.refund_id == first.refund_id
        assert bill.refunded_at is not None

        with pytest.raises(BillAlreadyRefundedException):
            refund_service.refund_booking(paid_booking.booking_id)
        assert len(processor.refunds) == 1

    def test_refund_issues_full_credit_note(self, db, paid_booking, refund_service):
        result = refund_service.refund_booking(paid_booking.booking_id, reason="duplicate charge")

        bill = _bill(db, paid_booking.booking_id)
        invoice = db.get(Invoice, bill.invoice_id)
        credit_note = db.get(Invoice, result.credit_note_id)
        assert invoice.status == InvoiceStatus.REFUNDED.value
        assert credit_note.document_kind == DocumentKind.CREDIT_NOTE.value
        assert credit_note.rectifies_invoice_id == invoice.id
        assert credit_note.rectification_reason == "duplicate charge"
        assert credit_note.total == -invoice.total
        assert credit_note.series == "R-2025-01"
        assert credit_note.number == 1

    def test_refund_email_is_sent(self, paid_booking, refund_service, notifier):
        refund_service.refund_booking(paid_booking.booking_id)

        assert notifier.kinds()[-1] == EmailKind.REFUND

    def test_refund_of_unpaid_bill_is_rejected(self, pending_booking, refund_service, processor):
        with pytest.raises(NoPaidBillException):
            refund_service.refund_booking(pending_booking.booking_id)
        assert processor.refunds == []

    def test_failed_processor_refund_changes_nothing(self, db, paid_booking, refund_service, processor):
        processor.fail_refund = True

        with pytest.raises(ExternalServiceException):
            refund_service.refund_booking(paid_booking.booking_id)

        assert _bill(db, paid_booking.booking_id).status == BillStatus.PAID.value


class TestManualPayment:
    def test_marks_bill_paid_and_booking_scheduled(self, db, pending_booking, refund_service):
        bill = refund_service.mark_booking_paid_manually(pending_booking.booking_id)

        assert bill.status == BillStatus.PAID.value
        assert db.get(Booking, pending_booking.booking_id).status == BookingStatus.SCHEDULED.value

    def test_already_paid_is_returned_unchanged(self, pending_booking, refund_service):
        first = refund_service.mark_booking_paid_manually(pending_booking.booking_id)
        second = refund_service.mark_booking_paid_manually(pending_booking.booking_id)

        assert second.id == first.id
        assert second.paid_at == first.paid_at

    def test_manual_payment_refunds_with_synthetic_id(self, pending_booking, refund_service, processor, clock):
        refund_service.mark_booking_paid_manually(pending_booking.booking_id)

        result = refund_service.refund_booking(pending_booking.booking_id)

        expected_ts = int(clock.now.timestamp() * 1000)
        assert result.refund_id == f"manual_refund_{expected_ts}_{pending_booking.booking_id[:8]}"
        assert processor.refunds == []

    def test_canceled_booking_cannot_be_marked_paid(self, pending_booking, refund_service):
        refund_service.cancel_booking(pending_booking.booking_id)

        with pytest.raises(ConflictException) as exc_info:
            refund_service.mark_booking_paid_manually(pending_booking.booking_id)
        assert exc_info.value.code == "BOOKING_CANCELED"

    def test_refunded_bill_cannot_be_marked_paid(self, db, paid_booking, refund_service):
        refund_service.refund_booking(paid_booking.booking_id)

        with pytest.raises(ConflictException) as exc_info:
            refund_service.mark_booking_paid_manually(paid_booking.booking_id)
        assert exc_info.value.code == "BILL_NOT_PAYABLE"


def test_monthly_bill_refund_issues_partial_credit_note(
    db, orchestrator, aggregator, checkout_service, reconciler, refund_service, practitioner, client, monthly_settings
):
    first = orchestrator.create_booking(booking_request(practitioner, client, START))
    orchestrator.create_booking(booking_request(practitioner, client, datetime(2025, 1, 20, 10, 0, tzinfo=timezone.utc)))
    aggregation = aggregator.run_monthly_consolidation("2025-01")
    assert aggregation.invoices == 1

    invoice_id = _bill(db, first.booking_id).invoice_id
    checkout = checkout_service.checkout_for_invoice(invoice_id)
    reconciler.handle_event(checkout_completed_event(checkout.session_id, invoice_id=invoice_id))

    result = refund_service.refund_booking(first.booking_id)

    credit_note = db.get(Invoice, result.credit_note_id)
    assert result.refund_id.startswith("manual_refund_")
    assert credit_note.total == Decimal("-80.00")
    assert credit_note.rectifies_invoice_id == invoice_id
