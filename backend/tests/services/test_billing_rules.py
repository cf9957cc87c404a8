"""Pure decision functions of the booking lifecycle."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from pydantic import ValidationError
import pytest

from consultflow.core.config import settings
from consultflow.core.enums import BillStatus, BookingStatus, CalendarVariant
from consultflow.core.exceptions import ValidationException
from consultflow.schemas.billing import MonthlyTerms, PerBookingTerms, billing_terms_adapter
from consultflow.services.bill_snapshot import compute_tax, initial_bill_status
from consultflow.services.booking_factory import determine_booking_status, ensure_utc, validate_time_window
from consultflow.services.calendar_event_reconciler import choose_calendar_variant
from consultflow.services.cancellation_refund_service import manual_refund_id
from consultflow.services.checkout_service import application_fee_cents
from consultflow.services.invoice_aggregator import compute_utc_period_from_label, previous_month_label
from consultflow.services.invoice_service import invoice_series
from consultflow.services.payment_email_scheduler import compute_scheduled_at, is_due

NOW = datetime(2025, 1, 8, 9, 0, tzinfo=timezone.utc)
START = datetime(2025, 1, 10, 10, 0, tzinfo=timezone.utc)
END = START + timedelta(hours=1)


class TestComputeScheduledAt:
    def test_zero_and_null_mean_now(self):
        assert compute_scheduled_at(0, START, END, NOW) == NOW
        assert compute_scheduled_at(None, START, END, NOW) == NOW

    def test_minus_one_means_end_of_consultation(self):
        assert compute_scheduled_at(-1, START, END, NOW) == END

    def test_positive_hours_before_start(self):
        assert compute_scheduled_at(24, START, END, NOW) == datetime(2025, 1, 9, 10, 0, tzinfo=timezone.utc)

    def test_other_negative_values_have_no_schedule(self):
        assert compute_scheduled_at(-5, START, END, NOW) is None

    def test_is_due(self):
        assert is_due(None, NOW)
        assert is_due(NOW, NOW)
        assert not is_due(NOW + timedelta(seconds=1), NOW)


@pytest.mark.parametrize(
    "cadence,amount,is_past,suppress,expected",
    [
        ("per_booking", Decimal("50"), False, False, BookingStatus.PENDING),
        ("per_booking", Decimal("50"), True, False, BookingStatus.COMPLETED),
        ("per_booking", Decimal("0"), False, False, BookingStatus.SCHEDULED),
        ("per_booking", Decimal("0"), True, False, BookingStatus.SCHEDULED),
        ("per_booking", Decimal("50"), False, True, BookingStatus.SCHEDULED),
        ("per_booking", Decimal("50"), True, True, BookingStatus.COMPLETED),
        ("monthly", Decimal("50"), False, False, BookingStatus.SCHEDULED),
        ("monthly", Decimal("50"), True, False, BookingStatus.SCHEDULED),
        ("monthly", Decimal("50"), True, True, BookingStatus.COMPLETED),
    ],
)
def test_booking_status_table(cadence, amount, is_past, suppress, expected):
    first = determine_booking_status(cadence, amount, is_past, suppress)
    second = determine_booking_status(cadence, amount, is_past, suppress)
    assert first == second == expected


@pytest.mark.parametrize(
    "cadence,amount,is_past,suppress,lead_hours,expected",
    [
        ("per_booking", Decimal("0"), False, False, None, CalendarVariant.CONFIRMED),
        ("per_booking", Decimal("0"), True, True, None, CalendarVariant.CONFIRMED),
        ("per_booking", Decimal("50"), True, False, None, CalendarVariant.INTERNAL_CONFIRMED),
        ("per_booking", Decimal("50"), True, True, None, None),
        ("per_booking", Decimal("50"), False, True, None, CalendarVariant.CONFIRMED),
        ("per_booking", Decimal("50"), False, False, -1, CalendarVariant.CONFIRMED),
        ("per_booking", Decimal("50"), False, False, 24, CalendarVariant.PENDING),
        ("per_booking", Decimal("50"), False, False, None, CalendarVariant.PENDING),
        ("monthly", Decimal("50"), False, False, None, CalendarVariant.CONFIRMED),
    ],
)
def test_calendar_variant_table(cadence, amount, is_past, suppress, lead_hours, expected):
    variant = choose_calendar_variant(
        cadence=cadence, amount=amount, is_past=is_past, suppress_email=suppress, lead_hours=lead_hours
    )
    assert variant == expected


def test_initial_bill_status():
    later = NOW + timedelta(hours=2)
    assert initial_bill_status("monthly", Decimal("80"), None, NOW) == BillStatus.SCHEDULED
    assert initial_bill_status("per_booking", Decimal("80"), later, NOW) == BillStatus.SCHEDULED
    assert initial_bill_status("per_booking", Decimal("80"), NOW, NOW) == BillStatus.PENDING
    assert initial_bill_status("per_booking", Decimal("0"), later, NOW) == BillStatus.PENDING
    assert initial_bill_status("per_booking", Decimal("80"), None, NOW) == BillStatus.PENDING


def test_compute_tax_rounds_half_up():
    assert compute_tax(Decimal("100.00"), Decimal("21")) == Decimal("21.00")
    assert compute_tax(Decimal("10.05"), Decimal("10")) == Decimal("1.01")
    assert compute_tax(Decimal("0"), Decimal("21")) == Decimal("0.00")
    assert compute_tax(Decimal("50"), Decimal("0")) == Decimal("0.00")


class TestTimeWindow:
    def test_naive_values_are_treated_as_utc(self):
        assert ensure_utc(datetime(2025, 1, 10, 10, 0)) == START

    def test_offsets_are_normalised(self):
        madrid = timezone(timedelta(hours=1))
        start, _ = validate_time_window(datetime(2025, 1, 10, 11, 0, tzinfo=madrid), END + timedelta(hours=1))
        assert start == START

    @pytest.mark.parametrize("end", [START, START - timedelta(minutes=1)])
    def test_end_must_follow_start(self, end):
        with pytest.raises(ValidationException) as exc_info:
            validate_time_window(START, end)
        assert exc_info.value.code == "INVALID_TIME_WINDOW"


class TestBillingTerms:
    def test_discriminates_on_cadence(self):
        assert isinstance(billing_terms_adapter.validate_python({"cadence": "monthly", "amount": 10}), MonthlyTerms)
        per_booking = billing_terms_adapter.validate_python({"cadence": "per_booking", "amount": 10, "lead_hours": -1})
        assert isinstance(per_booking, PerBookingTerms)
        assert per_booking.lead_hours == -1

    def test_amount_is_rounded_to_cents(self):
        assert PerBookingTerms(amount="10.005").amount == Decimal("10.01")

    def test_currency_is_normalised_and_checked(self):
        assert MonthlyTerms(amount=1, currency=" usd ").currency == "USD"
        with pytest.raises(ValidationError):
            MonthlyTerms(amount=1, currency="JPY")

    def test_default_currency(self):
        assert PerBookingTerms(amount=1).currency == settings.default_currency

    @pytest.mark.parametrize("payload", [{"amount": -1}, {"amount": True}, {"amount": "abc"}, {"amount": 1, "lead_hours": -2}])
    def test_rejects_invalid_per_booking_terms(self, payload):
        with pytest.raises(ValidationError):
            PerBookingTerms(**payload)

    def test_rejects_unknown_cadence(self):
        with pytest.raises(ValidationError):
            billing_terms_adapter.validate_python({"cadence": "weekly", "amount": 10})


def test_application_fee_is_disabled_by_default(monkeypatch):
    monkeypatch.setattr(settings, "platform_fee_percent", Decimal("0"))
    assert application_fee_cents(Decimal("100")) == 0

    monkeypatch.setattr(settings, "platform_fee_percent", Decimal("2.5"))
    assert application_fee_cents(Decimal("100")) == 250


def test_invoice_series():
    issued = datetime(2025, 3, 2, tzinfo=timezone.utc)
    assert invoice_series(issued, "invoice") == "2025-03"
    assert invoice_series(issued, "credit_note") == "R-2025-03"


class TestPeriodLabels:
    def test_regular_month(self):
        start, end = compute_utc_period_from_label("2025-02")
        assert start == datetime(2025, 2, 1, tzinfo=timezone.utc)
        assert end == datetime(2025, 3, 1, tzinfo=timezone.utc)

    def test_december_rolls_over(self):
        start, end = compute_utc_period_from_label("2024-12")
        assert start == datetime(2024, 12, 1, tzinfo=timezone.utc)
        assert end == datetime(2025, 1, 1, tzinfo=timezone.utc)

    @pytest.mark.parametrize("label", ["2025-13", "2025-00", "25-01", "2025/01", ""])
    def test_rejects_malformed_labels(self, label):
        with pytest.raises(ValidationException):
            compute_utc_period_from_label(label)

    def test_previous_month(self):
        assert previous_month_label(NOW) == "2024-12"
        assert previous_month_label(datetime(2025, 6, 15, tzinfo=timezone.utc)) == "2025-05"


def test_manual_refund_id():
    assert manual_refund_id(1736326800000, "01JH0000ABCDEFGHJKMNPQRSTV") == "manual_refund_1736326800000_01JH0000"
