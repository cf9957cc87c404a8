from datetime import datetime, timezone
from decimal import Decimal

import pytest

from consultflow.core.enums import BillStatus, EmailKind, InvoiceStatus
from consultflow.core.exceptions import ConflictException, ValidationException
from consultflow.models.bill import Bill
from consultflow.models.invoice import Invoice
from consultflow.services.invoice_aggregator import compute_utc_period_from_label
from tests.factories.billing_factories import booking_request, make_billing_settings, make_client

JAN_10 = datetime(2025, 1, 10, 10, 0, tzinfo=timezone.utc)
JAN_20 = datetime(2025, 1, 20, 10, 0, tzinfo=timezone.utc)
FEB_03 = datetime(2025, 2, 3, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def monthly_bookings(orchestrator, practitioner, client, monthly_settings):
    return [
        orchestrator.create_booking(booking_request(practitioner, client, start))
        for start in (JAN_10, JAN_20, FEB_03)
    ]


def test_single_draft_holds_the_period_bills(db, aggregator, monthly_bookings, practitioner, client):
    start, end = compute_utc_period_from_label("2025-01")

    result = aggregator.ensure_monthly_draft_and_link_bills(practitioner.id, client.id, start, end)

    assert result.created is True
    assert len(result.linked_bill_ids) == 2
    assert result.total == Decimal("160.00")

    invoice = db.get(Invoice, result.invoice_id)
    assert invoice.status == InvoiceStatus.DRAFT.value
    assert invoice.billing_type == "monthly"
    assert invoice.period_start == start
    february_bill = db.query(Bill).filter(Bill.booking_id == monthly_bookings[2].booking_id).one()
    assert february_bill.invoice_id is None


def test_rerun_is_idempotent(db, aggregator, monthly_bookings, practitioner, client):
    start, end = compute_utc_period_from_label("2025-01")

    first = aggregator.ensure_monthly_draft_and_link_bills(practitioner.id, client.id, start, end)
    second = aggregator.ensure_monthly_draft_and_link_bills(practitioner.id, client.id, start, end)

    assert second.invoice_id == first.invoice_id
    assert second.created is False
    assert sorted(second.linked_bill_ids) == sorted(first.linked_bill_ids)
    assert second.total == first.total
    assert db.query(Invoice).count() == 1


def test_canceled_bill_is_unlinked_on_rerun(db, aggregator, refund_service, monthly_bookings, practitioner, client):
    start, end = compute_utc_period_from_label("2025-01")
    first = aggregator.ensure_monthly_draft_and_link_bills(practitioner.id, client.id, start, end)

    refund_service.cancel_booking(monthly_bookings[1].booking_id)
    second = aggregator.ensure_monthly_draft_and_link_bills(practitioner.id, client.id, start, end)

    canceled_bill = db.query(Bill).filter(Bill.booking_id == monthly_bookings[1].booking_id).one()
    assert canceled_bill.status == BillStatus.CANCELED.value
    assert canceled_bill.invoice_id is None
    assert second.unlinked_bill_ids == [canceled_bill.id]
    assert second.total == Decimal("80.00")
    assert second.invoice_id == first.invoice_id


def test_new_bill_joins_existing_draft(db, aggregator, orchestrator, monthly_bookings, practitioner, client):
    start, end = compute_utc_period_from_label("2025-01")
    aggregator.ensure_monthly_draft_and_link_bills(practitioner.id, client.id, start, end)

    orchestrator.create_booking(booking_request(practitioner, client, datetime(2025, 1, 28, 10, 0, tzinfo=timezone.utc)))
    result = aggregator.ensure_monthly_draft_and_link_bills(practitioner.id, client.id, start, end)

    assert len(result.linked_bill_ids) == 3
    assert result.total == Decimal("240.00")


def test_monthly_run_issues_request_emails(db, aggregator, monthly_bookings, notifier, client):
    result = aggregator.run_monthly_consolidation("2025-01")

    assert (result.groups, result.invoices, result.linked_bills, result.emails_sent) == (1, 1, 2, 1)
    assert result.errors == []
    assert notifier.kinds() == [EmailKind.MONTHLY_PAYMENT_REQUEST]
    kind, recipient, data = notifier.sent[0]
    assert recipient == client.email
    assert data["sessions"] == 2
    assert data["period_label"] == "2025-01"
    assert "/api/v1/payments/invoices/" in data["payment_url"]


def test_email_failure_does_not_fail_the_run(db, aggregator, monthly_bookings, notifier):
    notifier.failing_kinds.add(EmailKind.MONTHLY_PAYMENT_REQUEST)

    result = aggregator.run_monthly_consolidation("2025-01")

    assert result.invoices == 1
    assert result.emails_sent == 0
    assert result.errors == []


def test_dry_run_writes_nothing(db, aggregator, monthly_bookings, notifier):
    result = aggregator.run_monthly_consolidation("2025-01", dry_run=True)

    assert result.invoices == 1
    assert result.linked_bills == 2
    assert db.query(Invoice).count() == 0
    assert notifier.sent == []


def test_default_period_is_previous_month(aggregator):
    result = aggregator.run_monthly_consolidation()

    assert result.period_label == "2024-12"
    assert result.groups == 0


def test_invalid_period_label(aggregator):
    with pytest.raises(ValidationException):
        aggregator.run_monthly_consolidation("2025-1")


def test_failing_group_is_reported_and_others_continue(
    db, aggregator, orchestrator, monthly_bookings, practitioner, client, monkeypatch
):
    other_client = make_client(db, practitioner)
    make_billing_settings(
        db, practitioner, client=other_client, billing_type="monthly", consultation_price=Decimal("60.00")
    )
    orchestrator.create_booking(booking_request(practitioner, other_client, JAN_10))

    original = aggregator.ensure_monthly_draft_and_link_bills

    def flaky(practitioner_id, client_id, period_start, period_end):
        if client_id == client.id:
            raise RuntimeError("boom")
        return original(practitioner_id, client_id, period_start, period_end)

    monkeypatch.setattr(aggregator, "ensure_monthly_draft_and_link_bills", flaky)

    result = aggregator.run_monthly_consolidation("2025-01")

    assert result.groups == 2
    assert result.invoices == 1
    assert len(result.errors) == 1
    assert result.errors[0].client_id == client.id
    assert result.errors[0].error == "boom"


def test_draft_created_concurrently_is_reused(db, aggregator, invoice_service, monthly_bookings, practitioner, client, monkeypatch):
    start, end = compute_utc_period_from_label("2025-01")
    winner = invoice_service.create_draft(
        practitioner_id=practitioner.id,
        client=client,
        billing_type="monthly",
        currency="EUR",
        period_start=start,
        period_end=end,
    )
    lookup = aggregator.invoice_repository.get_monthly_draft
    calls = []

    def lookup_missing_the_first_time(*args):
        calls.append(args)
        return None if len(calls) == 1 else lookup(*args)

    monkeypatch.setattr(aggregator.invoice_repository, "get_monthly_draft", lookup_missing_the_first_time)

    result = aggregator.ensure_monthly_draft_and_link_bills(practitioner.id, client.id, start, end)

    assert result.invoice_id == winner.id
    assert result.created is False
    assert len(result.linked_bill_ids) == 2
    assert db.query(Invoice).filter(Invoice.status == InvoiceStatus.DRAFT.value).count() == 1


def test_second_monthly_draft_for_a_period_is_rejected(invoice_service, practitioner, client):
    start, end = compute_utc_period_from_label("2025-01")
    fields = dict(
        practitioner_id=practitioner.id,
        client=client,
        billing_type="monthly",
        currency="EUR",
        period_start=start,
        period_end=end,
    )
    invoice_service.create_draft(**fields)

    with pytest.raises(ConflictException) as exc_info:
        invoice_service.create_draft(**fields)
    assert exc_info.value.code == "INVOICE_DRAFT_EXISTS"


def test_issued_invoice_frees_the_period_for_a_new_draft(invoice_service, practitioner, client):
    start, end = compute_utc_period_from_label("2025-01")
    fields = dict(
        practitioner_id=practitioner.id,
        client=client,
        billing_type="monthly",
        currency="EUR",
        period_start=start,
        period_end=end,
    )
    first = invoice_service.create_draft(**fields)
    invoice_service.issue(first)

    assert invoice_service.create_draft(**fields).id != first.id
