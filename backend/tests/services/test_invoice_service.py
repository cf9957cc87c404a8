from datetime import datetime, timezone
from decimal import Decimal

import pytest

from consultflow.core.enums import BillStatus, DocumentKind, InvoiceStatus
from consultflow.core.exceptions import ConflictException
from consultflow.models.bill import Bill
from consultflow.models.invoice import Invoice
from tests.factories.billing_factories import booking_request, make_billing_settings, make_client, make_practitioner

START = datetime(2025, 1, 10, 10, 0, tzinfo=timezone.utc)


def _draft(invoice_service, practitioner, client, **kwargs) -> Invoice:
    return invoice_service.create_draft(
        practitioner_id=practitioner.id,
        client=client,
        billing_type="per_booking",
        currency="EUR",
        **kwargs,
    )


def test_draft_freezes_client_snapshot(db, invoice_service, practitioner, client):
    invoice = _draft(invoice_service, practitioner, client)
    original_email = client.email

    client.email = "changed@example.com"
    db.commit()

    assert invoice.status == InvoiceStatus.DRAFT.value
    assert invoice.document_kind == DocumentKind.INVOICE.value
    assert invoice.client_email == original_email
    assert invoice.total == Decimal("0.00")
    assert invoice.series is None
    assert invoice.display_number is None


def test_issue_assigns_monthly_series_and_increasing_numbers(db, invoice_service, practitioner, client):
    first = invoice_service.issue(_draft(invoice_service, practitioner, client))
    second = invoice_service.issue(_draft(invoice_service, practitioner, client))

    assert first.status == InvoiceStatus.ISSUED.value
    assert (first.series, first.number) == ("2025-01", 1)
    assert (second.series, second.number) == ("2025-01", 2)
    assert first.display_number == "2025-01-0001"
    assert first.issued_at is not None


def test_numbering_is_per_practitioner(db, invoice_service, practitioner, client):
    other = make_practitioner(db)
    other_client = make_client(db, other)

    invoice_service.issue(_draft(invoice_service, practitioner, client))
    theirs = invoice_service.issue(_draft(invoice_service, other, other_client))

    assert theirs.number == 1


def test_new_month_starts_a_new_series(db, invoice_service, practitioner, client, clock):
    invoice_service.issue(_draft(invoice_service, practitioner, client))
    clock.now = datetime(2025, 2, 1, 0, 0, tzinfo=timezone.utc)

    february = invoice_service.issue(_draft(invoice_service, practitioner, client))

    assert (february.series, february.number) == ("2025-02", 1)


def test_reissuing_is_a_no_op(invoice_service, practitioner, client):
    invoice = invoice_service.issue(_draft(invoice_service, practitioner, client))

    again = invoice_service.issue(invoice)

    assert again.number == 1


def test_recompute_requires_a_draft(invoice_service, practitioner, client):
    invoice = invoice_service.issue(_draft(invoice_service, practitioner, client))

    with pytest.raises(ConflictException) as exc_info:
        invoice_service.recompute_totals(invoice, [])
    assert exc_info.value.code == "INVOICE_NOT_DRAFT"


def test_recompute_sums_bill_amounts_and_tax(db, orchestrator, invoice_service, practitioner, client):
    make_billing_settings(
        db, practitioner, client=client, billing_type="monthly",
        consultation_price=Decimal("80.00"), vat_rate_percent=Decimal("21.00"),
    )
    orchestrator.create_booking(booking_request(practitioner, client, START))
    orchestrator.create_booking(booking_request(practitioner, client, datetime(2025, 1, 14, 10, 0, tzinfo=timezone.utc)))
    bills = db.query(Bill).all()

    invoice = invoice_service.recompute_totals(_draft(invoice_service, practitioner, client), bills)

    assert invoice.subtotal == Decimal("160.00")
    assert invoice.tax_total == Decimal("33.60")
    assert invoice.total == Decimal("193.60")


def test_credit_note_requires_an_issued_invoice(invoice_service, practitioner, client):
    draft = _draft(invoice_service, practitioner, client)

    with pytest.raises(ConflictException) as exc_info:
        invoice_service.create_credit_note(draft, reason="mistake")
    assert exc_info.value.code == "INVOICE_NOT_ISSUED"


def test_credit_note_cannot_rectify_a_credit_note(invoice_service, practitioner, client):
    invoice = invoice_service.issue(_draft(invoice_service, practitioner, client))
    credit_note = invoice_service.create_credit_note(invoice, reason="mistake")

    with pytest.raises(ConflictException) as exc_info:
        invoice_service.create_credit_note(credit_note, reason="again")
    assert exc_info.value.code == "INVALID_RECTIFICATION"


def test_partial_credit_note(invoice_service, practitioner, client, pdf_generator):
    invoice = invoice_service.issue(_draft(invoice_service, practitioner, client))

    credit_note = invoice_service.create_credit_note(
        invoice, reason="one session refunded", subtotal=Decimal("80"), tax_total=Decimal("16.80")
    )

    assert credit_note.subtotal == Decimal("-80.00")
    assert credit_note.tax_total == Decimal("-16.80")
    assert credit_note.total == Decimal("-96.80")
    assert credit_note.display_number == "R-2025-01-0001"
    assert pdf_generator.generated == [credit_note.id]


def test_pdf_failure_is_advisory(db, orchestrator, invoice_service, practitioner, client, per_booking_settings, pdf_generator):
    pdf_generator.fail = True
    result = orchestrator.create_booking(booking_request(practitioner, client, START))
    bill = db.query(Bill).filter(Bill.booking_id == result.booking_id).one()
    bill.status = BillStatus.PAID.value
    db.commit()

    invoice = invoice_service.ensure_invoice_for_bill_on_payment(bill)

    assert invoice.status == InvoiceStatus.PAID.value
    assert invoice.total == Decimal("100.00")
    assert pdf_generator.generated == []


def test_ensure_invoice_is_idempotent(db, orchestrator, invoice_service, practitioner, client, per_booking_settings):
    result = orchestrator.create_booking(booking_request(practitioner, client, START))
    bill = db.query(Bill).filter(Bill.booking_id == result.booking_id).one()

    first = invoice_service.ensure_invoice_for_bill_on_payment(bill)
    second = invoice_service.ensure_invoice_for_bill_on_payment(bill)

    assert first.id == second.id
    assert bill.invoice_id == first.id
    assert db.query(Invoice).count() == 1


def test_invoice_created_concurrently_for_the_booking_is_reused(
    db, orchestrator, invoice_service, practitioner, client, per_booking_settings, monkeypatch
):
    result = orchestrator.create_booking(booking_request(practitioner, client, START))
    bill = db.query(Bill).filter(Bill.booking_id == result.booking_id).one()
    winner = _draft(invoice_service, practitioner, client, booking_id=result.booking_id)
    lookup = invoice_service.invoice_repository.get_for_booking
    calls = []

    def lookup_missing_the_first_time(booking_id):
        calls.append(booking_id)
        return None if len(calls) == 1 else lookup(booking_id)

    monkeypatch.setattr(invoice_service.invoice_repository, "get_for_booking", lookup_missing_the_first_time)

    invoice = invoice_service.ensure_invoice_for_bill_on_payment(bill)

    assert invoice.id == winner.id
    assert invoice.status == InvoiceStatus.PAID.value
    assert db.query(Invoice).filter(Invoice.booking_id == result.booking_id).count() == 1


def test_credit_note_does_not_count_as_the_booking_invoice(
    db, orchestrator, invoice_service, practitioner, client, per_booking_settings
):
    result = orchestrator.create_booking(booking_request(practitioner, client, START))
    bill = db.query(Bill).filter(Bill.booking_id == result.booking_id).one()
    invoice = invoice_service.ensure_invoice_for_bill_on_payment(bill)

    credit_note = invoice_service.create_credit_note(invoice, reason="refund")

    assert credit_note.booking_id == result.booking_id
    assert invoice_service.invoice_repository.get_for_booking(result.booking_id).id == invoice.id
