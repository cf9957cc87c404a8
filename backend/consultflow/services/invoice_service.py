# backend/consultflow/services/invoice_service.py
"""
Invoice Service for Consultflow

Owns the invoice document lifecycle:
- draft creation with a frozen client snapshot
- issuance (series + monotonic number per practitioner)
- payment and refund transitions
- credit notes rectifying an issued invoice

Totals are only recomputed while an invoice is a draft.
"""

from datetime import datetime
from decimal import Decimal
import logging
from typing import Callable, Iterable, Optional, Tuple

from sqlalchemy.orm import Session

from ..core.enums import BillingCadence, DocumentKind, InvoiceStatus
from ..core.exceptions import ConflictException, NotFoundException
from ..integrations.protocols import InvoicePdfGenerator
from ..models.bill import Bill
from ..models.invoice import Invoice
from ..models.payment import PaymentSession
from ..models.practitioner import Client
from ..repositories.factory import RepositoryFactory
from ..schemas.base import to_money
from .advisory import run_advisory
from .base import BaseService, Clock

logger = logging.getLogger(__name__)

CREDIT_NOTE_SERIES_PREFIX = "R-"


def invoice_series(issued_at: datetime, document_kind: str) -> str:
    series = issued_at.strftime("%Y-%m")
    if document_kind == DocumentKind.CREDIT_NOTE.value:
        return f"{CREDIT_NOTE_SERIES_PREFIX}{series}"
    return series


class InvoiceService(BaseService):
    def __init__(
        self,
        db: Session,
        pdf_generator: Optional[InvoicePdfGenerator] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(db, clock)
        self.pdf_generator = pdf_generator
        self.invoice_repository = RepositoryFactory.create_invoice_repository(db)
        self.bill_repository = RepositoryFactory.create_bill_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)

    # ========== Drafts ==========

    @BaseService.measure_operation("create_invoice_draft")
    def create_draft(
        self,
        *,
        practitioner_id: str,
        client: Client,
        billing_type: str,
        currency: str,
        booking_id: Optional[str] = None,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> Invoice:
        """
        Raises:
            ConflictException: the booking already has an invoice, or the
                period already has a monthly draft
        """
        invoice = self.invoice_repository.insert_if_absent(
            practitioner_id=practitioner_id,
            client_id=client.id,
            booking_id=booking_id,
            billing_type=billing_type,
            document_kind=DocumentKind.INVOICE.value,
            status=InvoiceStatus.DRAFT.value,
            client_name=client.name,
            client_email=client.email,
            currency=currency,
            subtotal=Decimal("0.00"),
            tax_total=Decimal("0.00"),
            total=Decimal("0.00"),
            period_start=period_start,
            period_end=period_end,
        )
        if invoice is None:
            raise ConflictException(
                "An equivalent draft invoice already exists",
                code="INVOICE_DRAFT_EXISTS",
                details={"booking_id": booking_id, "client_id": client.id},
            )
        self.logger.info(f"Created draft invoice {invoice.id} ({billing_type}) for client {client.id}")
        return invoice

    def find_or_create_draft(self, find: Callable[[], Optional[Invoice]], **draft_fields) -> Tuple[Invoice, bool]:
        """
        Return ``find()`` or a new draft built from ``draft_fields``.

        When another transaction inserts the same draft between the lookup
        and the insert, the unique index rejects ours and the winner is read
        back. The flag tells whether this call created the draft.
        """
        invoice = find()
        if invoice is not None:
            return invoice, False
        try:
            return self.create_draft(**draft_fields), True
        except ConflictException:
            invoice = find()
            if invoice is None:
                raise
            self.logger.info(f"Draft invoice {invoice.id} was created concurrently; reusing it")
            return invoice, False

    def recompute_totals(self, invoice: Invoice, bills: Iterable[Bill]) -> Invoice:
        """Replace the draft's totals with the sum of ``bills``."""
        if invoice.status != InvoiceStatus.DRAFT.value:
            raise ConflictException(
                "Only draft invoices can be recomputed",
                code="INVOICE_NOT_DRAFT",
                details={"invoice_id": invoice.id, "status": invoice.status},
            )
        subtotal = Decimal("0.00")
        tax_total = Decimal("0.00")
        for bill in bills:
            subtotal += bill.amount or Decimal("0")
            tax_total += bill.tax_amount or Decimal("0")
        invoice.subtotal = to_money(subtotal)
        invoice.tax_total = to_money(tax_total)
        invoice.total = to_money(subtotal + tax_total)
        self.invoice_repository.flush()
        return invoice

    # ========== Issuance and payment ==========

    @BaseService.measure_operation("issue_invoice")
    def issue(self, invoice: Invoice) -> Invoice:
        """Assign series and number. Re-issuing an issued invoice is a no-op."""
        if invoice.status != InvoiceStatus.DRAFT.value:
            return invoice
        issued_at = self.now()
        series = invoice_series(issued_at, invoice.document_kind)
        invoice.series = series
        invoice.number = self.invoice_repository.next_number(invoice.practitioner_id, series)
        invoice.status = InvoiceStatus.ISSUED.value
        invoice.issued_at = issued_at
        self.invoice_repository.flush()
        self.logger.info(f"Issued invoice {invoice.id} as {invoice.display_number}")
        return invoice

    def mark_paid(
        self,
        invoice: Invoice,
        *,
        payment_session_id: Optional[str] = None,
        receipt_url: Optional[str] = None,
    ) -> Invoice:
        invoice.status = InvoiceStatus.PAID.value
        invoice.paid_at = self.now()
        if payment_session_id:
            invoice.payment_session_id = payment_session_id
        if receipt_url:
            invoice.receipt_url = receipt_url
        self.invoice_repository.flush()
        return invoice

    def mark_refunded(self, invoice: Invoice) -> Invoice:
        invoice.status = InvoiceStatus.REFUNDED.value
        invoice.refunded_at = self.now()
        self.invoice_repository.flush()
        return invoice

    def generate_pdf(self, invoice: Invoice) -> Optional[str]:
        if self.pdf_generator is None:
            return None
        return run_advisory(
            "invoice_pdf",
            self.pdf_generator.generate_and_store,
            invoice.id,
            context={"invoice_id": invoice.id},
        )

    @BaseService.measure_operation("ensure_invoice_for_bill_on_payment")
    def ensure_invoice_for_bill_on_payment(
        self,
        bill: Bill,
        payment_session: Optional[PaymentSession] = None,
        receipt_url: Optional[str] = None,
    ) -> Invoice:
        """
        Per-booking invoice, created lazily the first time the bill is paid.

        Find-or-create, link the bill, issue if still a draft, mark paid.
        """
        invoice = None
        if bill.invoice_id:
            invoice = self.invoice_repository.get_by_id(bill.invoice_id)
        if invoice is None:
            client = self.booking_repository.get_client(bill.practitioner_id, bill.client_id)
            if client is None:
                raise NotFoundException(f"Client {bill.client_id} not found")
            invoice, _ = self.find_or_create_draft(
                lambda: self.invoice_repository.get_for_booking(bill.booking_id),
                practitioner_id=bill.practitioner_id,
                client=client,
                billing_type=BillingCadence.PER_BOOKING.value,
                currency=bill.currency,
                booking_id=bill.booking_id,
            )
        if bill.invoice_id != invoice.id:
            self.bill_repository.link_to_invoice([bill.id], invoice.id)
            bill.invoice_id = invoice.id

        if invoice.status == InvoiceStatus.DRAFT.value:
            self.recompute_totals(invoice, [bill])
            self.issue(invoice)
        if invoice.status != InvoiceStatus.PAID.value:
            self.mark_paid(
                invoice,
                payment_session_id=payment_session.id if payment_session else None,
                receipt_url=receipt_url,
            )
        self.generate_pdf(invoice)
        return invoice

    @BaseService.measure_operation("finalize_monthly_on_payment")
    def finalize_monthly_on_payment(
        self,
        invoice: Invoice,
        payment_session: Optional[PaymentSession] = None,
        receipt_url: Optional[str] = None,
    ) -> Invoice:
        """Issue if needed, mark the invoice and every linked bill paid."""
        if invoice.status == InvoiceStatus.DRAFT.value:
            self.issue(invoice)
        if invoice.status != InvoiceStatus.PAID.value:
            self.mark_paid(
                invoice,
                payment_session_id=payment_session.id if payment_session else None,
                receipt_url=receipt_url,
            )
        paid_bills = self.bill_repository.mark_paid_for_invoice(invoice.id, self.now())
        self.logger.info(f"Monthly invoice {invoice.id} paid; {paid_bills} bill(s) marked paid")
        self.generate_pdf(invoice)
        return invoice

    # ========== Credit notes ==========

    @BaseService.measure_operation("create_credit_note")
    def create_credit_note(
        self,
        original: Invoice,
        *,
        reason: str,
        subtotal: Optional[Decimal] = None,
        tax_total: Optional[Decimal] = None,
    ) -> Invoice:
        """
        Issue a credit note rectifying ``original``.

        Without amounts it mirrors the original totals; with them it credits
        only that part (a single refunded bill of a monthly invoice). Stored
        amounts are negative.
        """
        if original.document_kind != DocumentKind.INVOICE.value:
            raise ConflictException(
                "A credit note can only rectify an invoice",
                code="INVALID_RECTIFICATION",
                details={"invoice_id": original.id},
            )
        if original.series is None:
            raise ConflictException(
                "Cannot rectify an invoice that was never issued",
                code="INVOICE_NOT_ISSUED",
                details={"invoice_id": original.id},
            )
        credit_subtotal = to_money(original.subtotal if subtotal is None else subtotal)
        credit_tax = to_money(original.tax_total if tax_total is None else tax_total)

        credit_note = self.invoice_repository.create(
            practitioner_id=original.practitioner_id,
            client_id=original.client_id,
            booking_id=original.booking_id,
            billing_type=original.billing_type,
            document_kind=DocumentKind.CREDIT_NOTE.value,
            status=InvoiceStatus.DRAFT.value,
            client_name=original.client_name,
            client_email=original.client_email,
            currency=original.currency,
            subtotal=-credit_subtotal,
            tax_total=-credit_tax,
            total=-(credit_subtotal + credit_tax),
            period_start=original.period_start,
            period_end=original.period_end,
            rectifies_invoice_id=original.id,
            rectification_reason=reason,
        )
        self.issue(credit_note)
        self.logger.info(
            f"Credit note {credit_note.display_number} issued for invoice {original.display_number}"
        )
        self.generate_pdf(credit_note)
        return credit_note
