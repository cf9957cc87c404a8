# backend/consultflow/services/checkout_service.py
"""
Checkout Service for Consultflow

Creates (or reuses) the hosted checkout session a client is sent to when
they open a booking or invoice payment link. At most one session per
booking or invoice is pending at any time; a pending session that is about
to expire, or whose amount no longer matches, is expired and replaced.
"""

from datetime import datetime, timedelta
from decimal import Decimal
import logging
from typing import Dict, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import BillStatus, BookingStatus, DocumentKind, InvoiceStatus
from ..core.exceptions import ConflictException, NotFoundException
from ..integrations.protocols import CheckoutLineItem, CheckoutSession, PaymentProcessor
from ..models.payment import PaymentSession
from ..repositories.factory import RepositoryFactory
from ..schemas.base import to_cents
from ..schemas.payment import CheckoutResult
from .advisory import run_advisory
from .base import BaseService, Clock
from .invoice_service import InvoiceService

logger = logging.getLogger(__name__)

# Stripe expires hosted checkout sessions 24 hours after creation
CHECKOUT_SESSION_TTL = timedelta(hours=24)
REUSE_MARGIN = timedelta(minutes=30)


def application_fee_cents(amount: Decimal) -> int:
    """Platform fee on a checkout; zero unless ``platform_fee_percent`` is configured."""
    percent = Decimal(settings.platform_fee_percent or 0)
    if percent <= 0:
        return 0
    return to_cents(amount * percent / Decimal("100"))


class CheckoutService(BaseService):
    def __init__(
        self,
        db: Session,
        processor: PaymentProcessor,
        invoice_service: Optional[InvoiceService] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(db, clock)
        self.processor = processor
        self.invoice_service = invoice_service or InvoiceService(db, clock=clock)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.bill_repository = RepositoryFactory.create_bill_repository(db)
        self.invoice_repository = RepositoryFactory.create_invoice_repository(db)
        self.payment_repository = RepositoryFactory.create_payment_repository(db)

    @staticmethod
    def _return_urls(key: str, value: str) -> Dict[str, str]:
        base = settings.public_base_url
        return {
            "success_url": f"{base}/payment/success?{key}={value}&session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{base}/payment/cancelled?{key}={value}",
        }

    def _is_reusable(self, existing: PaymentSession, amount: Decimal) -> bool:
        """A pending session can be handed out again while it is unexpired and still charges ``amount``."""
        if not existing.checkout_url or to_cents(existing.amount) != to_cents(amount):
            return False
        expires_at = existing.expires_at or existing.created_at + CHECKOUT_SESSION_TTL
        return expires_at - REUSE_MARGIN > self.now()

    def _retire(self, existing: PaymentSession, connected_account_id: Optional[str]) -> None:
        run_advisory(
            "expire_checkout_session",
            self.processor.expire_session,
            existing.stripe_session_id,
            connected_account_id=connected_account_id,
            context={"session_id": existing.stripe_session_id},
        )
        with self.transaction():
            self.payment_repository.mark_cancelled(existing)
        self.logger.info(f"Retired stale checkout session {existing.stripe_session_id}")

    def _expiry(self, session: CheckoutSession) -> datetime:
        return session.expires_at or self.now() + CHECKOUT_SESSION_TTL

    @BaseService.measure_operation("checkout_for_booking")
    def checkout_for_booking(self, booking_id: str) -> CheckoutResult:
        booking = self.booking_repository.get_with_parties(booking_id)
        if booking is None:
            raise NotFoundException(f"Booking {booking_id} not found")
        if booking.status == BookingStatus.CANCELED.value:
            raise ConflictException(
                "Booking has been canceled", code="BOOKING_CANCELED", details={"booking_id": booking_id}
            )

        bill = self.bill_repository.get_by_booking_id(booking_id)
        if bill is None:
            raise NotFoundException(f"No bill found for booking {booking_id}")
        if bill.status == BillStatus.PAID.value:
            return CheckoutResult(already_paid=True)
        if bill.status not in (BillStatus.SCHEDULED.value, BillStatus.PENDING.value, BillStatus.SENT.value):
            raise ConflictException(
                f"Bill is {bill.status} and cannot be paid",
                code="BILL_NOT_PAYABLE",
                details={"booking_id": booking_id, "bill_id": bill.id},
            )

        practitioner = booking.practitioner
        client = booking.client
        amount = bill.total_amount
        existing = self.payment_repository.get_pending_for_booking(booking_id)
        if existing is not None:
            if self._is_reusable(existing, amount):
                self.logger.info(f"Reusing pending checkout session {existing.stripe_session_id} for booking {booking_id}")
                return CheckoutResult(checkout_url=existing.checkout_url, session_id=existing.stripe_session_id, reused=True)
            self._retire(existing, practitioner.stripe_account_id)

        session = self.processor.create_checkout_session(
            line_items=[
                CheckoutLineItem(
                    name=f"Consultation with {practitioner.name}",
                    amount_cents=to_cents(amount),
                    currency=bill.currency,
                    description=booking.start_time.strftime("%d/%m/%Y %H:%M UTC"),
                )
            ],
            metadata={
                "booking_id": booking.id,
                "practitioner_id": practitioner.id,
                "practitioner_email": practitioner.email,
                "client_id": client.id,
                "client_email": client.email,
                "client_name": client.name,
                "start_time": booking.start_time.isoformat(),
                "end_time": booking.end_time.isoformat(),
            },
            customer_email=client.email,
            connected_account_id=practitioner.stripe_account_id,
            application_fee_cents=application_fee_cents(amount) if practitioner.stripe_account_id else 0,
            **self._return_urls("booking_id", booking.id),
        )

        with self.transaction():
            self.payment_repository.create(
                practitioner_id=practitioner.id,
                booking_id=booking.id,
                stripe_session_id=session.session_id,
                checkout_url=session.url,
                expires_at=self._expiry(session),
                amount=amount,
                currency=bill.currency,
            )
        self.logger.info(f"Created checkout session {session.session_id} for booking {booking_id}")
        return CheckoutResult(checkout_url=session.url, session_id=session.session_id)

    @BaseService.measure_operation("checkout_for_invoice")
    def checkout_for_invoice(self, invoice_id: str) -> CheckoutResult:
        invoice = self.invoice_repository.get_by_id(invoice_id)
        if invoice is None or invoice.document_kind != DocumentKind.INVOICE.value:
            raise NotFoundException(f"Invoice {invoice_id} not found")
        if invoice.status == InvoiceStatus.PAID.value:
            return CheckoutResult(already_paid=True)
        if invoice.status not in (InvoiceStatus.DRAFT.value, InvoiceStatus.ISSUED.value) or invoice.total <= 0:
            raise ConflictException(
                "Invoice cannot be paid",
                code="INVOICE_NOT_PAYABLE",
                details={"invoice_id": invoice_id, "status": invoice.status},
            )

        practitioner = self.booking_repository.get_practitioner(invoice.practitioner_id)
        if practitioner is None:
            raise NotFoundException(f"Practitioner {invoice.practitioner_id} not found")

        if invoice.status == InvoiceStatus.DRAFT.value:
            # Issuing freezes membership: later aggregation runs open a new draft
            with self.transaction():
                self.invoice_service.issue(invoice)

        existing = self.payment_repository.get_pending_for_invoice(invoice_id)
        if existing is not None:
            if self._is_reusable(existing, invoice.total):
                return CheckoutResult(checkout_url=existing.checkout_url, session_id=existing.stripe_session_id, reused=True)
            self._retire(existing, practitioner.stripe_account_id)

        period = invoice.period_start.strftime("%Y-%m") if invoice.period_start else ""
        session = self.processor.create_checkout_session(
            line_items=[
                CheckoutLineItem(
                    name=f"Consultations with {practitioner.name} {period}".strip(),
                    amount_cents=to_cents(invoice.total),
                    currency=invoice.currency,
                )
            ],
            metadata={
                "invoice_id": invoice.id,
                "practitioner_id": practitioner.id,
                "client_id": invoice.client_id,
                "client_email": invoice.client_email,
                "period": period,
            },
            customer_email=invoice.client_email,
            connected_account_id=practitioner.stripe_account_id,
            application_fee_cents=application_fee_cents(invoice.total) if practitioner.stripe_account_id else 0,
            **self._return_urls("invoice_id", invoice.id),
        )

        with self.transaction():
            self.payment_repository.create(
                practitioner_id=practitioner.id,
                invoice_id=invoice.id,
                stripe_session_id=session.session_id,
                checkout_url=session.url,
                expires_at=self._expiry(session),
                amount=invoice.total,
                currency=invoice.currency,
            )
        self.logger.info(f"Created checkout session {session.session_id} for invoice {invoice_id}")
        return CheckoutResult(checkout_url=session.url, session_id=session.session_id)
