"""
Invoice models.

An invoice is either a per-booking document or a monthly aggregate of bills.
Totals may only be recomputed while the invoice is a draft. Issuance assigns
(series, number) from InvoiceCounter; those never change afterwards. Credit
notes point at the invoice they rectify.

A booking has at most one invoice, and a (practitioner, client, period) has at
most one monthly draft; both are enforced with partial unique indexes.
"""

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, List, Optional

import ulid
from sqlalchemy import ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from consultflow.core.enums import DocumentKind, InvoiceStatus
from consultflow.database import Base
from consultflow.models.types import UTCDateTime, utcnow

if TYPE_CHECKING:
    from consultflow.models.bill import Bill

_BOOKING_INVOICE = "booking_id IS NOT NULL AND document_kind = 'invoice'"
_MONTHLY_DRAFT = "billing_type = 'monthly' AND document_kind = 'invoice' AND status = 'draft'"


class Invoice(Base):
    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    practitioner_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("practitioners.id", ondelete="CASCADE"), nullable=False, index=True
    )
    client_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True
    )
    booking_id: Mapped[Optional[str]] = mapped_column(String(26), nullable=True, index=True)
    billing_type: Mapped[str] = mapped_column(String(20), nullable=False)
    document_kind: Mapped[str] = mapped_column(String(20), nullable=False, default=DocumentKind.INVOICE.value)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=InvoiceStatus.DRAFT.value)

    # Client snapshot, frozen at creation
    client_name: Mapped[str] = mapped_column(String(255), nullable=False)
    client_email: Mapped[str] = mapped_column(String(255), nullable=False)

    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    tax_total: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    total: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))

    series: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    period_start: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    period_end: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    rectifies_invoice_id: Mapped[Optional[str]] = mapped_column(
        String(26), ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True
    )
    rectification_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    payment_session_id: Mapped[Optional[str]] = mapped_column(String(26), nullable=True)
    receipt_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    pdf_path: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    issued_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), onupdate=utcnow, nullable=True)

    bills: Mapped[List["Bill"]] = relationship("Bill", foreign_keys="Bill.invoice_id")

    __table_args__ = (
        UniqueConstraint("practitioner_id", "series", "number", name="uq_invoices_practitioner_series_number"),
        Index(
            "uq_invoices_booking_invoice",
            "booking_id",
            unique=True,
            sqlite_where=text(_BOOKING_INVOICE),
            postgresql_where=text(_BOOKING_INVOICE),
        ),
        Index(
            "uq_invoices_monthly_draft",
            "practitioner_id",
            "client_id",
            "period_start",
            unique=True,
            sqlite_where=text(_MONTHLY_DRAFT),
            postgresql_where=text(_MONTHLY_DRAFT),
        ),
    )

    @property
    def display_number(self) -> Optional[str]:
        if self.series is None or self.number is None:
            return None
        return f"{self.series}-{self.number:04d}"

    def __repr__(self) -> str:
        return f"<Invoice(id={self.id}, kind={self.document_kind}, status={self.status}, total={self.total})>"


class InvoiceCounter(Base):
    """Next invoice number per (practitioner, series)."""

    __tablename__ = "invoice_counters"

    practitioner_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("practitioners.id", ondelete="CASCADE"), primary_key=True
    )
    series: Mapped[str] = mapped_column(String(20), primary_key=True)
    next_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
