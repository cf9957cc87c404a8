"""
Bill model.

A bill is the billing snapshot for exactly one booking. Amount, currency and
tax fields are written once; afterwards only status, the email scheduling
fields and the invoice link change.

Email delivery state is the pair (status, email_send_locked_at):
- scheduled/pending with no lock: waiting for the sweeper (or creation-time send)
- scheduled/pending with a lock: claimed by a sweeper run
- sent: payment request delivered
"""

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

import ulid
from sqlalchemy import ForeignKey, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from consultflow.core.enums import BillStatus
from consultflow.database import Base
from consultflow.models.types import UTCDateTime, utcnow

if TYPE_CHECKING:
    from consultflow.models.booking import Booking
    from consultflow.models.practitioner import Client


class Bill(Base):
    __tablename__ = "bills"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    practitioner_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("practitioners.id", ondelete="CASCADE"), nullable=False, index=True
    )
    client_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True
    )
    booking_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, unique=True
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    tax_rate_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0"))
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    billing_type: Mapped[str] = mapped_column(String(20), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=BillStatus.PENDING.value, index=True)
    email_scheduled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True, index=True)
    email_send_locked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    refund_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    refund_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    invoice_id: Mapped[Optional[str]] = mapped_column(
        String(26), ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True, index=True
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), onupdate=utcnow, nullable=True)

    booking: Mapped["Booking"] = relationship("Booking", back_populates="bill")
    client: Mapped["Client"] = relationship("Client")

    @property
    def total_amount(self) -> Decimal:
        return (self.amount or Decimal("0")) + (self.tax_amount or Decimal("0"))

    def __repr__(self) -> str:
        return f"<Bill(id={self.id}, booking_id={self.booking_id}, amount={self.amount}, status={self.status})>"
