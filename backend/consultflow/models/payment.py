"""
Payment session and email communication models.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

import ulid
from sqlalchemy import ForeignKey, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from consultflow.core.enums import PaymentSessionStatus
from consultflow.database import Base
from consultflow.models.types import UTCDateTime, utcnow


class PaymentSession(Base):
    """One Stripe Checkout attempt for a booking or an invoice."""

    __tablename__ = "payment_sessions"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    practitioner_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("practitioners.id", ondelete="CASCADE"), nullable=False, index=True
    )
    booking_id: Mapped[Optional[str]] = mapped_column(
        String(26), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=True, index=True
    )
    invoice_id: Mapped[Optional[str]] = mapped_column(
        String(26), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=True, index=True
    )
    stripe_session_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    stripe_payment_intent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    checkout_url: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentSessionStatus.PENDING.value, index=True
    )
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), onupdate=utcnow, nullable=True)

    def __repr__(self) -> str:
        return f"<PaymentSession(id={self.id}, booking_id={self.booking_id}, status={self.status})>"


class EmailCommunication(Base):
    """Audit row for each transactional email attempt."""

    __tablename__ = "email_communications"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    practitioner_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    client_id: Mapped[Optional[str]] = mapped_column(String(26), nullable=True)
    booking_id: Mapped[Optional[str]] = mapped_column(String(26), nullable=True, index=True)
    bill_id: Mapped[Optional[str]] = mapped_column(String(26), nullable=True)
    invoice_id: Mapped[Optional[str]] = mapped_column(String(26), nullable=True)
    email_type: Mapped[str] = mapped_column(String(50), nullable=False)
    recipient_email: Mapped[str] = mapped_column(String(255), nullable=False)
    subject: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
