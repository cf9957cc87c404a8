"""
Billing settings model.

One table holds three scopes of terms, distinguished by which foreign keys
are set:
- practitioner default: client_id and booking_id null, is_default true
- client override: client_id set, booking_id null
- booking override: booking_id set
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

import ulid
from sqlalchemy import Boolean, ForeignKey, Index, Integer, Numeric, String, text
from sqlalchemy.orm import Mapped, mapped_column

from consultflow.database import Base
from consultflow.models.types import UTCDateTime, utcnow


class BillingSettings(Base):
    """Mutable billing terms. Bills copy these at booking time and never read them again."""

    __tablename__ = "billing_settings"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    practitioner_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("practitioners.id", ondelete="CASCADE"), nullable=False, index=True
    )
    client_id: Mapped[Optional[str]] = mapped_column(
        String(26), ForeignKey("clients.id", ondelete="CASCADE"), nullable=True, index=True
    )
    booking_id: Mapped[Optional[str]] = mapped_column(String(26), nullable=True, index=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    billing_type: Mapped[str] = mapped_column(String(20), nullable=False, default="per_booking")
    consultation_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    first_consultation_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    payment_email_lead_hours: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True, comment="null/0 = immediately, -1 = after consultation, >0 = hours before start"
    )
    vat_rate_percent: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    suppress_payment_email: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), onupdate=utcnow, nullable=True)

    # At most one practitioner default; concurrent lazy creation loses on this index
    __table_args__ = (
        Index(
            "uq_billing_settings_practitioner_default",
            "practitioner_id",
            unique=True,
            postgresql_where=text("is_default AND client_id IS NULL AND booking_id IS NULL"),
            sqlite_where=text("is_default = 1 AND client_id IS NULL AND booking_id IS NULL"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<BillingSettings(practitioner_id={self.practitioner_id}, client_id={self.client_id}, "
            f"type={self.billing_type}, price={self.consultation_price})>"
        )
