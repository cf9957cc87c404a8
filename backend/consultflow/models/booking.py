# backend/consultflow/models/booking.py
"""
Booking model.

A booking is one consultation slot for one client with one practitioner.
Status moves pending -> scheduled on payment, scheduled -> completed once
the slot has passed, and any state -> canceled on cancellation.
"""

from datetime import datetime
import logging
from typing import TYPE_CHECKING, Optional

import ulid
from sqlalchemy import CheckConstraint, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from consultflow.core.enums import BookingStatus
from consultflow.database import Base
from consultflow.models.types import UTCDateTime, utcnow

if TYPE_CHECKING:
    from consultflow.models.bill import Bill
    from consultflow.models.practitioner import Client, Practitioner

logger = logging.getLogger(__name__)


class Booking(Base):
    """A consultation slot."""

    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    practitioner_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("practitioners.id", ondelete="CASCADE"), nullable=False, index=True
    )
    client_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True
    )
    start_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=BookingStatus.SCHEDULED.value)

    mode: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    location_address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    consultation_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    series_id: Mapped[Optional[str]] = mapped_column(String(26), nullable=True, index=True)
    billing_settings_id: Mapped[Optional[str]] = mapped_column(
        String(26), ForeignKey("billing_settings.id", ondelete="SET NULL"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), onupdate=utcnow, nullable=True)

    practitioner: Mapped["Practitioner"] = relationship("Practitioner")
    client: Mapped["Client"] = relationship("Client", back_populates="bookings")
    bill: Mapped[Optional["Bill"]] = relationship("Bill", back_populates="booking", uselist=False)

    __table_args__ = (CheckConstraint("end_time > start_time", name="ck_bookings_time_order"),)

    def is_cancellable(self) -> bool:
        return self.status != BookingStatus.CANCELED.value

    def __repr__(self) -> str:
        return f"<Booking(id={self.id}, start={self.start_time}, status={self.status})>"
