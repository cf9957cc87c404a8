"""
Practitioner and client models.

A practitioner owns clients, billing settings, bookings and invoices. The
Stripe connected account id is where checkout funds are routed.
"""

from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

import ulid
from sqlalchemy import ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from consultflow.database import Base
from consultflow.models.types import UTCDateTime, utcnow

if TYPE_CHECKING:
    from consultflow.models.booking import Booking


class Practitioner(Base):
    """A practitioner offering consultations."""

    __tablename__ = "practitioners"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    stripe_account_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    clients: Mapped[List["Client"]] = relationship("Client", back_populates="practitioner")

    def __repr__(self) -> str:
        return f"<Practitioner(id={self.id}, email={self.email})>"


class Client(Base):
    """A practitioner's client (the person attending and paying)."""

    __tablename__ = "clients"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    practitioner_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("practitioners.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    practitioner: Mapped["Practitioner"] = relationship("Practitioner", back_populates="clients")
    bookings: Mapped[List["Booking"]] = relationship("Booking", back_populates="client")

    def __repr__(self) -> str:
        return f"<Client(id={self.id}, email={self.email})>"
