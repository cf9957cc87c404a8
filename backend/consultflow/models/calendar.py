"""
Calendar models.

CalendarEvent mirrors one external (Google) event per booking. event_type
only ever moves pending -> confirmed.
"""

from datetime import datetime
from typing import Optional

import ulid
from sqlalchemy import ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, synonym

from consultflow.core.enums import CalendarEventStatus, CalendarEventType
from consultflow.database import Base
from consultflow.models.types import UTCDateTime, utcnow


class CalendarEvent(Base):
    __tablename__ = "calendar_events"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    practitioner_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("practitioners.id", ondelete="CASCADE"), nullable=False, index=True
    )
    booking_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    google_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    google_meet_link: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    event_type: Mapped[str] = mapped_column(String(20), nullable=False, default=CalendarEventType.PENDING.value)
    event_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CalendarEventStatus.CREATED.value
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), onupdate=utcnow, nullable=True)

    def __repr__(self) -> str:
        return f"<CalendarEvent(booking_id={self.booking_id}, type={self.event_type}, status={self.event_status})>"


class CalendarCredential(Base):
    """OAuth tokens for a practitioner's Google Calendar, encrypted at rest."""

    __tablename__ = "calendar_credentials"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    practitioner_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("practitioners.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    # Raw columns hold Fernet ciphertext when CALENDAR_TOKEN_ENCRYPTION_KEY is set.
    _access_token: Mapped[Optional[str]] = mapped_column("access_token", Text, nullable=True)
    _refresh_token: Mapped[Optional[str]] = mapped_column("refresh_token", Text, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    calendar_id: Mapped[str] = mapped_column(String(255), nullable=False, default="primary")

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), onupdate=utcnow, nullable=True)

    def _get_access_token(self) -> Optional[str]:
        return _decrypt_or_raw(self._access_token)

    def _set_access_token(self, value: Optional[str]) -> None:
        self._access_token = _encrypt_or_none(value)

    def _get_refresh_token(self) -> Optional[str]:
        return _decrypt_or_raw(self._refresh_token)

    def _set_refresh_token(self, value: Optional[str]) -> None:
        self._refresh_token = _encrypt_or_none(value)

    access_token = synonym("_access_token", descriptor=property(_get_access_token, _set_access_token))
    refresh_token = synonym("_refresh_token", descriptor=property(_get_refresh_token, _set_refresh_token))


def _encrypt_or_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    from consultflow.core.crypto import encrypt_str

    return encrypt_str(value)


def _decrypt_or_raw(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    from consultflow.core.crypto import decrypt_str

    try:
        return decrypt_str(value)
    except ValueError:
        # Rows written before the key was configured are still plaintext.
        return value
