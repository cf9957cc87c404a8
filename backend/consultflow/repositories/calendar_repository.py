"""
Calendar Repository for Consultflow

Local mirror of external calendar events and the practitioner's OAuth
credentials.
"""

from datetime import datetime
import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import CalendarEventStatus, CalendarEventType
from ..core.exceptions import RepositoryException
from ..models.calendar import CalendarCredential, CalendarEvent
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class CalendarRepository(BaseRepository[CalendarEvent]):
    def __init__(self, db: Session):
        super().__init__(db, CalendarEvent)
        self.logger = logging.getLogger(__name__)

    def get_pending_for_booking(self, practitioner_id: str, booking_id: str) -> Optional[CalendarEvent]:
        query = (
            self.db.query(CalendarEvent)
            .filter(
                CalendarEvent.practitioner_id == practitioner_id,
                CalendarEvent.booking_id == booking_id,
                CalendarEvent.event_type == CalendarEventType.PENDING.value,
                CalendarEvent.event_status != CalendarEventStatus.CANCELLED.value,
            )
            .order_by(CalendarEvent.created_at.desc())
        )
        return self._execute_first(query)

    def get_active_for_booking(self, booking_id: str) -> Optional[CalendarEvent]:
        query = (
            self.db.query(CalendarEvent)
            .filter(
                CalendarEvent.booking_id == booking_id,
                CalendarEvent.event_status != CalendarEventStatus.CANCELLED.value,
            )
            .order_by(CalendarEvent.created_at.desc())
        )
        return self._execute_first(query)

    def mark_confirmed(self, event_id: str, meet_link: Optional[str]) -> Optional[CalendarEvent]:
        """pending -> confirmed; a confirmed event is never moved back."""
        event = self.get_by_id(event_id)
        if event is None:
            return None
        event.event_type = CalendarEventType.CONFIRMED.value
        event.event_status = CalendarEventStatus.UPDATED.value
        if meet_link:
            event.google_meet_link = meet_link
        self.flush()
        return event

    def mark_cancelled(self, event_id: str) -> Optional[CalendarEvent]:
        return self.update(event_id, event_status=CalendarEventStatus.CANCELLED.value)

    # ========== Credentials ==========

    def get_credential(self, practitioner_id: str) -> Optional[CalendarCredential]:
        try:
            return (
                self.db.query(CalendarCredential)
                .filter(CalendarCredential.practitioner_id == practitioner_id)
                .first()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to load calendar credential: {str(e)}")
            raise RepositoryException(f"Failed to load calendar credential: {str(e)}")

    def store_refreshed_token(
        self, practitioner_id: str, access_token: str, expires_at: datetime
    ) -> None:
        credential = self.get_credential(practitioner_id)
        if credential is None:
            return
        credential.access_token = access_token
        credential.expires_at = expires_at
        self.flush()
