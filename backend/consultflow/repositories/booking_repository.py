"""
Booking Repository for Consultflow

Data access for bookings and the practitioner/client records they reference.
"""

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from ..core.exceptions import RepositoryException
from ..models.booking import Booking
from ..models.calendar import CalendarEvent
from ..models.practitioner import Client, Practitioner
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class BookingRepository(BaseRepository[Booking]):
    def __init__(self, db: Session):
        super().__init__(db, Booking)
        self.logger = logging.getLogger(__name__)

    def get_with_parties(self, booking_id: str) -> Optional[Booking]:
        """Booking with client, practitioner and bill eagerly loaded."""
        query = (
            self.db.query(Booking)
            .options(
                joinedload(Booking.client),
                joinedload(Booking.practitioner),
                joinedload(Booking.bill),
            )
            .filter(Booking.id == booking_id)
        )
        return self._execute_first(query)

    def get_practitioner(self, practitioner_id: str) -> Optional[Practitioner]:
        try:
            return self.db.query(Practitioner).filter(Practitioner.id == practitioner_id).first()
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to get practitioner {practitioner_id}: {str(e)}")
            raise RepositoryException(f"Failed to get practitioner: {str(e)}")

    def get_client(self, practitioner_id: str, client_id: str) -> Optional[Client]:
        """Client scoped to its practitioner."""
        try:
            return (
                self.db.query(Client)
                .filter(Client.id == client_id, Client.practitioner_id == practitioner_id)
                .first()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to get client {client_id}: {str(e)}")
            raise RepositoryException(f"Failed to get client: {str(e)}")

    def update_status(self, booking_id: str, status: str) -> Optional[Booking]:
        return self.update(booking_id, status=status)

    def delete_with_calendar_events(self, booking_id: str) -> bool:
        """Delete a booking and the local calendar mirror rows that reference it."""
        try:
            self.db.query(CalendarEvent).filter(CalendarEvent.booking_id == booking_id).delete(
                synchronize_session=False
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to delete calendar events for booking {booking_id}: {str(e)}")
            raise RepositoryException(f"Failed to delete calendar events: {str(e)}")
        return self.delete(booking_id)
