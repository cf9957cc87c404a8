# backend/consultflow/services/booking_factory.py
"""
Booking Factory for Consultflow

Validates the time window and creates the booking in its initial status.
"""

from datetime import datetime, timezone
from decimal import Decimal
import logging
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from ..core.enums import BillingCadence, BookingStatus
from ..core.exceptions import ValidationException
from ..models.booking import Booking
from ..repositories.factory import RepositoryFactory
from ..schemas.booking import CreateBookingRequest
from .base import BaseService, Clock

logger = logging.getLogger(__name__)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def validate_time_window(start: datetime, end: datetime) -> Tuple[datetime, datetime]:
    start_utc, end_utc = ensure_utc(start), ensure_utc(end)
    if end_utc <= start_utc:
        raise ValidationException(
            "endTime must be after startTime",
            code="INVALID_TIME_WINDOW",
            details={"start_time": start_utc.isoformat(), "end_time": end_utc.isoformat()},
        )
    return start_utc, end_utc


def determine_booking_status(
    cadence: str, amount: Decimal, is_past: bool, suppress_email: bool
) -> BookingStatus:
    """
    Initial booking status.

    ``pending`` means awaiting payment before confirmation, so it only
    applies to future per-booking slots with something to pay.
    """
    if suppress_email:
        return BookingStatus.COMPLETED if is_past else BookingStatus.SCHEDULED
    if cadence == BillingCadence.PER_BOOKING.value and amount > 0:
        return BookingStatus.COMPLETED if is_past else BookingStatus.PENDING
    return BookingStatus.SCHEDULED


class BookingFactory(BaseService):
    def __init__(self, db: Session, clock: Optional[Clock] = None):
        super().__init__(db, clock)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)

    @BaseService.measure_operation("create_booking_record")
    def create(
        self,
        request: CreateBookingRequest,
        *,
        cadence: str,
        amount: Decimal,
        suppress_email: bool,
        billing_settings_id: Optional[str],
        is_past: bool,
    ) -> Booking:
        """Insert the booking with the status the decision table gives for ``is_past`` as seen by the caller."""
        start, end = validate_time_window(request.start_time, request.end_time)
        status = determine_booking_status(cadence, amount, is_past, suppress_email)

        booking = self.booking_repository.create(
            practitioner_id=request.practitioner_id,
            client_id=request.client_id,
            start_time=start,
            end_time=end,
            status=status.value,
            mode=request.mode.value if request.mode else None,
            location_address=request.location_address if request.location_address else None,
            consultation_type=request.consultation_type.value if request.consultation_type else None,
            notes=request.notes,
            series_id=request.series_id,
            billing_settings_id=billing_settings_id,
        )
        self.logger.info(f"Created booking {booking.id} with status {status.value}")
        return booking
