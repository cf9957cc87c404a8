# backend/consultflow/services/calendar_event_reconciler.py
"""
Calendar Event Reconciler for Consultflow

Keeps the practitioner's external calendar in step with the booking:
a placeholder (pending) event while payment is outstanding, a confirmed
invite once paid, and cancellation or deletion when the booking goes away.
Every method here is advisory; callers wrap them in ``run_advisory``.
"""

from decimal import Decimal
import logging
from typing import Optional

from sqlalchemy.orm import Session

from ..core.enums import BillingCadence, CalendarEventStatus, CalendarEventType, CalendarVariant, ConsultationMode
from ..integrations.protocols import CalendarEventRequest, CalendarService
from ..models.booking import Booking
from ..models.calendar import CalendarEvent
from ..models.practitioner import Client, Practitioner
from ..repositories.factory import RepositoryFactory
from ..schemas.billing import LEAD_HOURS_AFTER_CONSULTATION
from .base import BaseService, Clock

logger = logging.getLogger(__name__)


def choose_calendar_variant(
    *,
    cadence: str,
    amount: Decimal,
    is_past: bool,
    suppress_email: bool,
    lead_hours: Optional[int],
) -> Optional[CalendarVariant]:
    """Which event to stage at creation time; None means no event."""
    if amount == 0:
        return CalendarVariant.CONFIRMED
    if is_past:
        return None if suppress_email else CalendarVariant.INTERNAL_CONFIRMED
    if suppress_email:
        return CalendarVariant.CONFIRMED
    if lead_hours == LEAD_HOURS_AFTER_CONSULTATION:
        return CalendarVariant.CONFIRMED
    if cadence == BillingCadence.MONTHLY.value:
        # Monthly bookings are confirmed at creation; payment happens per invoice
        return CalendarVariant.CONFIRMED
    return CalendarVariant.PENDING


class CalendarEventReconciler(BaseService):
    def __init__(self, db: Session, calendar: CalendarService, clock: Optional[Clock] = None):
        super().__init__(db, clock)
        self.calendar = calendar
        self.calendar_repository = RepositoryFactory.create_calendar_repository(db)

    @staticmethod
    def _summary(client: Client, practitioner: Practitioner, variant: CalendarVariant) -> str:
        base = f"Consultation: {client.name} with {practitioner.name}"
        if variant == CalendarVariant.PENDING:
            return f"[Awaiting payment] {base}"
        return base

    @BaseService.measure_operation("stage_calendar_event")
    def stage(
        self,
        variant: CalendarVariant,
        booking: Booking,
        client: Client,
        practitioner: Practitioner,
    ) -> CalendarEvent:
        """Create the external event and its local mirror."""
        if variant == CalendarVariant.PENDING:
            attendees = [practitioner.email]
        elif variant == CalendarVariant.INTERNAL_CONFIRMED:
            attendees = []
        else:
            attendees = [client.email]

        in_person = booking.mode == ConsultationMode.IN_PERSON.value
        ref = self.calendar.create_event(
            booking.practitioner_id,
            variant,
            CalendarEventRequest(
                summary=self._summary(client, practitioner, variant),
                start=booking.start_time,
                end=booking.end_time,
                attendees=attendees,
                notes=booking.notes,
                location=booking.location_address if in_person else None,
                with_video_link=not in_person,
            ),
        )

        event_type = CalendarEventType.PENDING if variant == CalendarVariant.PENDING else CalendarEventType.CONFIRMED
        with self.db.begin_nested():
            event = self.calendar_repository.create(
                practitioner_id=booking.practitioner_id,
                booking_id=booking.id,
                google_event_id=ref.external_event_id,
                google_meet_link=ref.meet_link,
                event_type=event_type.value,
                event_status=CalendarEventStatus.CREATED.value,
            )
        self.logger.info(f"Staged {variant.value} calendar event {ref.external_event_id} for booking {booking.id}")
        return event

    @BaseService.measure_operation("confirm_calendar_on_payment")
    def confirm_on_payment(self, booking: Booking) -> bool:
        """
        Promote the booking's pending event to confirmed.

        Returns False (and only logs) when there is nothing to promote.
        """
        if booking.series_id:
            self.logger.info(f"Booking {booking.id} belongs to series {booking.series_id}; calendar promotion skipped")
            return False

        pending = self.calendar_repository.get_pending_for_booking(booking.practitioner_id, booking.id)
        if pending is None:
            self.logger.warning(f"No pending calendar event found for booking {booking.id}")
            return False

        client = booking.client
        ref = self.calendar.upgrade_to_confirmed(
            booking.practitioner_id,
            pending.google_event_id,
            [client.email] if client else [],
            summary=self._summary(client, booking.practitioner, CalendarVariant.CONFIRMED) if client else None,
        )
        with self.db.begin_nested():
            self.calendar_repository.mark_confirmed(pending.id, ref.meet_link)
        self.logger.info(f"Calendar event {pending.google_event_id} confirmed for booking {booking.id}")
        return True

    @BaseService.measure_operation("cancel_calendar_event")
    def cancel_for_booking(self, booking: Booking, *, delete: bool) -> bool:
        """Delete (placeholder events) or cancel with notifications (confirmed events)."""
        event = self.calendar_repository.get_active_for_booking(booking.id)
        if event is None:
            return False
        if delete:
            self.calendar.delete_event(booking.practitioner_id, event.google_event_id)
        else:
            self.calendar.cancel_event(booking.practitioner_id, event.google_event_id)
        with self.db.begin_nested():
            self.calendar_repository.mark_cancelled(event.id)
        return True

    def delete_external(self, practitioner_id: str, external_event_id: str) -> None:
        self.calendar.delete_event(practitioner_id, external_event_id)
