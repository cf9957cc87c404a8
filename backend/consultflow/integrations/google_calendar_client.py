"""Google Calendar v3 integration client.

Creates, confirms, cancels and deletes consultation events on a
practitioner's calendar. Credentials are loaded per call from the
practitioner's CalendarCredential row and an httpx.Client is opened per
request, so no token is ever shared between practitioners.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Optional, Sequence, cast

import httpx
from sqlalchemy.orm import Session

from consultflow.core.config import settings
from consultflow.core.enums import CalendarVariant
from consultflow.core.ulid_helper import generate_ulid
from consultflow.repositories.factory import RepositoryFactory

from .protocols import CalendarEventRef, CalendarEventRequest

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"

# Google Calendar color ids
_COLOR_PENDING = "2"
_COLOR_CONFIRMED = "10"
_COLOR_CANCELLED = "8"


class GoogleCalendarError(RuntimeError):
    """Raised when the Google Calendar API responds with an error."""

    def __init__(self, message: str, status_code: int | None = None, *, details: Any | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details


def _meet_link(event: dict[str, Any]) -> Optional[str]:
    entry_points = (event.get("conferenceData") or {}).get("entryPoints") or []
    for entry in entry_points:
        if entry.get("entryPointType") == "video":
            return cast(Optional[str], entry.get("uri"))
    return cast(Optional[str], event.get("hangoutLink"))


class GoogleCalendarClient:
    """CalendarService backed by the Google Calendar REST API."""

    def __init__(self, db: Session, *, timeout: Optional[float] = None) -> None:
        self.db = db
        self.calendar_repository = RepositoryFactory.create_calendar_repository(db)
        self._timeout = timeout or settings.calendar_request_timeout_seconds

    # ── Auth ────────────────────────────────────────────────────────────

    def _access_token(self, practitioner_id: str) -> tuple[str, str]:
        """Return (access_token, calendar_id), refreshing the token when it is about to expire."""
        credential = self.calendar_repository.get_credential(practitioner_id)
        if credential is None or not (credential.access_token or credential.refresh_token):
            raise GoogleCalendarError(f"Google Calendar not connected for practitioner {practitioner_id}")

        now = datetime.now(timezone.utc)
        expires_at = credential.expires_at
        if credential.access_token and expires_at is not None and expires_at > now + timedelta(minutes=5):
            return credential.access_token, credential.calendar_id

        if not credential.refresh_token:
            raise GoogleCalendarError("Google Calendar token expired and no refresh token stored")
        if not settings.google_client_id or not settings.google_client_secret:
            raise GoogleCalendarError("Google OAuth client is not configured")

        try:
            with httpx.Client(timeout=self._timeout) as client:
                response = client.post(
                    GOOGLE_TOKEN_URL,
                    data={
                        "client_id": settings.google_client_id,
                        "client_secret": settings.google_client_secret.get_secret_value(),
                        "refresh_token": credential.refresh_token,
                        "grant_type": "refresh_token",
                    },
                )
        except httpx.TransportError as exc:
            raise GoogleCalendarError(f"Google token endpoint unreachable: {exc}") from exc

        if response.status_code != 200:
            logger.error("Google token refresh failed for %s: %s", practitioner_id, response.text[:500])
            raise GoogleCalendarError("Token refresh failed", status_code=response.status_code)

        tokens = response.json()
        access_token = tokens.get("access_token")
        if not access_token:
            raise GoogleCalendarError("No access token in refresh response")
        self.calendar_repository.store_refreshed_token(
            practitioner_id, access_token, now + timedelta(seconds=int(tokens.get("expires_in", 3600)))
        )
        return access_token, credential.calendar_id

    def _request(
        self,
        practitioner_id: str,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        access_token, calendar_id = self._access_token(practitioner_id)
        url = f"{GOOGLE_CALENDAR_API}/calendars/{calendar_id}/{path.lstrip('/')}"
        try:
            with httpx.Client(timeout=self._timeout) as client:
                response = client.request(
                    method,
                    url,
                    headers={"Authorization": f"Bearer {access_token}"},
                    json=json_body,
                    params=params,
                )
        except httpx.TransportError as exc:
            logger.error("Google Calendar unreachable for %s %s: %s", method, path, exc)
            raise GoogleCalendarError(f"Google Calendar unreachable: {exc}") from exc

        if response.status_code >= 400:
            logger.error(
                "Google Calendar error %s for %s %s: %s",
                response.status_code,
                method,
                path,
                response.text[:500],
            )
            raise GoogleCalendarError(
                f"Google Calendar request failed ({response.status_code})",
                status_code=response.status_code,
                details=response.text[:500],
            )
        if response.status_code == 204 or not response.content:
            return {}
        return cast(dict[str, Any], response.json())

    # ── CalendarService ─────────────────────────────────────────────────

    def create_event(
        self, practitioner_id: str, variant: CalendarVariant, request: CalendarEventRequest
    ) -> CalendarEventRef:
        body: dict[str, Any] = {
            "summary": request.summary,
            "description": request.notes or "",
            "start": {"dateTime": request.start.isoformat(), "timeZone": "UTC"},
            "end": {"dateTime": request.end.isoformat(), "timeZone": "UTC"},
            "guestsCanModify": False,
            "guestsCanInviteOthers": False,
            "guestsCanSeeOtherGuests": False,
        }
        if request.location:
            body["location"] = request.location

        params: dict[str, Any] = {}
        if variant == CalendarVariant.PENDING:
            # Placeholder hold: no client invitation until payment
            body["colorId"] = _COLOR_PENDING
            body["attendees"] = [{"email": email, "responseStatus": "accepted"} for email in request.attendees[:1]]
            params["sendUpdates"] = "none"
        elif variant == CalendarVariant.INTERNAL_CONFIRMED:
            body["colorId"] = _COLOR_CONFIRMED
            params["sendUpdates"] = "none"
        else:
            body["colorId"] = _COLOR_CONFIRMED
            body["attendees"] = [{"email": email} for email in request.attendees]
            params["sendUpdates"] = "all"
            if request.with_video_link and not request.location:
                body["conferenceData"] = {
                    "createRequest": {
                        "requestId": generate_ulid(),
                        "conferenceSolutionKey": {"type": "hangoutsMeet"},
                    }
                }
                params["conferenceDataVersion"] = 1

        event = self._request(practitioner_id, "POST", "events", json_body=body, params=params)
        return CalendarEventRef(external_event_id=str(event["id"]), meet_link=_meet_link(event))

    def upgrade_to_confirmed(
        self,
        practitioner_id: str,
        external_event_id: str,
        attendees: Sequence[str],
        summary: Optional[str] = None,
    ) -> CalendarEventRef:
        current = self._request(practitioner_id, "GET", f"events/{external_event_id}")
        has_location = bool(current.get("location"))
        body: dict[str, Any] = {
            "description": "Consultation appointment confirmed. Payment received.",
            "colorId": _COLOR_CONFIRMED,
            "attendees": [{"email": email} for email in attendees],
        }
        if summary:
            body["summary"] = summary
        params: dict[str, Any] = {"sendUpdates": "all"}
        if not has_location:
            body["conferenceData"] = {
                "createRequest": {
                    "requestId": generate_ulid(),
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                }
            }
            params["conferenceDataVersion"] = 1

        event = self._request(
            practitioner_id, "PATCH", f"events/{external_event_id}", json_body=body, params=params
        )
        return CalendarEventRef(external_event_id=str(event.get("id") or external_event_id), meet_link=_meet_link(event))

    def cancel_event(self, practitioner_id: str, external_event_id: str) -> None:
        current = self._request(practitioner_id, "GET", f"events/{external_event_id}")
        self._request(
            practitioner_id,
            "PATCH",
            f"events/{external_event_id}",
            json_body={
                "summary": f"CANCELLED - {current.get('summary', '')}",
                "status": "cancelled",
                "colorId": _COLOR_CANCELLED,
            },
            params={"sendUpdates": "all"},
        )

    def delete_event(self, practitioner_id: str, external_event_id: str) -> None:
        try:
            self._request(
                practitioner_id, "DELETE", f"events/{external_event_id}", params={"sendUpdates": "none"}
            )
        except GoogleCalendarError as e:
            if e.status_code in (404, 410):
                logger.info("Calendar event %s already gone", external_event_id)
                return
            raise
