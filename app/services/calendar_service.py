"""Google Calendar Service.

WHAT:
    Creates the calendar event (with a Google Meet link) for a booking.

WHY:
    The meeting link is a convenience: booking confirmation never depends on
    it. Callers treat any exception as calendar_status=failed.

HOW:
    1. Refresh the stored refresh token at https://oauth2.googleapis.com/token
    2. POST /calendar/v3/calendars/{calendarId}/events?conferenceDataVersion=1
       with start/end as UTC instants (no timeZone field, so Google does not
       reinterpret them as local wall times)
    3. meet_url = hangoutLink, else the first conference entry point

REFERENCES:
    - https://developers.google.com/calendar/api/v3/reference/events/insert
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from app.deps import Settings
from app.utils.timezones import isoformat_utc

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"
CALENDAR_TIMEOUT_SECONDS = 15.0


@dataclass
class CalendarEvent:
    event_id: str
    meet_url: Optional[str] = None
    html_link: Optional[str] = None


class CalendarService:
    """Best-effort Google Calendar client.

    Usage:
        ```python
        service = CalendarService.from_settings(get_settings())
        event = await service.create_event(...)
        if event is None:
            ...  # not configured
        ```
    """

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        refresh_token: Optional[str],
        calendar_id: str = "primary",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.calendar_id = calendar_id
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "CalendarService":
        return cls(
            client_id=settings.GOOGLE_CLIENT_ID,
            client_secret=settings.GOOGLE_CLIENT_SECRET,
            refresh_token=settings.GOOGLE_REFRESH_TOKEN,
            calendar_id=settings.GOOGLE_CALENDAR_ID,
            transport=transport,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.refresh_token)

    async def _get_access_token(self, client: httpx.AsyncClient) -> str:
        response = await client.post(
            GOOGLE_OAUTH_TOKEN_URL,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": self.refresh_token,
                "grant_type": "refresh_token",
            },
        )
        response.raise_for_status()
        return response.json()["access_token"]

    @staticmethod
    def build_event_body(
        summary: str,
        description: str,
        start: datetime,
        end: datetime,
        attendee_email: str,
        request_id: str,
    ) -> Dict[str, Any]:
        return {
            "summary": summary,
            "description": description,
            "start": {"dateTime": isoformat_utc(start)},
            "end": {"dateTime": isoformat_utc(end)},
            "attendees": [{"email": attendee_email}],
            "conferenceData": {
                "createRequest": {
                    "requestId": request_id,
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                },
            },
            "reminders": {
                "useDefault": False,
                "overrides": [
                    {"method": "email", "minutes": 24 * 60},
                    {"method": "popup", "minutes": 30},
                ],
            },
        }

    async def create_event(
        self,
        summary: str,
        description: str,
        start: datetime,
        end: datetime,
        attendee_email: str,
        request_id: str,
    ) -> Optional[CalendarEvent]:
        """Create the event with a Meet conference.

        Returns:
            CalendarEvent, or None when calendar credentials are absent

        Raises:
            httpx.HTTPError: Token refresh or event insert failed
        """
        if not self.is_configured:
            logger.info("[CALENDAR] Not configured, skipping event creation")
            return None

        body = self.build_event_body(summary, description, start, end, attendee_email, request_id)

        async with httpx.AsyncClient(timeout=CALENDAR_TIMEOUT_SECONDS, transport=self._transport) as client:
            access_token = await self._get_access_token(client)
            response = await client.post(
                f"{CALENDAR_API_BASE}/calendars/{self.calendar_id}/events",
                params={"conferenceDataVersion": 1, "sendUpdates": "all"},
                headers={"Authorization": f"Bearer {access_token}"},
                json=body,
            )
            response.raise_for_status()
            data = response.json()

        entry_points = (data.get("conferenceData") or {}).get("entryPoints") or []
        meet_url = data.get("hangoutLink") or (entry_points[0].get("uri") if entry_points else None)

        logger.info(f"[CALENDAR] Event created: {data.get('id')}", extra={"has_meet_url": bool(meet_url)})
        return CalendarEvent(event_id=data["id"], meet_url=meet_url, html_link=data.get("htmlLink"))
