"""
Calendar collaborator.

CalendarClient is the narrow interface the slot allocator and booking
coordinator depend on. GoogleCalendarClient implements it over the Google
Calendar v3 API with a service account.
"""

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional

from google.auth.exceptions import GoogleAuthError
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

logger = logging.getLogger(__name__)

CALENDAR_SCOPES = ["https://www.googleapis.com/auth/calendar"]


class CalendarError(Exception):
    """Calendar lookup or event creation failed."""


@dataclass(frozen=True)
class BusyInterval:
    start: datetime
    end: datetime

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return start < self.end and end > self.start


@dataclass
class CalendarEvent:
    event_id: str
    meeting_link: Optional[str] = None


class CalendarClient(ABC):
    """Abstract calendar collaborator."""

    @abstractmethod
    async def list_busy(self, start: datetime, end: datetime) -> List[BusyInterval]:
        """Busy intervals between two aware datetimes."""
        ...

    @abstractmethod
    async def create_event(
        self,
        start: datetime,
        end: datetime,
        summary: str,
        description: str,
        attendees: Optional[List[str]] = None,
    ) -> CalendarEvent:
        """Create an event with a video-conference link."""
        ...


def _parse_rfc3339(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class GoogleCalendarClient(CalendarClient):
    """
    Google Calendar implementation.

    The discovery client is synchronous; calls run in a worker thread.
    """

    def __init__(
        self,
        calendar_id: str = "primary",
        credentials_file: Optional[str] = None,
        credentials_json: Optional[str] = None,
        timezone: str = "America/Sao_Paulo",
    ):
        if not credentials_file and not credentials_json:
            raise CalendarError("No Google Calendar credentials provided")
        self.calendar_id = calendar_id
        self.timezone = timezone
        self._credentials_file = credentials_file
        self._credentials_json = credentials_json
        self._service = None

    def _get_service(self) -> Any:
        if self._service is not None:
            return self._service
        try:
            if self._credentials_json:
                credentials = service_account.Credentials.from_service_account_info(
                    json.loads(self._credentials_json), scopes=CALENDAR_SCOPES
                )
            else:
                credentials = service_account.Credentials.from_service_account_file(
                    self._credentials_file, scopes=CALENDAR_SCOPES
                )
            self._service = build("calendar", "v3", credentials=credentials, cache_discovery=False)
            logger.info("Google Calendar service initialized")
            return self._service
        except (ValueError, OSError) as e:
            raise CalendarError(f"Failed to load Google credentials: {e}") from e

    def _freebusy(self, start: datetime, end: datetime) -> List[BusyInterval]:
        body = {
            "timeMin": start.isoformat(),
            "timeMax": end.isoformat(),
            "timeZone": self.timezone,
            "items": [{"id": self.calendar_id}],
        }
        result = self._get_service().freebusy().query(body=body).execute()
        periods = result.get("calendars", {}).get(self.calendar_id, {}).get("busy", [])
        return [
            BusyInterval(start=_parse_rfc3339(p["start"]), end=_parse_rfc3339(p["end"]))
            for p in periods
        ]

    def _insert(
        self,
        start: datetime,
        end: datetime,
        summary: str,
        description: str,
        attendees: Optional[List[str]],
    ) -> CalendarEvent:
        event = {
            "summary": summary,
            "description": description,
            "start": {"dateTime": start.isoformat(), "timeZone": self.timezone},
            "end": {"dateTime": end.isoformat(), "timeZone": self.timezone},
            "conferenceData": {
                "createRequest": {
                    "requestId": str(uuid.uuid4()),
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                }
            },
        }
        if attendees:
            event["attendees"] = [{"email": a} for a in attendees]

        created = self._get_service().events().insert(
            calendarId=self.calendar_id,
            body=event,
            conferenceDataVersion=1,
            sendUpdates="all" if attendees else "none",
        ).execute()

        link = created.get("hangoutLink")
        if not link:
            for entry in (created.get("conferenceData") or {}).get("entryPoints", []):
                if entry.get("entryPointType") == "video":
                    link = entry.get("uri")
                    break
        return CalendarEvent(event_id=created["id"], meeting_link=link or created.get("htmlLink"))

    async def list_busy(self, start: datetime, end: datetime) -> List[BusyInterval]:
        try:
            return await asyncio.to_thread(self._freebusy, start, end)
        except (HttpError, GoogleAuthError, OSError, KeyError) as e:
            raise CalendarError(f"freebusy.query failed: {e}") from e

    async def create_event(
        self,
        start: datetime,
        end: datetime,
        summary: str,
        description: str,
        attendees: Optional[List[str]] = None,
    ) -> CalendarEvent:
        try:
            event = await asyncio.to_thread(self._insert, start, end, summary, description, attendees)
        except (HttpError, GoogleAuthError, OSError, KeyError) as e:
            raise CalendarError(f"events.insert failed: {e}") from e
        logger.info(f"Calendar event created: {event.event_id}")
        return event
