# src/dispatch/calendar.py

"""
External calendar providers.

CalendarProvider is what the scheduling service needs from an external
calendar: list busy events in a range and create one event (optionally
with a video-call link). GoogleCalendarProvider implements it over the
Google Calendar REST API with a bearer access token.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import requests

from src.logger import logger


class CalendarError(Exception):
    """Provider call failed (network, auth, unexpected payload)."""


@dataclass(frozen=True)
class CalendarEvent:
    id: str
    title: str
    start: datetime
    end: datetime


@dataclass(frozen=True)
class CreatedEvent:
    id: str
    meeting_link: Optional[str] = None
    html_link: Optional[str] = None


@runtime_checkable
class CalendarProvider(Protocol):
    """What the scheduling service needs from an external calendar."""

    def list_events(self, start: datetime, end: datetime) -> List[CalendarEvent]:
        ...

    def create_event(
        self,
        title: str,
        start: datetime,
        end: datetime,
        with_meet: bool = False,
        description: str = "",
    ) -> CreatedEvent:
        ...


def _parse_time(raw: Dict[str, Any]) -> Optional[datetime]:
    value = raw.get("dateTime") or raw.get("date")
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class GoogleCalendarProvider:
    """
    Google Calendar v3 over requests.

    Args:
        access_token: OAuth access token of the connected account
        calendar_id: Calendar to read/write ("primary" by default)
        base_url: API root, overridable for tests
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        access_token: str,
        calendar_id: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        from src.settings import settings

        self.access_token = access_token
        self.calendar_id = calendar_id or "primary"
        self.base_url = (base_url or settings.calendar.base_url).rstrip("/")
        self.timeout = timeout or settings.calendar.timeout

    @property
    def _events_url(self) -> str:
        return f"{self.base_url}/calendars/{requests.utils.quote(self.calendar_id, safe='')}/events"

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = requests.request(
                method, url, headers=self._headers, timeout=self.timeout, **kwargs
            )
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as exc:
            logger.warning("Calendar request failed", method=method, error=str(exc))
            raise CalendarError(str(exc)) from exc
        except ValueError as exc:
            raise CalendarError(f"Invalid calendar response: {exc}") from exc

    def list_events(self, start: datetime, end: datetime) -> List[CalendarEvent]:
        data = self._request(
            "GET",
            self._events_url,
            params={
                "timeMin": start.isoformat(),
                "timeMax": end.isoformat(),
                "singleEvents": "true",
                "orderBy": "startTime",
            },
        )
        events = []
        for item in data.get("items", []):
            if item.get("status") == "cancelled":
                continue
            event_start = _parse_time(item.get("start", {}))
            event_end = _parse_time(item.get("end", {}))
            if event_start is None or event_end is None:
                continue
            events.append(CalendarEvent(
                id=item.get("id", ""),
                title=item.get("summary", ""),
                start=event_start,
                end=event_end,
            ))
        return events

    def create_event(
        self,
        title: str,
        start: datetime,
        end: datetime,
        with_meet: bool = False,
        description: str = "",
    ) -> CreatedEvent:
        body: Dict[str, Any] = {
            "summary": title,
            "description": description,
            "start": {"dateTime": start.isoformat()},
            "end": {"dateTime": end.isoformat()},
        }
        params = {}
        if with_meet:
            body["conferenceData"] = {
                "createRequest": {
                    "requestId": str(uuid.uuid4()),
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                }
            }
            params["conferenceDataVersion"] = 1

        data = self._request("POST", self._events_url, json=body, params=params)

        link = data.get("hangoutLink")
        if not link:
            for entry in data.get("conferenceData", {}).get("entryPoints", []):
                if entry.get("entryPointType") == "video":
                    link = entry.get("uri")
                    break
        logger.info("Calendar event created", event_id=data.get("id"), with_meet=with_meet)
        return CreatedEvent(id=data.get("id", ""), meeting_link=link, html_link=data.get("htmlLink"))
