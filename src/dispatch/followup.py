# src/dispatch/followup.py

"""
Follow-up expression parser.

Accepted forms (reason after the last ':' of the date part, optional):
    2025-01-10T14:00:00-03:00:lead pediu retorno   full timestamp with offset
    2025-01-10T14:00:00:motivo                     local timestamp
    2025-01-10:motivo                              date only, default time
    14:30:motivo / 14h30:motivo                    next occurrence of that time
    14h / 14h:motivo / 14                          next occurrence of the whole hour
"""

import re
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Optional


WITH_OFFSET = re.compile(
    r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(?::\d{2})?(?:Z|[+-]\d{2}:\d{2})):?(.*)$", re.DOTALL
)
LOCAL_TIMESTAMP = re.compile(r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(?::\d{2})?):?(.*)$", re.DOTALL)
DATE_ONLY = re.compile(r"^(\d{4}-\d{2}-\d{2}):?(.*)$", re.DOTALL)
CLOCK_TIME = re.compile(r"^(\d{1,2})[h:](\d{2}):?(.*)$", re.IGNORECASE | re.DOTALL)
BARE_HOUR = re.compile(r"^(\d{1,2})h?(?::(.*))?$", re.IGNORECASE | re.DOTALL)

INVALID_MESSAGE = (
    "Data do follow-up inválida. Use formato: 2025-01-10T14:00:00:motivo ou HH:MM:motivo"
)


class FollowUpParseError(ValueError):
    """Expression matches none of the accepted forms."""

    def __init__(self, expression: str):
        self.expression = expression
        super().__init__(INVALID_MESSAGE)


@dataclass(frozen=True)
class FollowUpSchedule:
    when: datetime
    reason: str

    @property
    def label(self) -> str:
        return self.when.strftime("%d/%m/%Y %H:%M")


def local_timezone(offset_hours: float) -> tzinfo:
    return timezone(timedelta(hours=offset_hours))


def _next_occurrence(now: datetime, hour: int, minute: int) -> datetime:
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def _clock(hour: str, minute: str, expression: str):
    h, m = int(hour), int(minute or 0)
    if h > 23 or m > 59:
        raise FollowUpParseError(expression)
    return h, m


def parse_followup(
    expression: str,
    now: Optional[datetime] = None,
    offset_hours: float = -3,
    default_time: str = "09:00",
    default_reason: str = "Retorno agendado pelo agente",
) -> FollowUpSchedule:
    """
    Parse a follow-up expression into an aware datetime plus reason.

    Args:
        expression: Raw action value
        now: Reference time (aware); defaults to the current time
        offset_hours: Local UTC offset for forms without one
        default_time: Clock time for the date-only form ("HH:MM")
        default_reason: Reason when none is given

    Raises:
        FollowUpParseError: no accepted form matched
    """
    tz = local_timezone(offset_hours)
    now = (now or datetime.now(tz)).astimezone(tz)
    text = (expression or "").strip()
    if not text:
        raise FollowUpParseError(expression)

    def reason_of(raw: Optional[str]) -> str:
        return (raw or "").strip() or default_reason

    try:
        match = WITH_OFFSET.match(text)
        if match:
            when = datetime.fromisoformat(match.group(1).replace("Z", "+00:00"))
            return FollowUpSchedule(when, reason_of(match.group(2)))

        match = LOCAL_TIMESTAMP.match(text)
        if match:
            when = datetime.fromisoformat(match.group(1)).replace(tzinfo=tz)
            return FollowUpSchedule(when, reason_of(match.group(2)))

        match = DATE_ONLY.match(text)
        if match:
            day = datetime.strptime(match.group(1), "%Y-%m-%d").date()
            hour, minute = (int(part) for part in default_time.split(":", 1))
            when = datetime.combine(day, time(hour, minute), tzinfo=tz)
            return FollowUpSchedule(when, reason_of(match.group(2)))
    except ValueError as exc:
        raise FollowUpParseError(expression) from exc

    match = CLOCK_TIME.match(text)
    if match:
        hour, minute = _clock(match.group(1), match.group(2), expression)
        return FollowUpSchedule(_next_occurrence(now, hour, minute), reason_of(match.group(3)))

    match = BARE_HOUR.match(text)
    if match:
        hour, minute = _clock(match.group(1), "0", expression)
        return FollowUpSchedule(_next_occurrence(now, hour, minute), reason_of(match.group(2)))

    raise FollowUpParseError(expression)
