# src/dispatch/__init__.py

"""
Action dispatch against the CRM.

Key Components:
- ActionDispatcher: per-kind handler table, per-action failure isolation, audit messages
- SchedulingService: availability lookup and conflict-checked booking
- GoogleCalendarProvider: external calendar over the Google Calendar REST API
- parse_followup: flexible follow-up date/time expressions
- audit_text: operator-facing description of an executed action
"""

from .audit import audit_metadata, audit_text
from .calendar import (
    CalendarError,
    CalendarEvent,
    CalendarProvider,
    CreatedEvent,
    GoogleCalendarProvider,
)
from .followup import FollowUpParseError, FollowUpSchedule, parse_followup
from .scheduling import (
    AvailabilityResult,
    BookingResult,
    SchedulingPolicy,
    SchedulingService,
    Slot,
)
from .dispatcher import ActionDispatcher, DispatchContext

__all__ = [
    "audit_metadata", "audit_text",
    "CalendarError", "CalendarEvent", "CalendarProvider", "CreatedEvent", "GoogleCalendarProvider",
    "FollowUpParseError", "FollowUpSchedule", "parse_followup",
    "AvailabilityResult", "BookingResult", "SchedulingPolicy", "SchedulingService", "Slot",
    "ActionDispatcher", "DispatchContext",
]
