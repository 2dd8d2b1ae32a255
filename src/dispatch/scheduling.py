# src/dispatch/scheduling.py

"""
Scheduling service: availability lookup and event creation.

Two sources of truth:
- internal: weekly availability windows of the agent + bookings table
- external: a CalendarProvider (Google Calendar) + internal bookings that
  were not mirrored to the provider

Creation always re-validates the chosen slot before committing; a taken
slot raises SchedulingConflictError instead of overwriting anything.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from src.errors import SchedulingConflictError
from src.feature_flags import flags
from src.logger import logger
from src.settings import settings
from src.store import CRMStore

from .calendar import CalendarError, CalendarEvent, CalendarProvider, GoogleCalendarProvider
from .followup import local_timezone


WEEKDAYS_PT = ("segunda", "terça", "quarta", "quinta", "sexta", "sábado", "domingo")

INTERNAL_CONFLICT_MESSAGE = (
    "Este horário já está ocupado na agenda interna. "
    "Por favor, consulte novamente os horários disponíveis."
)
EXTERNAL_CONFLICT_MESSAGE = (
    "Este horário já está ocupado na agenda. "
    "Por favor, consulte novamente os horários disponíveis."
)
OUTSIDE_WINDOW_MESSAGE = (
    "Este horário não está disponível. Por favor, escolha um dos horários oferecidos."
)


# =============================================================================
# Value objects
# =============================================================================

@dataclass
class SchedulingPolicy:
    """Per-agent limits; unset columns fall back to the `scheduling` settings."""
    max_days_ahead: int = 30
    min_lead_hours: int = 1
    slot_minutes: int = 60
    per_slot_limit: int = 1
    use_external: bool = False
    # External calendar lookahead: the agent's max_days_ahead, else scheduling.external_days
    external_days: int = 7

    @classmethod
    def for_agent(cls, store: CRMStore, agent_id: Optional[str]) -> "SchedulingPolicy":
        section = settings.scheduling
        row = store.get_scheduling_config(agent_id) if agent_id else None
        row = row or {}

        def pick(column: str) -> int:
            value = row.get(column)
            return int(value) if value is not None else int(section[column])

        return cls(
            max_days_ahead=pick("max_days_ahead"),
            min_lead_hours=pick("min_lead_hours"),
            slot_minutes=pick("slot_minutes"),
            per_slot_limit=pick("per_slot_limit"),
            use_external=bool(row.get("use_external")),
            external_days=pick("max_days_ahead") if row.get("max_days_ahead") is not None else int(section.external_days),
        )


@dataclass(frozen=True)
class Slot:
    start: datetime

    @property
    def label(self) -> str:
        return f"{WEEKDAYS_PT[self.start.weekday()]} {self.start:%d/%m} às {self.start.hour}h"

    def to_dict(self) -> Dict[str, str]:
        return {"display": self.label, "iso": self.start.isoformat()}


@dataclass
class AvailabilityResult:
    ok: bool
    message: str
    slots: List[Slot] = field(default_factory=list)
    source: str = "internal"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "message": self.message,
            "source": self.source,
            "slots": [slot.to_dict() for slot in self.slots],
        }


@dataclass
class BookingResult:
    ok: bool
    message: str
    booking_id: Optional[str] = None
    meeting_link: Optional[str] = None
    title: str = ""
    start: Optional[datetime] = None
    duration_minutes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"ok": self.ok, "message": self.message}
        if self.ok:
            data.update({
                "booking_id": self.booking_id,
                "meeting_link": self.meeting_link,
                "title": self.title,
                "start": self.start.isoformat() if self.start else None,
                "duration_minutes": self.duration_minutes,
            })
        return data


@dataclass
class EventRequest:
    title: str
    start: Optional[datetime]
    duration_minutes: int
    with_meet: bool = True


def parse_event_request(details: str, default_duration: int, tz) -> EventRequest:
    """
    Parse the create-event details.

    Forms:
        title|iso
        calendar:duration|title|iso
        calendar:duration:meet|title|iso   (or no-meet)

    Raises:
        ValueError: start timestamp is not ISO-8601
    """
    parts = (details or "").split("|")
    config = parts[0].split(":")
    duration, with_meet = default_duration, True

    if len(config) >= 3 and config[2] in ("meet", "no-meet"):
        duration = int(config[1]) if config[1].isdigit() else default_duration
        with_meet = config[2] == "meet"
        title, raw_start = _at(parts, 1), _at(parts, 2)
    elif len(config) == 2 and config[1].isdigit():
        duration = int(config[1])
        title, raw_start = _at(parts, 1), _at(parts, 2)
    else:
        title, raw_start = _at(parts, 0), _at(parts, 1)

    start = None
    if raw_start:
        start = datetime.fromisoformat(raw_start.replace("Z", "+00:00"))
        if start.tzinfo is None:
            start = start.replace(tzinfo=tz)
    return EventRequest(title=title, start=start, duration_minutes=duration or default_duration, with_meet=with_meet)


def _at(parts: List[str], index: int) -> str:
    return parts[index].strip() if index < len(parts) else ""


def _overlaps(start: datetime, end: datetime, other_start: datetime, other_end: datetime) -> bool:
    return start < other_end and end > other_start


# =============================================================================
# Service
# =============================================================================

ProviderFactory = Callable[[Dict[str, Any]], Optional[CalendarProvider]]


def google_provider_for(account: Dict[str, Any]) -> Optional[CalendarProvider]:
    """Google provider when the account has a connected calendar token."""
    if not flags.external_calendar:
        return None
    token = (account or {}).get("calendar_token")
    if not token:
        return None
    return GoogleCalendarProvider(token, calendar_id=account.get("calendar_id"))


class SchedulingService:
    """
    Availability lookup and booking against the internal table and/or an
    external calendar.

    Args:
        store: CRM datastore
        provider_factory: account row -> CalendarProvider or None
        now_fn: clock, injectable for tests (returns an aware datetime)
    """

    def __init__(
        self,
        store: CRMStore,
        provider_factory: Optional[ProviderFactory] = None,
        now_fn: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.provider_factory = provider_factory or google_provider_for
        self.tz = local_timezone(settings.get_nested("prompt.timezone_offset_hours", -3))
        self._now_fn = now_fn

    def now(self) -> datetime:
        if self._now_fn:
            return self._now_fn().astimezone(self.tz)
        return datetime.now(self.tz)

    def _provider(self, account_id: str) -> Optional[CalendarProvider]:
        return self.provider_factory(self.store.get_account(account_id) or {})

    def _bookings(self, account_id: str, start: datetime, end: datetime, agent_id: Optional[str] = None):
        return self.store.bookings_between(account_id, start.timestamp(), end.timestamp(), agent_id=agent_id)

    # -------------------------------------------------------------------------
    # Availability
    # -------------------------------------------------------------------------

    def check_availability(self, account_id: str, agent_id: Optional[str]) -> AvailabilityResult:
        """Free slots from the internal windows, else from the external calendar."""
        policy = SchedulingPolicy.for_agent(self.store, agent_id)
        windows = self.store.list_availability_windows(agent_id) if agent_id else []
        provider = self._provider(account_id)

        if windows and not (policy.use_external and provider):
            return self._internal_slots(account_id, windows, policy)

        if provider is None:
            return AvailabilityResult(ok=False, message="Nenhuma agenda configurada para agendamentos.")

        try:
            return self._external_slots(account_id, provider, policy)
        except CalendarError as exc:
            logger.warning("Availability lookup failed", account=account_id, error=str(exc))
            return AvailabilityResult(ok=False, message="Erro ao consultar calendário", source="external")

    def _summary(self, slots: List[Slot], source: str) -> AvailabilityResult:
        section = settings.scheduling
        returned = slots[:int(section.max_returned_slots)]
        if not returned:
            return AvailabilityResult(ok=True, message="Nenhum horário livre encontrado nos próximos dias.", source=source)
        labels = ", ".join(slot.label for slot in returned[:int(section.slots_in_message)])
        return AvailabilityResult(
            ok=True,
            message=f"Disponibilidade consultada. Horários livres: {labels}",
            slots=returned,
            source=source,
        )

    def _internal_slots(self, account_id: str, windows: List[Dict[str, Any]], policy: SchedulingPolicy) -> AvailabilityResult:
        now = self.now()
        horizon = now + timedelta(days=policy.max_days_ahead)
        earliest = now + timedelta(hours=policy.min_lead_hours)
        limit = int(settings.scheduling.max_generated_slots)
        bookings = self._bookings(account_id, now, horizon)
        length = timedelta(minutes=policy.slot_minutes)

        slots: List[Slot] = []
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        for offset in range(policy.max_days_ahead):
            day = today + timedelta(days=offset)
            for window in (w for w in windows if w["weekday"] == day.weekday()):
                for hour in range(int(window["start_hour"]), int(window["end_hour"])):
                    start = day.replace(hour=hour)
                    if start <= earliest:
                        continue
                    taken = sum(
                        1 for b in bookings
                        if start.timestamp() < b["end_ts"] and (start + length).timestamp() > b["start_ts"]
                    )
                    if taken >= policy.per_slot_limit:
                        continue
                    slots.append(Slot(start))
                    if len(slots) >= limit:
                        return self._summary(slots, "internal")
        return self._summary(slots, "internal")

    def _external_slots(self, account_id: str, provider: CalendarProvider, policy: SchedulingPolicy) -> AvailabilityResult:
        section = settings.scheduling
        now = self.now()
        horizon = now + timedelta(days=policy.external_days)
        earliest = now + timedelta(hours=policy.min_lead_hours)
        busy = [(e.start, e.end) for e in provider.list_events(now, horizon)]
        for booking in self._bookings(account_id, now, horizon):
            if not booking.get("external_event_id"):
                busy.append((
                    datetime.fromtimestamp(booking["start_ts"], self.tz),
                    datetime.fromtimestamp(booking["end_ts"], self.tz),
                ))

        slots: List[Slot] = []
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        for offset in range(policy.external_days):
            day = today + timedelta(days=offset)
            if day.weekday() >= 5:
                continue
            for hour in range(int(section.external_start_hour), int(section.external_end_hour)):
                start = day.replace(hour=hour)
                if start <= earliest or start > horizon:
                    continue
                if any(b_start <= start < b_end for b_start, b_end in busy):
                    continue
                slots.append(Slot(start))
        return self._summary(slots, "external")

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create_event(
        self,
        account_id: str,
        agent_id: Optional[str],
        details: str,
        conversation_id: Optional[str] = None,
        contact_id: Optional[str] = None,
    ) -> BookingResult:
        """
        Validate and book a slot.

        Raises:
            SchedulingConflictError: the slot overlaps a booking or calendar event
        """
        policy = SchedulingPolicy.for_agent(self.store, agent_id)
        try:
            request = parse_event_request(details, policy.slot_minutes, self.tz)
        except ValueError:
            return BookingResult(ok=False, message="Data do agendamento inválida. Use o formato ISO (2025-01-10T14:00:00-03:00).")

        start = request.start
        if start is None:
            start = (self.now() + timedelta(hours=1)).replace(minute=0, second=0, microsecond=0)
        end = start + timedelta(minutes=request.duration_minutes)

        contact = self.store.get_contact(contact_id) if contact_id else None
        contact_name = (contact or {}).get("name") or "Lead"
        title = request.title or f"Reunião com {contact_name}"

        windows = self.store.list_availability_windows(agent_id) if agent_id else []
        provider = self._provider(account_id)
        internal = bool(windows) and not (policy.use_external and provider)

        if internal:
            local = start.astimezone(self.tz)
            inside = any(
                w["weekday"] == local.weekday() and int(w["start_hour"]) <= local.hour < int(w["end_hour"])
                for w in windows
            )
            if not inside:
                return BookingResult(ok=False, message=OUTSIDE_WINDOW_MESSAGE)
            if len(self._bookings(account_id, start, end)) >= policy.per_slot_limit:
                raise SchedulingConflictError(INTERNAL_CONFLICT_MESSAGE, conversation_id)
        else:
            for booking in self._bookings(account_id, start, end):
                if not booking.get("external_event_id"):
                    raise SchedulingConflictError(INTERNAL_CONFLICT_MESSAGE, conversation_id)

        meeting_link = None
        event_id = None
        if provider is not None:
            try:
                events: List[CalendarEvent] = provider.list_events(start, end)
                if any(_overlaps(start, end, e.start, e.end) for e in events):
                    raise SchedulingConflictError(EXTERNAL_CONFLICT_MESSAGE, conversation_id)
                created = provider.create_event(
                    title, start, end,
                    with_meet=request.with_meet,
                    description=f"Agendamento realizado via WhatsApp\nContato: {contact_name}\n"
                                f"Telefone: {(contact or {}).get('phone') or 'N/A'}",
                )
            except CalendarError as exc:
                logger.warning("Calendar event creation failed", account=account_id, error=str(exc))
                return BookingResult(ok=False, message="Erro ao criar evento no calendário")
            meeting_link, event_id = created.meeting_link, created.id

        booking_id = self.store.add_booking(
            account_id, title, start.timestamp(), end.timestamp(),
            agent_id=agent_id, contact_id=contact_id, conversation_id=conversation_id,
            meeting_link=meeting_link, external_event_id=event_id,
        )
        message = f"Evento criado: {title} ({request.duration_minutes}min)"
        if meeting_link:
            message += f" | Link Meet: {meeting_link}"
        logger.info("Booking created", booking=booking_id, start=start.isoformat(), external=bool(event_id))
        return BookingResult(
            ok=True, message=message, booking_id=booking_id, meeting_link=meeting_link,
            title=title, start=start, duration_minutes=request.duration_minutes,
        )
