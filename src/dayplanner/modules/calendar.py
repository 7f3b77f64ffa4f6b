"""Calendar module: agenda queries, event creation and completion.

This module defines:
- ``CalendarEvent``/``EventDraft``: the event shapes read from and written to
  the calendar, with task and completion state modelled explicitly
- ``CalendarProvider``: provider interface used by calendar tools
- ``GoogleCalendarProvider``: Google Calendar v3 implementation
- ``CalendarModule``: the MCP tools plus service methods used by the tasks
  module

Google has no notion of tasks or completion on plain events, so both are
stored in the event color: flamingo marks a task, graphite marks something
done. The translation happens only in this module's Google boundary code.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import Sequence
from datetime import date, datetime
from enum import StrEnum
from typing import Any, Literal
from urllib.parse import quote
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from dayplanner.core.formatting import (
    format_agenda,
    format_meeting_time,
    plural,
    total_meeting_minutes,
)
from dayplanner.core.google_api import GoogleApiClient, google_rfc3339, parse_google_datetime
from dayplanner.core.periods import (
    AgendaPreset,
    PeriodWindow,
    day_window,
    local_today,
    parse_iso_date,
    resolve_agenda_period,
)
from dayplanner.core.slots import TimeRange, overlaps
from dayplanner.errors import InputValidationError, PlannerError, RemoteServiceError, describe_error
from dayplanner.modules.base import Module, PlannerContext

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
DEFAULT_CALENDAR_ID = "primary"
DEFAULT_LIST_LIMIT = 250


class EventColor(StrEnum):
    """The eleven named Google Calendar event colors."""

    LAVENDER = "lavender"
    SAGE = "sage"
    GRAPE = "grape"
    FLAMINGO = "flamingo"
    BANANA = "banana"
    TANGERINE = "tangerine"
    PEACOCK = "peacock"
    GRAPHITE = "graphite"
    BLUEBERRY = "blueberry"
    BASIL = "basil"
    TOMATO = "tomato"

    @property
    def color_id(self) -> str:
        return str(list(EventColor).index(self) + 1)

    @classmethod
    def from_color_id(cls, value: Any) -> EventColor | None:
        """Map a Google ``colorId`` to a color; unknown or missing ids are the default color."""
        if not isinstance(value, str) or not value.strip().isdigit():
            return None
        index = int(value.strip()) - 1
        members = list(cls)
        return members[index] if 0 <= index < len(members) else None


TASK_COLOR = EventColor.FLAMINGO
DONE_COLOR = EventColor.GRAPHITE


class EventKind(StrEnum):
    EVENT = "event"
    TASK = "task"


class Completion(StrEnum):
    PENDING = "pending"
    DONE = "done"


class EventStatus(StrEnum):
    """Event lifecycle states as tracked by the provider."""

    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


class SendUpdatesPolicy(StrEnum):
    """Controls whether attendees receive notifications for new events."""

    ALL = "all"
    EXTERNAL_ONLY = "externalOnly"
    NONE = "none"


class CalendarEvent(BaseModel):
    """Read-only snapshot of one calendar event."""

    event_id: str
    title: str
    start_at: datetime
    end_at: datetime
    timezone: str
    description: str | None = None
    location: str | None = None
    attendees: list[str] = Field(default_factory=list)
    color: EventColor | None = None
    kind: EventKind = EventKind.EVENT
    completion: Completion = Completion.PENDING
    is_all_day: bool = False
    status: EventStatus = EventStatus.CONFIRMED
    html_link: str | None = None

    @property
    def time_range(self) -> TimeRange:
        return TimeRange(self.start_at, self.end_at)


Frequency = Literal["daily", "weekly", "monthly", "yearly"]
Weekday = Literal["MO", "TU", "WE", "TH", "FR", "SA", "SU"]


class RecurrenceRule(BaseModel):
    """Repetition rule for a new event, serialized as a single RRULE line."""

    model_config = ConfigDict(extra="forbid")

    frequency: Frequency
    interval: int | None = Field(default=None, ge=1)
    count: int | None = Field(default=None, ge=1)
    until: date | None = None
    by_day: list[Weekday] = Field(default_factory=list)
    by_month_day: list[int] = Field(default_factory=list)

    def to_rrule(self) -> str:
        """Serialize to ``RRULE:FREQ=...``; COUNT wins over UNTIL when both are set."""
        parts = [f"FREQ={self.frequency.upper()}"]
        if self.interval and self.interval > 1:
            parts.append(f"INTERVAL={self.interval}")
        if self.by_day:
            parts.append(f"BYDAY={','.join(self.by_day)}")
        if self.by_month_day:
            parts.append(f"BYMONTHDAY={','.join(str(day) for day in self.by_month_day)}")
        if self.count:
            parts.append(f"COUNT={self.count}")
        elif self.until:
            parts.append(f"UNTIL={self.until:%Y%m%d}")
        return f"RRULE:{';'.join(parts)}"

    def describe(self) -> str:
        every = f" every {self.interval}" if self.interval and self.interval > 1 else ""
        return f"Repeats {self.frequency}{every}"


class EventDraft(BaseModel):
    """Fields of an event to be created.

    ``start``/``end`` accept ISO 8601 strings. Naive values are read in the
    planner timezone by :func:`validate_drafts`.
    """

    model_config = ConfigDict(extra="forbid")

    summary: str
    start: datetime
    end: datetime
    description: str | None = None
    location: str | None = None
    attendees: list[str] = Field(default_factory=list)
    is_all_day: bool = False
    recurrence: RecurrenceRule | None = None
    color: EventColor | None = None

    @field_validator("summary")
    @classmethod
    def _normalize_summary(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("summary must be a non-empty string")
        return normalized

    @field_validator("description", "location")
    @classmethod
    def _normalize_optional_text(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @field_validator("attendees")
    @classmethod
    def _normalize_attendees(cls, value: list[str]) -> list[str]:
        return [item.strip() for item in value if item.strip()]


def validate_drafts(drafts: Sequence[EventDraft], tz: ZoneInfo) -> list[EventDraft]:
    """Localize naive datetimes and reject inverted ranges.

    Every draft is checked before any of them is sent, so a bad entry in a
    batch prevents the whole batch from being created.

    Raises
    ------
    InputValidationError
        If any draft ends at or before its start.
    """
    localized: list[EventDraft] = []
    for draft in drafts:
        start = draft.start if draft.start.tzinfo is not None else draft.start.replace(tzinfo=tz)
        end = draft.end if draft.end.tzinfo is not None else draft.end.replace(tzinfo=tz)
        if end <= start:
            raise InputValidationError(
                f'Event "{draft.summary}": end time must be after start time'
            )
        localized.append(draft.model_copy(update={"start": start, "end": end}))
    return localized


def require_event_ids(event_ids: Sequence[str]) -> list[str]:
    normalized = [item.strip() for item in event_ids if item and item.strip()]
    if not normalized:
        raise InputValidationError("At least one event ID is required")
    return normalized


class CalendarConfig(BaseModel):
    """Configuration for the calendar module."""

    model_config = ConfigDict(extra="forbid")

    calendar_id: str = DEFAULT_CALENDAR_ID
    send_updates: SendUpdatesPolicy = SendUpdatesPolicy.ALL
    list_limit: int = Field(default=DEFAULT_LIST_LIMIT, ge=1, le=2500)

    @field_validator("calendar_id")
    @classmethod
    def _normalize_calendar_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("calendar_id must be a non-empty string")
        return normalized


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _parse_google_event_boundary(
    payload: dict[str, Any],
    *,
    tz: ZoneInfo,
) -> tuple[datetime, bool]:
    """Return the boundary instant and whether it was a date-only (all-day) value."""
    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return parse_google_datetime(date_time), False

    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            parsed_date = date.fromisoformat(date_value.strip())
        except ValueError as exc:
            raise ValueError(
                f"Google Calendar returned an invalid date value: {date_value}"
            ) from exc
        return datetime(parsed_date.year, parsed_date.month, parsed_date.day, tzinfo=tz), True

    raise ValueError("Google Calendar event is missing start/end dateTime or date values")


def _parse_google_event_status(value: Any) -> EventStatus:
    if isinstance(value, str):
        try:
            return EventStatus(value.strip().lower())
        except ValueError:
            pass
    return EventStatus.CONFIRMED


def _google_event_to_calendar_event(payload: dict[str, Any], *, tz: ZoneInfo) -> CalendarEvent:
    event_id = _normalize_optional_text(payload.get("id"))
    if event_id is None:
        raise ValueError("Google Calendar event payload is missing a non-empty id")

    start_payload = payload.get("start")
    if not isinstance(start_payload, dict):
        raise ValueError(f"Google Calendar event '{event_id}' is missing a start payload")
    end_payload = payload.get("end")
    if not isinstance(end_payload, dict):
        end_payload = start_payload

    start_at, is_all_day = _parse_google_event_boundary(start_payload, tz=tz)
    end_at, _ = _parse_google_event_boundary(end_payload, tz=tz)

    attendees: list[str] = []
    raw_attendees = payload.get("attendees")
    if isinstance(raw_attendees, list):
        for attendee in raw_attendees:
            if isinstance(attendee, dict):
                email = _normalize_optional_text(attendee.get("email"))
                if email:
                    attendees.append(email)

    color = EventColor.from_color_id(payload.get("colorId"))
    return CalendarEvent(
        event_id=event_id,
        title=_normalize_optional_text(payload.get("summary")) or "Untitled Event",
        start_at=start_at,
        end_at=end_at,
        timezone=_normalize_optional_text(start_payload.get("timeZone")) or tz.key,
        description=_normalize_optional_text(payload.get("description")),
        location=_normalize_optional_text(payload.get("location")),
        attendees=attendees,
        color=color,
        kind=EventKind.TASK if color is TASK_COLOR else EventKind.EVENT,
        completion=Completion.DONE if color is DONE_COLOR else Completion.PENDING,
        is_all_day=is_all_day,
        status=_parse_google_event_status(payload.get("status")),
        html_link=_normalize_optional_text(payload.get("htmlLink")),
    )


def _build_google_event_body(
    draft: EventDraft,
    *,
    kind: EventKind,
    timezone: str,
) -> dict[str, Any]:
    """Translate an EventDraft into a Google Calendar API event body."""
    body: dict[str, Any] = {"summary": draft.summary}
    if draft.description is not None:
        body["description"] = draft.description
    if draft.location is not None:
        body["location"] = draft.location

    if draft.is_all_day:
        body["start"] = {"date": draft.start.date().isoformat(), "timeZone": timezone}
        body["end"] = {"date": draft.end.date().isoformat(), "timeZone": timezone}
    else:
        body["start"] = {"dateTime": draft.start.isoformat(), "timeZone": timezone}
        body["end"] = {"dateTime": draft.end.isoformat(), "timeZone": timezone}

    if draft.attendees:
        body["attendees"] = [{"email": email} for email in draft.attendees]
    if draft.recurrence is not None:
        body["recurrence"] = [draft.recurrence.to_rrule()]

    color = TASK_COLOR if kind is EventKind.TASK else draft.color
    if color is not None:
        body["colorId"] = color.color_id

    # Events are always created without reminders.
    body["reminders"] = {"useDefault": False, "overrides": []}
    return body


class CalendarProvider(abc.ABC):
    """Provider abstraction used by calendar tools."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., ``google``)."""
        ...

    @abc.abstractmethod
    async def list_events(self, *, start_at: datetime, end_at: datetime) -> list[CalendarEvent]:
        """Return events in a time window, ordered by start."""
        ...

    @abc.abstractmethod
    async def create_event(
        self,
        draft: EventDraft,
        *,
        kind: EventKind = EventKind.EVENT,
    ) -> CalendarEvent:
        """Create an event; the returned event carries its ``html_link``."""
        ...

    @abc.abstractmethod
    async def set_event_marker(self, event_id: str, *, completion: Completion) -> CalendarEvent:
        """Record the completion state of an existing event."""
        ...

    async def shutdown(self) -> None:
        """Release provider resources."""
        return None


class GoogleCalendarProvider(CalendarProvider):
    """Google Calendar v3 provider over the shared authenticated API client."""

    def __init__(self, config: CalendarConfig, api: GoogleApiClient, *, tz: ZoneInfo) -> None:
        self._config = config
        self._api = api
        self._tz = tz

    @property
    def name(self) -> str:
        return "google"

    @property
    def _events_path(self) -> str:
        return f"/calendars/{quote(self._config.calendar_id, safe='')}/events"

    async def list_events(self, *, start_at: datetime, end_at: datetime) -> list[CalendarEvent]:
        params: dict[str, Any] = {
            "timeMin": google_rfc3339(start_at),
            "timeMax": google_rfc3339(end_at),
            "singleEvents": "true",
            "orderBy": "startTime",
            "timeZone": self._tz.key,
            "maxResults": self._config.list_limit,
        }
        payload = await self._api.request_json("GET", self._events_path, params=params)
        items = payload.get("items", [])
        if not isinstance(items, list):
            raise RemoteServiceError(
                status_code=None,
                message="list response has a non-list items field",
                service=self._api.service,
            )

        events: list[CalendarEvent] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                events.append(_google_event_to_calendar_event(item, tz=self._tz))
            except ValueError:
                logger.warning(
                    "Skipping malformed calendar event %r", item.get("id"), exc_info=True
                )
        return events

    async def create_event(
        self,
        draft: EventDraft,
        *,
        kind: EventKind = EventKind.EVENT,
    ) -> CalendarEvent:
        body = _build_google_event_body(draft, kind=kind, timezone=self._tz.key)
        payload = await self._api.request_json(
            "POST",
            self._events_path,
            params={"sendUpdates": self._config.send_updates.value},
            json_body=body,
        )
        return self._to_event(payload)

    async def set_event_marker(self, event_id: str, *, completion: Completion) -> CalendarEvent:
        normalized = event_id.strip()
        if not normalized:
            raise InputValidationError("Event ID is required")
        # Pending has no color of its own; clearing restores the calendar default.
        color_id = DONE_COLOR.color_id if completion is Completion.DONE else None
        payload = await self._api.request_json(
            "PATCH",
            f"{self._events_path}/{quote(normalized, safe='')}",
            json_body={"colorId": color_id},
        )
        return self._to_event(payload)

    def _to_event(self, payload: dict[str, Any]) -> CalendarEvent:
        try:
            return _google_event_to_calendar_event(payload, tz=self._tz)
        except ValueError as exc:
            raise RemoteServiceError(
                status_code=None,
                message=str(exc),
                service=self._api.service,
            ) from exc


class CalendarModule(Module):
    """Calendar tools plus the event services shared with the tasks module."""

    def __init__(self) -> None:
        self._config: CalendarConfig = CalendarConfig()
        self._provider: CalendarProvider | None = None
        self._tz: ZoneInfo = ZoneInfo("UTC")

    @property
    def name(self) -> str:
        return "calendar"

    @property
    def config_schema(self) -> type[BaseModel]:
        return CalendarConfig

    @property
    def dependencies(self) -> list[str]:
        return []

    @property
    def timezone(self) -> ZoneInfo:
        return self._tz

    @staticmethod
    def _coerce_config(config: Any) -> CalendarConfig:
        return config if isinstance(config, CalendarConfig) else CalendarConfig(**(config or {}))

    def _require_provider(self) -> CalendarProvider:
        if self._provider is None:
            raise PlannerError("Calendar provider is not initialized")
        return self._provider

    async def on_startup(self, config: Any, context: PlannerContext) -> None:
        self._config = self._coerce_config(config)
        self._tz = context.timezone
        api = GoogleApiClient(
            context.oauth,
            context.http_client,
            base_url=GOOGLE_CALENDAR_API_BASE_URL,
            service="Google Calendar",
        )
        self._provider = GoogleCalendarProvider(self._config, api, tz=self._tz)
        logger.info("Calendar module ready (calendar_id=%s)", self._config.calendar_id)

    async def on_shutdown(self) -> None:
        if self._provider is not None:
            await self._provider.shutdown()
        self._provider = None

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    async def events_in(self, window: PeriodWindow) -> list[CalendarEvent]:
        return await self._require_provider().list_events(start_at=window.start, end_at=window.end)

    async def events_on(self, day: date) -> list[CalendarEvent]:
        """Return events that overlap *day*, including ones that started earlier."""
        window = day_window(day, self._tz)
        span = TimeRange(window.start, window.end)
        events = await self.events_in(window)
        return [event for event in events if overlaps(event.time_range, span)]

    async def create_events(
        self,
        drafts: Sequence[EventDraft],
        *,
        kind: EventKind = EventKind.EVENT,
    ) -> list[CalendarEvent]:
        """Validate every draft, then create them concurrently."""
        if not drafts:
            raise InputValidationError("At least one event is required")
        provider = self._require_provider()
        validated = validate_drafts(drafts, self._tz)
        return list(await asyncio.gather(*(provider.create_event(d, kind=kind) for d in validated)))

    async def complete_events(self, event_ids: Sequence[str]) -> list[CalendarEvent]:
        provider = self._require_provider()
        ids = require_event_ids(event_ids)
        return list(
            await asyncio.gather(
                *(
                    provider.set_event_marker(event_id, completion=Completion.DONE)
                    for event_id in ids
                )
            )
        )

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def register_tools(self, mcp: Any, config: Any) -> None:
        self._config = self._coerce_config(config)
        module = self

        @mcp.tool(name="get-today-agenda")
        async def get_today_agenda(date: str | None = None) -> str:
            """Get calendar events for today or a specific date (YYYY-MM-DD)."""
            try:
                day = parse_iso_date(date, field="date") if date else local_today(module._tz)
                events = await module.events_on(day)
            except PlannerError as exc:
                logger.warning("get-today-agenda failed: %s", exc, exc_info=True)
                return f"Failed to retrieve agenda: {describe_error(exc)}"

            return "\n".join(
                [
                    f"Agenda for {day.isoformat()}",
                    f"Total meeting time: {format_meeting_time(total_meeting_minutes(events))}",
                    "",
                    format_agenda(events, module._tz),
                ]
            )

        @mcp.tool(name="get-agenda")
        async def get_agenda(
            preset: AgendaPreset | None = None,
            start_date: str | None = None,
            end_date: str | None = None,
        ) -> str:
            """Get calendar events for a preset period or a custom date range.

            Presets: today, tomorrow, week (rest of this week), next-week,
            month (rest of this month). A custom range needs both start_date
            and end_date in YYYY-MM-DD format.
            """
            try:
                window = resolve_agenda_period(preset, start_date, end_date, tz=module._tz)
                events = await module.events_in(window)
            except PlannerError as exc:
                logger.warning("get-agenda failed: %s", exc, exc_info=True)
                return f"Failed to retrieve agenda: {describe_error(exc)}"

            return "\n".join(
                [
                    f"Agenda for {window.label}",
                    plural(len(events), "event"),
                    f"Total meeting time: {format_meeting_time(total_meeting_minutes(events))}",
                    "",
                    format_agenda(events, module._tz),
                ]
            )

        @mcp.tool(name="create-calendar-event")
        async def create_calendar_event(
            summary: str,
            start: str,
            end: str,
            description: str | None = None,
            location: str | None = None,
            attendees: list[str] | None = None,
            is_all_day: bool = False,
            recurrence: RecurrenceRule | None = None,
            color: EventColor | None = None,
        ) -> str:
            """Create a calendar event; start and end are ISO 8601 timestamps.

            Supports attendees, a recurrence rule and a named color. Reminders
            are always disabled.
            """
            try:
                draft = EventDraft(
                    summary=summary,
                    start=start,
                    end=end,
                    description=description,
                    location=location,
                    attendees=attendees or [],
                    is_all_day=is_all_day,
                    recurrence=recurrence,
                    color=color,
                )
                [event] = await module.create_events([draft])
            except (PlannerError, ValidationError) as exc:
                logger.warning("create-calendar-event failed: %s", exc, exc_info=True)
                return f"Failed to create event: {describe_error(exc)}"

            lines = [
                "Event created successfully!",
                "",
                event.title,
                f"id: {event.event_id}",
                f"when: {_when(event, module._tz)}",
            ]
            if color is not None:
                lines.append(f"color: {color.value}")
            if recurrence is not None:
                lines.append(recurrence.describe())
            if event.description:
                lines.append(f"note: {event.description}")
            if event.html_link:
                lines.append(f"link: {event.html_link}")
            return "\n".join(lines)

        @mcp.tool(name="create-calendar-events")
        async def create_calendar_events(events: list[EventDraft]) -> str:
            """Create several calendar events at once.

            All events are validated first; nothing is created if any one
            of them is invalid.
            """
            try:
                created = await module.create_events(events)
            except (PlannerError, ValidationError) as exc:
                logger.warning("create-calendar-events failed: %s", exc, exc_info=True)
                return f"Failed to create events: {describe_error(exc)}"

            lines = [f"Created {plural(len(created), 'event')} successfully!", ""]
            for event in created:
                lines.append(event.title)
                lines.append(f"   id: {event.event_id}")
                if event.html_link:
                    lines.append(f"   link: {event.html_link}")
                lines.append("")
            return "\n".join(lines).rstrip("\n")

        @mcp.tool(name="complete-calendar-event")
        async def complete_calendar_event(event_id: str) -> str:
            """Mark a calendar event as completed (shown in graphite)."""
            try:
                if not event_id or not event_id.strip():
                    raise InputValidationError("Event ID is required")
                [event] = await module.complete_events([event_id])
            except PlannerError as exc:
                logger.warning("complete-calendar-event failed: %s", exc, exc_info=True)
                return f"Failed to complete event: {describe_error(exc)}"

            return "\n".join(["Event marked as completed!", "", event.title])

        @mcp.tool(name="complete-calendar-events")
        async def complete_calendar_events(event_ids: list[str]) -> str:
            """Mark several calendar events as completed."""
            try:
                completed = await module.complete_events(event_ids)
            except PlannerError as exc:
                logger.warning("complete-calendar-events failed: %s", exc, exc_info=True)
                return f"Failed to complete events: {describe_error(exc)}"

            lines = [f"Marked {plural(len(completed), 'event')} as completed!", ""]
            lines.extend(event.title for event in completed)
            return "\n".join(lines)


def _when(event: CalendarEvent, tz: ZoneInfo) -> str:
    if event.is_all_day:
        first = event.start_at.astimezone(tz).date()
        last = event.end_at.astimezone(tz).date()
        return first.isoformat() if first >= last else f"{first.isoformat()} to {last.isoformat()}"
    start = event.start_at.astimezone(tz)
    end = event.end_at.astimezone(tz)
    return f"{start:%Y-%m-%d %H:%M} - {end:%Y-%m-%d %H:%M}"
