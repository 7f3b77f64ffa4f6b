"""Tests for the calendar module.

Covers:
- Module ABC compliance and config validation
- Color, recurrence and payload translation at the Google boundary
- GoogleCalendarProvider requests (via httpx.MockTransport)
- Tool wiring through the CalendarProvider abstraction
- Batch creation validates every draft before any provider call
"""

from __future__ import annotations

import json
from datetime import UTC, date, datetime
from zoneinfo import ZoneInfo

import httpx
import pytest
from pydantic import BaseModel, ValidationError

from dayplanner.core.google_api import GoogleApiClient
from dayplanner.core.oauth import GOOGLE_OAUTH_TOKEN_URL, GoogleOAuthClient
from dayplanner.core.periods import day_window
from dayplanner.errors import InputValidationError, PlannerError, RemoteServiceError
from dayplanner.google_credentials import GoogleCredentials
from dayplanner.modules.base import Module
from dayplanner.modules.calendar import (
    GOOGLE_CALENDAR_API_BASE_URL,
    CalendarConfig,
    CalendarEvent,
    CalendarModule,
    CalendarProvider,
    Completion,
    EventColor,
    EventDraft,
    EventKind,
    GoogleCalendarProvider,
    RecurrenceRule,
    SendUpdatesPolicy,
    _build_google_event_body,
    _google_event_to_calendar_event,
    validate_drafts,
)

pytestmark = pytest.mark.unit

TZ = ZoneInfo("America/Sao_Paulo")
TODAY = date(2026, 2, 18)


class _StubMCP:
    """Captures tools registered with ``@mcp.tool(name=...)``."""

    def __init__(self) -> None:
        self.tools: dict[str, object] = {}

    def tool(self, *_args, name: str | None = None, **_kwargs):
        def decorator(fn):
            self.tools[name or fn.__name__] = fn
            return fn

        return decorator


class _ProviderDouble(CalendarProvider):
    """Provider test double used to verify module-to-provider wiring."""

    def __init__(
        self,
        *,
        events: list[CalendarEvent] | None = None,
        fail_with: Exception | None = None,
    ) -> None:
        self._events = events or []
        self._fail_with = fail_with
        self.list_calls: list[dict[str, object]] = []
        self.create_calls: list[dict[str, object]] = []
        self.marker_calls: list[dict[str, object]] = []

    @property
    def name(self) -> str:
        return "double"

    async def list_events(self, *, start_at: datetime, end_at: datetime) -> list[CalendarEvent]:
        self.list_calls.append({"start_at": start_at, "end_at": end_at})
        if self._fail_with is not None:
            raise self._fail_with
        return list(self._events)

    async def create_event(self, draft: EventDraft, *, kind: EventKind = EventKind.EVENT):
        self.create_calls.append({"draft": draft, "kind": kind})
        return CalendarEvent(
            event_id=f"evt-{len(self.create_calls)}",
            title=draft.summary,
            start_at=draft.start,
            end_at=draft.end,
            timezone=TZ.key,
            description=draft.description,
            kind=kind,
            html_link=f"https://calendar.example/evt-{len(self.create_calls)}",
        )

    async def set_event_marker(self, event_id: str, *, completion: Completion) -> CalendarEvent:
        self.marker_calls.append({"event_id": event_id, "completion": completion})
        return CalendarEvent(
            event_id=event_id,
            title=f"Title of {event_id}",
            start_at=datetime(2026, 2, 18, 9, 0, tzinfo=TZ),
            end_at=datetime(2026, 2, 18, 10, 0, tzinfo=TZ),
            timezone=TZ.key,
            color=EventColor.GRAPHITE,
            completion=completion,
        )


def _event(event_id: str, start: datetime, end: datetime, **kwargs) -> CalendarEvent:
    return CalendarEvent(
        event_id=event_id,
        title=kwargs.pop("title", f"Event {event_id}"),
        start_at=start,
        end_at=end,
        timezone=TZ.key,
        **kwargs,
    )


async def _module_with(provider: CalendarProvider) -> tuple[CalendarModule, _StubMCP]:
    mcp = _StubMCP()
    mod = CalendarModule()
    mod._provider = provider
    mod._tz = TZ
    await mod.register_tools(mcp=mcp, config={})
    return mod, mcp


def _google_provider(handler, **config) -> GoogleCalendarProvider:
    def routed(request: httpx.Request) -> httpx.Response:
        if str(request.url) == GOOGLE_OAUTH_TOKEN_URL:
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        return handler(request)

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(routed))
    oauth = GoogleOAuthClient(
        GoogleCredentials(client_id="cid", client_secret="secret", refresh_token="rtok"),
        http_client,
    )
    api = GoogleApiClient(
        oauth, http_client, base_url=GOOGLE_CALENDAR_API_BASE_URL, service="Google Calendar"
    )
    return GoogleCalendarProvider(CalendarConfig(**config), api, tz=TZ)


# ---------------------------------------------------------------------------
# Module ABC compliance
# ---------------------------------------------------------------------------


class TestModuleABC:
    def test_is_subclass_of_module(self):
        assert issubclass(CalendarModule, Module)

    def test_name(self):
        assert CalendarModule().name == "calendar"

    def test_config_schema(self):
        schema = CalendarModule().config_schema
        assert issubclass(schema, BaseModel)
        assert schema is CalendarConfig

    def test_dependencies_empty(self):
        assert CalendarModule().dependencies == []

    async def test_registers_all_tools(self):
        _, mcp = await _module_with(_ProviderDouble())
        assert set(mcp.tools) == {
            "get-today-agenda",
            "get-agenda",
            "create-calendar-event",
            "create-calendar-events",
            "complete-calendar-event",
            "complete-calendar-events",
        }


class TestCalendarConfig:
    def test_defaults(self):
        config = CalendarConfig()
        assert config.calendar_id == "primary"
        assert config.send_updates is SendUpdatesPolicy.ALL

    def test_blank_calendar_id_is_rejected(self):
        with pytest.raises(ValidationError):
            CalendarConfig(calendar_id="  ")

    def test_unknown_fields_are_rejected(self):
        with pytest.raises(ValidationError):
            CalendarConfig(provider="outlook")


# ---------------------------------------------------------------------------
# Google boundary translation
# ---------------------------------------------------------------------------


class TestEventColor:
    def test_task_and_done_colors(self):
        assert EventColor.FLAMINGO.color_id == "4"
        assert EventColor.GRAPHITE.color_id == "8"
        assert EventColor.LAVENDER.color_id == "1"
        assert EventColor.TOMATO.color_id == "11"

    def test_from_color_id(self):
        assert EventColor.from_color_id("4") is EventColor.FLAMINGO
        assert EventColor.from_color_id("12") is None
        assert EventColor.from_color_id(None) is None


class TestRecurrenceRule:
    def test_weekly_with_days_and_count(self):
        rule = RecurrenceRule(frequency="weekly", interval=2, by_day=["MO", "WE"], count=5)
        assert rule.to_rrule() == "RRULE:FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE;COUNT=5"
        assert rule.describe() == "Repeats weekly every 2"

    def test_monthly_until(self):
        rule = RecurrenceRule(frequency="monthly", by_month_day=[1, 15], until=date(2026, 12, 31))
        assert rule.to_rrule() == "RRULE:FREQ=MONTHLY;BYMONTHDAY=1,15;UNTIL=20261231"

    def test_count_wins_over_until(self):
        rule = RecurrenceRule(frequency="daily", count=3, until=date(2026, 12, 31))
        assert rule.to_rrule() == "RRULE:FREQ=DAILY;COUNT=3"

    def test_invalid_frequency(self):
        with pytest.raises(ValidationError):
            RecurrenceRule(frequency="hourly")


class TestGooglePayloads:
    def test_flamingo_event_is_pending_task(self):
        event = _google_event_to_calendar_event(
            {
                "id": "g1",
                "summary": "Call bank",
                "colorId": "4",
                "start": {"dateTime": "2026-02-18T01:00:00-03:00"},
                "end": {"dateTime": "2026-02-18T01:15:00-03:00"},
                "htmlLink": "https://calendar.google.com/event?eid=g1",
            },
            tz=TZ,
        )
        assert event.kind is EventKind.TASK
        assert event.completion is Completion.PENDING
        assert event.html_link == "https://calendar.google.com/event?eid=g1"

    def test_graphite_event_is_done(self):
        event = _google_event_to_calendar_event(
            {
                "id": "g2",
                "colorId": "8",
                "start": {"dateTime": "2026-02-18T09:00:00Z"},
                "end": {"dateTime": "2026-02-18T10:00:00Z"},
            },
            tz=TZ,
        )
        assert event.completion is Completion.DONE
        assert event.kind is EventKind.EVENT
        assert event.title == "Untitled Event"

    def test_all_day_event(self):
        event = _google_event_to_calendar_event(
            {
                "id": "g3",
                "summary": "Holiday",
                "start": {"date": "2026-02-16"},
                "end": {"date": "2026-02-17"},
                "attendees": [{"email": "a@example.com"}, {"displayName": "no email"}],
            },
            tz=TZ,
        )
        assert event.is_all_day is True
        assert event.start_at == datetime(2026, 2, 16, tzinfo=TZ)
        assert event.attendees == ["a@example.com"]

    def test_missing_id_is_rejected(self):
        with pytest.raises(ValueError, match="missing a non-empty id"):
            _google_event_to_calendar_event({"start": {"date": "2026-02-16"}}, tz=TZ)

    def test_task_body_forces_flamingo_and_disables_reminders(self):
        draft = EventDraft(
            summary="Pay rent",
            start=datetime(2026, 2, 18, 1, 0, tzinfo=TZ),
            end=datetime(2026, 2, 18, 1, 15, tzinfo=TZ),
            color=EventColor.BASIL,
        )
        body = _build_google_event_body(draft, kind=EventKind.TASK, timezone=TZ.key)
        assert body["colorId"] == "4"
        assert body["reminders"] == {"useDefault": False, "overrides": []}
        assert body["start"] == {
            "dateTime": "2026-02-18T01:00:00-03:00",
            "timeZone": "America/Sao_Paulo",
        }

    def test_event_body_with_everything(self):
        draft = EventDraft(
            summary="Offsite",
            start=datetime(2026, 3, 2, tzinfo=TZ),
            end=datetime(2026, 3, 4, tzinfo=TZ),
            description="  bring laptop  ",
            location="HQ",
            attendees=["a@example.com", " "],
            is_all_day=True,
            recurrence=RecurrenceRule(frequency="yearly"),
            color=EventColor.PEACOCK,
        )
        body = _build_google_event_body(draft, kind=EventKind.EVENT, timezone=TZ.key)
        assert body["start"] == {"date": "2026-03-02", "timeZone": "America/Sao_Paulo"}
        assert body["end"] == {"date": "2026-03-04", "timeZone": "America/Sao_Paulo"}
        assert body["description"] == "bring laptop"
        assert body["attendees"] == [{"email": "a@example.com"}]
        assert body["recurrence"] == ["RRULE:FREQ=YEARLY"]
        assert body["colorId"] == "7"


class TestValidateDrafts:
    def test_naive_datetimes_are_localized(self):
        draft = EventDraft(summary="x", start="2026-02-18T10:00:00", end="2026-02-18T11:00:00")
        [localized] = validate_drafts([draft], TZ)
        assert localized.start.tzinfo is TZ

    def test_end_equal_to_start_is_rejected(self):
        draft = EventDraft(summary="Zero", start="2026-02-18T10:00:00", end="2026-02-18T10:00:00")
        with pytest.raises(InputValidationError, match='Event "Zero": end time must be after'):
            validate_drafts([draft], TZ)


# ---------------------------------------------------------------------------
# GoogleCalendarProvider
# ---------------------------------------------------------------------------


class TestGoogleCalendarProvider:
    async def test_list_events_query(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200,
                json={
                    "items": [
                        {
                            "id": "g1",
                            "summary": "Standup",
                            "start": {"dateTime": "2026-02-18T09:00:00-03:00"},
                            "end": {"dateTime": "2026-02-18T09:15:00-03:00"},
                        },
                        {"id": "broken"},
                    ]
                },
            )

        provider = _google_provider(handler, calendar_id="team@example.com")
        window = day_window(TODAY, TZ)
        events = await provider.list_events(start_at=window.start, end_at=window.end)

        assert [event.event_id for event in events] == ["g1"]
        request = requests[0]
        assert request.url.path == "/calendar/v3/calendars/team@example.com/events"
        assert request.url.params["singleEvents"] == "true"
        assert request.url.params["orderBy"] == "startTime"
        assert request.url.params["timeMin"] == "2026-02-18T03:00:00Z"
        assert request.url.params["timeZone"] == "America/Sao_Paulo"
        assert request.headers["Authorization"] == "Bearer tok"

    async def test_create_event_sends_updates_policy(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            body = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "id": "new-1",
                    "summary": body["summary"],
                    "colorId": body.get("colorId"),
                    "start": body["start"],
                    "end": body["end"],
                    "htmlLink": "https://calendar.google.com/event?eid=new-1",
                },
            )

        provider = _google_provider(handler, send_updates="none")
        draft = EventDraft(
            summary="Pay rent",
            start=datetime(2026, 2, 18, 1, 0, tzinfo=TZ),
            end=datetime(2026, 2, 18, 1, 15, tzinfo=TZ),
        )
        event = await provider.create_event(draft, kind=EventKind.TASK)

        assert requests[0].method == "POST"
        assert requests[0].url.params["sendUpdates"] == "none"
        assert event.kind is EventKind.TASK
        assert event.html_link == "https://calendar.google.com/event?eid=new-1"

    async def test_set_event_marker_patches_color(self):
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "PATCH"
            assert request.url.path.endswith("/events/evt-9")
            bodies.append(json.loads(request.content))
            return httpx.Response(
                200,
                json={
                    "id": "evt-9",
                    "summary": "Done thing",
                    "colorId": bodies[-1]["colorId"],
                    "start": {"dateTime": "2026-02-18T09:00:00Z"},
                    "end": {"dateTime": "2026-02-18T10:00:00Z"},
                },
            )

        provider = _google_provider(handler)
        done = await provider.set_event_marker("evt-9", completion=Completion.DONE)
        pending = await provider.set_event_marker("evt-9", completion=Completion.PENDING)

        assert bodies == [{"colorId": "8"}, {"colorId": None}]
        assert done.completion is Completion.DONE
        assert pending.completion is Completion.PENDING

    async def test_http_error_is_remote_service_error(self):
        provider = _google_provider(
            lambda request: httpx.Response(404, json={"error": {"message": "Not Found"}})
        )
        with pytest.raises(RemoteServiceError, match="Google Calendar request failed"):
            await provider.set_event_marker("missing", completion=Completion.DONE)


# ---------------------------------------------------------------------------
# Read tools
# ---------------------------------------------------------------------------


class TestAgendaTools:
    async def test_today_agenda_for_explicit_date(self):
        events = [
            _event(
                "a",
                datetime(2026, 2, 18, 9, 0, tzinfo=TZ),
                datetime(2026, 2, 18, 10, 30, tzinfo=TZ),
                title="Planning",
            ),
            # Ended the previous day; the provider may still return it.
            _event(
                "old",
                datetime(2026, 2, 17, 20, 0, tzinfo=TZ),
                datetime(2026, 2, 18, 0, 0, tzinfo=TZ),
            ),
        ]
        provider = _ProviderDouble(events=events)
        _, mcp = await _module_with(provider)

        text = await mcp.tools["get-today-agenda"](date="2026-02-18")

        assert text.startswith("Agenda for 2026-02-18\nTotal meeting time: 1 hour 30 minutes")
        assert "09:00 - 10:30: Planning" in text
        assert "old" not in text
        assert provider.list_calls[0]["start_at"] == datetime(2026, 2, 18, tzinfo=TZ)

    async def test_today_agenda_bad_date(self):
        provider = _ProviderDouble()
        _, mcp = await _module_with(provider)
        text = await mcp.tools["get-today-agenda"](date="18-02-2026")
        assert text.startswith("Failed to retrieve agenda: date must be a date")
        assert provider.list_calls == []

    async def test_agenda_range(self):
        provider = _ProviderDouble()
        _, mcp = await _module_with(provider)

        text = await mcp.tools["get-agenda"](start_date="2026-03-01", end_date="2026-03-03")

        assert text.splitlines()[:3] == [
            "Agenda for 2026-03-01 to 2026-03-03",
            "0 events",
            "Total meeting time: 0 minutes",
        ]
        assert text.endswith("No events scheduled.")
        assert provider.list_calls[0]["end_at"].date() == date(2026, 3, 3)

    async def test_provider_failure_is_reported_as_text(self):
        provider = _ProviderDouble(
            fail_with=RemoteServiceError(
                status_code=500, message="Backend Error", service="Google Calendar"
            )
        )
        _, mcp = await _module_with(provider)
        text = await mcp.tools["get-agenda"](preset="week")
        assert text == (
            "Failed to retrieve agenda: Google Calendar request failed (500): Backend Error"
        )


# ---------------------------------------------------------------------------
# Write tools
# ---------------------------------------------------------------------------


class TestCreateTools:
    async def test_create_single_event(self):
        provider = _ProviderDouble()
        _, mcp = await _module_with(provider)

        text = await mcp.tools["create-calendar-event"](
            summary="Dentist",
            start="2026-02-20T14:00:00",
            end="2026-02-20T15:00:00",
            description="Bring card",
            recurrence=RecurrenceRule(frequency="monthly"),
            color=EventColor.TOMATO,
        )

        assert text.splitlines()[:5] == [
            "Event created successfully!",
            "",
            "Dentist",
            "id: evt-1",
            "when: 2026-02-20 14:00 - 2026-02-20 15:00",
        ]
        assert "color: tomato" in text
        assert "Repeats monthly" in text
        assert "link: https://calendar.example/evt-1" in text
        [call] = provider.create_calls
        assert call["kind"] is EventKind.EVENT
        assert call["draft"].start == datetime(2026, 2, 20, 14, 0, tzinfo=TZ)

    async def test_end_before_start_fails_without_calling_provider(self):
        provider = _ProviderDouble()
        _, mcp = await _module_with(provider)

        text = await mcp.tools["create-calendar-event"](
            summary="Backwards",
            start="2026-02-20T15:00:00",
            end="2026-02-20T14:00:00",
        )

        assert text == (
            'Failed to create event: Event "Backwards": end time must be after start time'
        )
        assert provider.create_calls == []

    async def test_malformed_timestamp_is_reported(self):
        provider = _ProviderDouble()
        _, mcp = await _module_with(provider)
        text = await mcp.tools["create-calendar-event"](
            summary="Oops", start="not a time", end="2026-02-20T14:00:00"
        )
        assert text.startswith("Failed to create event: start:")
        assert provider.create_calls == []

    async def test_batch_is_all_or_nothing(self):
        provider = _ProviderDouble()
        _, mcp = await _module_with(provider)
        drafts = [
            EventDraft(summary="Good", start="2026-02-20T09:00:00", end="2026-02-20T10:00:00"),
            EventDraft(summary="Bad", start="2026-02-20T12:00:00", end="2026-02-20T11:00:00"),
        ]

        text = await mcp.tools["create-calendar-events"](events=drafts)

        assert text.startswith('Failed to create events: Event "Bad"')
        assert provider.create_calls == []

    async def test_batch_creates_every_event(self):
        provider = _ProviderDouble()
        _, mcp = await _module_with(provider)
        drafts = [
            EventDraft(summary="One", start="2026-02-20T09:00:00", end="2026-02-20T10:00:00"),
            EventDraft(summary="Two", start="2026-02-20T11:00:00", end="2026-02-20T12:00:00"),
        ]

        text = await mcp.tools["create-calendar-events"](events=drafts)

        assert text.startswith("Created 2 events successfully!")
        assert len(provider.create_calls) == 2

    async def test_empty_batch(self):
        _, mcp = await _module_with(_ProviderDouble())
        text = await mcp.tools["create-calendar-events"](events=[])
        assert text == "Failed to create events: At least one event is required"


class TestCompleteTools:
    async def test_complete_single_event(self):
        provider = _ProviderDouble()
        _, mcp = await _module_with(provider)

        text = await mcp.tools["complete-calendar-event"](event_id=" evt-1 ")

        assert text == "Event marked as completed!\n\nTitle of evt-1"
        assert provider.marker_calls == [{"event_id": "evt-1", "completion": Completion.DONE}]

    async def test_complete_requires_id(self):
        provider = _ProviderDouble()
        _, mcp = await _module_with(provider)
        text = await mcp.tools["complete-calendar-event"](event_id="  ")
        assert text == "Failed to complete event: Event ID is required"
        assert provider.marker_calls == []

    async def test_complete_many(self):
        provider = _ProviderDouble()
        _, mcp = await _module_with(provider)

        text = await mcp.tools["complete-calendar-events"](event_ids=["a", "", "b"])

        assert text.splitlines()[0] == "Marked 2 events as completed!"
        assert [call["event_id"] for call in provider.marker_calls] == ["a", "b"]

    async def test_complete_many_requires_ids(self):
        _, mcp = await _module_with(_ProviderDouble())
        text = await mcp.tools["complete-calendar-events"](event_ids=[])
        assert text == "Failed to complete events: At least one event ID is required"


# ---------------------------------------------------------------------------
# Services shared with the tasks module
# ---------------------------------------------------------------------------


class TestServices:
    async def test_events_on_keeps_events_overlapping_the_day(self):
        events = [
            _event(
                "overnight",
                datetime(2026, 2, 17, 23, 0, tzinfo=TZ),
                datetime(2026, 2, 18, 2, 0, tzinfo=TZ),
            ),
            _event(
                "tomorrow",
                datetime(2026, 2, 19, 0, 0, tzinfo=UTC),
                datetime(2026, 2, 19, 1, 0, tzinfo=UTC),
            ),
        ]
        mod, _ = await _module_with(_ProviderDouble(events=events))

        kept = await mod.events_on(TODAY)

        # 2026-02-19 00:00 UTC is still the evening of the 18th locally.
        assert [event.event_id for event in kept] == ["overnight", "tomorrow"]

    async def test_services_require_startup(self):
        mod = CalendarModule()
        with pytest.raises(PlannerError, match="not initialized"):
            await mod.events_on(TODAY)
