"""Tasks module: short to-do items stored as calendar events.

A task is a 15-minute event placed in the first free slot between 01:00 and
05:00 on the current day. It is marked as a task on the calendar and shows
as pending until it is completed.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from dayplanner.core.formatting import format_task_list
from dayplanner.core.periods import local_today
from dayplanner.core.slots import Slot, find_task_slot
from dayplanner.errors import InputValidationError, PlannerError, describe_error
from dayplanner.modules.base import Module, PlannerContext
from dayplanner.modules.calendar import (
    CalendarEvent,
    CalendarModule,
    Completion,
    EventDraft,
    EventKind,
    require_event_ids,
)

logger = logging.getLogger(__name__)


class TasksConfig(BaseModel):
    """The tasks module has no tunables; the placement window is fixed."""

    model_config = ConfigDict(extra="forbid")


class TasksModule(Module):
    """Task tools layered on the calendar module's event services."""

    def __init__(self) -> None:
        self._calendar: CalendarModule | None = None

    @property
    def name(self) -> str:
        return "tasks"

    @property
    def config_schema(self) -> type[BaseModel]:
        return TasksConfig

    @property
    def dependencies(self) -> list[str]:
        return ["calendar"]

    def _require_calendar(self) -> CalendarModule:
        if self._calendar is None:
            raise PlannerError("Calendar module is not available")
        return self._calendar

    async def on_startup(self, config: Any, context: PlannerContext) -> None:
        calendar = context.modules.get("calendar")
        if not isinstance(calendar, CalendarModule):
            raise RuntimeError("TasksModule requires the calendar module to be started first")
        self._calendar = calendar

    async def on_shutdown(self) -> None:
        self._calendar = None

    async def create_task(self, title: str, description: str | None = None) -> CalendarEvent:
        """Place a task in today's first free slot and create it."""
        calendar = self._require_calendar()
        tz = calendar.timezone
        today = local_today(tz)
        events = await calendar.events_on(today)
        slot: Slot = find_task_slot(today, tz, (event.time_range for event in events))
        logger.debug("Placing task %r at %s", title, slot.start.isoformat())

        draft = EventDraft(
            summary=title,
            start=slot.start,
            end=slot.end,
            description=description,
        )
        [event] = await calendar.create_events([draft], kind=EventKind.TASK)
        return event

    async def pending_tasks(self) -> list[CalendarEvent]:
        calendar = self._require_calendar()
        events = await calendar.events_on(local_today(calendar.timezone))
        return [
            event
            for event in events
            if event.kind is EventKind.TASK and event.completion is Completion.PENDING
        ]

    async def complete_tasks(self, event_ids: Sequence[str]) -> list[CalendarEvent]:
        return await self._require_calendar().complete_events(require_event_ids(event_ids))

    async def register_tools(self, mcp: Any, config: Any) -> None:
        module = self

        @mcp.tool(name="create-task")
        async def create_task(title: str, description: str | None = None) -> str:
            """Create a task in the first free 15-minute slot between 1:00 AM and 5:00 AM today."""
            try:
                if not title or not title.strip():
                    raise InputValidationError("Task title is required")
                event = await module.create_task(title, description)
            except (PlannerError, ValidationError) as exc:
                logger.warning("create-task failed: %s", exc, exc_info=True)
                return f"Failed to create task: {describe_error(exc)}"

            tz = module._require_calendar().timezone
            start = event.start_at.astimezone(tz)
            end = event.end_at.astimezone(tz)
            lines = [
                "Task created!",
                "",
                event.title,
                f"id: {event.event_id}",
                f"at: {start:%H:%M} - {end:%H:%M}",
            ]
            if event.description:
                lines.append(f"note: {event.description}")
            return "\n".join(lines)

        @mcp.tool(name="get-tasks")
        async def get_tasks() -> str:
            """Get today's pending tasks."""
            try:
                tasks = await module.pending_tasks()
            except PlannerError as exc:
                logger.warning("get-tasks failed: %s", exc, exc_info=True)
                return f"Failed to get tasks: {describe_error(exc)}"
            return format_task_list(tasks, module._require_calendar().timezone)

        @mcp.tool(name="complete-task")
        async def complete_task(event_ids: list[str]) -> str:
            """Mark one or more tasks as completed."""
            try:
                completed = await module.complete_tasks(event_ids)
            except PlannerError as exc:
                logger.warning("complete-task failed: %s", exc, exc_info=True)
                return f"Failed to complete task(s): {describe_error(exc)}"

            lines = [f"Completed {len(completed)} task(s)!", ""]
            lines.extend(event.title for event in completed)
            return "\n".join(lines)
