"""Free-slot search over a fixed daily window.

Tasks are placed by walking a fixed window (01:00-05:00 local time) in
15-minute steps and taking the first step that collides with no existing
event. Overlap is half-open: a range that ends exactly when another begins
does not collide with it.

The walk is a fixed grid, not bin-packing. A candidate that collides is
skipped by exactly one step, never jumped to the end of the colliding event,
so a gap between two off-grid events can be missed.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta, tzinfo

from dayplanner.errors import InputValidationError, NoSlotAvailableError

TASK_WINDOW_START_HOUR = 1
TASK_WINDOW_END_HOUR = 5
TASK_DURATION_MINUTES = 15


@dataclass(frozen=True)
class TimeRange:
    """A span of time between two aware instants."""

    start: datetime
    end: datetime

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


@dataclass(frozen=True)
class Slot(TimeRange):
    """A candidate placement produced by :func:`find_free_slot`."""


def overlaps(a: TimeRange, b: TimeRange) -> bool:
    """Return whether *a* and *b* share any instant (touching ends do not count)."""
    return a.start < b.end and a.end > b.start


def find_free_slot(
    window_start: datetime,
    window_end: datetime,
    duration_minutes: int,
    busy: Iterable[TimeRange],
) -> Slot:
    """Return the earliest grid-aligned slot in the window that collides with nothing.

    Candidate starts are ``window_start + k * duration`` for ``k = 0, 1, ...``
    while the candidate still ends on or before ``window_end``.

    Raises
    ------
    NoSlotAvailableError
        If every grid position collides with a busy range, or the duration
        does not fit in the window at all.
    InputValidationError
        If *duration_minutes* is not positive.
    """
    if duration_minutes <= 0:
        raise InputValidationError("duration_minutes must be a positive integer")

    duration = timedelta(minutes=duration_minutes)
    window = TimeRange(window_start, window_end)
    in_window = [item for item in busy if overlaps(item, window)]

    # Walk in UTC so the grid stays absolute across DST shifts.
    result_tz = window_start.tzinfo
    limit = window_end.astimezone(UTC)
    candidate_start = window_start.astimezone(UTC)
    while candidate_start + duration <= limit:
        candidate = Slot(candidate_start, candidate_start + duration)
        if not any(overlaps(item, candidate) for item in in_window):
            return Slot(
                candidate.start.astimezone(result_tz),
                candidate.end.astimezone(result_tz),
            )
        candidate_start += duration

    raise NoSlotAvailableError(
        "No free slot available between "
        f"{_clock_label(window_start)} and {_clock_label(window_end)}"
    )


def task_window(day: date, tz: tzinfo) -> TimeRange:
    """Return the task placement window for *day* in *tz*."""
    day_start = datetime.combine(day, time.min, tzinfo=tz).astimezone(UTC)
    return TimeRange(
        (day_start + timedelta(hours=TASK_WINDOW_START_HOUR)).astimezone(tz),
        (day_start + timedelta(hours=TASK_WINDOW_END_HOUR)).astimezone(tz),
    )


def find_task_slot(day: date, tz: tzinfo, busy: Iterable[TimeRange]) -> Slot:
    """Find the first free task slot on *day*."""
    window = task_window(day, tz)
    return find_free_slot(window.start, window.end, TASK_DURATION_MINUTES, busy)


def _clock_label(value: datetime) -> str:
    hour = value.hour % 12 or 12
    suffix = "AM" if value.hour < 12 else "PM"
    return f"{hour}:{value.minute:02d} {suffix}"
