"""Symbolic period resolution for agenda and mailbox queries.

Two resolvers live here and they are deliberately separate:

- :func:`resolve_agenda_period` looks *forward*: ``week`` and ``month`` run
  from the start of today to the end of the current week or month.
- :func:`resolve_email_period` looks *backward*: ``week`` and ``month`` run
  from the start of the current week or month to the end of today.

Weeks start on Sunday. Every window is inclusive on both ends: it begins at
00:00:00 of its first day and ends at 23:59:59.999999 of its last day, in
the single configured planner timezone.
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from enum import StrEnum

from dayplanner.errors import InputValidationError

logger = logging.getLogger(__name__)


class AgendaPreset(StrEnum):
    TODAY = "today"
    TOMORROW = "tomorrow"
    WEEK = "week"
    NEXT_WEEK = "next-week"
    MONTH = "month"


class EmailPreset(StrEnum):
    TODAY = "today"
    YESTERDAY = "yesterday"
    WEEK = "week"
    MONTH = "month"


@dataclass(frozen=True)
class PeriodWindow:
    """Inclusive window from the start of one local day to the end of another."""

    start: datetime
    end: datetime

    @property
    def start_date(self) -> date:
        return self.start.date()

    @property
    def end_date(self) -> date:
        return self.end.date()

    @property
    def label(self) -> str:
        if self.start_date == self.end_date:
            return self.start_date.isoformat()
        return f"{self.start_date.isoformat()} to {self.end_date.isoformat()}"


def start_of_day(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz)


def end_of_day(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, time.max, tzinfo=tz)


def day_window(day: date, tz: tzinfo) -> PeriodWindow:
    """Return the window covering exactly *day*."""
    return PeriodWindow(start_of_day(day, tz), end_of_day(day, tz))


def start_of_week(day: date) -> date:
    """Return the Sunday on or before *day*."""
    return day - timedelta(days=(day.weekday() + 1) % 7)


def end_of_week(day: date) -> date:
    """Return the Saturday on or after *day*."""
    return start_of_week(day) + timedelta(days=6)


def end_of_month(day: date) -> date:
    return day.replace(day=calendar.monthrange(day.year, day.month)[1])


def parse_iso_date(value: str | date, *, field: str = "date") -> date:
    """Parse a ``YYYY-MM-DD`` string into a :class:`date`."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    normalized = value.strip() if isinstance(value, str) else ""
    try:
        return date.fromisoformat(normalized)
    except ValueError as exc:
        raise InputValidationError(
            f"{field} must be a date in YYYY-MM-DD format, got {value!r}"
        ) from exc


def local_today(tz: tzinfo, now: datetime | None = None) -> date:
    """Return the current calendar date in *tz*."""
    current = now if now is not None else datetime.now(tz)
    return current.astimezone(tz).date()


def resolve_agenda_period(
    preset: AgendaPreset | str | None = None,
    start_date: str | date | None = None,
    end_date: str | date | None = None,
    *,
    tz: tzinfo,
    now: datetime | None = None,
) -> PeriodWindow:
    """Resolve an agenda preset or explicit date pair into a window.

    A preset wins over explicit dates. An explicit pair is used only when both
    ends are given; a lone start or end date falls back to ``today``.
    """
    today = local_today(tz, now)

    if preset:
        try:
            resolved = AgendaPreset(preset)
        except ValueError as exc:
            choices = ", ".join(item.value for item in AgendaPreset)
            raise InputValidationError(
                f"Unknown agenda preset {preset!r}. Expected one of: {choices}"
            ) from exc

        if resolved is AgendaPreset.TOMORROW:
            return day_window(today + timedelta(days=1), tz)
        if resolved is AgendaPreset.WEEK:
            return PeriodWindow(start_of_day(today, tz), end_of_day(end_of_week(today), tz))
        if resolved is AgendaPreset.NEXT_WEEK:
            next_week = start_of_week(today) + timedelta(days=7)
            return PeriodWindow(start_of_day(next_week, tz), end_of_day(end_of_week(next_week), tz))
        if resolved is AgendaPreset.MONTH:
            return PeriodWindow(start_of_day(today, tz), end_of_day(end_of_month(today), tz))
        return day_window(today, tz)

    if start_date and end_date:
        return _explicit_window(start_date, end_date, tz)

    if start_date or end_date:
        logger.warning(
            "Agenda period has only one explicit date (start=%s, end=%s); using today",
            start_date,
            end_date,
        )
    return day_window(today, tz)


def resolve_email_period(
    preset: EmailPreset | str | None = None,
    start_date: str | date | None = None,
    end_date: str | date | None = None,
    *,
    tz: tzinfo,
    now: datetime | None = None,
) -> PeriodWindow:
    """Resolve a mailbox preset or explicit date pair into a window.

    A preset wins over explicit dates. An explicit pair is used only when both
    ends are given; a lone start or end date falls back to ``today``.
    """
    today = local_today(tz, now)

    if preset:
        try:
            resolved = EmailPreset(preset)
        except ValueError as exc:
            choices = ", ".join(item.value for item in EmailPreset)
            raise InputValidationError(
                f"Unknown email preset {preset!r}. Expected one of: {choices}"
            ) from exc

        if resolved is EmailPreset.YESTERDAY:
            return day_window(today - timedelta(days=1), tz)
        if resolved is EmailPreset.WEEK:
            return PeriodWindow(start_of_day(start_of_week(today), tz), end_of_day(today, tz))
        if resolved is EmailPreset.MONTH:
            return PeriodWindow(start_of_day(today.replace(day=1), tz), end_of_day(today, tz))
        return day_window(today, tz)

    if start_date and end_date:
        return _explicit_window(start_date, end_date, tz)

    if start_date or end_date:
        logger.warning(
            "Email period has only one explicit date (start=%s, end=%s); using today",
            start_date,
            end_date,
        )
    return day_window(today, tz)


def _explicit_window(start_date: str | date, end_date: str | date, tz: tzinfo) -> PeriodWindow:
    first = parse_iso_date(start_date, field="start_date")
    last = parse_iso_date(end_date, field="end_date")
    if last < first:
        raise InputValidationError(
            f"end_date {last.isoformat()} is before start_date {first.isoformat()}"
        )
    return PeriodWindow(start_of_day(first, tz), end_of_day(last, tz))
