"""Plain-text rendering of agendas, mailboxes and tasks for tool replies."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import tzinfo
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from dayplanner.modules.calendar import CalendarEvent
    from dayplanner.modules.email import EmailMessage, EmailSummary

AGENDA_DESCRIPTION_LIMIT = 100
SNIPPET_LIMIT = 80
ATTENDEES_SHOWN = 3
RULE = "-" * 50


def truncate(text: str, limit: int) -> str:
    return f"{text[:limit]}..." if len(text) > limit else text


def plural(count: int, noun: str) -> str:
    return f"{count} {noun}" if count == 1 else f"{count} {noun}s"


def total_meeting_minutes(events: Iterable[CalendarEvent]) -> float:
    """Sum the durations of timed events; all-day events do not count."""
    return sum(
        (event.end_at - event.start_at).total_seconds() / 60
        for event in events
        if not event.is_all_day
    )


def format_meeting_time(total_minutes: float) -> str:
    if total_minutes <= 0:
        return "0 minutes"

    hours = int(total_minutes // 60)
    minutes = round(total_minutes % 60)
    if minutes == 60:
        hours, minutes = hours + 1, 0

    hour_text = f"{hours} hour" if hours == 1 else f"{hours} hours"
    if hours == 0:
        return f"{minutes} minutes"
    if minutes == 0:
        return hour_text
    return f"{hour_text} {minutes} minutes"


def format_agenda(events: Sequence[CalendarEvent], tz: tzinfo) -> str:
    """Render events sorted by start, with day headers when they span several days."""
    if not events:
        return "No events scheduled."

    by_day: dict[str, list[CalendarEvent]] = {}
    for event in sorted(events, key=lambda item: item.start_at):
        day_key = event.start_at.astimezone(tz).date().isoformat()
        by_day.setdefault(day_key, []).append(event)

    show_headers = len(by_day) > 1
    lines: list[str] = []
    for day_events in by_day.values():
        if show_headers:
            first = day_events[0].start_at.astimezone(tz)
            lines.append(f"=== {first:%A, %b} {first.day} ===")
            lines.append("")

        for event in day_events:
            if event.is_all_day:
                lines.append(f"[All Day] {event.title}")
            else:
                start = event.start_at.astimezone(tz)
                end = event.end_at.astimezone(tz)
                lines.append(f"{start:%H:%M} - {end:%H:%M}: {event.title}")

            lines.append(f"   id: {event.event_id}")
            if event.description:
                lines.append(f"   note: {truncate(event.description, AGENDA_DESCRIPTION_LIMIT)}")
            if event.attendees:
                shown = ", ".join(event.attendees[:ATTENDEES_SHOWN])
                hidden = len(event.attendees) - ATTENDEES_SHOWN
                extra = f" +{hidden} more" if hidden > 0 else ""
                lines.append(f"   with: {shown}{extra}")
            lines.append("")

    return "\n".join(lines).rstrip("\n")


def sender_name(from_header: str) -> str:
    """Return the display name of ``Name <addr>``, or the raw header."""
    name = from_header.split("<", 1)[0].strip().strip('"')
    return name or from_header


def format_email_list(
    emails: Sequence[EmailSummary],
    tz: tzinfo,
    *,
    show_date: bool = False,
) -> str:
    if not emails:
        return "No emails found."

    lines: list[str] = []
    for email in emails:
        received = email.date.astimezone(tz)
        stamp = f"{received:%Y-%m-%d %H:%M}" if show_date else f"{received:%H:%M}"
        marker = "[unread]" if email.is_unread else "[read]"
        lines.append(f"{marker} {stamp} - {email.subject}")
        lines.append(f"   from: {sender_name(email.sender)}")
        lines.append(f"   id: {email.message_id}")
        if email.snippet:
            lines.append(f"   {truncate(email.snippet, SNIPPET_LIMIT)}")
        lines.append("")

    return "\n".join(lines).rstrip("\n")


def format_email_message(message: EmailMessage, tz: tzinfo) -> str:
    lines = [
        message.subject,
        "",
        f"From: {message.sender}",
        f"To: {message.to}",
    ]
    if message.cc:
        lines.append(f"CC: {message.cc}")
    lines.append(f"Date: {message.date.astimezone(tz):%Y-%m-%d %H:%M}")
    lines.append(f"ID: {message.message_id}")
    lines.append("")
    lines.append(RULE)
    lines.append("")
    lines.append(message.body or "(No content)")
    return "\n".join(lines)


def format_task_list(tasks: Sequence[CalendarEvent], tz: tzinfo) -> str:
    if not tasks:
        return "No pending tasks for today."

    lines = [f"{len(tasks)} pending task(s):", ""]
    for task in tasks:
        lines.append(f"- {task.title}")
        lines.append(f"  id: {task.event_id}")
        lines.append(f"  at: {task.start_at.astimezone(tz):%H:%M}")
        if task.description:
            lines.append(f"  note: {truncate(task.description, SNIPPET_LIMIT)}")
        lines.append("")
    return "\n".join(lines).rstrip("\n")
