"""Email module: mailbox listing, reading, search, reply and bulk trash over Gmail.

Uses the Gmail v1 REST API through the shared authenticated client.
Configured via [modules.email] in dayplanner.toml.

Trashing is optimistic: ``trash-emails`` returns as soon as the ids are
accepted and the actual calls run in the background, nine at a time with a
three second pause between batches.
"""

from __future__ import annotations

import abc
import asyncio
import base64
import binascii
import logging
import re
from collections.abc import Sequence
from datetime import UTC, datetime
from email.message import EmailMessage as MimeMessage
from email.policy import SMTP
from email.utils import parsedate_to_datetime
from typing import Annotated, Any
from urllib.parse import quote
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field

from dayplanner.core.batching import (
    DEFAULT_BATCH_DELAY_S,
    DEFAULT_BATCH_SIZE,
    BatchDispatcher,
)
from dayplanner.core.formatting import format_email_list, format_email_message, plural
from dayplanner.core.google_api import GoogleApiClient
from dayplanner.core.periods import (
    EmailPreset,
    PeriodWindow,
    day_window,
    local_today,
    parse_iso_date,
    resolve_email_period,
)
from dayplanner.errors import InputValidationError, PlannerError, RemoteServiceError, describe_error
from dayplanner.modules.base import Module, PlannerContext

logger = logging.getLogger(__name__)

GMAIL_API_BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"
METADATA_HEADERS = ("Subject", "From", "To", "Date")
MAX_SEARCH_RESULTS = 500
NO_SUBJECT = "(No Subject)"
UNREAD_LABEL = "UNREAD"

_ADDRESS_IN_BRACKETS = re.compile(r"<([^>]+)>")
_HTML_TAG = re.compile(r"<[^>]*>")


class EmailConfig(BaseModel):
    """Configuration for the email module."""

    model_config = ConfigDict(extra="forbid")

    day_max_results: int = Field(default=50, ge=1, le=MAX_SEARCH_RESULTS)
    range_max_results: int = Field(default=100, ge=1, le=MAX_SEARCH_RESULTS)
    search_default_max_results: int = Field(default=50, ge=1, le=MAX_SEARCH_RESULTS)
    trash_batch_size: int = Field(default=DEFAULT_BATCH_SIZE, ge=1)
    trash_batch_delay_s: float = Field(default=DEFAULT_BATCH_DELAY_S, ge=0)


class EmailSummary(BaseModel):
    """Header-level view of a message, as listed in a mailbox."""

    message_id: str
    thread_id: str = ""
    subject: str = NO_SUBJECT
    sender: str = ""
    to: str = ""
    date: datetime
    snippet: str = ""
    is_unread: bool = False
    labels: list[str] = Field(default_factory=list)


class EmailMessage(EmailSummary):
    """A full message including its decoded body."""

    cc: str | None = None
    bcc: str | None = None
    reply_to: str | None = None
    rfc822_message_id: str | None = None
    body: str = ""


class SentMessage(BaseModel):
    message_id: str
    thread_id: str


# ----------------------------------------------------------------------
# Gmail payload helpers
# ----------------------------------------------------------------------


def _header(headers: Any, name: str) -> str:
    if not isinstance(headers, list):
        return ""
    wanted = name.lower()
    for header in headers:
        if isinstance(header, dict) and str(header.get("name", "")).lower() == wanted:
            value = header.get("value")
            return value if isinstance(value, str) else ""
    return ""


def _parse_header_date(value: str) -> datetime:
    """Parse an RFC 2822 ``Date`` header; missing or unparseable dates become now."""
    if value.strip():
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            logger.debug("Unparseable Date header %r", value)
        else:
            return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    return datetime.now(UTC)


def decode_base64url(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        logger.warning("Could not decode a message body part")
        return ""


def encode_base64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def strip_html(text: str) -> str:
    return _HTML_TAG.sub("", text)


def _find_part_data(part: dict[str, Any], mime_type: str) -> str | None:
    """Depth-first search for the first part of *mime_type* that carries data."""
    body = part.get("body")
    data = body.get("data") if isinstance(body, dict) else None
    if part.get("mimeType") == mime_type and isinstance(data, str) and data:
        return data
    for child in part.get("parts") or []:
        if isinstance(child, dict):
            found = _find_part_data(child, mime_type)
            if found is not None:
                return found
    return None


def extract_body(payload: Any) -> str:
    """Return the readable body of a Gmail ``payload``.

    A single-part body is used as is. For multipart messages the first
    ``text/plain`` part anywhere in the tree wins; otherwise the first
    ``text/html`` part is used with its tags stripped.
    """
    if not isinstance(payload, dict):
        return ""

    body = payload.get("body")
    data = body.get("data") if isinstance(body, dict) else None
    if isinstance(data, str) and data:
        text = decode_base64url(data)
        return (strip_html(text) if payload.get("mimeType") == "text/html" else text).strip()

    plain = _find_part_data(payload, "text/plain")
    if plain is not None:
        return decode_base64url(plain).strip()
    html = _find_part_data(payload, "text/html")
    if html is not None:
        return strip_html(decode_base64url(html)).strip()
    return ""


def _summary_fields(message: dict[str, Any]) -> dict[str, Any]:
    message_id = message.get("id")
    if not isinstance(message_id, str) or not message_id:
        raise ValueError("Gmail message payload is missing an id")
    payload = message.get("payload")
    headers = payload.get("headers") if isinstance(payload, dict) else None
    labels = [label for label in message.get("labelIds") or [] if isinstance(label, str)]
    return {
        "message_id": message_id,
        "thread_id": message.get("threadId") or "",
        "subject": _header(headers, "Subject") or NO_SUBJECT,
        "sender": _header(headers, "From"),
        "to": _header(headers, "To"),
        "date": _parse_header_date(_header(headers, "Date")),
        "snippet": message.get("snippet") or "",
        "is_unread": UNREAD_LABEL in labels,
        "labels": labels,
    }


def gmail_message_to_summary(message: dict[str, Any]) -> EmailSummary:
    return EmailSummary(**_summary_fields(message))


def gmail_message_to_email(message: dict[str, Any]) -> EmailMessage:
    payload = message.get("payload")
    headers = payload.get("headers") if isinstance(payload, dict) else None
    return EmailMessage(
        **_summary_fields(message),
        cc=_header(headers, "Cc") or None,
        bcc=_header(headers, "Bcc") or None,
        reply_to=_header(headers, "Reply-To") or None,
        rfc822_message_id=_header(headers, "Message-ID") or None,
        body=extract_body(payload),
    )


def window_query(window: PeriodWindow) -> str:
    """Gmail search clause for messages received inside *window*."""
    return f"after:{int(window.start.timestamp())} before:{int(window.end.timestamp())}"


def reply_address(original: EmailMessage) -> str:
    """Address to answer: ``Reply-To`` when present, else ``From``, without the display name."""
    target = original.reply_to or original.sender
    match = _ADDRESS_IN_BRACKETS.search(target)
    return match.group(1).strip() if match else target.strip()


def reply_subject(subject: str) -> str:
    return subject if subject.startswith("Re:") else f"Re: {subject}"


def build_reply(original: EmailMessage, body: str, *, from_address: str) -> MimeMessage:
    """Build a plain-text reply to *original*, threaded on its Message-ID."""
    reference = original.rfc822_message_id or original.message_id
    msg = MimeMessage()
    msg["From"] = from_address
    msg["To"] = reply_address(original)
    msg["Subject"] = reply_subject(original.subject)
    msg["In-Reply-To"] = reference
    msg["References"] = reference
    msg.set_content(body)
    return msg


def search_date_label(emails: Sequence[EmailSummary], tz: ZoneInfo) -> str:
    """Span of local dates covered by newest-first *emails*, oldest first."""
    if not emails:
        return "Search results"
    unique: list[str] = []
    for email in emails:
        day = email.date.astimezone(tz).date().isoformat()
        if day not in unique:
            unique.append(day)
    if len(unique) == 1:
        return unique[0]
    return f"{unique[-1]} to {unique[0]}"


def newest_first(emails: Sequence[EmailSummary]) -> list[EmailSummary]:
    return sorted(emails, key=lambda item: item.date, reverse=True)


def require_email_ids(email_ids: Sequence[str]) -> list[str]:
    normalized = [item.strip() for item in email_ids if item and item.strip()]
    if not normalized:
        raise InputValidationError("At least one email ID is required")
    return normalized


# ----------------------------------------------------------------------
# Providers
# ----------------------------------------------------------------------


class MailProvider(abc.ABC):
    """Provider abstraction used by email tools."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., ``gmail``)."""
        ...

    @abc.abstractmethod
    async def list_message_ids(self, query: str, *, max_results: int) -> list[str]:
        """Return ids of messages matching a search query."""
        ...

    @abc.abstractmethod
    async def get_message_metadata(self, message_id: str) -> EmailSummary:
        """Fetch headers, snippet and labels for one message."""
        ...

    @abc.abstractmethod
    async def get_message_full(self, message_id: str) -> EmailMessage:
        """Fetch one message including its body."""
        ...

    @abc.abstractmethod
    async def get_profile_email(self) -> str:
        """Return the mailbox owner's address."""
        ...

    @abc.abstractmethod
    async def send_message(
        self, message: MimeMessage, *, thread_id: str | None = None
    ) -> SentMessage:
        """Send a MIME message, optionally inside an existing thread."""
        ...

    @abc.abstractmethod
    async def trash_message(self, message_id: str) -> None:
        """Move one message to the trash."""
        ...

    async def shutdown(self) -> None:
        """Release provider resources."""
        return None


class GmailProvider(MailProvider):
    """Gmail v1 provider over the shared authenticated API client."""

    def __init__(self, api: GoogleApiClient) -> None:
        self._api = api

    @property
    def name(self) -> str:
        return "gmail"

    async def list_message_ids(self, query: str, *, max_results: int) -> list[str]:
        payload = await self._api.request_json(
            "GET",
            "/messages",
            params={"q": query, "maxResults": max_results},
        )
        messages = payload.get("messages") or []
        return [
            item["id"]
            for item in messages
            if isinstance(item, dict) and isinstance(item.get("id"), str)
        ]

    async def get_message_metadata(self, message_id: str) -> EmailSummary:
        params: list[tuple[str, Any]] = [("format", "metadata")]
        params.extend(("metadataHeaders", header) for header in METADATA_HEADERS)
        payload = await self._api.request_json(
            "GET",
            f"/messages/{quote(message_id, safe='')}",
            params=params,
        )
        return self._convert(gmail_message_to_summary, payload)

    async def get_message_full(self, message_id: str) -> EmailMessage:
        payload = await self._api.request_json(
            "GET",
            f"/messages/{quote(message_id, safe='')}",
            params={"format": "full"},
        )
        return self._convert(gmail_message_to_email, payload)

    async def get_profile_email(self) -> str:
        payload = await self._api.request_json("GET", "/profile")
        address = payload.get("emailAddress")
        if not isinstance(address, str) or not address:
            raise RemoteServiceError(
                status_code=None,
                message="profile response has no emailAddress",
                service=self._api.service,
            )
        return address

    async def send_message(
        self, message: MimeMessage, *, thread_id: str | None = None
    ) -> SentMessage:
        body: dict[str, Any] = {"raw": encode_base64url(message.as_bytes(policy=SMTP))}
        if thread_id:
            body["threadId"] = thread_id
        payload = await self._api.request_json("POST", "/messages/send", json_body=body)
        return SentMessage(
            message_id=str(payload.get("id") or ""),
            thread_id=str(payload.get("threadId") or ""),
        )

    async def trash_message(self, message_id: str) -> None:
        await self._api.request_json("POST", f"/messages/{quote(message_id, safe='')}/trash")

    def _convert(self, converter, payload: dict[str, Any]):  # noqa: ANN001, ANN202
        try:
            return converter(payload)
        except ValueError as exc:
            raise RemoteServiceError(
                status_code=None,
                message=str(exc),
                service=self._api.service,
            ) from exc


# ----------------------------------------------------------------------
# Module
# ----------------------------------------------------------------------


class EmailModule(Module):
    """Email tools backed by a :class:`MailProvider`."""

    def __init__(self) -> None:
        self._config: EmailConfig = EmailConfig()
        self._provider: MailProvider | None = None
        self._dispatcher: BatchDispatcher | None = None
        self._tz: ZoneInfo = ZoneInfo("UTC")

    @property
    def name(self) -> str:
        return "email"

    @property
    def config_schema(self) -> type[BaseModel]:
        return EmailConfig

    @property
    def dependencies(self) -> list[str]:
        return []

    @staticmethod
    def _coerce_config(config: Any) -> EmailConfig:
        return config if isinstance(config, EmailConfig) else EmailConfig(**(config or {}))

    def _require_provider(self) -> MailProvider:
        if self._provider is None:
            raise PlannerError("Mail provider is not initialized")
        return self._provider

    async def on_startup(self, config: Any, context: PlannerContext) -> None:
        self._config = self._coerce_config(config)
        self._tz = context.timezone
        self._dispatcher = context.dispatcher
        api = GoogleApiClient(
            context.oauth,
            context.http_client,
            base_url=GMAIL_API_BASE_URL,
            service="Gmail",
        )
        self._provider = GmailProvider(api)

    async def on_shutdown(self) -> None:
        if self._provider is not None:
            await self._provider.shutdown()
        self._provider = None
        self._dispatcher = None

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    async def search(self, query: str, *, max_results: int) -> list[EmailSummary]:
        """Run a Gmail query and return the matches newest first."""
        provider = self._require_provider()
        ids = await provider.list_message_ids(query, max_results=max_results)
        if not ids:
            return []
        summaries = await asyncio.gather(*(provider.get_message_metadata(i) for i in ids))
        return newest_first(summaries)

    async def emails_in(self, window: PeriodWindow, *, max_results: int) -> list[EmailSummary]:
        return await self.search(window_query(window), max_results=max_results)

    async def read(self, email_id: str) -> EmailMessage:
        if not email_id or not email_id.strip():
            raise InputValidationError("Email ID is required")
        return await self._require_provider().get_message_full(email_id.strip())

    def trash(self, email_ids: Sequence[str]) -> list[str]:
        """Queue *email_ids* for trashing and return them without waiting."""
        ids = require_email_ids(email_ids)
        provider = self._require_provider()
        if self._dispatcher is None:
            raise PlannerError("Batch dispatcher is not initialized")
        return self._dispatcher.dispatch(
            ids,
            provider.trash_message,
            description="trash email",
            batch_size=self._config.trash_batch_size,
            delay_s=self._config.trash_batch_delay_s,
        )

    async def reply(self, email_id: str, body: str) -> SentMessage:
        if not email_id or not email_id.strip():
            raise InputValidationError("Email ID is required")
        if not body or not body.strip():
            raise InputValidationError("Reply body is required")

        provider = self._require_provider()
        original = await provider.get_message_full(email_id.strip())
        from_address = await provider.get_profile_email()
        reply = build_reply(original, body, from_address=from_address)
        sent = await provider.send_message(reply, thread_id=original.thread_id or None)
        logger.info("Sent reply to %s in thread %s", original.message_id, sent.thread_id)
        return sent

    def _summary_text(self, heading: str, emails: Sequence[EmailSummary]) -> str:
        unread = sum(1 for email in emails if email.is_unread)
        return "\n".join(
            [
                heading,
                f"{plural(len(emails), 'email')} ({unread} unread)",
                "",
                format_email_list(emails, self._tz),
            ]
        )

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def register_tools(self, mcp: Any, config: Any) -> None:
        self._config = self._coerce_config(config)
        module = self

        @mcp.tool(name="get-today-emails")
        async def get_today_emails(date: str | None = None) -> str:
            """Get emails received today, or on a specific date (YYYY-MM-DD)."""
            try:
                day = parse_iso_date(date, field="date") if date else local_today(module._tz)
                emails = await module.emails_in(
                    day_window(day, module._tz),
                    max_results=module._config.day_max_results,
                )
            except PlannerError as exc:
                logger.warning("get-today-emails failed: %s", exc, exc_info=True)
                return f"Failed to retrieve emails: {describe_error(exc)}"
            return module._summary_text(f"Emails for {day.isoformat()}", emails)

        @mcp.tool(name="get-emails")
        async def get_emails(
            preset: EmailPreset | None = None,
            start_date: str | None = None,
            end_date: str | None = None,
        ) -> str:
            """Get emails for a preset period or a custom date range.

            Presets: today, yesterday, week (this week so far), month (this
            month so far). A custom range needs both start_date and end_date
            in YYYY-MM-DD format.
            """
            try:
                window = resolve_email_period(preset, start_date, end_date, tz=module._tz)
                emails = await module.emails_in(
                    window,
                    max_results=module._config.range_max_results,
                )
            except PlannerError as exc:
                logger.warning("get-emails failed: %s", exc, exc_info=True)
                return f"Failed to retrieve emails: {describe_error(exc)}"
            return module._summary_text(f"Emails for {window.label}", emails)

        @mcp.tool(name="read-email")
        async def read_email(email_id: str) -> str:
            """Read the full content of an email by its ID."""
            try:
                message = await module.read(email_id)
            except PlannerError as exc:
                logger.warning("read-email failed: %s", exc, exc_info=True)
                return f"Failed to read email: {describe_error(exc)}"
            return format_email_message(message, module._tz)

        @mcp.tool(name="trash-emails")
        async def trash_emails(email_ids: list[str]) -> str:
            """Move emails to the trash by their IDs.

            Returns once the IDs are accepted; the trash calls continue in
            the background in rate-limited batches.
            """
            try:
                accepted = module.trash(email_ids)
            except PlannerError as exc:
                logger.warning("trash-emails failed: %s", exc, exc_info=True)
                return f"Failed to trash emails: {describe_error(exc)}"
            return f"Moved {plural(len(accepted), 'email')} to trash!"

        @mcp.tool(name="reply-email")
        async def reply_email(email_id: str, body: str) -> str:
            """Send a plain-text reply to an email, in the same thread."""
            try:
                sent = await module.reply(email_id, body)
            except PlannerError as exc:
                logger.warning("reply-email failed: %s", exc, exc_info=True)
                return f"Failed to send reply: {describe_error(exc)}"
            return "\n".join(
                [
                    "Reply sent successfully!",
                    "",
                    f"Message ID: {sent.message_id}",
                    f"Thread ID: {sent.thread_id}",
                ]
            )

        @mcp.tool(name="search-emails")
        async def search_emails(
            query: str,
            max_results: Annotated[int, Field(ge=1, le=MAX_SEARCH_RESULTS)] | None = None,
        ) -> str:
            """Search emails using Gmail search syntax.

            Supports from:, to:, subject:, has:attachment, is:unread,
            after:YYYY/MM/DD, before:YYYY/MM/DD and plain text.
            """
            try:
                normalized = query.strip() if query else ""
                if not normalized:
                    raise InputValidationError("Search query is required")
                limit = max_results or module._config.search_default_max_results
                if not 1 <= limit <= MAX_SEARCH_RESULTS:
                    raise InputValidationError(
                        f"max_results must be between 1 and {MAX_SEARCH_RESULTS}"
                    )
                emails = await module.search(normalized, max_results=limit)
            except PlannerError as exc:
                logger.warning("search-emails failed: %s", exc, exc_info=True)
                return f"Failed to search emails: {describe_error(exc)}"

            unread = sum(1 for email in emails if email.is_unread)
            return "\n".join(
                [
                    f'Search results for: "{normalized}"',
                    f"{plural(len(emails), 'email')} found ({unread} unread)",
                    f"Date range: {search_date_label(emails, module._tz)}",
                    "",
                    format_email_list(emails, module._tz, show_date=True),
                ]
            )
