"""Authenticated JSON requests against Google REST APIs.

Both the Calendar and Gmail providers go through :class:`GoogleApiClient`.
A 401 response triggers exactly one forced token refresh and a replay of the
request; every other failure is raised as :class:`RemoteServiceError`
without retry.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import httpx

from dayplanner.errors import RemoteServiceError

if TYPE_CHECKING:
    from dayplanner.core.oauth import GoogleOAuthClient

logger = logging.getLogger(__name__)

_CREDENTIAL_KEYS = r"client_secret|refresh_token|access_token|token"


class GoogleApiClient:
    """Bearer-authenticated JSON client bound to one Google API base URL."""

    def __init__(
        self,
        oauth: GoogleOAuthClient,
        http_client: httpx.AsyncClient,
        *,
        base_url: str,
        service: str,
    ) -> None:
        self._oauth = oauth
        self._http_client = http_client
        self._base_url = base_url.rstrip("/")
        self.service = service

    async def request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | list[tuple[str, Any]] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(
            method=method,
            path=path,
            params=params,
            json_body=json_body,
        )

        if response.status_code < 200 or response.status_code >= 300:
            raise RemoteServiceError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
                service=self.service,
            )

        if response.status_code == 204 or not response.content:
            return {}

        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteServiceError(
                status_code=response.status_code,
                message="returned invalid JSON for a successful response",
                service=self.service,
            ) from exc

        if not isinstance(payload, dict):
            raise RemoteServiceError(
                status_code=response.status_code,
                message="returned an unexpected JSON payload shape",
                service=self.service,
            )
        return payload

    async def _request_with_bearer(
        self,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | list[tuple[str, Any]] | None,
        json_body: dict[str, Any] | None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{self._base_url}{normalized_path}"

        response = await self._request_once(
            method=method,
            url=url,
            params=params,
            json_body=json_body,
            force_refresh=False,
        )
        if response.status_code == 401:
            logger.info("%s rejected the access token; refreshing once", self.service)
            response = await self._request_once(
                method=method,
                url=url,
                params=params,
                json_body=json_body,
                force_refresh=True,
            )
        return response

    async def _request_once(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | list[tuple[str, Any]] | None,
        json_body: dict[str, Any] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._oauth.get_access_token(force_refresh=force_refresh)
        headers = {"Authorization": f"Bearer {access_token}"}
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise RemoteServiceError(
                status_code=None,
                message=redact_credential_values(str(exc)) or type(exc).__name__,
                service=self.service,
            ) from exc


def safe_google_error_message(response: httpx.Response) -> str:
    """Extract a short, credential-free error message from a Google error reply."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    message: str | None = None
    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            candidate = error_payload.get("message")
            if isinstance(candidate, str) and candidate.strip():
                message = candidate
        elif isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            message = (
                f"{error_payload}: {description}"
                if isinstance(description, str) and description.strip()
                else error_payload
            )

    if message is None:
        message = response.text.strip() or "Request failed without an error payload"
    return " ".join(redact_credential_values(message).split())[:200]


def redact_credential_values(message: str) -> str:
    """Mask ``token=...``/``"token": "..."`` style credential values in *message*."""
    redacted = re.sub(
        rf"(?i)\b({_CREDENTIAL_KEYS})\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        rf"""(?i)(['"]?(?:{_CREDENTIAL_KEYS})['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    return redacted


def google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
