"""Google OAuth access-token management.

One :class:`GoogleOAuthClient` is created per daemon and handed to every
provider that talks to Google. It caches the current access token and
refreshes it lazily, at most once at a time, whenever the remaining lifetime
drops below :data:`TOKEN_EXPIRY_BUFFER_SECONDS`.

The module also carries the two bootstrap helpers used by the CLI to obtain
a refresh token in the first place: building the consent URL and exchanging
the authorization code.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse

import httpx

from dayplanner.core.google_api import safe_google_error_message
from dayplanner.errors import AuthError
from dayplanner.google_credentials import GoogleCredentials

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_REDIRECT_URI = "http://localhost:8080/oauth/callback"
DEFAULT_SCOPES = (
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/gmail.modify",
)

TOKEN_EXPIRY_BUFFER_SECONDS = 60
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


class TokenExchangeError(AuthError):
    """Raised when an authorization code cannot be exchanged for tokens."""


def _utcnow() -> datetime:
    return datetime.now(UTC)


class GoogleOAuthClient:
    """Refresh-token OAuth helper with single-flight access-token caching."""

    def __init__(
        self,
        credentials: GoogleCredentials,
        http_client: httpx.AsyncClient,
        *,
        expiry_buffer_seconds: int = TOKEN_EXPIRY_BUFFER_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client
        self._expiry_buffer = timedelta(seconds=expiry_buffer_seconds)
        self._clock = clock
        self._access_token: str | None = None
        self._access_token_expires_at: datetime | None = None
        self._refresh_lock = asyncio.Lock()
        self.refresh_count = 0

    async def ensure_valid_token(self) -> None:
        """Make sure a usable access token is cached, refreshing if needed."""
        await self.get_access_token()

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh and self._token_is_fresh():
            assert self._access_token is not None
            return self._access_token

        async with self._refresh_lock:
            # Another waiter may have refreshed while this one was queued.
            if not force_refresh and self._token_is_fresh():
                assert self._access_token is not None
                return self._access_token

            await self._refresh_access_token()
            assert self._access_token is not None
            return self._access_token

    def _token_is_fresh(self) -> bool:
        if self._access_token is None or self._access_token_expires_at is None:
            return False
        return self._clock() + self._expiry_buffer < self._access_token_expires_at

    async def _refresh_access_token(self) -> None:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                    "refresh_token": self._credentials.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise AuthError(f"Google OAuth token refresh request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise AuthError(
                "Google OAuth token refresh failed "
                f"({response.status_code}): {safe_google_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthError("Google OAuth token endpoint returned invalid JSON") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise AuthError("Google OAuth token response is missing a non-empty access_token")

        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        self._access_token = access_token.strip()
        self._access_token_expires_at = self._clock() + timedelta(seconds=expires_in)
        self.refresh_count += 1
        logger.debug("Refreshed Google access token (expires_in=%ds)", expires_in)


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_TOKEN_LIFETIME_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_TOKEN_LIFETIME_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or DEFAULT_TOKEN_LIFETIME_SECONDS
    return DEFAULT_TOKEN_LIFETIME_SECONDS


# ---------------------------------------------------------------------------
# Refresh-token bootstrap
# ---------------------------------------------------------------------------


def build_authorization_url(
    client_id: str,
    *,
    redirect_uri: str = DEFAULT_REDIRECT_URI,
    scopes: tuple[str, ...] | list[str] = DEFAULT_SCOPES,
) -> str:
    """Build a consent URL that always yields a refresh token on approval."""
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(scopes),
        "access_type": "offline",
        "prompt": "consent",
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


def extract_authorization_code(value: str) -> str:
    """Accept either a bare authorization code or the full redirect URL."""
    normalized = value.strip()
    if "://" not in normalized:
        return normalized
    query = parse_qs(urlparse(normalized).query)
    if "error" in query:
        raise TokenExchangeError(f"Authorization was not granted: {query['error'][0]}")
    codes = query.get("code")
    if not codes or not codes[0].strip():
        raise TokenExchangeError("Redirect URL does not contain an authorization code")
    return codes[0].strip()


async def exchange_code_for_tokens(
    *,
    code: str,
    client_id: str,
    client_secret: str,
    redirect_uri: str = DEFAULT_REDIRECT_URI,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Exchange an authorization code for OAuth tokens.

    Returns
    -------
    dict
        The token response from Google (``access_token``, ``refresh_token``,
        ``expires_in``, ``scope``...).

    Raises
    ------
    TokenExchangeError
        If the exchange fails or the reply is not a JSON object.
    """
    payload = {
        "code": code,
        "client_id": client_id,
        "client_secret": client_secret,
        "redirect_uri": redirect_uri,
        "grant_type": "authorization_code",
    }

    try:
        if http_client is not None:
            response = await http_client.post(GOOGLE_OAUTH_TOKEN_URL, data=payload)
        else:
            async with httpx.AsyncClient(timeout=15.0) as client:
                response = await client.post(GOOGLE_OAUTH_TOKEN_URL, data=payload)
    except httpx.TransportError as exc:
        raise TokenExchangeError(f"Network error during token exchange: {exc}") from exc

    if response.status_code != 200:
        # The body can echo the code back, so only the status is reported.
        raise TokenExchangeError(f"Token endpoint returned HTTP {response.status_code}")

    try:
        tokens = response.json()
    except ValueError as exc:
        raise TokenExchangeError(f"Invalid JSON in token response: {exc}") from exc
    if not isinstance(tokens, dict):
        raise TokenExchangeError("Token endpoint returned an unexpected payload")
    return tokens
