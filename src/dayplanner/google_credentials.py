"""Google OAuth credentials shared by the Calendar and Gmail providers.

Credentials come from the process environment:

- ``GOOGLE_OAUTH_CLIENT_ID``
- ``GOOGLE_OAUTH_CLIENT_SECRET``
- ``GOOGLE_REFRESH_TOKEN``
- ``GOOGLE_OAUTH_SCOPES`` (optional, informational)

or, when ``GOOGLE_OAUTH_CREDENTIALS_JSON`` is set, from a JSON blob in the
shape Google's console downloads (fields at the top level or nested under
``installed``/``web``). Secret material is never logged or included in
error messages.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from dayplanner.credentials import CredentialError

logger = logging.getLogger(__name__)

KEY_CLIENT_ID = "GOOGLE_OAUTH_CLIENT_ID"
KEY_CLIENT_SECRET = "GOOGLE_OAUTH_CLIENT_SECRET"
KEY_REFRESH_TOKEN = "GOOGLE_REFRESH_TOKEN"
KEY_SCOPES = "GOOGLE_OAUTH_SCOPES"
KEY_CREDENTIALS_JSON = "GOOGLE_OAUTH_CREDENTIALS_JSON"

REQUIRED_ENV_KEYS = (KEY_CLIENT_ID, KEY_CLIENT_SECRET, KEY_REFRESH_TOKEN)


class GoogleCredentials(BaseModel):
    """Google OAuth credential set used to mint access tokens."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    scope: str | None = None

    @field_validator("client_id", "client_secret", "refresh_token")
    @classmethod
    def _normalize_non_empty(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("must be a non-empty string")
        return normalized

    @field_validator("scope")
    @classmethod
    def _normalize_scope(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    def __repr__(self) -> str:
        return (
            f"GoogleCredentials("
            f"client_id={self.client_id!r}, "
            f"client_secret=<REDACTED>, "
            f"refresh_token=<REDACTED>, "
            f"scope={self.scope!r})"
        )

    __str__ = __repr__

    @classmethod
    def from_json(cls, raw_value: str) -> GoogleCredentials:
        """Parse a credential JSON blob."""
        try:
            payload = json.loads(raw_value)
        except json.JSONDecodeError as exc:
            raise InvalidGoogleCredentialsError(
                f"Credential JSON must be valid JSON: {exc.msg}"
            ) from exc

        if not isinstance(payload, dict):
            raise InvalidGoogleCredentialsError("Credential JSON must decode to a JSON object")

        values = {
            "client_id": _extract_credential_value(payload, "client_id"),
            "client_secret": _extract_credential_value(payload, "client_secret"),
            "refresh_token": _extract_credential_value(payload, "refresh_token"),
        }
        missing = sorted(
            key for key, value in values.items() if not isinstance(value, str) or not value.strip()
        )
        if missing:
            raise MissingGoogleCredentialsError(
                f"Credential JSON is missing required field(s): {', '.join(missing)}"
            )

        scope = _extract_credential_value(payload, "scope")
        return cls(
            client_id=values["client_id"],
            client_secret=values["client_secret"],
            refresh_token=values["refresh_token"],
            scope=scope if isinstance(scope, str) else None,
        )


class MissingGoogleCredentialsError(CredentialError):
    """Raised when Google credentials cannot be resolved.

    The error message is safe to log: it names the missing fields but
    never includes secret values.
    """


class InvalidGoogleCredentialsError(CredentialError):
    """Raised when a credential blob is malformed or unparseable."""


def _extract_credential_value(payload: dict[str, Any], key: str) -> Any:
    if key in payload:
        return payload[key]

    for nested_key in ("installed", "web"):
        nested = payload.get(nested_key)
        if isinstance(nested, dict) and key in nested:
            return nested[key]
    return None


def load_google_credentials(environ: Mapping[str, str] | None = None) -> GoogleCredentials:
    """Resolve Google credentials from the environment.

    ``GOOGLE_OAUTH_CREDENTIALS_JSON`` takes precedence over the individual
    variables when it is set.

    Raises
    ------
    MissingGoogleCredentialsError
        If any of the client id, client secret or refresh token is absent.
    InvalidGoogleCredentialsError
        If the JSON blob cannot be parsed.
    """
    env = os.environ if environ is None else environ

    raw_json = env.get(KEY_CREDENTIALS_JSON, "").strip()
    if raw_json:
        logger.debug("Loading Google credentials from %s", KEY_CREDENTIALS_JSON)
        return GoogleCredentials.from_json(raw_json)

    missing = [key for key in REQUIRED_ENV_KEYS if not env.get(key, "").strip()]
    if missing:
        raise MissingGoogleCredentialsError(
            "Google OAuth credentials are not configured. "
            f"Missing environment variable(s): {', '.join(missing)}. "
            "Run `dayplanner auth-url` and `dayplanner exchange-code` to obtain a refresh token."
        )

    return GoogleCredentials(
        client_id=env[KEY_CLIENT_ID],
        client_secret=env[KEY_CLIENT_SECRET],
        refresh_token=env[KEY_REFRESH_TOKEN],
        scope=env.get(KEY_SCOPES) or None,
    )
