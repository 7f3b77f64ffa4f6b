"""Error taxonomy shared by the planner core, providers and tools.

Tools catch :class:`PlannerError` and render it as a plain-text failure
message; nothing in this hierarchy crosses the MCP protocol boundary.
"""

from __future__ import annotations

from pydantic import ValidationError


class PlannerError(RuntimeError):
    """Base class for all planner failures surfaced to tool callers."""


class InputValidationError(PlannerError, ValueError):
    """Raised for missing ids, inverted event ranges, empty queries and similar input faults."""


class AuthError(PlannerError):
    """Raised when an OAuth access token cannot be obtained or refreshed."""


class NoSlotAvailableError(PlannerError):
    """Raised when the free-slot finder exhausts every grid position in its window."""


class RemoteServiceError(PlannerError):
    """Raised when a Google Calendar or Gmail API request fails.

    ``status_code`` is ``None`` when the request never produced a response
    (connection reset, DNS failure, timeout).
    """

    def __init__(
        self,
        *,
        status_code: int | None,
        message: str,
        service: str = "Google API",
    ) -> None:
        self.status_code = status_code
        self.message = message
        self.service = service
        if status_code is None:
            super().__init__(f"{service} request failed: {message}")
        else:
            super().__init__(f"{service} request failed ({status_code}): {message}")


def describe_error(exc: Exception) -> str:
    """Return a single-line, user-facing description of *exc*."""
    if isinstance(exc, ValidationError):
        parts = []
        for error in exc.errors():
            location = ".".join(str(item) for item in error.get("loc", ())) or "input"
            parts.append(f"{location}: {error.get('msg', 'invalid value')}")
        return "; ".join(parts) or "invalid input"
    message = " ".join(str(exc).split())
    return message or type(exc).__name__
