"""Credential validation for planner startup.

Checks that all required environment variables from ``[planner.env]`` are
present, and warns about missing optional vars. Reports all missing
variables in a single aggregated error.
"""

from __future__ import annotations

import logging
import os

logger = logging.getLogger(__name__)


class CredentialError(Exception):
    """Raised when required credentials are missing."""


def validate_credentials(
    env_required: list[str],
    env_optional: list[str],
) -> None:
    """Validate that all required environment variables are set.

    Parameters
    ----------
    env_required:
        Required env vars from ``[planner.env].required``.
    env_optional:
        Optional env vars from ``[planner.env].optional`` (warn if missing).

    Raises
    ------
    CredentialError
        If any required env vars are missing, with one aggregated report
        naming each missing variable.
    """
    missing: list[tuple[str, str]] = []

    for var in env_required:
        if not os.environ.get(var):
            missing.append((var, "planner.env"))

    for var in env_optional:
        if not os.environ.get(var):
            logger.warning("Optional env var %s is not set", var)

    if missing:
        lines = [f"  - {var} (required by {source})" for var, source in missing]
        msg = "Missing required environment variables:\n" + "\n".join(lines)
        raise CredentialError(msg)
