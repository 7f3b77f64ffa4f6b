"""Tests for startup credential validation."""

from __future__ import annotations

import logging

import pytest

from dayplanner.credentials import CredentialError, validate_credentials

pytestmark = pytest.mark.unit


def test_all_present(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("PRESENT_VAR", "x")
    validate_credentials(["PRESENT_VAR"], [])


def test_missing_required_are_aggregated(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("MISSING_FIRST_VAR", raising=False)
    monkeypatch.delenv("MISSING_SECOND_VAR", raising=False)

    with pytest.raises(CredentialError) as exc_info:
        validate_credentials(["MISSING_FIRST_VAR", "MISSING_SECOND_VAR"], [])

    message = str(exc_info.value)
    assert "MISSING_FIRST_VAR (required by planner.env)" in message
    assert "MISSING_SECOND_VAR (required by planner.env)" in message


def test_empty_value_counts_as_missing(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("EMPTY_VAR", "")
    with pytest.raises(CredentialError, match="EMPTY_VAR"):
        validate_credentials(["EMPTY_VAR"], [])


def test_missing_optional_only_warns(
    monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
):
    monkeypatch.delenv("OPTIONAL_VAR", raising=False)
    with caplog.at_level(logging.WARNING, logger="dayplanner.credentials"):
        validate_credentials([], ["OPTIONAL_VAR"])
    assert "Optional env var OPTIONAL_VAR is not set" in caplog.text
