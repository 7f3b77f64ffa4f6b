"""Planner configuration loading and validation.

Reads ``dayplanner.toml`` from a config directory, resolves ``${VAR}``
references from the environment, and returns a validated
:class:`PlannerConfig` dataclass.

Example::

    [planner]
    name = "dayplanner"
    timezone = "America/Sao_Paulo"

    [planner.server]
    transport = "sse"
    host = "127.0.0.1"
    port = 40300

    [planner.logging]
    level = "INFO"
    format = "json"

    [planner.env]
    required = ["GOOGLE_OAUTH_CLIENT_ID"]

    [modules.calendar]
    calendar_id = "primary"

    [modules.email]

    [modules.tasks]
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

CONFIG_FILENAME = "dayplanner.toml"
DEFAULT_TIMEZONE = "UTC"
VALID_TRANSPORTS = ("stdio", "sse")

# Pattern matching ${VAR_NAME}: alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when planner configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [planner.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class ServerConfig:
    """MCP transport configuration from [planner.server] section."""

    transport: str = "stdio"
    host: str = "127.0.0.1"
    port: int | None = None


@dataclass
class PlannerConfig:
    """Parsed and validated planner configuration."""

    name: str
    timezone: str = DEFAULT_TIMEZONE
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    modules: dict[str, dict] = field(default_factory=dict)
    env_required: list[str] = field(default_factory=list)
    env_optional: list[str] = field(default_factory=list)
    shutdown_timeout_s: float = 10.0

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _validate_timezone(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError("planner.timezone must be a non-empty IANA timezone name")
    normalized = value.strip()
    try:
        ZoneInfo(normalized)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Unknown planner.timezone: {normalized!r}") from exc
    return normalized


def _parse_server(planner_section: dict) -> ServerConfig:
    server_section = planner_section.get("server", {})
    if not isinstance(server_section, dict):
        raise ConfigError("[planner.server] must be a table")

    transport = str(server_section.get("transport", "stdio")).strip().lower()
    if transport not in VALID_TRANSPORTS:
        raise ConfigError(
            f"Invalid planner.server.transport: {transport!r}. Expected 'stdio' or 'sse'."
        )

    host = str(server_section.get("host", "127.0.0.1")).strip() or "127.0.0.1"

    port_raw = server_section.get("port")
    port: int | None = None
    if port_raw is not None:
        try:
            port = int(port_raw)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid planner.server.port: {port_raw!r}") from exc
        if not 0 < port < 65536:
            raise ConfigError(f"Invalid planner.server.port: {port!r}. Must be 1-65535.")

    if transport == "sse" and port is None:
        raise ConfigError("planner.server.port is required when transport is 'sse'")

    return ServerConfig(transport=transport, host=host, port=port)


def _parse_logging(planner_section: dict) -> LoggingConfig:
    logging_section = planner_section.get("logging", {})
    log_level = str(logging_section.get("level", "INFO")).upper()
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid planner.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    return LoggingConfig(
        level=log_level,
        format=log_format,
        log_root=logging_section.get("log_root"),
    )


def load_config(config_dir: Path) -> PlannerConfig:
    """Load and validate a dayplanner.toml from *config_dir*.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    toml_path = config_dir / CONFIG_FILENAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    data = resolve_env_vars(data)

    # --- [planner] section (required) ---
    planner_section = data.get("planner")
    if not isinstance(planner_section, dict):
        raise ConfigError("Missing [planner] section in config")

    name = planner_section.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ConfigError("Missing required field: planner.name")

    timezone = _validate_timezone(planner_section.get("timezone", DEFAULT_TIMEZONE))

    # --- [planner.env] sub-section ---
    env_section = planner_section.get("env", {})
    env_required = list(env_section.get("required", []))
    env_optional = list(env_section.get("optional", []))

    # --- [planner.shutdown] sub-section ---
    shutdown_section = planner_section.get("shutdown", {})
    shutdown_timeout_s = float(shutdown_section.get("timeout_s", 10.0))

    # --- [modules.*] sections ---
    modules: dict[str, dict] = {}
    raw_modules = data.get("modules", {})
    if not isinstance(raw_modules, dict):
        raise ConfigError("[modules] must be a table of module sections")
    for mod_name, mod_cfg in raw_modules.items():
        modules[mod_name] = dict(mod_cfg) if isinstance(mod_cfg, dict) else {}

    return PlannerConfig(
        name=name.strip(),
        timezone=timezone,
        server=_parse_server(planner_section),
        logging=_parse_logging(planner_section),
        modules=modules,
        env_required=env_required,
        env_optional=env_optional,
        shutdown_timeout_s=shutdown_timeout_s,
    )
