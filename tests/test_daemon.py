"""Tests for the planner daemon lifecycle.

Covers:
- prepare(): config loading, module resolution and module config validation
- start(): module startup order, shared context, tool registration
- Startup failure cleanup of already-started modules
- shutdown(): reverse-order module shutdown and background batch draining
- _SpanWrappingMCP tool instrumentation
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import httpx
import pytest
from pydantic import BaseModel

from dayplanner.daemon import ModuleConfigError, PlannerDaemon, _SpanWrappingMCP
from dayplanner.google_credentials import (
    KEY_CLIENT_ID,
    KEY_CLIENT_SECRET,
    KEY_CREDENTIALS_JSON,
    KEY_REFRESH_TOKEN,
    GoogleCredentials,
    MissingGoogleCredentialsError,
)
from dayplanner.modules.base import Module, PlannerContext
from dayplanner.modules.registry import ModuleRegistry

pytestmark = pytest.mark.unit

CREDS = GoogleCredentials(client_id="cid", client_secret="secret", refresh_token="rtok")

BUILTIN_TOML = """\
[planner]
name = "test-planner"
timezone = "America/Sao_Paulo"

[modules.calendar]
calendar_id = "primary"

[modules.email]

[modules.tasks]
"""


def _write_toml(tmp_path: Path, content: str) -> Path:
    (tmp_path / "dayplanner.toml").write_text(content)
    return tmp_path


@pytest.fixture(autouse=True)
def _no_otel(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)


@pytest.fixture()
def http_client() -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError(f"unexpected request to {request.url}")

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# Recording modules
# ---------------------------------------------------------------------------


class EmptyConfig(BaseModel):
    pass


def _recording_module(
    name: str,
    events: list[str],
    *,
    deps: list[str] | None = None,
    fail_on_startup: bool = False,
) -> type[Module]:
    _deps = deps or []

    class RecordingModule(Module):
        @property
        def name(self) -> str:
            return name

        @property
        def config_schema(self) -> type[BaseModel]:
            return EmptyConfig

        @property
        def dependencies(self) -> list[str]:
            return list(_deps)

        async def register_tools(self, mcp: Any, config: Any) -> None:
            @mcp.tool(name=f"{name}-ping")
            async def ping() -> str:
                return "pong"

        async def on_startup(self, config: Any, context: PlannerContext) -> None:
            if fail_on_startup:
                raise RuntimeError(f"{name} failed")
            missing = [dep for dep in _deps if dep not in context.modules]
            assert not missing, f"{name} started before {missing}"
            events.append(f"start:{name}")

        async def on_shutdown(self) -> None:
            events.append(f"stop:{name}")

    return RecordingModule


def _toml_for(*names: str) -> str:
    sections = "\n".join(f"[modules.{module_name}]" for module_name in names)
    return f'[planner]\nname = "rec"\n\n{sections}\n'


# ---------------------------------------------------------------------------
# prepare()
# ---------------------------------------------------------------------------


class TestPrepare:
    def test_builtin_modules_resolve_in_dependency_order(self, tmp_path: Path):
        daemon = PlannerDaemon(_write_toml(tmp_path, BUILTIN_TOML), credentials=CREDS)
        daemon.prepare()
        assert [mod.name for mod in daemon.modules] == ["calendar", "email", "tasks"]

    def test_unknown_module_is_a_module_config_error(self, tmp_path: Path):
        daemon = PlannerDaemon(_write_toml(tmp_path, _toml_for("weather")))
        with pytest.raises(ModuleConfigError, match="Unknown module"):
            daemon.prepare()

    def test_invalid_module_config(self, tmp_path: Path):
        toml = BUILTIN_TOML.replace('calendar_id = "primary"', "list_limit = 0")
        daemon = PlannerDaemon(_write_toml(tmp_path, toml))
        with pytest.raises(ModuleConfigError, match="module 'calendar'"):
            daemon.prepare()

    def test_extra_fields_are_rejected_for_lenient_schemas(self, tmp_path: Path):
        events: list[str] = []
        registry = ModuleRegistry()
        registry.register(_recording_module("alpha", events))
        toml = '[planner]\nname = "rec"\n\n[modules.alpha]\nunexpected = 1\n'
        daemon = PlannerDaemon(_write_toml(tmp_path, toml), registry)
        with pytest.raises(ModuleConfigError, match="alpha"):
            daemon.prepare()

    def test_missing_google_credentials_fail_prepare(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ):
        for key in (KEY_CLIENT_ID, KEY_CLIENT_SECRET, KEY_REFRESH_TOKEN, KEY_CREDENTIALS_JSON):
            monkeypatch.delenv(key, raising=False)
        daemon = PlannerDaemon(_write_toml(tmp_path, BUILTIN_TOML))
        with pytest.raises(MissingGoogleCredentialsError, match=KEY_REFRESH_TOKEN):
            daemon.prepare()

    def test_google_credentials_load_from_environment(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ):
        monkeypatch.delenv(KEY_CREDENTIALS_JSON, raising=False)
        monkeypatch.setenv(KEY_CLIENT_ID, "env-cid")
        monkeypatch.setenv(KEY_CLIENT_SECRET, "env-secret")
        monkeypatch.setenv(KEY_REFRESH_TOKEN, "env-rtok")
        daemon = PlannerDaemon(_write_toml(tmp_path, BUILTIN_TOML))
        daemon.prepare()
        assert daemon._credentials is not None
        assert daemon._credentials.client_id == "env-cid"

    async def test_build_mcp_lists_builtin_tools(self, tmp_path: Path):
        daemon = PlannerDaemon(_write_toml(tmp_path, BUILTIN_TOML), credentials=CREDS)
        daemon.prepare()
        await daemon.build_mcp()
        assert daemon.tool_names["tasks"] == ["create-task", "get-tasks", "complete-task"]
        assert "trash-emails" in daemon.tool_names["email"]
        assert "get-agenda" in daemon.tool_names["calendar"]


# ---------------------------------------------------------------------------
# start() / shutdown()
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_start_and_shutdown_order(self, tmp_path: Path, http_client: httpx.AsyncClient):
        events: list[str] = []
        registry = ModuleRegistry()
        registry.register(_recording_module("alpha", events))
        registry.register(_recording_module("beta", events, deps=["alpha"]))
        daemon = PlannerDaemon(
            _write_toml(tmp_path, _toml_for("beta", "alpha")),
            registry,
            credentials=CREDS,
            http_client=http_client,
        )

        await daemon.start()
        assert events == ["start:alpha", "start:beta"]
        assert daemon.tool_names == {"alpha": ["alpha-ping"], "beta": ["beta-ping"]}
        assert daemon.mcp is not None

        await daemon.shutdown()
        assert events[2:] == ["stop:beta", "stop:alpha"]
        # Injected clients belong to the caller.
        assert http_client.is_closed is False

    async def test_builtin_modules_start_without_network(
        self, tmp_path: Path, http_client: httpx.AsyncClient
    ):
        daemon = PlannerDaemon(
            _write_toml(tmp_path, BUILTIN_TOML), credentials=CREDS, http_client=http_client
        )
        await daemon.start()
        try:
            assert daemon.dispatcher is not None
            assert daemon.config is not None
            assert daemon.config.tzinfo.key == "America/Sao_Paulo"
        finally:
            await daemon.shutdown()

    async def test_startup_failure_shuts_down_started_modules(
        self, tmp_path: Path, http_client: httpx.AsyncClient
    ):
        events: list[str] = []
        registry = ModuleRegistry()
        registry.register(_recording_module("alpha", events))
        registry.register(_recording_module("beta", events, deps=["alpha"], fail_on_startup=True))
        daemon = PlannerDaemon(
            _write_toml(tmp_path, _toml_for("alpha", "beta")),
            registry,
            credentials=CREDS,
            http_client=http_client,
        )

        with pytest.raises(RuntimeError, match="beta failed"):
            await daemon.start()

        assert events == ["start:alpha", "stop:alpha"]
        assert daemon.mcp is None

    async def test_shutdown_drains_background_batches(
        self, tmp_path: Path, http_client: httpx.AsyncClient
    ):
        daemon = PlannerDaemon(
            _write_toml(tmp_path, _toml_for()),
            ModuleRegistry(),
            credentials=CREDS,
            http_client=http_client,
        )
        await daemon.start()
        assert daemon.dispatcher is not None

        done: list[str] = []

        async def operation(item: str) -> None:
            await asyncio.sleep(0)
            done.append(item)

        daemon.dispatcher.dispatch(["a", "b"], operation)
        await daemon.shutdown()

        assert sorted(done) == ["a", "b"]
        assert daemon.dispatcher.pending == 0

    async def test_serve_returns_when_shutdown_is_requested(
        self, tmp_path: Path, http_client: httpx.AsyncClient
    ):
        daemon = PlannerDaemon(
            _write_toml(tmp_path, _toml_for()),
            ModuleRegistry(),
            credentials=CREDS,
            http_client=http_client,
        )
        await daemon.start()
        stdio_started = asyncio.Event()

        async def fake_stdio() -> None:
            stdio_started.set()
            await asyncio.Event().wait()

        daemon.mcp.run_stdio_async = fake_stdio
        shutdown_event = asyncio.Event()
        serve_task = asyncio.create_task(daemon.serve(shutdown_event))
        await stdio_started.wait()
        shutdown_event.set()

        await asyncio.wait_for(serve_task, timeout=5)
        await daemon.shutdown()


# ---------------------------------------------------------------------------
# _SpanWrappingMCP
# ---------------------------------------------------------------------------


class _RecordingMCP:
    def __init__(self) -> None:
        self.registered: dict[str, Any] = {}

    def tool(self, *args, name: str | None = None, **kwargs):
        def decorator(fn):
            self.registered[name or fn.__name__] = fn
            return fn

        return decorator


class TestSpanWrappingMCP:
    async def test_wraps_handler_in_tool_span(self, monkeypatch: pytest.MonkeyPatch):
        spans: list[tuple[str, str]] = []

        class _FakeSpan:
            def __init__(self, tool_name: str, *, planner_name: str) -> None:
                spans.append((tool_name, planner_name))

            def __enter__(self):
                return self

            def __exit__(self, *exc_info):
                return None

        monkeypatch.setattr("dayplanner.daemon.tool_span", _FakeSpan)
        inner = _RecordingMCP()
        proxy = _SpanWrappingMCP(inner, "planner-x", module_name="calendar")

        @proxy.tool(name="get-agenda")
        async def get_agenda(preset: str | None = None) -> str:
            """Docstring survives."""
            return f"agenda:{preset}"

        handler = inner.registered["get-agenda"]
        assert await handler(preset="week") == "agenda:week"
        assert spans == [("get-agenda", "planner-x")]
        assert proxy.registered_tool_names == ["get-agenda"]
        assert handler.__doc__ == "Docstring survives."

    def test_falls_back_to_function_name(self):
        inner = _RecordingMCP()
        proxy = _SpanWrappingMCP(inner, "planner-x")

        @proxy.tool()
        async def plain_tool() -> str:
            return "x"

        assert proxy.registered_tool_names == ["plain_tool"]

    def test_forwards_other_attributes(self):
        inner = _RecordingMCP()
        inner.name = "inner-name"
        assert _SpanWrappingMCP(inner, "planner-x").name == "inner-name"
