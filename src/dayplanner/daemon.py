"""Planner daemon: the orchestrator for a single planner instance.

The PlannerDaemon manages the lifecycle of a planner:
1. Load config from dayplanner.toml
2. Initialize telemetry
3. Resolve modules (topological order)
4. Validate module config schemas
5. Validate credentials (env vars and Google OAuth credentials)
6. Create the shared HTTP client, OAuth token cache and batch dispatcher
7. Module on_startup (topological order)
8. Create the FastMCP server and register module tools
9. Start the SSE server (stdio is served by :meth:`PlannerDaemon.serve`)

On startup failure, already-started modules get on_shutdown() called.

Graceful shutdown: (a) stops the MCP server, (b) shuts down modules in
reverse topological order, (c) drains background batches up to the
configured timeout, (d) closes the HTTP client.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from pathlib import Path
from typing import Any

import httpx
import uvicorn
from fastmcp import FastMCP
from pydantic import ConfigDict, ValidationError

from dayplanner.config import PlannerConfig, load_config
from dayplanner.core.batching import BatchDispatcher
from dayplanner.core.oauth import GoogleOAuthClient
from dayplanner.core.telemetry import init_telemetry, tool_span
from dayplanner.credentials import validate_credentials
from dayplanner.google_credentials import GoogleCredentials, load_google_credentials
from dayplanner.modules.base import Module, PlannerContext
from dayplanner.modules.registry import ModuleRegistry, default_registry

logger = logging.getLogger(__name__)

HTTP_TIMEOUT_S = 30.0


class ModuleConfigError(Exception):
    """Raised when a module's configuration fails validation."""


class _SpanWrappingMCP:
    """Proxy around FastMCP that auto-wraps tool handlers with tool_span.

    When modules call ``mcp.tool()`` to register their tools, this proxy
    intercepts the registration, wraps the handler with a
    ``planner.tool.<name>`` span and records the tool name.

    All other attribute access is forwarded to the underlying FastMCP instance.
    """

    def __init__(self, mcp: FastMCP, planner_name: str, *, module_name: str | None = None) -> None:
        self._mcp = mcp
        self._planner_name = planner_name
        self._module_name = module_name or "unknown"
        self.registered_tool_names: list[str] = []

    def tool(self, *args, **kwargs):
        """Return a decorator that wraps the handler with tool_span."""
        declared_name = kwargs.get("name")
        original_decorator = self._mcp.tool(*args, **kwargs)

        def wrapper(fn):  # noqa: ANN001, ANN202
            resolved_tool_name = declared_name or fn.__name__
            self.registered_tool_names.append(resolved_tool_name)

            @functools.wraps(fn)
            async def instrumented(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
                with tool_span(resolved_tool_name, planner_name=self._planner_name):
                    return await fn(*args, **kwargs)

            return original_decorator(instrumented)

        return wrapper

    def __getattr__(self, name: str) -> Any:
        return getattr(self._mcp, name)


class PlannerDaemon:
    """Central orchestrator for a single planner instance."""

    def __init__(
        self,
        config_dir: Path,
        registry: ModuleRegistry | None = None,
        *,
        credentials: GoogleCredentials | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config_dir = config_dir
        self._registry = registry or default_registry()
        self._credentials = credentials
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self.config: PlannerConfig | None = None
        self.mcp: FastMCP | None = None
        self.dispatcher: BatchDispatcher | None = None
        self.tool_names: dict[str, list[str]] = {}
        self._modules: list[Module] = []
        self._module_configs: dict[str, Any] = {}
        self._started_modules: list[Module] = []
        self._server: uvicorn.Server | None = None
        self._server_task: asyncio.Task | None = None

    @property
    def modules(self) -> list[Module]:
        return list(self._modules)

    def prepare(self) -> None:
        """Load config, resolve modules and validate everything that needs no I/O.

        Steps 1-5 of the startup sequence. ``start()`` calls this itself;
        the ``check`` CLI command calls it alone.
        """
        # 1. Load config
        self.config = load_config(self.config_dir)
        logger.info("Loaded config for planner: %s", self.config.name)

        # 2. Initialize telemetry
        init_telemetry(f"planner.{self.config.name}")

        # 3. Resolve modules (topological order)
        try:
            self._modules = self._registry.load_from_config(self.config.modules)
        except ValueError as exc:
            raise ModuleConfigError(str(exc)) from exc

        # 4. Validate module config schemas
        self._module_configs = self._validate_module_configs()

        # 5. Validate credentials
        validate_credentials(self.config.env_required, self.config.env_optional)
        if self._credentials is None:
            self._credentials = load_google_credentials()

    async def start(self) -> None:
        """Execute the full startup sequence.

        Steps execute in order. A failure at any step prevents subsequent steps.
        """
        self.prepare()
        assert self.config is not None

        # 6. Shared resources
        assert self._credentials is not None
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=HTTP_TIMEOUT_S)
        oauth = GoogleOAuthClient(self._credentials, self._http_client)
        self.dispatcher = BatchDispatcher()
        context = PlannerContext(
            name=self.config.name,
            timezone=self.config.tzinfo,
            http_client=self._http_client,
            oauth=oauth,
            dispatcher=self.dispatcher,
        )

        # 7. Call module on_startup (topological order)
        try:
            for mod in self._modules:
                await mod.on_startup(self._module_configs.get(mod.name), context)
                context.modules[mod.name] = mod
                self._started_modules.append(mod)
        except Exception:
            logger.error(
                "Startup failure; cleaning up %d already-started module(s)",
                len(self._started_modules),
            )
            await self._shutdown_modules()
            await self._close_http_client()
            raise

        # 8. Create FastMCP and register module tools
        self.mcp = await self.build_mcp()

        # 9. Start the SSE server; stdio is served from serve()
        if self.config.server.transport == "sse":
            await self._start_sse_server()

        logger.info(
            "Planner %s started (transport=%s, modules=%s)",
            self.config.name,
            self.config.server.transport,
            ", ".join(mod.name for mod in self._modules) or "(none)",
        )

    async def build_mcp(self) -> FastMCP:
        """Create a FastMCP server carrying every module's tools."""
        assert self.config is not None
        mcp = FastMCP(self.config.name)
        self.tool_names = {}
        for mod in self._modules:
            wrapped_mcp = _SpanWrappingMCP(mcp, self.config.name, module_name=mod.name)
            await mod.register_tools(wrapped_mcp, self._module_configs.get(mod.name))
            self.tool_names[mod.name] = wrapped_mcp.registered_tool_names
        return mcp

    async def serve(self, shutdown_event: asyncio.Event) -> None:
        """Run until *shutdown_event* is set, or until stdin closes on stdio."""
        assert self.config is not None and self.mcp is not None
        if self.config.server.transport != "stdio":
            await shutdown_event.wait()
            return

        stdio_task = asyncio.create_task(self.mcp.run_stdio_async(), name="mcp-stdio")
        stop_task = asyncio.create_task(shutdown_event.wait(), name="shutdown-wait")
        done, pending = await asyncio.wait(
            {stdio_task, stop_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        if stdio_task in done and not stdio_task.cancelled():
            exc = stdio_task.exception()
            if exc is not None:
                raise exc

    async def _start_sse_server(self) -> None:
        """Start the FastMCP SSE server as a background asyncio task."""
        assert self.config is not None and self.mcp is not None
        app = self.mcp.http_app(transport="sse")
        config = uvicorn.Config(
            app,
            host=self.config.server.host,
            port=self.config.server.port,
            log_level="info",
            timeout_graceful_shutdown=0,
        )
        self._server = uvicorn.Server(config)
        self._server_task = asyncio.create_task(self._server.serve(), name="mcp-sse")

    def _validate_module_configs(self) -> dict[str, Any]:
        """Validate each module's raw config dict against its config_schema.

        Extra fields not declared in the schema are rejected.

        Raises
        ------
        ModuleConfigError
            If validation fails (extra unknown fields or type mismatches).
        """
        assert self.config is not None
        validated: dict[str, Any] = {}
        for mod in self._modules:
            raw_config = self.config.modules.get(mod.name, {})
            schema = mod.config_schema
            effective_schema = schema
            if schema.model_config.get("extra") is None:
                effective_schema = type(
                    f"{schema.__name__}Strict",
                    (schema,),
                    {"model_config": ConfigDict(extra="forbid")},
                )
            try:
                validated[mod.name] = effective_schema.model_validate(raw_config)
            except ValidationError as exc:
                raise ModuleConfigError(
                    f"Configuration validation failed for module '{mod.name}': {exc}"
                ) from exc
        return validated

    async def _shutdown_modules(self) -> None:
        for mod in reversed(self._started_modules):
            try:
                await mod.on_shutdown()
            except Exception:
                logger.exception("Error during shutdown of module: %s", mod.name)
        self._started_modules = []

    async def _close_http_client(self) -> None:
        if self._http_client is not None and self._owns_http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def shutdown(self) -> None:
        """Graceful shutdown.

        1. Stop the SSE server
        2. Module on_shutdown in reverse topological order
        3. Drain background batches
        4. Close the HTTP client
        """
        logger.info(
            "Shutting down planner: %s",
            self.config.name if self.config else "unknown",
        )

        # 1. Stop MCP server
        if self._server is not None:
            self._server.should_exit = True
        if self._server_task is not None:
            try:
                await self._server_task
            except Exception:
                logger.exception("Error while stopping MCP server")
            self._server_task = None
            self._server = None

        # 2. Module shutdown in reverse topological order
        await self._shutdown_modules()

        # 3. Background batches still hold provider calls on the shared client.
        if self.dispatcher is not None:
            timeout = self.config.shutdown_timeout_s if self.config else 10.0
            await self.dispatcher.drain(timeout=timeout)

        # 4. Close the HTTP client
        await self._close_http_client()

        logger.info("Planner shutdown complete")
