"""Abstract base class for planner modules."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo

from pydantic import BaseModel

if TYPE_CHECKING:
    import httpx

    from dayplanner.core.batching import BatchDispatcher
    from dayplanner.core.oauth import GoogleOAuthClient


@dataclass
class PlannerContext:
    """Shared, daemon-lifetime resources handed to every module at startup.

    Attributes:
        name: Planner name from ``[planner].name``.
        timezone: The single process-wide timezone.
        http_client: Shared HTTP client for all Google API calls.
        oauth: Token cache and refresher shared by every provider.
        dispatcher: Background batch runner for bulk operations.
        modules: Modules already started, keyed by name. A module can look
            up any of its declared dependencies here.
    """

    name: str
    timezone: ZoneInfo
    http_client: httpx.AsyncClient
    oauth: GoogleOAuthClient
    dispatcher: BatchDispatcher
    modules: dict[str, Module] = field(default_factory=dict)


class Module(abc.ABC):
    """Abstract base class for planner modules.

    Every module subclasses Module and implements all abstract members.
    Modules add domain-specific MCP tools to the planner but never touch
    daemon infrastructure.
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Unique module name (e.g., 'calendar', 'email')."""
        ...

    @property
    @abc.abstractmethod
    def config_schema(self) -> type[BaseModel]:
        """Pydantic model class for this module's configuration."""
        ...

    @property
    @abc.abstractmethod
    def dependencies(self) -> list[str]:
        """Names of modules this module depends on."""
        ...

    @abc.abstractmethod
    async def register_tools(self, mcp: Any, config: Any) -> None:
        """Register MCP tools on the planner's FastMCP server."""
        ...

    @abc.abstractmethod
    async def on_startup(self, config: Any, context: PlannerContext) -> None:
        """Called in dependency order before tools are registered.

        Parameters
        ----------
        config:
            Module-specific validated configuration object.
        context:
            Shared planner resources. ``context.modules`` already holds
            every dependency of this module.
        """
        ...

    @abc.abstractmethod
    async def on_shutdown(self) -> None:
        """Called during planner shutdown, in reverse dependency order."""
        ...
