"""Module registry with dependency resolution via topological sort."""

from __future__ import annotations

import logging
from collections import deque

from dayplanner.modules.base import Module

logger = logging.getLogger(__name__)


def default_registry() -> ModuleRegistry:
    """Create a ModuleRegistry pre-populated with the built-in modules."""
    from dayplanner.modules.calendar import CalendarModule
    from dayplanner.modules.email import EmailModule
    from dayplanner.modules.tasks import TasksModule

    registry = ModuleRegistry()
    for module_cls in (CalendarModule, EmailModule, TasksModule):
        registry.register(module_cls)
    return registry


class ModuleRegistry:
    """Registry for planner modules with dependency resolution.

    Modules are registered by class, then instantiated and ordered when the
    planner configuration is loaded. Ordering uses Kahn's algorithm so every
    module starts only after its dependencies.
    """

    def __init__(self) -> None:
        self._modules: dict[str, type[Module]] = {}

    def register(self, module_cls: type[Module]) -> None:
        """Register a module class.

        Raises ``ValueError`` if a module with the same name is already
        registered. The name is read from a temporary instance so the
        instance property stays the single source of truth.
        """
        name = module_cls().name
        if name in self._modules:
            raise ValueError(f"Module '{name}' is already registered")
        self._modules[name] = module_cls

    @property
    def available_modules(self) -> list[str]:
        """List all registered module names (sorted for determinism)."""
        return sorted(self._modules.keys())

    def load_from_config(self, modules_config: dict[str, dict]) -> list[Module]:
        """Instantiate and order the modules named in *modules_config*.

        Returns
        -------
        list[Module]
            Module instances in dependency order (dependencies first).

        Raises
        ------
        ValueError
            If *modules_config* references an unknown module, a module
            depends on a module that is not enabled, or the dependency
            graph contains a cycle.
        """
        for name in modules_config:
            if name not in self._modules:
                raise ValueError(f"Unknown module: '{name}'")

        instances: dict[str, Module] = {name: self._modules[name]() for name in modules_config}
        logger.debug("Enabled modules: %s", sorted(instances))
        return _topological_sort(instances)


def _topological_sort(instances: dict[str, Module]) -> list[Module]:
    """Return *instances* in dependency order using Kahn's algorithm.

    Raises
    ------
    ValueError
        If a cycle is detected or a dependency is missing from *instances*.
    """
    for name, instance in instances.items():
        for dep in instance.dependencies:
            if dep not in instances:
                raise ValueError(
                    f"Module '{name}' depends on '{dep}', which is not in the enabled module set"
                )

    in_degree: dict[str, int] = {name: 0 for name in instances}
    # Edge from dep -> dependent (dep must come first).
    adjacency: dict[str, list[str]] = {name: [] for name in instances}
    for name, instance in instances.items():
        for dep in instance.dependencies:
            adjacency[dep].append(name)
            in_degree[name] += 1

    queue: deque[str] = deque(name for name, degree in in_degree.items() if degree == 0)

    sorted_names: list[str] = []
    while queue:
        # Sort each zero-degree batch for deterministic output.
        batch = sorted(queue)
        queue.clear()
        for node in batch:
            sorted_names.append(node)
            for neighbour in adjacency[node]:
                in_degree[neighbour] -= 1
                if in_degree[neighbour] == 0:
                    queue.append(neighbour)

    if len(sorted_names) != len(instances):
        remaining = set(instances) - set(sorted_names)
        raise ValueError(f"Circular dependency detected among modules: {sorted(remaining)}")

    return [instances[name] for name in sorted_names]
