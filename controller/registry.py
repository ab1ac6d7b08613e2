"""Service type registry and static dependency graph."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any

from controller.contracts import RuntimeHandle, ServiceKind
from core.config import ToolConfig
from core.ps import ProcessProbe

if TYPE_CHECKING:
    from controller.service import Service

logger = logging.getLogger(__name__)

ORDERED_SERVICE_TYPES: tuple[ServiceKind, ...] = (
    "ganache",
    "ipfs",
    "docker",
    "mongo",
    "redis",
    "market",
    "sms",
    "resultproxy",
    "blockchainadapter",
    "core",
    "worker",
)

CHAIN_SERVICE_TYPES: tuple[ServiceKind, ...] = ("sms", "resultproxy", "blockchainadapter", "core")

# What each type requires to be running first (ordering only)
RUN_DEPENDENCIES: dict[ServiceKind, frozenset[ServiceKind]] = {
    "ganache": frozenset(),
    "ipfs": frozenset(),
    "docker": frozenset(),
    "mongo": frozenset(),
    "redis": frozenset(),
    "market": frozenset({"ganache", "mongo", "redis"}),
    "sms": frozenset({"ganache"}),
    "resultproxy": frozenset({"ganache", "mongo", "ipfs"}),
    "blockchainadapter": frozenset({"ganache", "mongo", "market"}),
    "core": frozenset({"ganache", "mongo", "resultproxy", "sms", "blockchainadapter"}),
    "worker": frozenset({"docker", "core"}),
}


def type_index(kind: str) -> int:
    """Position of ``kind`` in :data:`ORDERED_SERVICE_TYPES`.

    Raises:
        KeyError: If the type is unknown
    """
    try:
        return ORDERED_SERVICE_TYPES.index(kind)  # type: ignore[arg-type]
    except ValueError:
        raise KeyError(f"Service type '{kind}' not found in registry") from None


class DependencyGraph:
    """Static per-type dependency sets.

    Attributes:
        dependencies: Mapping type -> types required first
    """

    def __init__(self, dependencies: Mapping[str, Iterable[str]] | None = None) -> None:
        source = RUN_DEPENDENCIES if dependencies is None else dependencies
        self.dependencies: dict[str, frozenset[str]] = {
            name: frozenset(deps) for name, deps in source.items()
        }

    def _check(self, name: str) -> None:
        if name not in self.dependencies:
            raise KeyError(f"Service type '{name}' not found in registry")

    def dependencies_of(self, name: str, transitive: bool = False) -> set[str]:
        """Direct (or transitive) dependencies of ``name``.

        Raises:
            KeyError: If the type is unknown
        """
        self._check(name)
        if not transitive:
            return set(self.dependencies[name])
        seen: set[str] = set()
        stack = list(self.dependencies[name])
        while stack:
            dep = stack.pop()
            if dep in seen:
                continue
            seen.add(dep)
            stack.extend(self.dependencies.get(dep, ()))
        return seen

    def dependents_of(self, name: str) -> set[str]:
        """Types that directly depend on ``name``."""
        self._check(name)
        return {other for other, deps in self.dependencies.items() if name in deps}

    def rank(self, name: str) -> tuple[int, str]:
        if name in ORDERED_SERVICE_TYPES:
            return (ORDERED_SERVICE_TYPES.index(name), name)  # type: ignore[arg-type]
        return (len(ORDERED_SERVICE_TYPES), name)

    def start_order(self, names: Iterable[str]) -> list[str]:
        """Topologically sorted start order.

        Uses Kahn's algorithm; ties are broken by the canonical type order
        so the result is deterministic.

        Args:
            names: Types to order (dependencies outside the set are ignored)

        Returns:
            Types in start order

        Raises:
            KeyError: If any type is unknown
            ValueError: If circular dependency detected
        """
        requested = list(dict.fromkeys(names))
        for name in requested:
            self._check(name)

        in_degree: dict[str, int] = {name: 0 for name in requested}
        graph: dict[str, list[str]] = {name: [] for name in requested}
        for name in requested:
            for dep in self.dependencies[name]:
                if dep in in_degree:
                    graph[dep].append(name)
                    in_degree[name] += 1

        queue = [name for name in requested if in_degree[name] == 0]
        result: list[str] = []
        while queue:
            queue.sort(key=self.rank)
            current = queue.pop(0)
            result.append(current)
            for neighbor in graph[current]:
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    queue.append(neighbor)

        if len(result) != len(requested):
            raise ValueError("Circular dependency detected in services")
        return result

    def stop_order(self, names: Iterable[str]) -> list[str]:
        """Reverse of :meth:`start_order`: dependents stop first."""
        return list(reversed(self.start_order(names)))


class ServiceRegistry:
    """Maps service type names to service classes.

    Attributes:
        graph: Dependency graph
        classes: Registered service classes by type
    """

    def __init__(self, graph: DependencyGraph | None = None) -> None:
        self.graph = graph or DependencyGraph()
        self.classes: dict[str, type[Service]] = {}

    def register(self, service_class: type[Service]) -> None:
        kind = service_class.kind
        if kind in self.classes and self.classes[kind] is not service_class:
            raise ValueError(f"Service type '{kind}' already registered")
        self.classes[kind] = service_class

    def get_service(self, name: str) -> type[Service]:
        """Get the service class registered under ``name``.

        Raises:
            KeyError: If no class is registered
        """
        if name not in self.classes:
            raise KeyError(f"Service '{name}' not found in registry")
        return self.classes[name]

    def list_services(self) -> list[str]:
        """Registered types, in canonical order."""
        return sorted(self.classes, key=self.graph.rank)

    async def running_all(
        self,
        types: Iterable[str] | None = None,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
        filters: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> dict[str, list[RuntimeHandle]]:
        """Run discovery for several types concurrently.

        Args:
            types: Types to query (all registered types when None)
            probe: Shared process probe
            config: Tool configuration
            filters: Optional per-type discovery filters

        Returns:
            Mapping type -> live handles (types with none are omitted)
        """
        names = self.list_services() if types is None else list(types)
        probe = probe or ProcessProbe()
        classes = [self.get_service(n) for n in names]
        results = await asyncio.gather(
            *(
                cls.running((filters or {}).get(name), probe, config)
                for name, cls in zip(names, classes, strict=True)
            )
        )
        return {name: handles for name, handles in zip(names, results, strict=True) if handles}


def default_registry() -> ServiceRegistry:
    """Registry holding every built-in service type."""
    from services import BUILTIN_SERVICES

    registry = ServiceRegistry()
    for service_class in BUILTIN_SERVICES:
        registry.register(service_class)
    return registry
