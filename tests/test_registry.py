"""Tests for the service type registry and dependency graph."""

from __future__ import annotations

from pathlib import Path

import pytest

from controller.registry import (
    ORDERED_SERVICE_TYPES,
    DependencyGraph,
    ServiceRegistry,
    default_registry,
    type_index,
)
from core.db_directory import SignedDirectory
from services.ganache import GanacheService
from services.mongo import MongoService
from tests.utils import FakeProcessTable, build_test_config


class TestDependencyGraph:
    """Tests for start and stop ordering."""

    def test_start_order_puts_dependencies_first(self) -> None:
        """Test the full stack starts in canonical dependency order."""
        graph = DependencyGraph()

        order = graph.start_order(reversed(ORDERED_SERVICE_TYPES))

        assert order == list(ORDERED_SERVICE_TYPES)
        assert graph.stop_order(ORDERED_SERVICE_TYPES) == list(reversed(ORDERED_SERVICE_TYPES))

    def test_dependencies_outside_the_set_are_ignored(self) -> None:
        """Test only requested types are ordered."""
        graph = DependencyGraph()
        assert graph.start_order(["core", "sms"]) == ["sms", "core"]
        assert graph.start_order(["core", "core"]) == ["core"]

    def test_transitive_dependencies(self) -> None:
        """Test transitive closure follows the whole chain."""
        graph = DependencyGraph()

        assert graph.dependencies_of("worker") == {"docker", "core"}
        assert "market" in graph.dependencies_of("worker", transitive=True)
        assert "redis" in graph.dependencies_of("core", transitive=True)
        assert graph.dependents_of("redis") == {"market"}

    def test_cycle_is_rejected(self) -> None:
        """Test a circular graph cannot be ordered."""
        graph = DependencyGraph({"a": {"b"}, "b": {"a"}, "c": set()})

        with pytest.raises(ValueError, match="Circular"):
            graph.start_order(["a", "b", "c"])
        assert graph.start_order(["c"]) == ["c"]

    def test_unknown_type(self) -> None:
        """Test unknown types raise KeyError."""
        with pytest.raises(KeyError):
            DependencyGraph().start_order(["ganache", "nginx"])
        with pytest.raises(KeyError):
            type_index("nginx")
        assert type_index("ganache") == 0


class TestServiceRegistry:
    """Tests for ServiceRegistry."""

    def test_default_registry_lists_canonical_order(self) -> None:
        """Test every managed type is registered; docker has no class."""
        registry = default_registry()

        names = registry.list_services()

        assert names == [t for t in ORDERED_SERVICE_TYPES if t != "docker"]
        assert registry.get_service("ganache") is GanacheService
        with pytest.raises(KeyError):
            registry.get_service("docker")

    def test_register_conflict(self) -> None:
        """Test a second class cannot claim a registered type."""
        registry = ServiceRegistry()
        registry.register(MongoService)
        registry.register(MongoService)

        class OtherMongo(MongoService):
            pass

        with pytest.raises(ValueError, match="already registered"):
            registry.register(OtherMongo)

    @pytest.mark.asyncio
    async def test_running_all_omits_idle_types(self, tmp_path: Path) -> None:
        """Test discovery output keeps only types with live processes."""
        signed = SignedDirectory.install("mongo", tmp_path / "mongo")
        table = FakeProcessTable()
        table.add(70, f"mongod --bind_ip localhost --port 13500 --dbpath {signed.db_dir}")
        registry = ServiceRegistry()
        registry.register(GanacheService)
        registry.register(MongoService)

        running = await registry.running_all(
            probe=table.probe(), config=build_test_config(tmp_path)
        )

        assert list(running) == ["mongo"]
        assert running["mongo"][0].pid == 70
        assert isinstance(running["mongo"][0].service, MongoService)
