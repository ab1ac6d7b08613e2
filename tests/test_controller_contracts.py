"""Tests for controller contracts."""

from __future__ import annotations

from pathlib import Path

import pytest

from controller.contracts import (
    ChainDeployment,
    RuntimeHandle,
    ServiceDescriptor,
    ServiceStatus,
)


class TestServiceDescriptor:
    """Tests for ServiceDescriptor contract."""

    def test_host_and_serialization(self) -> None:
        """Test host rendering and the serialized form."""
        descriptor = ServiceDescriptor(
            type="mongo",
            hostname="localhost",
            port=13500,
            log_file=Path("/var/log/mongo.log"),
            pid_file=None,
        )

        assert descriptor.host == "localhost:13500"
        assert descriptor.is_local
        assert descriptor.to_dict() == {
            "type": "mongo",
            "hostname": "localhost",
            "port": 13500,
            "logFile": "/var/log/mongo.log",
        }

    def test_portless_host(self) -> None:
        """Test a port-less service is identified by its hostname."""
        descriptor = ServiceDescriptor(
            type="docker", hostname="10.0.0.2", port=None, log_file=None, pid_file=None
        )
        assert descriptor.host == "10.0.0.2"
        assert not descriptor.is_local

    @pytest.mark.parametrize(
        ("overrides", "message"),
        [
            ({"hostname": ""}, "hostname"),
            ({"port": 0}, "port"),
            ({"port": 70000}, "port"),
            ({"log_file": Path("relative.log")}, "log_file"),
            ({"pid_file": Path("run/x.pid")}, "pid_file"),
        ],
    )
    def test_rejects_invalid_fields(self, overrides: dict, message: str) -> None:
        """Test validation of each identity field."""
        fields = {
            "type": "redis",
            "hostname": "localhost",
            "port": 13600,
            "log_file": None,
            "pid_file": None,
        }
        fields.update(overrides)

        with pytest.raises(ValueError, match=message):
            ServiceDescriptor(**fields)


class TestChainDeployment:
    """Tests for ChainDeployment contract."""

    def test_parse_round_trip(self) -> None:
        """Test the textual key parses back to an equal value."""
        hub = ChainDeployment.parse("1337.enterprise")

        assert hub == ChainDeployment(1337, "enterprise")
        assert str(hub) == "1337.enterprise"
        assert {hub: 1}[ChainDeployment(1337, "enterprise")] == 1

    @pytest.mark.parametrize("value", ["1337", "abc.standard", ".standard", "1337."])
    def test_parse_rejects_malformed(self, value: str) -> None:
        """Test malformed keys are refused."""
        with pytest.raises(ValueError):
            ChainDeployment.parse(value)

    def test_rejects_non_positive_chainid(self) -> None:
        """Test chain ids must be positive."""
        with pytest.raises(ValueError, match="chainid"):
            ChainDeployment(0, "standard")


class TestServiceStatus:
    """Tests for ServiceStatus contract."""

    def test_round_trip(self) -> None:
        """Test to_dict/from_dict preserve every field."""
        status = ServiceStatus(
            service_type="ganache", host="localhost:8545", state="running", pid=12345
        )

        assert ServiceStatus.from_dict(status.to_dict()) == status

    def test_running_requires_pid(self) -> None:
        """Test a running status without pid is inconsistent."""
        with pytest.raises(ValueError, match="requires a pid"):
            ServiceStatus(service_type="ganache", host="localhost:8545", state="running", pid=None)

    def test_failed_status_carries_error(self) -> None:
        """Test failed status keeps its last error."""
        status = ServiceStatus(
            service_type="core",
            host="localhost:13000",
            state="failed",
            pid=None,
            last_error="Port 13000 is already in use",
        )
        assert status.to_dict()["last_error"] == "Port 13000 is already in use"

    def test_rejects_empty_host(self) -> None:
        """Test status requires a host."""
        with pytest.raises(ValueError, match="host"):
            ServiceStatus(service_type="core", host="", state="absent", pid=None)


def test_runtime_handle_rejects_negative_pid() -> None:
    with pytest.raises(ValueError, match="pid"):
        RuntimeHandle(-1, None)
    assert RuntimeHandle(0, None).service is None
