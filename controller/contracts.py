"""Controller contracts for service supervision.

This module defines the immutable descriptors identifying service
instances, the transient runtime handles produced by discovery, the
capability protocols used for cross-service correlation, and status
snapshots.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal, Protocol, runtime_checkable

if TYPE_CHECKING:
    from controller.service import Service

ServiceKind = Literal[
    "ganache",
    "ipfs",
    "docker",
    "mongo",
    "redis",
    "market",
    "marketapi",
    "marketwatcher",
    "sms",
    "resultproxy",
    "blockchainadapter",
    "core",
    "worker",
]
ServiceState = Literal["unknown", "absent", "starting", "running", "failed"]
LogStatusType = Literal["succeeded", "failed", "killed"]


def _check_abs(name: str, value: Path | None) -> None:
    if value is not None and not value.is_absolute():
        raise ValueError(f"{name} must be an absolute path, got {value}")


@dataclass(frozen=True)
class ServiceDescriptor:
    """Identity and configuration of one service instance.

    Concrete services extend this with their own fields. Every field used
    by discovery or start is validated here, so a built descriptor is
    always internally consistent.

    Attributes:
        type: Service kind tag
        hostname: Network host the service binds to
        port: Main listening port (None for port-less services)
        log_file: Absolute path of the redirected output, if any
        pid_file: Absolute path of the recorded pid, if any

    Raises:
        ValueError: If hostname is empty, port is out of range, or a path
                    is relative
    """

    type: ServiceKind
    hostname: str
    port: int | None
    log_file: Path | None
    pid_file: Path | None

    def __post_init__(self) -> None:
        """Validate ServiceDescriptor configuration."""
        if not self.hostname:
            raise ValueError("hostname must not be empty")
        if self.port is not None and not 0 < self.port < 65536:
            raise ValueError(f"port must be in 1..65535, got {self.port}")
        _check_abs("log_file", self.log_file)
        _check_abs("pid_file", self.pid_file)

    @property
    def host(self) -> str:
        """``hostname:port`` (or just hostname when port-less)."""
        if self.port is None:
            return self.hostname
        return f"{self.hostname}:{self.port}"

    @property
    def is_local(self) -> bool:
        return self.hostname in ("localhost", "127.0.0.1", "::1")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary.

        Returns:
            Dictionary representation, paths as strings, None fields omitted
        """
        payload: dict[str, Any] = {"type": self.type, "hostname": self.hostname}
        if self.port is not None:
            payload["port"] = self.port
        if self.log_file is not None:
            payload["logFile"] = str(self.log_file)
        if self.pid_file is not None:
            payload["pidFile"] = str(self.pid_file)
        return payload


@dataclass(frozen=True)
class ChainDeployment:
    """Composite key identifying one contract deployment on one chain.

    Attributes:
        chainid: Chain id of the simulator hosting the deployment
        deployment: Deployment name on that chain (e.g. "standard")
    """

    chainid: int
    deployment: str

    def __post_init__(self) -> None:
        """Validate ChainDeployment."""
        if self.chainid <= 0:
            raise ValueError(f"chainid must be > 0, got {self.chainid}")
        if not self.deployment:
            raise ValueError("deployment must not be empty")

    def __str__(self) -> str:
        return f"{self.chainid}.{self.deployment}"

    @classmethod
    def parse(cls, value: str) -> ChainDeployment:
        """Parse ``<chainid>.<deployment>``."""
        chainid_str, sep, deployment = value.partition(".")
        if not sep or not chainid_str.isdigit():
            raise ValueError(f"invalid chain deployment reference: {value!r}")
        return cls(chainid=int(chainid_str), deployment=deployment)


@dataclass(frozen=True)
class RuntimeHandle:
    """A live pid paired with the service reconstructed from it.

    ``service`` is None when the process matched a discovery pattern but
    could not be parsed back into a valid descriptor.
    """

    pid: int
    service: Service | None

    def __post_init__(self) -> None:
        """Validate RuntimeHandle."""
        if self.pid < 0:
            raise ValueError(f"pid must be >= 0, got {self.pid}")


@dataclass(frozen=True)
class LogStatus:
    """Outcome of a log scan.

    Attributes:
        status: Final status detected in the log
        log_line: Line that triggered a failure, if any
    """

    status: LogStatusType
    log_line: str | None = None


@dataclass(frozen=True)
class ServiceStatus:
    """Status of a single service.

    Attributes:
        service_type: Service kind
        host: ``hostname:port`` identity
        state: Observed state
        pid: Process ID if running, None otherwise
        last_error: Last error message if state is "failed", None otherwise

    Raises:
        ValueError: If host is empty or pid is inconsistent with state
    """

    service_type: ServiceKind
    host: str
    state: ServiceState
    pid: int | None
    last_error: str | None = None

    def __post_init__(self) -> None:
        """Validate ServiceStatus configuration."""
        if not self.host:
            raise ValueError("host must not be empty")
        if self.state == "running" and self.pid is None:
            raise ValueError("running status requires a pid")
        if self.pid is not None and self.pid < 0:
            raise ValueError(f"pid must be >= 0, got {self.pid}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_type": self.service_type,
            "host": self.host,
            "state": self.state,
            "pid": self.pid,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ServiceStatus:
        return cls(
            service_type=data["service_type"],
            host=data["host"],
            state=data["state"],
            pid=data.get("pid"),
            last_error=data.get("last_error"),
        )


@runtime_checkable
class Startable(Protocol):
    @property
    def can_start(self) -> bool: ...


@runtime_checkable
class HasPID(Protocol):
    async def get_pid(self) -> int | None: ...


@runtime_checkable
class HasHub(Protocol):
    """Service bound to one contract deployment on one chain."""

    @property
    def hub(self) -> ChainDeployment: ...


@runtime_checkable
class HasMongo(Protocol):
    """Service bound to one shared document store."""

    @property
    def mongo_host(self) -> str: ...


@runtime_checkable
class HasRedis(Protocol):
    @property
    def redis_host(self) -> str: ...
