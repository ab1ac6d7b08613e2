"""Content store (ipfs daemon) running on a private network."""

from __future__ import annotations

import json
import logging
import secrets
import shutil
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from controller.contracts import RuntimeHandle, ServiceDescriptor
from controller.service import ORANDPatterns, ServerService
from core.bash import gen_setm_script, run_command
from core.config import ToolConfig, default_config
from core.errors import CodeError, NotFoundError
from core.ps import ProcessProbe

logger = logging.getLogger(__name__)

IPFS_LOCALHOST_IPV4 = "127.0.0.1"
RUNNING_PATTERN = "ipfs daemon"


def is_valid_ipfs_dir(directory: Path | None) -> bool:
    if directory is None:
        return False
    return (
        (directory / "swarm.key").is_file()
        and (directory / "config").is_file()
        and (directory / "datastore").is_dir()
        and (directory / "keystore").is_dir()
    )


def _multiaddr(port: int) -> str:
    return f"/ip4/{IPFS_LOCALHOST_IPV4}/tcp/{port}"


def _multiaddr_port(value: str) -> tuple[str, int]:
    """Split ``/ip4/<host>/tcp/<port>`` into host and port."""
    parts = value.strip("/").split("/")
    if len(parts) != 4 or parts[0] not in ("ip4", "ip6", "dns4") or parts[2] != "tcp":
        raise CodeError(f"Unsupported multiaddr '{value}'", code="IPFS_ERROR")
    if not parts[3].isdigit():
        raise CodeError(f"Invalid multiaddr port '{value}'", code="IPFS_ERROR")
    return parts[1], int(parts[3])


def _read_addresses(directory: Path) -> dict[str, str]:
    try:
        config = json.loads((directory / "config").read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise CodeError(f"Invalid ipfs config file in '{directory}'", code="IPFS_ERROR") from exc
    addresses = config.get("Addresses") if isinstance(config, dict) else None
    if not isinstance(addresses, dict):
        raise CodeError("Invalid ipfs config file", code="IPFS_ERROR")
    return addresses


@dataclass(frozen=True)
class IpfsDescriptor(ServiceDescriptor):
    """Content store identity; ``port`` is the gateway port."""

    directory: Path
    api_port: int

    def __post_init__(self) -> None:
        """Validate IpfsDescriptor."""
        super().__post_init__()
        if not self.directory.is_absolute():
            raise ValueError(f"directory must be an absolute path, got {self.directory}")
        if not 0 < self.api_port < 65536:
            raise ValueError(f"api_port must be in 1..65535, got {self.api_port}")

    @property
    def gateway_port(self) -> int | None:
        return self.port

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update(
            {"directory": str(self.directory), "gatewayPort": self.port, "apiPort": self.api_port}
        )
        return payload


class IpfsService(ServerService):
    """ipfs daemon identified by its ``IPFS_PATH`` environment variable."""

    kind = "ipfs"

    def __init__(
        self,
        descriptor: IpfsDescriptor,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> None:
        super().__init__(descriptor, probe, config)
        self._ipfs = descriptor

    @property
    def directory(self) -> Path:
        return self._ipfs.directory

    @property
    def api_port(self) -> int:
        return self._ipfs.api_port

    @property
    def gateway_url(self) -> str:
        return f"http://{self.hostname}:{self.port}"

    @classmethod
    def new_instance(
        cls,
        directory: str | Path,
        log_file: str | Path | None = None,
        pid_file: str | Path | None = None,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> IpfsService:
        """Build an instance from an installed ipfs directory.

        Host and ports are read back from the directory's ``config`` file.

        Raises:
            NotFoundError: If the directory does not exist
            CodeError: IPFS_ERROR if the directory is not a valid ipfs repo
        """
        root = Path(directory).expanduser().resolve()
        if not root.is_dir():
            raise NotFoundError(f"Directory '{root}' does not exist")
        if not is_valid_ipfs_dir(root):
            raise CodeError(f"Invalid ipfs directory (dir='{root}')", code="IPFS_ERROR")
        addresses = _read_addresses(root)
        gateway_host, gateway_port = _multiaddr_port(str(addresses.get("Gateway", "")))
        _api_host, api_port = _multiaddr_port(str(addresses.get("API", "")))
        descriptor = IpfsDescriptor(
            type="ipfs",
            hostname=gateway_host,
            port=gateway_port,
            log_file=None if log_file is None else Path(log_file),
            pid_file=None if pid_file is None else Path(pid_file),
            directory=root,
            api_port=api_port,
        )
        return cls(descriptor, probe, config)

    @classmethod
    async def install(cls, directory: str | Path, gateway_port: int, api_port: int) -> Path:
        """Initialize an ipfs repo (if missing) bound to the given local ports.

        Raises:
            CodeError: IPFS_ERROR if an existing repo is invalid or bound to
                       other ports
            ExternalToolError: If ``ipfs init`` fails
        """
        root = Path(directory).expanduser().resolve()
        if not root.exists():
            await cls._init(root, gateway_port, api_port)
        if not is_valid_ipfs_dir(root):
            raise CodeError(f"Invalid ipfs directory (dir='{root}')", code="IPFS_ERROR")
        addresses = _read_addresses(root)
        if addresses.get("Gateway") != _multiaddr(gateway_port):
            raise CodeError("Another instance of ipfs is already installed", code="IPFS_ERROR")
        if addresses.get("API") != _multiaddr(api_port):
            raise CodeError("Another instance of ipfs is already installed", code="IPFS_ERROR")
        return root

    @classmethod
    async def reinstall(cls, directory: str | Path, gateway_port: int, api_port: int) -> Path:
        root = Path(directory).expanduser().resolve()
        if root.exists():
            shutil.rmtree(root)
        return await cls.install(root, gateway_port, api_port)

    @staticmethod
    async def _init(root: Path, gateway_port: int, api_port: int) -> None:
        root.mkdir(parents=True)
        # private network key
        swarm_key = "/key/swarm/psk/1.0.0/\n/base16/\n" + secrets.token_hex(32) + "\n"
        (root / "swarm.key").write_text(swarm_key, encoding="utf-8")
        await run_command("ipfs", ["init"], env={"IPFS_PATH": str(root)})

        config_file = root / "config"
        config = json.loads(config_file.read_text(encoding="utf-8"))
        if not isinstance(config.get("Addresses"), dict):
            raise CodeError("Invalid ipfs config file", code="IPFS_ERROR")
        config["Addresses"]["API"] = _multiaddr(api_port)
        config["Addresses"]["Gateway"] = _multiaddr(gateway_port)
        config_file.write_text(json.dumps(config, indent=2), encoding="utf-8")
        logger.info("initialized ipfs repo %s", root)

    @property
    def can_start(self) -> bool:
        return super().can_start and is_valid_ipfs_dir(self.directory)

    async def get_pid(self) -> int | None:
        pids = [
            e.pid
            for e in await self.probe.grep(RUNNING_PATTERN, with_env=True)
            if e.environment.get("IPFS_PATH") == str(self.directory)
        ]
        if not pids:
            return None
        assert len(pids) == 1, f"several ipfs daemons use {self.directory}"
        return pids[0]

    async def launch_script(self, env: Mapping[str, str]) -> str:
        daemon_env = {
            **{self.env_var(k): v for k, v in env.items()},
            "LIBP2P_FORCE_PNET": "1",
            "IPFS_PATH": str(self.directory),
        }
        return gen_setm_script("ipfs", ["daemon"], daemon_env, self.log_file)

    def success_patterns(self, pid: int | None) -> ORANDPatterns | None:
        return [["Daemon is ready"]]

    def failure_patterns(self, pid: int | None) -> ORANDPatterns | None:
        return [["Error:"]]

    async def add_file(self, file: str | Path) -> tuple[str, str]:
        """Publish ``file`` and return its hash and gateway url."""
        path = Path(file)
        if not path.is_file():
            raise NotFoundError(f"File '{path}' does not exist")
        out = await run_command(
            "ipfs", ["add", "-q", str(path)], env={"IPFS_PATH": str(self.directory)}
        )
        lines = out.strip().splitlines()
        if not lines:
            raise CodeError(f"ipfs add printed no hash for '{path}'", code="IPFS_ERROR")
        content_hash = lines[-1]
        return content_hash, f"{self.gateway_url}/ipfs/{content_hash}"

    @classmethod
    async def running(
        cls,
        filters: Mapping[str, Any] | None = None,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> list[RuntimeHandle]:
        probe = probe or ProcessProbe()
        config = config or default_config()
        wanted = (filters or {}).get("directory")
        handles: list[RuntimeHandle] = []
        for entry in await probe.grep(RUNNING_PATTERN, with_env=True):
            directory = entry.environment.get("IPFS_PATH")
            if wanted is not None and directory != str(wanted):
                continue
            service: IpfsService | None = None
            if directory:
                try:
                    service = cls.new_instance(directory, probe=probe, config=config)
                except (CodeError, ValueError) as exc:
                    logger.warning("ipfs pid=%d: %s", entry.pid, exc)
            handles.append(RuntimeHandle(entry.pid, service))
        return handles
