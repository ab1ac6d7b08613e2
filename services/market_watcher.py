"""Chain event watcher (Node) of the market; one process per chain deployment."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from controller.contracts import ChainDeployment, RuntimeHandle, ServiceDescriptor
from controller.service import ORANDPatterns, Service
from core.bash import gen_setm_script
from core.config import ToolConfig, default_config
from core.ps import ProcessEntry, ProcessProbe
from services.market_api import MarketChain

logger = logging.getLogger(__name__)

ENTRY = "./src/index.js"


@dataclass(frozen=True)
class MarketWatcherDescriptor(ServiceDescriptor):
    """Watcher identity: one chain, one store pair."""

    mongo_host: str
    redis_host: str
    chain: MarketChain
    repo_dir: Path | None = None

    def __post_init__(self) -> None:
        """Validate MarketWatcherDescriptor."""
        super().__post_init__()
        if not self.mongo_host or not self.redis_host:
            raise ValueError("market watcher requires mongo_host and redis_host")

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update(
            {
                "mongoHost": self.mongo_host,
                "redisHost": self.redis_host,
                "chain": self.chain.to_dict(),
            }
        )
        if self.repo_dir is not None:
            payload["repository"] = str(self.repo_dir)
        return payload


class MarketWatcherService(Service):
    """``node ./src/index.js`` following one chain deployment."""

    kind = "marketwatcher"

    def __init__(
        self,
        descriptor: MarketWatcherDescriptor,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> None:
        super().__init__(descriptor, probe, config)
        self._watcher = descriptor

    @classmethod
    def new_instance(
        cls,
        *,
        mongo_host: str,
        redis_host: str,
        chain: MarketChain,
        repo_dir: str | Path | None = None,
        hostname: str = "localhost",
        log_file: str | Path | None = None,
        pid_file: str | Path | None = None,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> MarketWatcherService:
        descriptor = MarketWatcherDescriptor(
            type="marketwatcher",
            hostname=hostname,
            port=None,
            log_file=None if log_file is None else Path(log_file),
            pid_file=None if pid_file is None else Path(pid_file),
            mongo_host=mongo_host,
            redis_host=redis_host,
            chain=chain,
            repo_dir=None if repo_dir is None else Path(repo_dir).expanduser().resolve(),
        )
        return cls(descriptor, probe, config)

    @property
    def mongo_host(self) -> str:
        return self._watcher.mongo_host

    @property
    def redis_host(self) -> str:
        return self._watcher.redis_host

    @property
    def chain(self) -> MarketChain:
        return self._watcher.chain

    @property
    def hub(self) -> ChainDeployment:
        return self._watcher.chain.hub

    @property
    def repo_dir(self) -> Path | None:
        return self._watcher.repo_dir

    @property
    def can_start(self) -> bool:
        return super().can_start and self.repo_dir is not None

    def chain_marker(self) -> str:
        return self.env_var("MARKET_API")

    def watcher_env(self) -> dict[str, str]:
        env = {
            "MONGO_HOST": self.mongo_host,
            "REDIS_HOST": self.redis_host,
            self.env_var("HOSTNAME"): self.hostname,
            self.env_var("HUBKEY"): str(self.hub),
            "CHAIN": self.chain_marker(),
            **self.chain.env(),
            "ETH_WS_HOST": self.chain.rpc_url,
            "DEBUG": "iexec-watcher:*",
        }
        return env

    @classmethod
    def parse_env(cls, env: Mapping[str, str], config: ToolConfig) -> dict[str, Any]:
        """Inverse of :meth:`watcher_env`.

        Raises:
            ValueError: If a variable is missing or malformed
        """
        return {
            "hostname": env.get(config.env_var_name("HOSTNAME")) or "localhost",
            "mongo_host": env.get("MONGO_HOST", ""),
            "redis_host": env.get("REDIS_HOST", ""),
            "chain": MarketChain.from_env(env, env.get(config.env_var_name("HUBKEY"))),
        }

    def _is_mine(self, env: Mapping[str, str]) -> bool:
        return (
            env.get("CHAIN") == self.chain_marker()
            and env.get("IEXEC_ADDRESS") == self.chain.address
            and env.get("ETH_RPC_HOST") == self.chain.rpc_url
            and env.get("CHAIN_ID") == str(self.chain.chainid)
            and env.get("MONGO_HOST") == self.mongo_host
            and env.get("REDIS_HOST") == self.redis_host
        )

    async def get_pid(self) -> int | None:
        if not self.descriptor.is_local:
            return None
        for entry in await self.probe.grep(f"node {re.escape(ENTRY)}", with_env=True):
            if self._is_mine(entry.environment):
                return entry.pid
        return None

    async def launch_script(self, env: Mapping[str, str]) -> str:
        script_env = {**{self.env_var(k): v for k, v in env.items()}, **self.watcher_env()}
        return gen_setm_script("node", [ENTRY], script_env, self.log_file, cwd=self.repo_dir)

    def success_patterns(self, pid: int | None) -> ORANDPatterns | None:
        return [["WATCHER SUCCESSFULLY STARTED"]]

    def failure_patterns(self, pid: int | None) -> ORANDPatterns | None:
        return [
            ["iexec-watcher:error"],
            ["A critical error has occured"],
            ["throw Error"],
            ["Error:"],
        ]

    @classmethod
    def _from_entry(
        cls,
        entry: ProcessEntry,
        probe: ProcessProbe,
        config: ToolConfig,
    ) -> MarketWatcherService | None:
        try:
            fields = cls.parse_env(entry.environment, config)
            return cls.new_instance(repo_dir=entry.cwd, probe=probe, config=config, **fields)
        except ValueError as exc:
            logger.warning("malformed market watcher pid=%d: %s", entry.pid, exc)
            return None

    @classmethod
    async def running(
        cls,
        filters: Mapping[str, Any] | None = None,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> list[RuntimeHandle]:
        probe = probe or ProcessProbe()
        config = config or default_config()
        filters = filters or {}
        marker = config.env_var_name("MARKET_API")
        handles: list[RuntimeHandle] = []
        for entry in await probe.grep(f"node {re.escape(ENTRY)}", with_env=True):
            if entry.environment.get("CHAIN") != marker:
                continue
            service = cls._from_entry(entry, probe, config)
            if filters and (service is None or not _matches(service, filters)):
                continue
            handles.append(RuntimeHandle(entry.pid, service))
        return handles


def _matches(service: MarketWatcherService, filters: Mapping[str, Any]) -> bool:
    for name in ("mongo_host", "redis_host", "hub"):
        wanted = filters.get(name)
        if wanted is not None and getattr(service, name) != wanted:
            return False
    return True
