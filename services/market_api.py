"""Order-book API (Node) of the market."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

from controller.contracts import ChainDeployment, RuntimeHandle, ServiceDescriptor
from controller.service import ORANDPatterns, ServerService
from core.bash import gen_setm_script
from core.config import ToolConfig, default_config
from core.ps import ProcessEntry, ProcessProbe

logger = logging.getLogger(__name__)

ENTRY = "./src/server.js"


@dataclass(frozen=True)
class MarketChain:
    """One chain deployment served by the market.

    Attributes:
        hub: Chain id and deployment name
        address: Hub contract address on that chain
        rpc_url: JSON-RPC endpoint of the chain simulator
        is_native: Native-asset deployment
        enterprise: Enterprise flavour deployment
    """

    hub: ChainDeployment
    address: str
    rpc_url: str
    is_native: bool = False
    enterprise: bool = False

    def __post_init__(self) -> None:
        """Validate MarketChain."""
        if not self.address:
            raise ValueError("address must not be empty")
        if not self.rpc_url:
            raise ValueError("rpc_url must not be empty")

    @property
    def chainid(self) -> int:
        return self.hub.chainid

    @property
    def flavour(self) -> str:
        return "enterprise" if self.enterprise else "standard"

    def env(self) -> dict[str, str]:
        """Unprefixed chain variables as the Node services read them."""
        return {
            "CHAIN_ID": str(self.chainid),
            "IS_NATIVE": "true" if self.is_native else "false",
            "FLAVOUR": self.flavour,
            "ETH_RPC_HOST": self.rpc_url,
            "IEXEC_ADDRESS": self.address,
        }

    @classmethod
    def from_env(cls, env: Mapping[str, str], hub_key: str | None) -> MarketChain:
        """Inverse of :meth:`env`.

        Raises:
            ValueError: If a variable is missing or malformed
        """
        chainid = env.get("CHAIN_ID", "")
        if not chainid.isdigit():
            raise ValueError(f"invalid CHAIN_ID '{chainid}'")
        hub = ChainDeployment.parse(hub_key) if hub_key else ChainDeployment(int(chainid), "standard")
        if hub.chainid != int(chainid):
            raise ValueError(f"hub '{hub}' does not match CHAIN_ID={chainid}")
        return cls(
            hub=hub,
            address=env.get("IEXEC_ADDRESS", ""),
            rpc_url=env.get("ETH_RPC_HOST", ""),
            is_native=env.get("IS_NATIVE") == "true",
            enterprise=env.get("FLAVOUR") == "enterprise",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "hub": str(self.hub),
            "address": self.address,
            "rpcUrl": self.rpc_url,
            "isNative": self.is_native,
            "enterprise": self.enterprise,
        }


@dataclass(frozen=True)
class MarketApiDescriptor(ServiceDescriptor):
    """Market API identity.

    Attributes:
        mongo_host: ``hostname:port`` of the market document store
        redis_host: ``hostname:port`` of the market key-value store
        chains: Served chains, at most one per chain id
        repo_dir: Source checkout the API runs from
    """

    mongo_host: str
    redis_host: str
    chains: tuple[MarketChain, ...] = ()
    repo_dir: Path | None = None

    def __post_init__(self) -> None:
        """Validate MarketApiDescriptor."""
        super().__post_init__()
        if self.port is None:
            raise ValueError("market api requires a port")
        if not self.mongo_host or not self.redis_host:
            raise ValueError("market api requires mongo_host and redis_host")
        chainids = [c.chainid for c in self.chains]
        if len(set(chainids)) != len(chainids):
            raise ValueError(f"duplicate chain ids in market api: {chainids}")

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update(
            {
                "mongoHost": self.mongo_host,
                "redisHost": self.redis_host,
                "chains": [c.to_dict() for c in self.chains],
            }
        )
        if self.repo_dir is not None:
            payload["repository"] = str(self.repo_dir)
        return payload


class MarketApiService(ServerService):
    """``node ./src/server.js`` serving every chain of one market."""

    kind = "marketapi"

    def __init__(
        self,
        descriptor: MarketApiDescriptor,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> None:
        super().__init__(descriptor, probe, config)
        self._api = descriptor

    @classmethod
    def new_instance(
        cls,
        *,
        port: int,
        mongo_host: str,
        redis_host: str,
        chains: tuple[MarketChain, ...] | list[MarketChain] = (),
        repo_dir: str | Path | None = None,
        hostname: str = "localhost",
        log_file: str | Path | None = None,
        pid_file: str | Path | None = None,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> MarketApiService:
        descriptor = MarketApiDescriptor(
            type="marketapi",
            hostname=hostname,
            port=int(port),
            log_file=None if log_file is None else Path(log_file),
            pid_file=None if pid_file is None else Path(pid_file),
            mongo_host=mongo_host,
            redis_host=redis_host,
            chains=tuple(chains),
            repo_dir=None if repo_dir is None else Path(repo_dir).expanduser().resolve(),
        )
        return cls(descriptor, probe, config)

    @property
    def mongo_host(self) -> str:
        return self._api.mongo_host

    @property
    def redis_host(self) -> str:
        return self._api.redis_host

    @property
    def chains(self) -> tuple[MarketChain, ...]:
        return self._api.chains

    @property
    def repo_dir(self) -> Path | None:
        return self._api.repo_dir

    def has_hub(self, hub: ChainDeployment) -> bool:
        return any(c.hub == hub for c in self.chains)

    @property
    def can_start(self) -> bool:
        return super().can_start and self.repo_dir is not None

    def chain_prefix(self) -> str:
        return self.env_var("MARKET_API")

    def api_env(self) -> dict[str, str]:
        env = {
            "MONGO_HOST": self.mongo_host,
            "REDIS_HOST": self.redis_host,
            "PORT": str(self.port),
        }
        names = []
        for index, chain in enumerate(self.chains, start=1):
            prefix = f"{self.chain_prefix()}_{index}"
            names.append(prefix)
            for key, value in chain.env().items():
                env[f"{prefix}_{key}"] = value
            env[f"{prefix}_HUBKEY"] = str(chain.hub)
        env["CHAINS"] = ",".join(names)
        env["DEBUG"] = "iexec-market-api:*"
        return env

    @classmethod
    def parse_env(cls, env: Mapping[str, str], config: ToolConfig) -> dict[str, Any]:
        """Inverse of :meth:`api_env`.

        Raises:
            ValueError: If a variable is missing or malformed
        """
        port = env.get("PORT", "")
        if not port.isdigit():
            raise ValueError(f"invalid PORT '{port}'")
        chains = []
        for name in filter(None, env.get("CHAINS", "").split(",")):
            chain_env = {
                k[len(name) + 1 :]: v for k, v in env.items() if k.startswith(name + "_")
            }
            chains.append(MarketChain.from_env(chain_env, chain_env.get("HUBKEY")))
        return {
            "port": int(port),
            "mongo_host": env.get("MONGO_HOST", ""),
            "redis_host": env.get("REDIS_HOST", ""),
            "chains": tuple(chains),
        }

    async def get_pid(self) -> int | None:
        if not self.descriptor.is_local:
            return None
        first_chain = f"{self.chain_prefix()}_1"
        for entry in await self.probe.grep(f"node {re.escape(ENTRY)}", with_env=True):
            env = entry.environment
            if env.get("PORT") != str(self.port):
                continue
            if env.get("CHAINS", "").split(",")[0] != first_chain:
                continue
            return entry.pid
        return None

    async def launch_script(self, env: Mapping[str, str]) -> str:
        script_env = {**{self.env_var(k): v for k, v in env.items()}, **self.api_env()}
        return gen_setm_script("node", [ENTRY], script_env, self.log_file, cwd=self.repo_dir)

    def success_patterns(self, pid: int | None) -> ORANDPatterns | None:
        return [[f"iexec-market-api Server listening on port {self.port}"]]

    def failure_patterns(self, pid: int | None) -> ORANDPatterns | None:
        return [["throw Error"], ["Error:"]]

    async def get_version(self) -> str | None:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.get(f"{self.url}/version")
            response.raise_for_status()
            data = response.json()
        version = data.get("version") if isinstance(data, dict) else None
        return str(version) if version else None

    async def is_ready(self) -> bool:
        try:
            return bool(await self.get_version())
        except (httpx.HTTPError, ValueError):
            return False

    @classmethod
    def _from_entry(
        cls,
        entry: ProcessEntry,
        probe: ProcessProbe,
        config: ToolConfig,
    ) -> MarketApiService | None:
        try:
            fields = cls.parse_env(entry.environment, config)
            return cls.new_instance(repo_dir=entry.cwd, probe=probe, config=config, **fields)
        except ValueError as exc:
            logger.warning("malformed market api pid=%d: %s", entry.pid, exc)
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
        first_chain = f"{config.env_var_name('MARKET_API')}_1"
        handles: list[RuntimeHandle] = []
        for entry in await probe.grep(f"node {re.escape(ENTRY)}", with_env=True):
            if entry.environment.get("CHAINS", "").split(",")[0] != first_chain:
                continue
            service = cls._from_entry(entry, probe, config)
            if filters and (service is None or not _matches(service, filters)):
                continue
            handles.append(RuntimeHandle(entry.pid, service))
        return handles


def _matches(service: MarketApiService, filters: Mapping[str, Any]) -> bool:
    for name in ("mongo_host", "redis_host", "port"):
        wanted = filters.get(name)
        if wanted is not None and getattr(service, name) != wanted:
            return False
    return True
