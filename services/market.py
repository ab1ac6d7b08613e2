"""Market composite: one store pair, at most one API, one watcher per hub.

Layout of a market directory::

    <directory>/mongo/    signed document store
    <directory>/redis/    signed key-value store
    <directory>/logs/     api.<port>.log, watcher.<chainid>.<deployment>.log

The source checkout holds the two Node programs under ``<repo>/api`` and
``<repo>/watcher``. Both stores carry the same ledger entry mapping every
served chain id to the identifier of the simulator storage it was bound
to, so a market re-pointed at a reset chain is refused.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Literal

from controller.contracts import ChainDeployment, RuntimeHandle, ServiceDescriptor
from controller.service import Service, StartOptions, StopOptions, group_kill, group_stop
from core.config import ToolConfig, default_config
from core.db_directory import DBSignature
from core.errors import CodeError, GroupError, Result, SignatureConflictError, fail
from core.ps import ProcessProbe
from services.ganache import GanachePoCoService
from services.market_api import MarketApiService, MarketChain
from services.market_watcher import MarketWatcherService
from services.mongo import MongoService
from services.redis import RedisService

logger = logging.getLogger(__name__)

MARKET_SIGNAME = "market"

WatcherArgs = Literal["all"] | Sequence[Any] | None


def as_hub(value: ChainDeployment | str) -> ChainDeployment:
    if isinstance(value, ChainDeployment):
        return value
    return ChainDeployment.parse(str(value))


def resolve_chain(ganache: GanachePoCoService, hub: ChainDeployment) -> MarketChain | None:
    """Resolve a hub on a live simulator through its ``deployments`` table.

    The simulator storage config maps each deployment name to
    ``{"hub": <address>, "asset": "Native" | "Token", "kyc": bool}``.
    """
    if ganache.chainid != hub.chainid:
        return None
    deployments = ganache.chain_config.get("deployments")
    if not isinstance(deployments, Mapping):
        return None
    entry = deployments.get(hub.deployment)
    if not isinstance(entry, Mapping) or not entry.get("hub"):
        return None
    return MarketChain(
        hub=hub,
        address=str(entry["hub"]),
        rpc_url=ganache.url,
        is_native=entry.get("asset") == "Native",
        enterprise=bool(entry.get("kyc")),
    )


def _host(args: Mapping[str, Any]) -> str:
    return f"{args.get('hostname') or 'localhost'}:{int(args['port'])}"


def _opt_path(value: Any) -> Path | None:
    return None if value in (None, "") else Path(value).expanduser().resolve()


@dataclass
class MarketComponents:
    """API and watchers built for one market, plus the stores' ledger entry."""

    api: MarketApiService | None
    watchers: list[MarketWatcherService]
    signature: DBSignature

    @property
    def empty(self) -> bool:
        return self.api is None and not self.watchers


def build_components(
    ganaches: Mapping[int, RuntimeHandle],
    *,
    repo_dir: Path,
    mongo_host: str,
    redis_host: str,
    api_args: Mapping[str, Any] | None = None,
    watcher_args: WatcherArgs = None,
    logs_dir: Path | None = None,
    probe: ProcessProbe | None = None,
    config: ToolConfig | None = None,
) -> MarketComponents:
    """Resolve requested hubs against live simulators.

    Hubs whose chain has no live simulator storage, or whose deployment is
    unknown to it, are skipped.

    Args:
        ganaches: Chain id -> live simulator handle
        repo_dir: Market source checkout
        mongo_host: ``hostname:port`` of the document store
        redis_host: ``hostname:port`` of the key-value store
        api_args: ``{"port", "chains", "hostname"?, "log_file"?, "pid_file"?}``
        watcher_args: ``"all"`` to mirror the API chains, or a list of hubs
            (``ChainDeployment``, ``"<chainid>.<name>"`` or
            ``{"hub": ..., "log_file": ...}``)
        logs_dir: Default directory of the sub-process logs

    Raises:
        CodeError: MARKET_ERROR if the API is given two hubs on one chain
    """
    chains_dbuuid: dict[str, str] = {}
    watcher_specs: dict[ChainDeployment, tuple[MarketChain, Path | None]] = {}
    mirror = watcher_args == "all"

    def _resolve(hub: ChainDeployment) -> MarketChain | None:
        handle = ganaches.get(hub.chainid)
        ganache = handle.service if handle is not None else None
        if not isinstance(ganache, GanachePoCoService):
            logger.info("market: no managed chain simulator for hub %s, skipped", hub)
            return None
        chain = resolve_chain(ganache, hub)
        if chain is None:
            logger.info("market: unknown deployment for hub %s, skipped", hub)
            return None
        chains_dbuuid[str(hub.chainid)] = ganache.dbuuid
        return chain

    def _watcher_log(hub: ChainDeployment) -> Path | None:
        return None if logs_dir is None else logs_dir / f"watcher.{hub}.log"

    api: MarketApiService | None = None
    if api_args is not None:
        chains: list[MarketChain] = []
        seen: set[int] = set()
        for raw in api_args.get("chains") or ():
            hub = as_hub(raw)
            if hub.chainid in seen:
                raise CodeError(f"Multiple hubs on chainid='{hub.chainid}'", code="MARKET_ERROR")
            chain = _resolve(hub)
            if chain is None:
                continue
            seen.add(hub.chainid)
            chains.append(chain)
            if mirror:
                watcher_specs.setdefault(hub, (chain, _watcher_log(hub)))
        if chains:
            port = int(api_args["port"])
            log_file = _opt_path(api_args.get("log_file"))
            if log_file is None and logs_dir is not None:
                log_file = logs_dir / f"api.{port}.log"
            api = MarketApiService.new_instance(
                port=port,
                mongo_host=mongo_host,
                redis_host=redis_host,
                chains=chains,
                repo_dir=repo_dir / "api",
                hostname=api_args.get("hostname") or "localhost",
                log_file=log_file,
                pid_file=_opt_path(api_args.get("pid_file")),
                probe=probe,
                config=config,
            )

    if watcher_args is not None and not mirror:
        for raw in watcher_args:
            if isinstance(raw, Mapping):
                hub = as_hub(raw["hub"])
                log_file = _opt_path(raw.get("log_file"))
            else:
                hub = as_hub(raw)
                log_file = None
            chain = _resolve(hub)
            if chain is None:
                continue
            watcher_specs[hub] = (chain, log_file or _watcher_log(hub))

    watchers = [
        MarketWatcherService.new_instance(
            mongo_host=mongo_host,
            redis_host=redis_host,
            chain=chain,
            repo_dir=repo_dir / "watcher",
            log_file=log_file,
            probe=probe,
            config=config,
        )
        for chain, log_file in watcher_specs.values()
    ]
    signature = DBSignature(MARKET_SIGNAME, "market", chains_dbuuid)
    return MarketComponents(api, watchers, signature)


@dataclass(frozen=True)
class MarketDescriptor(ServiceDescriptor):
    """Market identity.

    Attributes:
        repo_dir: Source checkout holding ``api/`` and ``watcher/``
        directory: Market directory (stores and logs), when managed
    """

    repo_dir: Path
    directory: Path | None = None

    def __post_init__(self) -> None:
        """Validate MarketDescriptor."""
        super().__post_init__()
        if not self.repo_dir.is_absolute():
            raise ValueError(f"repo_dir must be an absolute path, got {self.repo_dir}")
        if self.directory is not None and not self.directory.is_absolute():
            raise ValueError(f"directory must be an absolute path, got {self.directory}")

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["repository"] = str(self.repo_dir)
        if self.directory is not None:
            payload["directory"] = str(self.directory)
        return payload


@dataclass
class _HostGroup:
    api: RuntimeHandle | None = None
    watchers: list[RuntimeHandle] = field(default_factory=list)


class MarketService(Service):
    """Composite service; owns no process of its own.

    Attributes:
        mongo: Document store (None when discovered without a live store)
        redis: Key-value store (None when discovered without a live store)
        api: Order-book API, if any
        watchers: One watcher per hub
        api_pid: Live API pid, filled by discovery
        watcher_pids: Live watcher pids by hub, filled by discovery
    """

    kind = "market"
    run_dependencies = ("ganache", "mongo", "redis")

    def __init__(
        self,
        descriptor: MarketDescriptor,
        mongo: MongoService | None,
        redis: RedisService | None,
        api: MarketApiService | None,
        watchers: Sequence[MarketWatcherService],
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> None:
        super().__init__(descriptor, probe, config)
        self._market = descriptor
        self.mongo = mongo
        self.redis = redis
        self.api = api
        self.watchers = list(watchers)
        self.api_pid: int | None = None
        self.watcher_pids: dict[ChainDeployment, int] = {}

    def __repr__(self) -> str:
        return f"MarketService(mongo={self.mongo_host}, redis={self.redis_host})"

    @property
    def repo_dir(self) -> Path:
        return self._market.repo_dir

    @property
    def directory(self) -> Path | None:
        return self._market.directory

    @property
    def mongo_host(self) -> str:
        if self.mongo is not None:
            return self.mongo.host
        sub = self.api or (self.watchers[0] if self.watchers else None)
        return sub.mongo_host if sub is not None else ""

    @property
    def redis_host(self) -> str:
        if self.redis is not None:
            return self.redis.host
        sub = self.api or (self.watchers[0] if self.watchers else None)
        return sub.redis_host if sub is not None else ""

    @property
    def hubs(self) -> list[ChainDeployment]:
        found = [c.hub for c in self.api.chains] if self.api is not None else []
        found += [w.hub for w in self.watchers if w.hub not in found]
        return found

    def has_hub(self, hub: ChainDeployment | str) -> bool:
        return as_hub(hub) in self.hubs

    def sub_processes(self) -> list[tuple[str, int | None, Service]]:
        """``(label, pid, service)`` of the API and every watcher."""
        subs: list[tuple[str, int | None, Service]] = []
        if self.api is not None:
            subs.append(("market.api", self.api_pid, self.api))
        for watcher in self.watchers:
            subs.append(("market.watcher", self.watcher_pids.get(watcher.hub), watcher))
        return subs

    def to_dict(self) -> dict[str, Any]:
        payload = self.descriptor.to_dict()
        if self.mongo is not None:
            payload["mongo"] = self.mongo.to_dict()
        if self.redis is not None:
            payload["redis"] = self.redis.to_dict()
        if self.api is not None:
            payload["api"] = self.api.to_dict()
        payload["watchers"] = [w.to_dict() for w in self.watchers]
        return payload

    # --- storage --------------------------------------------------------

    @staticmethod
    def install(directory: str | Path) -> Path:
        """Create (or load) the market directory and both stores."""
        root = Path(directory).expanduser().resolve()
        (root / "logs").mkdir(parents=True, exist_ok=True)
        MongoService.install(root / "mongo")
        RedisService.install(root / "redis")
        return root

    @staticmethod
    def reset_db(directory: str | Path) -> None:
        """Wipe both stores. The market must be stopped first."""
        root = Path(directory).expanduser().resolve()
        MongoService.reset_db(root / "mongo")
        RedisService.reset_db(root / "redis")

    # --- construction ---------------------------------------------------

    @classmethod
    async def new_instance(
        cls,
        *,
        mongo: Mapping[str, Any],
        redis: Mapping[str, Any],
        repo_dir: str | Path | None = None,
        directory: str | Path | None = None,
        api: Mapping[str, Any] | None = None,
        watchers: WatcherArgs = None,
        ganaches: Mapping[int, RuntimeHandle] | None = None,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> MarketService:
        """Build a market bound to the live simulators.

        Args:
            mongo: ``{"port", "hostname"?, "directory"?, "log_file"?, "pid_file"?}``
            redis: Same keys as ``mongo``
            repo_dir: Source checkout (defaults to ``<directory>/src``)
            directory: Market directory holding the stores and logs
            api: See :func:`build_components`
            watchers: See :func:`build_components`
            ganaches: Chain id -> live simulator (discovered when None)

        Raises:
            CodeError: MARKET_ERROR if the market would be empty or has no
                source, SIGNATURE_CONFLICT_ERROR if a store is bound to
                another chain state
        """
        config = config or default_config()
        root = _opt_path(directory)
        repo = _opt_path(repo_dir)
        if repo is None:
            if root is None:
                raise CodeError("Missing Market package or directory", code="MARKET_ERROR")
            repo = root / "src"

        has_watchers = watchers is not None and (watchers != "all" or api is not None)
        if api is None and not has_watchers:
            raise CodeError("Empty Market service", code="MARKET_ERROR")

        if ganaches is None:
            ganaches = await GanachePoCoService.running_grouped_by_unique_chainid(None, probe, config)

        components = build_components(
            ganaches,
            repo_dir=repo,
            mongo_host=_host(mongo),
            redis_host=_host(redis),
            api_args=api,
            watcher_args=watchers,
            logs_dir=None if root is None else root / "logs",
            probe=probe,
            config=config,
        )
        if components.empty:
            raise CodeError("Empty Market service", code="MARKET_ERROR")

        stores: dict[str, Any] = {}
        for name, args, service_class in (("mongo", mongo, MongoService), ("redis", redis, RedisService)):
            store_dir = _opt_path(args.get("directory"))
            if store_dir is None:
                if root is None:
                    raise CodeError(f"Missing market {name} directory", code="MARKET_ERROR")
                store_dir = root / name
            stores[name] = await service_class.new_instance(
                directory=store_dir,
                port=int(args["port"]),
                hostname=args.get("hostname") or "localhost",
                log_file=args.get("log_file"),
                pid_file=args.get("pid_file"),
                signature=components.signature,
                probe=probe,
                config=config,
            )

        descriptor = MarketDescriptor(
            type="market",
            hostname="localhost",
            port=None,
            log_file=None,
            pid_file=None,
            repo_dir=repo,
            directory=root,
        )
        return cls(
            descriptor,
            stores["mongo"],
            stores["redis"],
            components.api,
            components.watchers,
            probe,
            config,
        )

    # --- lifecycle ------------------------------------------------------

    @property
    def can_start(self) -> bool:
        return (
            super().can_start
            and self.mongo is not None
            and self.redis is not None
            and (self.api is not None or bool(self.watchers))
        )

    async def get_pid(self) -> int | None:
        return None

    async def is_ready(self) -> bool:
        subs: list[Service] = [s for s in (self.mongo, self.redis, self.api) if s is not None]
        subs += self.watchers
        if not subs:
            return False
        ready = await asyncio.gather(*(s.is_ready() for s in subs))
        return all(ready)

    async def start(self, options: StartOptions | None = None) -> Result:
        """Start both stores, then the API and the watchers.

        With ``options.only_db`` only the stores are started. Sub-failures
        are collected; started stores are left running.
        """
        options = options or StartOptions()
        if not self.can_start:
            err = CodeError("Market service cannot be started.", "CANNOT_START", options.context)
            return fail(err, options.strict)
        assert self.mongo is not None and self.redis is not None

        sub = replace(options, strict=False)
        stores = await asyncio.gather(
            self.mongo.start(replace(sub, context="mongo.market")),
            self.redis.start(replace(sub, context="redis.market")),
        )
        errors = [r.error for r in stores if not r.ok and r.error is not None]
        if errors:
            return self._group_failure("Market stores failed to start", errors, options)
        if options.only_db:
            return Result.success(None, context=options.context)

        starts = []
        if self.api is not None:
            starts.append(self.api.start(replace(sub, context="api.market")))
        for watcher in self.watchers:
            starts.append(watcher.start(replace(sub, context=f"watcher.market.{watcher.hub}")))
        results = await asyncio.gather(*starts)
        errors = [r.error for r in results if not r.ok and r.error is not None]
        if errors:
            return self._group_failure("Market failed to start", errors, options)
        return Result.success([r.value for r in results], context=options.context)

    async def stop(self, options: StopOptions | None = None) -> Result:
        """Stop the API and the watchers, then both stores.

        Cancellation is ignored so the stop always runs to completion.
        """
        options = options or StopOptions()
        sub = replace(options, strict=False, ignore_cancel=True)

        first = await asyncio.gather(
            *(s.stop(sub) for s in (self.api, *self.watchers) if s is not None)
        )
        second = await asyncio.gather(
            *(s.stop(sub) for s in (self.mongo, self.redis) if s is not None)
        )
        errors = [r.error for r in (*first, *second) if not r.ok and r.error is not None]
        if errors:
            return self._group_failure("Market stop failed.", errors, options)
        return Result.success(None, context=options.context)

    @staticmethod
    def _group_failure(message: str, errors: list[CodeError], options: Any) -> Result:
        for err in errors:
            logger.warning("%s: %s", message, err.message)
        err = GroupError(message, errors, code="MARKET_ERROR", context=options.context)
        return fail(err, options.strict)

    # --- discovery ------------------------------------------------------

    @classmethod
    async def from_handles(
        cls,
        api: RuntimeHandle | None,
        watchers: Sequence[RuntimeHandle],
        ganaches: Mapping[int, RuntimeHandle],
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> MarketService | None:
        """Rebuild a market from its live API and watchers (same store pair).

        Raises:
            SignatureConflictError: If a live store is bound to another chain state
        """
        api_service = api.service if api is not None else None
        watcher_services = [h.service for h in watchers if isinstance(h.service, MarketWatcherService)]
        first = api_service or (watcher_services[0] if watcher_services else None)
        if not isinstance(first, (MarketApiService, MarketWatcherService)) or first.repo_dir is None:
            return None
        repo_dir = first.repo_dir.parent

        mongo, redis = await asyncio.gather(
            MongoService.from_host(first.mongo_host, probe, config),
            RedisService.from_host(first.redis_host, probe, config),
        )

        chains_dbuuid: dict[str, str] = {}
        hubs = [c.hub for c in api_service.chains] if isinstance(api_service, MarketApiService) else []
        hubs += [w.hub for w in watcher_services]
        for hub in hubs:
            handle = ganaches.get(hub.chainid)
            if handle is not None and isinstance(handle.service, GanachePoCoService):
                chains_dbuuid[str(hub.chainid)] = handle.service.dbuuid
        signature = DBSignature(MARKET_SIGNAME, "market", chains_dbuuid)
        for name, store in (("mongo", mongo), ("redis", redis)):
            if store is not None and not store.is_sig_compatible(signature):
                raise SignatureConflictError(f"Market {name} db signature conflict.")

        descriptor = MarketDescriptor(
            type="market",
            hostname="localhost",
            port=None,
            log_file=None,
            pid_file=None,
            repo_dir=repo_dir,
        )
        market = cls(
            descriptor,
            mongo,  # type: ignore[arg-type]
            redis,  # type: ignore[arg-type]
            api_service if isinstance(api_service, MarketApiService) else None,
            watcher_services,
            probe,
            config,
        )
        market.api_pid = api.pid if api is not None else None
        market.watcher_pids = {
            h.service.hub: h.pid for h in watchers if isinstance(h.service, MarketWatcherService)
        }
        return market

    @classmethod
    async def running(
        cls,
        filters: Mapping[str, Any] | None = None,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> list[RuntimeHandle]:
        """Live markets, one per (redis, mongo) pair; the handle pid is 0.

        Filters: ``mongo_host``, ``hub``.

        Raises:
            CodeError: MARKET_ERROR if two APIs share one store pair
        """
        probe = probe or ProcessProbe()
        config = config or default_config()
        filters = filters or {}
        apis, watchers = await asyncio.gather(
            MarketApiService.running(None, probe, config),
            MarketWatcherService.running(None, probe, config),
        )

        groups: dict[tuple[str, str], _HostGroup] = {}
        for handle in apis:
            api = handle.service
            if not isinstance(api, MarketApiService):
                continue
            group = groups.setdefault((api.redis_host, api.mongo_host), _HostGroup())
            if group.api is not None:
                raise CodeError(
                    "Multiple Market Api services are sharing the same redis & mongo servers",
                    code="MARKET_ERROR",
                )
            group.api = handle
        for handle in watchers:
            watcher = handle.service
            if not isinstance(watcher, MarketWatcherService):
                continue
            groups.setdefault((watcher.redis_host, watcher.mongo_host), _HostGroup()).watchers.append(handle)

        mongo_host = filters.get("mongo_host")
        groups = {k: g for k, g in groups.items() if mongo_host is None or k[1] == mongo_host}
        if not groups:
            return []

        ganaches = await GanachePoCoService.running_grouped_by_unique_chainid(None, probe, config)
        handles: list[RuntimeHandle] = []
        for group in groups.values():
            market = await cls.from_handles(group.api, group.watchers, ganaches, probe, config)
            if market is None:
                continue
            hub = filters.get("hub")
            if hub is not None and not market.has_hub(hub):
                continue
            handles.append(RuntimeHandle(0, market))
        return handles

    @classmethod
    async def _members(
        cls,
        probe: ProcessProbe | None,
        config: ToolConfig | None,
    ) -> tuple[list[RuntimeHandle], list[Service]]:
        apis, watchers, mongos, redises = await asyncio.gather(
            MarketApiService.running(None, probe, config),
            MarketWatcherService.running(None, probe, config),
            MongoService.from_service_type("market", probe, config),
            RedisService.from_service_type("market", probe, config),
        )
        return [*apis, *watchers], [*mongos, *redises]

    @classmethod
    async def stop_all(
        cls,
        filters: Mapping[str, Any] | None = None,
        options: StopOptions | None = None,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> Result:
        """Stop every market process, then every store signed by a market."""
        options = options or StopOptions()
        if filters:
            return await super().stop_all(filters, options, probe, config)
        sub = replace(options, strict=False)
        processes, stores = await cls._members(probe, config)
        first = await group_stop([h.service for h in processes], sub)
        second = await group_stop(stores, sub)
        return cls._merge(first, second, "market stop-all failed", options)

    @classmethod
    async def kill_all(
        cls,
        filters: Mapping[str, Any] | None = None,
        options: StopOptions | None = None,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> Result:
        options = options or StopOptions()
        sub = replace(options, strict=False)
        processes, stores = await cls._members(probe, config)
        store_pids = [pid for pid in await asyncio.gather(*(s.get_pid() for s in stores)) if pid]
        first = await group_kill([h.pid for h in processes], sub, probe, config)
        second = await group_kill(store_pids, sub, probe, config)
        return cls._merge(first, second, "market kill-all failed", options)

    @staticmethod
    def _merge(first: Result, second: Result, message: str, options: StopOptions) -> Result:
        errors = [r.error for r in (first, second) if not r.ok and r.error is not None]
        if errors:
            return fail(GroupError(message, errors, code="MARKET_ERROR"), options.strict)
        return Result.success(None)
