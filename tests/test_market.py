"""Tests for the market composite and its Node sub-processes."""

from __future__ import annotations

from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest

from controller.contracts import ChainDeployment, RuntimeHandle
from controller.service import StartOptions
from core.config import ToolConfig
from core.db_directory import SignedDirectory
from core.errors import CodeError, GroupError, Result, SignatureConflictError
from services.ganache import GanachePoCoService, GanacheService
from services.market import MarketService, build_components, resolve_chain
from services.market_api import MarketApiService, MarketChain
from services.market_watcher import MarketWatcherService
from tests.utils import FakeProcessTable, build_test_config

MNEMONIC = "test test test test test test test test test test test junk"
HUB = ChainDeployment(1337, "standard")


def chain_config(chainid: int) -> dict[str, Any]:
    return {
        "chainid": chainid,
        "mnemonic": MNEMONIC,
        "deployments": {
            "standard": {"hub": f"0xhub{chainid}", "asset": "Native", "kyc": False},
            "enterprise": {"hub": f"0xent{chainid}", "asset": "Token", "kyc": True},
        },
    }


def make_poco(tmp_path: Path, chainid: int = 1337, dbuuid: str = "uuid1337") -> GanachePoCoService:
    plain = GanacheService.new_instance(
        chainid=chainid,
        mnemonic=MNEMONIC,
        db_path=tmp_path / f"chain{chainid}" / "db",
        port=8545 + chainid - 1337,
    )
    return GanachePoCoService(plain.descriptor, dbuuid, chain_config(chainid))  # type: ignore[arg-type]


def ganache_map(*services: GanachePoCoService) -> dict[int, RuntimeHandle]:
    return {s.chainid: RuntimeHandle(100 + i, s) for i, s in enumerate(services)}


class TestResolveChain:
    """Tests for hub resolution through the simulator deployments table."""

    def test_known_deployment(self, tmp_path: Path) -> None:
        """Test a deployment name resolves to its contract address."""
        chain = resolve_chain(make_poco(tmp_path), ChainDeployment(1337, "enterprise"))

        assert chain is not None
        assert chain.address == "0xent1337"
        assert chain.enterprise
        assert not chain.is_native
        assert chain.rpc_url == "http://localhost:8545"

    def test_unknown_deployment_or_chain(self, tmp_path: Path) -> None:
        """Test unknown names and other chains do not resolve."""
        ganache = make_poco(tmp_path)
        assert resolve_chain(ganache, ChainDeployment(1337, "missing")) is None
        assert resolve_chain(ganache, ChainDeployment(1338, "standard")) is None


class TestBuildComponents:
    """Tests for assembling the API and watchers."""

    def test_mirror_watchers_and_logs(self, tmp_path: Path) -> None:
        """Test 'all' creates one watcher per API chain and unresolved hubs are skipped."""
        components = build_components(
            ganache_map(make_poco(tmp_path)),
            repo_dir=tmp_path / "src",
            mongo_host="localhost:27020",
            redis_host="localhost:27030",
            api_args={"port": 3000, "chains": ["1337.standard", "1400.standard"]},
            watcher_args="all",
            logs_dir=tmp_path / "logs",
        )

        api = components.api
        assert api is not None
        assert [c.hub for c in api.chains] == [HUB]
        assert api.log_file == tmp_path / "logs" / "api.3000.log"
        assert api.repo_dir == (tmp_path / "src" / "api").resolve()
        assert [w.hub for w in components.watchers] == [HUB]
        assert components.watchers[0].log_file == tmp_path / "logs" / "watcher.1337.standard.log"
        assert components.signature.signature == {"1337": "uuid1337"}

    def test_two_hubs_on_one_chain(self, tmp_path: Path) -> None:
        """Test the API cannot serve two deployments of one chain."""
        with pytest.raises(CodeError) as exc_info:
            build_components(
                ganache_map(make_poco(tmp_path)),
                repo_dir=tmp_path / "src",
                mongo_host="localhost:27020",
                redis_host="localhost:27030",
                api_args={"port": 3000, "chains": ["1337.standard", "1337.enterprise"]},
            )
        assert exc_info.value.code == "MARKET_ERROR"

    def test_explicit_watchers(self, tmp_path: Path) -> None:
        """Test watchers may target hubs the API does not serve."""
        components = build_components(
            ganache_map(make_poco(tmp_path), make_poco(tmp_path, 1338, "uuid1338")),
            repo_dir=tmp_path / "src",
            mongo_host="localhost:27020",
            redis_host="localhost:27030",
            watcher_args=[
                ChainDeployment(1338, "standard"),
                {"hub": "1337.enterprise", "log_file": tmp_path / "w.log"},
            ],
        )

        assert components.api is None
        assert [str(w.hub) for w in components.watchers] == ["1338.standard", "1337.enterprise"]
        assert components.watchers[1].log_file == tmp_path / "w.log"
        assert components.signature.signature == {"1338": "uuid1338", "1337": "uuid1337"}


class TestMarketChainEnv:
    """Tests for the environment contract of the Node programs."""

    def test_api_env_round_trip(self, tmp_path: Path) -> None:
        """Test the API environment parses back to the same chains."""
        config = build_test_config(tmp_path)
        chain = MarketChain(HUB, "0xhub", "http://localhost:8545", is_native=True)
        api = MarketApiService.new_instance(
            port=3000,
            mongo_host="localhost:27020",
            redis_host="localhost:27030",
            chains=[chain],
            config=config,
        )

        env = api.api_env()

        assert env["CHAINS"] == "DEVSTACK_MARKET_API_1"
        assert env["DEVSTACK_MARKET_API_1_HUBKEY"] == "1337.standard"
        assert env["DEVSTACK_MARKET_API_1_IS_NATIVE"] == "true"
        fields = MarketApiService.parse_env(env, config)
        assert fields["chains"] == (chain,)
        assert fields["port"] == 3000

    def test_duplicate_chain_ids_rejected(self) -> None:
        """Test an API descriptor refuses two chains with one id."""
        a = MarketChain(HUB, "0xa", "http://localhost:8545")
        b = MarketChain(ChainDeployment(1337, "enterprise"), "0xb", "http://localhost:8545")
        with pytest.raises(ValueError, match="duplicate"):
            MarketApiService.new_instance(
                port=3000, mongo_host="h:1", redis_host="h:2", chains=[a, b]
            )


class TestNewInstance:
    """Tests for MarketService.new_instance."""

    @pytest.mark.asyncio
    async def test_empty_market(self, tmp_path: Path) -> None:
        """Test a market without API nor watchers is refused."""
        with pytest.raises(CodeError, match="Empty Market service"):
            await MarketService.new_instance(
                mongo={"port": 27020}, redis={"port": 27030}, directory=tmp_path, ganaches={}
            )

    @pytest.mark.asyncio
    async def test_missing_source(self) -> None:
        """Test a market needs a source checkout or a directory."""
        with pytest.raises(CodeError, match="Missing Market package or directory"):
            await MarketService.new_instance(
                mongo={"port": 27020}, redis={"port": 27030}, api={"port": 3000, "chains": []}
            )

    @pytest.mark.asyncio
    async def test_unresolved_hubs_make_an_empty_market(self, tmp_path: Path) -> None:
        """Test a market whose hubs are all unknown is empty."""
        with pytest.raises(CodeError, match="Empty Market service"):
            await MarketService.new_instance(
                mongo={"port": 27020},
                redis={"port": 27030},
                directory=tmp_path,
                api={"port": 3000, "chains": ["1337.standard"]},
                ganaches={},
            )

    @pytest.mark.asyncio
    async def test_signs_both_stores(self, tmp_path: Path) -> None:
        """Test the stores record the chain identifiers and refuse a reset chain."""
        config = build_test_config(tmp_path)
        directory = MarketService.install(tmp_path / "market")
        probe = FakeProcessTable().probe()
        args: dict[str, Any] = {
            "mongo": {"port": 27020},
            "redis": {"port": 27030},
            "directory": directory,
            "api": {"port": 3000, "chains": ["1337.standard"]},
            "watchers": "all",
            "probe": probe,
            "config": config,
        }

        market = await MarketService.new_instance(ganaches=ganache_map(make_poco(tmp_path)), **args)

        assert market.repo_dir == directory / "src"
        assert market.mongo_host == "localhost:27020"
        assert market.hubs == [HUB]
        assert market.has_hub("1337.standard")
        assert market.can_start
        for name in ("mongo", "redis"):
            ledger = SignedDirectory.load(name, directory / name).ledger  # type: ignore[arg-type]
            assert ledger == {"market": {"serviceType": "market", "signature": {"1337": "uuid1337"}}}

        reset_chain = ganache_map(make_poco(tmp_path, dbuuid="uuid-after-reset"))
        with pytest.raises(SignatureConflictError):
            await MarketService.new_instance(ganaches=reset_chain, **args)


async def make_market(tmp_path: Path, config: ToolConfig) -> MarketService:
    directory = MarketService.install(tmp_path / "market")
    return await MarketService.new_instance(
        mongo={"port": 27020},
        redis={"port": 27030},
        directory=directory,
        api={"port": 3000, "chains": ["1337.standard"]},
        watchers="all",
        ganaches=ganache_map(make_poco(tmp_path)),
        probe=FakeProcessTable().probe(),
        config=config,
    )


class TestLifecycle:
    """Tests for the composite start/stop ordering."""

    @pytest.mark.asyncio
    async def test_only_db_starts_stores(self, tmp_path: Path) -> None:
        """Test only_db stops after the stores."""
        market = await make_market(tmp_path, build_test_config(tmp_path))
        ok = AsyncMock(return_value=Result.success(1))
        market.mongo.start = ok  # type: ignore[union-attr, method-assign]
        market.redis.start = ok  # type: ignore[union-attr, method-assign]
        market.api.start = AsyncMock()  # type: ignore[union-attr, method-assign]

        res = await market.start(StartOptions(only_db=True))

        assert res.ok
        assert ok.await_count == 2
        market.api.start.assert_not_called()  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_store_failure_is_grouped(self, tmp_path: Path) -> None:
        """Test a failing store aborts before the Node programs."""
        market = await make_market(tmp_path, build_test_config(tmp_path))
        market.mongo.start = AsyncMock(  # type: ignore[union-attr, method-assign]
            return_value=Result.failure(CodeError("port busy", "PORT_IN_USE_ERROR"))
        )
        market.redis.start = AsyncMock(return_value=Result.success(2))  # type: ignore[union-attr, method-assign]
        market.api.start = AsyncMock()  # type: ignore[union-attr, method-assign]

        res = await market.start()

        assert isinstance(res.error, GroupError)
        assert res.error.code == "MARKET_ERROR"
        assert [e.code for e in res.error.errors] == ["PORT_IN_USE_ERROR"]
        market.api.start.assert_not_called()  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_stop_order(self, tmp_path: Path) -> None:
        """Test the Node programs stop before the stores."""
        market = await make_market(tmp_path, build_test_config(tmp_path))
        order: list[str] = []

        def recorder(label: str) -> AsyncMock:
            async def _stop(options: Any = None) -> Result:
                order.append(label)
                return Result.success(None)

            return AsyncMock(side_effect=_stop)

        market.api.stop = recorder("api")  # type: ignore[union-attr, method-assign]
        market.watchers[0].stop = recorder("watcher")  # type: ignore[method-assign]
        market.mongo.stop = recorder("mongo")  # type: ignore[union-attr, method-assign]
        market.redis.stop = recorder("redis")  # type: ignore[union-attr, method-assign]

        res = await market.stop()

        assert res.ok
        assert set(order[:2]) == {"api", "watcher"}
        assert set(order[2:]) == {"mongo", "redis"}


def add_market_processes(
    table: FakeProcessTable, tmp_path: Path, config: ToolConfig, api_pid: int, watcher_pid: int
) -> None:
    chain = MarketChain(HUB, "0xhub1337", "http://localhost:8545", is_native=True)
    repo = tmp_path / "src"
    api = MarketApiService.new_instance(
        port=3000,
        mongo_host="localhost:27020",
        redis_host="localhost:27030",
        chains=[chain],
        config=config,
    )
    watcher = MarketWatcherService.new_instance(
        mongo_host="localhost:27020", redis_host="localhost:27030", chain=chain, config=config
    )
    table.add(api_pid, "node ./src/server.js", api.api_env(), cwd=repo / "api")
    table.add(watcher_pid, "node ./src/index.js", watcher.watcher_env(), cwd=repo / "watcher")


class TestDiscovery:
    """Tests for rebuilding live markets from their processes."""

    @pytest.mark.asyncio
    async def test_running_groups_by_store_pair(self, tmp_path: Path) -> None:
        """Test the API and watcher sharing stores form one market with pid 0."""
        config = build_test_config(tmp_path)
        table = FakeProcessTable()
        add_market_processes(table, tmp_path, config, 200, 201)

        with patch(
            "services.market.GanachePoCoService.running_grouped_by_unique_chainid",
            AsyncMock(return_value={}),
        ):
            handles = await MarketService.running(probe=table.probe(), config=config)
            by_hub = await MarketService.running({"hub": "1338.standard"}, table.probe(), config)

        assert len(handles) == 1
        assert handles[0].pid == 0
        market = handles[0].service
        assert isinstance(market, MarketService)
        assert market.repo_dir == tmp_path / "src"
        assert market.api_pid == 200
        assert market.watcher_pids == {HUB: 201}
        assert market.mongo is None
        assert market.mongo_host == "localhost:27020"
        labels = [(label, pid) for label, pid, _ in market.sub_processes()]
        assert labels == [("market.api", 200), ("market.watcher", 201)]
        assert by_hub == []

    @pytest.mark.asyncio
    async def test_two_apis_on_one_store_pair(self, tmp_path: Path) -> None:
        """Test two APIs sharing one store pair cannot be grouped."""
        config = build_test_config(tmp_path)
        table = FakeProcessTable()
        add_market_processes(table, tmp_path, config, 210, 211)
        add_market_processes(table, tmp_path, config, 212, 213)

        with pytest.raises(CodeError) as exc_info:
            await MarketService.running(probe=table.probe(), config=config)
        assert exc_info.value.code == "MARKET_ERROR"

    @pytest.mark.asyncio
    async def test_watcher_rebuilt_from_env(self, tmp_path: Path) -> None:
        """Test a watcher process parses back to its chain and stores."""
        config = build_test_config(tmp_path)
        table = FakeProcessTable()
        add_market_processes(table, tmp_path, config, 220, 221)
        table.add(222, "node ./src/index.js", {"CHAIN": "OTHER_MARKET_API"})

        handles = await MarketWatcherService.running(probe=table.probe(), config=config)

        assert [h.pid for h in handles] == [221]
        watcher = handles[0].service
        assert isinstance(watcher, MarketWatcherService)
        assert watcher.hub == HUB
        assert watcher.chain.is_native
        assert watcher.repo_dir == tmp_path / "src" / "watcher"
        assert await watcher.get_pid() == 221
