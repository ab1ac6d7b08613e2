"""Tests for the document and key-value store services."""

from __future__ import annotations

import signal
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import RedisError

from controller.service import StopOptions
from core.db_directory import DBSignature, SignedDirectory
from core.errors import AlreadyBusyError, CodeError, SignatureConflictError
from services.mongo import MongoService, parse_mongo_args
from services.redis import RedisService, redis_ping
from tests.utils import FakeProcessTable, build_test_config

SIG = DBSignature(name="market", service_type="market", signature={"1337": "abc"})
OTHER_SIG = DBSignature(name="market", service_type="market", signature={"1337": "zzz"})


def mongod_command(db_dir: Path, port: int, log_file: Path | None = None) -> str:
    command = f"mongod --bind_ip localhost --port {port} --ipv6 --dbpath {db_dir}"
    if log_file is not None:
        command += f" --logappend --logpath {log_file}"
    return command


@pytest.fixture(autouse=True)
def free_ports():
    with patch("controller.service.is_port_in_use", return_value=False) as port_check:
        yield port_check


class TestMongo:
    """Tests for the mongod service."""

    def test_parse_args(self) -> None:
        """Test options are read back from the process title."""
        args = parse_mongo_args(
            "/usr/bin/mongod --bind_ip localhost --port 13500 --ipv6 --dbpath /data/x"
            " --logappend --logpath /var/log/m.log --pidfilepath /run/m.pid"
        )
        assert args == {
            "port": 13500,
            "bind_ip": "localhost",
            "dbpath": "/data/x",
            "logpath": "/var/log/m.log",
            "pidfilepath": "/run/m.pid",
        }
        assert parse_mongo_args("mongo --eval 1") is None

    @pytest.mark.asyncio
    async def test_new_instance_and_cli_args(self, tmp_path: Path) -> None:
        """Test an instance binds localhost and points at the payload directory."""
        signed = SignedDirectory.install("mongo", tmp_path / "mongo")

        svc = await MongoService.new_instance(
            signed.directory, 13500, probe=FakeProcessTable().probe()
        )

        args = svc.cli_args()
        assert args[:4] == ["--bind_ip", "localhost", "--port", "13500"]
        assert args[args.index("--dbpath") + 1] == str(signed.db_dir)
        assert svc.dbuuid == signed.dbuuid
        assert svc.can_start

    @pytest.mark.asyncio
    async def test_bind_ip_follows_hostname(self, tmp_path: Path) -> None:
        """Test a custom hostname is bound and read back from the process title."""
        signed = SignedDirectory.install("mongo", tmp_path / "mongo")
        table = FakeProcessTable()
        svc = await MongoService.new_instance(
            signed.directory, 13500, hostname="127.0.0.1", probe=table.probe()
        )

        args = svc.cli_args()
        assert args[:2] == ["--bind_ip", "127.0.0.1"]

        table.add(72, "mongod " + " ".join(args))
        handles = await MongoService.running(probe=table.probe(), config=build_test_config(tmp_path))
        live = handles[0].service
        assert isinstance(live, MongoService)
        assert live.hostname == "127.0.0.1"

    @pytest.mark.asyncio
    async def test_discovery_round_trip(self, tmp_path: Path) -> None:
        """Test a live mongod is rebuilt from its command line."""
        signed = SignedDirectory.install("mongo", tmp_path / "mongo", signature=SIG)
        table = FakeProcessTable()
        table.add(70, mongod_command(signed.db_dir, 13500, tmp_path / "mongo.log"))
        table.add(71, "mongod --port")
        config = build_test_config(tmp_path)

        handles = await MongoService.running(probe=table.probe(), config=config)
        services = {h.pid: h.service for h in handles}

        assert services[71] is None
        live = services[70]
        assert isinstance(live, MongoService)
        assert live.port == 13500
        assert live.log_file == tmp_path / "mongo.log"
        assert await live.get_pid() == 70
        assert await MongoService.running({"port": 1}, table.probe(), config) == []

        by_type = await MongoService.from_service_type("market", table.probe(), config)
        assert [s.directory for s in by_type] == [signed.directory]
        by_host = await MongoService.from_host("127.0.0.1:13500", table.probe(), config)
        assert by_host is not None

    @pytest.mark.asyncio
    async def test_live_instance_on_other_port(self, tmp_path: Path) -> None:
        """Test a running instance on another port is a conflict."""
        signed = SignedDirectory.install("mongo", tmp_path / "mongo")
        table = FakeProcessTable()
        table.add(72, mongod_command(signed.db_dir, 13500))

        same = await MongoService.new_instance(signed.directory, 13500, probe=table.probe())
        assert await same.get_pid() == 72

        with pytest.raises(CodeError) as exc_info:
            await MongoService.new_instance(signed.directory, 13501, probe=table.probe())
        assert exc_info.value.code == "MONGO_ERROR"
        assert "port=13500" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_signature_conflict(self, tmp_path: Path) -> None:
        """Test a second consumer with a different signature is refused."""
        signed = SignedDirectory.install("mongo", tmp_path / "mongo", signature=SIG)

        ok = await MongoService.new_instance(
            signed.directory, 13500, signature=SIG, probe=FakeProcessTable().probe()
        )
        assert ok.get_sig("market") == SIG.entry()

        with pytest.raises(SignatureConflictError):
            await MongoService.new_instance(
                signed.directory, 13500, signature=OTHER_SIG, probe=FakeProcessTable().probe()
            )

    @pytest.mark.asyncio
    async def test_lock_file_held_by_live_process(self, tmp_path: Path) -> None:
        """Test a mongod lock owned by a live pid makes the start busy."""
        signed = SignedDirectory.install("mongo", tmp_path / "mongo")
        (signed.db_dir / "mongod.lock").write_text("73\n", encoding="utf-8")
        table = FakeProcessTable()
        table.add(73, "mongod --config /etc/other.conf")
        svc = await MongoService.new_instance(signed.directory, 13500, probe=table.probe())

        with pytest.raises(AlreadyBusyError):
            await svc.check_busy()

    @pytest.mark.asyncio
    async def test_stop_with_reset(self, tmp_path: Path) -> None:
        """Test stop(reset) wipes the store and assigns a new identifier."""
        signed = SignedDirectory.install("mongo", tmp_path / "mongo", signature=SIG)
        table = FakeProcessTable()
        table.add(74, mongod_command(signed.db_dir, 13500))
        svc = await MongoService.new_instance(
            signed.directory, 13500, probe=table.probe(), config=build_test_config(tmp_path)
        )

        def _gone(pid: int, sig: int) -> bool:
            table.remove(pid)
            return True

        with patch("core.ps.send_signal", side_effect=_gone):
            res = await svc.stop(StopOptions(reset=True))

        assert res.ok and res.value == 74
        assert svc.dbuuid != signed.dbuuid
        assert svc.signed_dir.ledger is None


def make_redis_dir(tmp_path: Path) -> SignedDirectory:
    return SignedDirectory.install("redis", tmp_path / "redis", signature=SIG)


class TestRedis:
    """Tests for the redis-server service."""

    @pytest.mark.asyncio
    async def test_conf_and_launch_script(self, tmp_path: Path) -> None:
        """Test the generated config binds loopback and runs from the payload dir."""
        signed = make_redis_dir(tmp_path)
        svc = await RedisService.new_instance(
            signed.directory,
            13600,
            pid_file=tmp_path / "redis.pid",
            probe=FakeProcessTable().probe(),
            config=build_test_config(tmp_path),
        )

        conf = svc.gen_redis_conf()
        script = await svc.launch_script({})

        assert conf.splitlines()[:3] == ["bind 127.0.0.1 ::1", "port 13600", "appendonly yes"]
        assert f"pidfile {tmp_path / 'redis.pid'}" in conf
        assert svc.conf_file.read_text(encoding="utf-8") == conf
        assert f"cd '{signed.db_dir}'" in script
        assert f"redis-server {svc.conf_file}" in script

        await svc.on_ready(1, False)
        assert not svc.conf_file.exists()

    @pytest.mark.asyncio
    async def test_discovery_queries_live_server(self, tmp_path: Path) -> None:
        """Test the data directory is read from the running server."""
        signed = make_redis_dir(tmp_path)
        table = FakeProcessTable()
        table.add(80, "redis-server 127.0.0.1:13600")
        config = build_test_config(tmp_path)
        info = {"dir": str(signed.db_dir), "logfile": "", "pidfile": ""}

        with patch("services.redis.redis_config_info", AsyncMock(return_value=info)):
            handles = await RedisService.running(probe=table.probe(), config=config)
            by_host = await RedisService.from_host("localhost:13600", table.probe(), config)

        assert len(handles) == 1
        live = handles[0].service
        assert isinstance(live, RedisService)
        assert live.directory == signed.directory
        assert live.log_file is None
        assert by_host is not None
        assert await live.get_pid() == 80

    @pytest.mark.asyncio
    async def test_unreachable_server_is_malformed(self, tmp_path: Path) -> None:
        """Test a server that cannot be queried yields a handle without service."""
        table = FakeProcessTable()
        table.add(81, "redis-server 127.0.0.1:13601")
        failing = AsyncMock(side_effect=CodeError("down", code="REDIS_ERROR"))

        with patch("services.redis.redis_config_info", failing):
            handles = await RedisService.running(probe=table.probe())

        assert [(h.pid, h.service) for h in handles] == [(81, None)]

    @pytest.mark.asyncio
    async def test_failed_shutdown_falls_back_to_sigabrt(self, tmp_path: Path) -> None:
        """Test the process is killed when SHUTDOWN cannot be sent."""
        signed = make_redis_dir(tmp_path)
        table = FakeProcessTable()
        table.add(82, "redis-server 127.0.0.1:13600")
        svc = await RedisService.new_instance(
            signed.directory,
            13600,
            probe=table.probe(),
            config=build_test_config(tmp_path),
        )
        client = AsyncMock()
        client.shutdown.side_effect = RedisError("connection refused")

        def _gone(pid: int, sig: int) -> bool:
            table.remove(pid)
            return True

        with (
            patch("services.redis._client", return_value=client),
            patch("core.ps.send_signal", side_effect=_gone) as sender,
        ):
            res = await svc.stop()

        assert res.ok
        sender.assert_called_once_with(82, signal.SIGABRT)
        client.aclose.assert_awaited()


@pytest.mark.asyncio
async def test_redis_ping_with_fakeredis(monkeypatch: pytest.MonkeyPatch) -> None:
    try:
        from fakeredis.aioredis import FakeRedis
    except ModuleNotFoundError:
        pytest.skip("fakeredis.aioredis not installed")

    fake = FakeRedis(decode_responses=True)

    async def _aclose() -> None:
        return None

    monkeypatch.setattr(fake, "aclose", _aclose, raising=False)
    monkeypatch.setattr("services.redis._client", lambda hostname, port: fake)

    assert await redis_ping("127.0.0.1", 13600) is True


@pytest.mark.asyncio
async def test_redis_ping_unreachable() -> None:
    assert await redis_ping("127.0.0.1", 1) is False
