"""Key-value store (redis-server) service."""

from __future__ import annotations

import logging
import re
import signal
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from controller.contracts import RuntimeHandle
from controller.service import StopOptions
from core.bash import gen_setm_script
from core.config import ToolConfig, default_config
from core.db_directory import SignedDirectory
from core.errors import CodeError
from core.ps import ProcessProbe, kill_and_wait
from services.database import LOCALHOST_ALIASES, DatabaseDescriptor, DatabaseService

logger = logging.getLogger(__name__)

RUNNING_PATTERN = r"redis-server [^ ]+:[0-9]+"
_HOST_PORT = re.compile(r"redis-server (?P<host>[^ ]+):(?P<port>[0-9]+)")


def _client(hostname: str, port: int) -> Redis:
    return Redis(host=hostname, port=port, decode_responses=True, socket_timeout=2.0)


async def redis_ping(hostname: str, port: int) -> bool:
    client = _client(hostname, port)
    try:
        return bool(await client.ping())
    except (RedisError, OSError):
        return False
    finally:
        await client.aclose()


async def redis_config_info(hostname: str, port: int) -> dict[str, str]:
    """Return the server's ``dir``, ``logfile`` and ``pidfile`` settings.

    Raises:
        CodeError: REDIS_ERROR if the server cannot be queried
    """
    client = _client(hostname, port)
    try:
        info: dict[str, str] = {}
        for name in ("dir", "logfile", "pidfile"):
            info.update(await client.config_get(name))
        return info
    except (RedisError, OSError) as exc:
        raise CodeError(f"Unable to query redis {hostname}:{port}: {exc}", code="REDIS_ERROR") from exc
    finally:
        await client.aclose()


class RedisService(DatabaseService):
    """redis-server instance serving one signed directory.

    The server's process title is ``redis-server <host>:<port>``, so
    discovery queries the live server for its data directory.
    """

    kind = "redis"
    db_type = "redis"
    error_code = "REDIS_ERROR"

    @property
    def conf_file(self) -> Path:
        return Path(self.config.paths.tmp_dir).resolve() / "redis" / f"{self.port}.conf"

    def gen_redis_conf(self) -> str:
        lines = []
        if self.hostname in LOCALHOST_ALIASES:
            lines.append("bind 127.0.0.1 ::1")
        else:
            lines.append(f"bind {self.hostname}")
        lines.append(f"port {self.port}")
        lines.append("appendonly yes")
        lines.append("appenddirname appenddir")
        if self.pid_file is not None:
            lines.append(f"pidfile {self.pid_file}")
        if self.log_file is not None:
            lines.append(f"logfile {self.log_file}")
        lines.append("dir ./")
        return "\n".join(lines) + "\n"

    async def get_pid(self) -> int | None:
        if not self.can_start:
            return None
        hostname = "127.0.0.1" if self.hostname == "localhost" else self.hostname
        pattern = "redis-server " + re.escape(f"{hostname}:{self.port}") + "( |$)"
        pids = await self.probe.grep_pids(pattern)
        if not pids:
            return None
        assert len(pids) == 1, f"several redis servers listen on {self.host}"
        return pids[0]

    async def launch_script(self, env: Mapping[str, str]) -> str:
        self.conf_file.parent.mkdir(parents=True, exist_ok=True)
        self.conf_file.write_text(self.gen_redis_conf(), encoding="utf-8")
        prefixed = {self.env_var(k): v for k, v in env.items()}
        return gen_setm_script(
            "redis-server", [str(self.conf_file)], prefixed, None, cwd=self.db_dir
        )

    def _delete_conf_file(self) -> None:
        self.conf_file.unlink(missing_ok=True)

    async def on_ready(self, pid: int, already_started: bool) -> None:
        self._delete_conf_file()

    async def on_start_failed(self, error: CodeError) -> None:
        self._delete_conf_file()

    async def ping(self) -> bool:
        assert self.port is not None
        return await redis_ping(self.hostname, self.port)

    async def stop_process(self, pid: int, options: StopOptions) -> None:
        assert self.port is not None
        client = _client(self.hostname, self.port)
        try:
            await client.shutdown()
        except (RedisError, OSError) as exc:
            logger.info("redis %s shutdown failed (%s), killing pid=%d", self.host, exc, pid)
            await kill_and_wait(
                pid,
                self.config.readiness.stop,
                options.effective_cancel,
                self.probe,
                kill_signal=signal.SIGABRT,
            )
            return
        finally:
            await client.aclose()
        await kill_and_wait(
            pid, self.config.readiness.stop, options.effective_cancel, self.probe, kill_signal=0
        )

    @classmethod
    async def running(
        cls,
        filters: Mapping[str, Any] | None = None,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> list[RuntimeHandle]:
        probe = probe or ProcessProbe()
        config = config or default_config()
        handles: list[RuntimeHandle] = []
        for entry in await probe.grep(RUNNING_PATTERN):
            service = await cls._from_command(entry.pid, entry.command, probe, config)
            if filters and (service is None or not cls._filter(service, filters)):
                continue
            handles.append(RuntimeHandle(entry.pid, service))
        return handles

    @classmethod
    async def _from_command(
        cls,
        pid: int,
        command: str,
        probe: ProcessProbe,
        config: ToolConfig,
    ) -> RedisService | None:
        match = _HOST_PORT.search(command)
        if match is None:
            return None
        hostname, port = match.group("host"), int(match.group("port"))
        try:
            info = await redis_config_info(hostname, port)
            signed_dir = SignedDirectory.load_from_payload_dir("redis", info["dir"])
            descriptor = DatabaseDescriptor(
                type="redis",
                hostname=hostname,
                port=port,
                log_file=Path(info["logfile"]) if info.get("logfile") else None,
                pid_file=Path(info["pidfile"]) if info.get("pidfile") else None,
                directory=signed_dir.directory,
            )
        except (CodeError, KeyError, ValueError) as exc:
            logger.warning("redis pid=%d: %s", pid, exc)
            return None
        return cls(descriptor, signed_dir, probe, config)
