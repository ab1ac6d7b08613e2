"""Document store (mongod) service."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from controller.contracts import RuntimeHandle
from core.bash import gen_nohup_script
from core.config import ToolConfig, default_config
from core.db_directory import SignedDirectory
from core.errors import AlreadyBusyError, CodeError
from core.net import is_port_in_use
from core.ps import ProcessProbe
from services.database import DatabaseDescriptor, DatabaseService

logger = logging.getLogger(__name__)

RUNNING_PATTERN = "mongod -"


def parse_mongo_args(command: str) -> dict[str, Any] | None:
    """Extract the options written by :meth:`MongoService.cli_args`.

    Returns:
        ``{"port", "bind_ip", "dbpath", "logpath", "pidfilepath"}`` or None
        when the command line is not a mongod launch
    """
    index = command.find(RUNNING_PATTERN)
    if index < 0:
        return None
    args = command[index:]

    def _value(option: str) -> str | None:
        key = f" {option} "
        start = args.find(key)
        if start < 0:
            return None
        start += len(key)
        end = args.find("--", start)
        return (args[start:] if end < 0 else args[start:end]).strip() or None

    port = _value("--port")
    if port is None or not port.isdigit():
        return None
    return {
        "port": int(port),
        "bind_ip": _value("--bind_ip"),
        "dbpath": _value("--dbpath"),
        "logpath": _value("--logpath"),
        "pidfilepath": _value("--pidfilepath"),
    }


class MongoService(DatabaseService):
    """mongod instance serving one signed directory."""

    kind = "mongo"
    db_type = "mongo"
    error_code = "MONGO_ERROR"

    def cli_args(self) -> list[str]:
        args = [
            "--bind_ip",
            self.hostname,
            "--port",
            str(self.port),
            "--ipv6",
            "--dbpath",
            str(self.db_dir),
        ]
        if self.log_file is not None:
            args += ["--logappend", "--logpath", str(self.log_file)]
        if self.pid_file is not None:
            args += ["--pidfilepath", str(self.pid_file)]
        return args

    async def get_pid(self) -> int | None:
        if not self.can_start:
            return None
        port = self.port
        db_dir = re.escape(str(self.db_dir))
        pattern = f"mongod.*--port {port}.*--dbpath {db_dir}|mongod.*--dbpath {db_dir}.*--port {port}"
        pids = await self.probe.grep_pids(pattern)
        if not pids:
            return None
        assert len(pids) == 1, f"several mongod processes use {self.db_dir}"
        return pids[0]

    async def check_busy(self) -> None:
        await super().check_busy()
        lock_file = self.db_dir / "mongod.lock"
        try:
            text = lock_file.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return
        if text.isdigit() and await self.probe.exists(int(text)):
            raise AlreadyBusyError(
                f"Another instance of mongo is already accessing storage directory '{self.db_dir}'",
                code="MONGO_ERROR",
            )

    async def launch_script(self, env: Mapping[str, str]) -> str:
        prefixed = {self.env_var(k): v for k, v in env.items()}
        return gen_nohup_script("mongod", self.cli_args(), prefixed)

    async def ping(self) -> bool:
        assert self.port is not None
        return await is_port_in_use(self.hostname, self.port)

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
            service = cls._from_command(entry.pid, entry.command, probe, config)
            if filters and (service is None or not cls._filter(service, filters)):
                continue
            handles.append(RuntimeHandle(entry.pid, service))
        return handles

    @classmethod
    def _from_command(
        cls,
        pid: int,
        command: str,
        probe: ProcessProbe,
        config: ToolConfig,
    ) -> MongoService | None:
        args = parse_mongo_args(command)
        if args is None or not args["bind_ip"] or not args["dbpath"]:
            logger.warning("unable to parse mongod pid=%d", pid)
            return None
        try:
            signed_dir = SignedDirectory.load_from_payload_dir("mongo", args["dbpath"])
            descriptor = DatabaseDescriptor(
                type="mongo",
                hostname=args["bind_ip"],
                port=args["port"],
                log_file=Path(args["logpath"]) if args["logpath"] else None,
                pid_file=Path(args["pidfilepath"]) if args["pidfilepath"] else None,
                directory=signed_dir.directory,
            )
        except (CodeError, ValueError) as exc:
            logger.warning("mongod pid=%d: %s", pid, exc)
            return None
        return cls(descriptor, signed_dir, probe, config)
