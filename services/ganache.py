"""Chain simulator (ganache) service.

Launch arguments are emitted in a fixed order with the database path
always last, so that one anchored pattern both finds and parses back a
live instance. Readiness is an ``eth_chainId`` JSON-RPC poll.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

from controller.contracts import RuntimeHandle, ServiceDescriptor
from controller.service import ServerService, StartOptions, StopOptions
from core.bash import gen_setm_script
from core.config import ToolConfig, default_config
from core.db_directory import DBUUID_BASENAME
from core.errors import AlreadyBusyError, CodeError, NotFoundError, ProcessKilledError
from core.ps import ProcessProbe
from core.repeat import repeat_call_until

logger = logging.getLogger(__name__)

DEFAULT_CALL_GAS_LIMIT = "9007199254740991"
DEFAULT_TX_GAS_LIMIT = "5000000"
DEFAULT_ASYNC_REQUEST_PROCESSING = "false"
DEFAULT_HARDFORK = "london"
DEFAULT_TOTAL_ACCOUNTS = 20

RUNNING_PATTERN = r"node.*ganache.*--chain\.chainId.*--server\.host "

# option name -> descriptor field
_OPTIONS: dict[str, str] = {
    "--miner.callGasLimit": "call_gas_limit",
    "--miner.defaultTransactionGasLimit": "default_transaction_gas_limit",
    "--chain.asyncRequestProcessing": "async_request_processing",
    "--chain.hardfork": "hardfork",
    "--wallet.totalAccounts": "total_accounts",
    "-m": "mnemonic",
    "--chain.chainId": "chainid",
    "--chain.networkId": "network_id",
    "--server.host": "hostname",
    "--server.port": "port",
    "--database.dbPath": "db_path",
}
_REQUIRED = (
    "--server.host",
    "-m",
    "--database.dbPath",
    "--chain.chainId",
    "--chain.networkId",
    "--wallet.totalAccounts",
    "--server.port",
)
_INT_OPTIONS = ("--chain.chainId", "--chain.networkId", "--wallet.totalAccounts", "--server.port")


@dataclass(frozen=True)
class GanacheDescriptor(ServiceDescriptor):
    """Chain simulator identity.

    Attributes:
        chainid: Chain id (also used as network id)
        mnemonic: Wallet mnemonic
        db_path: Absolute database directory
        total_accounts: Number of generated accounts
    """

    chainid: int
    mnemonic: str
    db_path: Path
    hardfork: str = DEFAULT_HARDFORK
    call_gas_limit: str = DEFAULT_CALL_GAS_LIMIT
    default_transaction_gas_limit: str = DEFAULT_TX_GAS_LIMIT
    async_request_processing: str = DEFAULT_ASYNC_REQUEST_PROCESSING
    total_accounts: int = DEFAULT_TOTAL_ACCOUNTS

    def __post_init__(self) -> None:
        """Validate GanacheDescriptor."""
        super().__post_init__()
        if self.port is None:
            raise ValueError("ganache requires a port")
        if self.chainid <= 0:
            raise ValueError(f"chainid must be > 0, got {self.chainid}")
        if not self.mnemonic.strip():
            raise ValueError("mnemonic must not be empty")
        if not self.db_path.is_absolute():
            raise ValueError(f"db_path must be an absolute path, got {self.db_path}")
        if self.total_accounts <= 0:
            raise ValueError(f"total_accounts must be > 0, got {self.total_accounts}")

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update(
            {
                "chainid": self.chainid,
                "mnemonic": self.mnemonic,
                "dbPath": str(self.db_path),
                "hardfork": self.hardfork,
                "totalAccounts": self.total_accounts,
            }
        )
        return payload


def parse_args(command: str) -> dict[str, Any] | None:
    """Parse a live ganache command line back into descriptor fields.

    Shell-quoted or single-dash layouts are refused rather than guessed.

    Args:
        command: Full command line as listed in the process table

    Returns:
        Field mapping suitable for :meth:`GanacheService.new_instance`,
        or None when the command line is not recognized
    """
    index_node = command.find("node")
    index_ganache = command.find("ganache")
    index_first_arg = command.find(" --")
    if index_node < 0 or index_ganache < 0 or index_first_arg < 0:
        return None
    if not index_node < index_ganache < index_first_arg:
        return None
    if '"' in command or "'" in command or " - " in command:
        return None

    args = command[index_first_arg:]
    values: dict[str, Any] = {}
    for option in _OPTIONS:
        key = f" {option} "
        start = args.find(key)
        if start < 0:
            continue
        start += len(key)
        end = args.find(" -", start)
        value = args[start:] if end < 0 else args[start:end]
        values[option] = value.strip()

    if any(not values.get(option) for option in _REQUIRED):
        return None
    for option in _INT_OPTIONS:
        if not values[option].isdigit():
            return None
        values[option] = int(values[option])
    if values["--chain.chainId"] != values["--chain.networkId"]:
        return None

    fields = {_OPTIONS[option]: value for option, value in values.items()}
    fields.pop("network_id")
    return fields


class GanacheService(ServerService):
    """Local ganache instance bound to one chain id and one database path."""

    kind = "ganache"

    def __init__(
        self,
        descriptor: GanacheDescriptor,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> None:
        super().__init__(descriptor, probe, config)
        self._ganache = descriptor

    @classmethod
    def new_instance(
        cls,
        *,
        chainid: int,
        mnemonic: str,
        db_path: str | Path,
        hostname: str = "localhost",
        port: int = 8545,
        log_file: str | Path | None = None,
        pid_file: str | Path | None = None,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
        **options: Any,
    ) -> GanacheService:
        """Build a validated instance.

        Raises:
            ValueError: If any field is invalid
        """
        descriptor = GanacheDescriptor(
            type="ganache",
            hostname=hostname,
            port=int(port),
            log_file=None if log_file is None else Path(log_file),
            pid_file=None if pid_file is None else Path(pid_file),
            chainid=int(chainid),
            mnemonic=mnemonic,
            db_path=Path(db_path),
            **options,
        )
        return cls(descriptor, probe, config)

    @property
    def chainid(self) -> int:
        return self._ganache.chainid

    @property
    def mnemonic(self) -> str:
        return self._ganache.mnemonic

    @property
    def db_path(self) -> Path:
        return self._ganache.db_path

    def cli_args(self) -> list[str]:
        d = self._ganache
        return [
            "--miner.callGasLimit",
            d.call_gas_limit,
            "--miner.defaultTransactionGasLimit",
            d.default_transaction_gas_limit,
            "--chain.asyncRequestProcessing",
            d.async_request_processing,
            "--chain.hardfork",
            d.hardfork,
            "--wallet.totalAccounts",
            str(d.total_accounts),
            "-m",
            d.mnemonic,
            "--chain.chainId",
            str(d.chainid),
            "--chain.networkId",
            str(d.chainid),
            "--server.host",
            d.hostname,
            "--server.port",
            str(d.port),
            # must stay last
            "--database.dbPath",
            str(d.db_path),
        ]

    def pid_pattern(self) -> str:
        return "node.*ganache.*" + re.escape(" ".join(self.cli_args()))

    @property
    def can_start(self) -> bool:
        return super().can_start and self.db_path.is_dir()

    async def get_pid(self) -> int | None:
        pids = await self.probe.grep_pids(self.pid_pattern())
        if not pids:
            return None
        assert len(pids) == 1, f"several ganache processes match {self.host}"
        return pids[0]

    async def check_busy(self) -> None:
        await super().check_busy()
        pattern = r"node.*ganache.*--database\.dbPath " + re.escape(str(self.db_path)) + "$"
        pids = await self.probe.grep_pids(pattern)
        if pids:
            raise AlreadyBusyError(
                f"ganache db '{self.db_path}' is already used by pid={pids[0]}",
                code="GANACHE_ERROR",
            )

    async def launch_script(self, env: Mapping[str, str]) -> str:
        prefixed = {self.env_var(k): v for k, v in env.items()}
        return gen_setm_script("ganache", self.cli_args(), prefixed, self.log_file)

    # --- JSON-RPC -------------------------------------------------------

    async def rpc(self, method: str, params: list[Any] | None = None, timeout: float = 5.0) -> Any:
        """Send one JSON-RPC 2.0 request; the request id is the chain id.

        Raises:
            CodeError: GANACHE_ERROR on transport error, id mismatch or RPC error
        """
        payload = {"jsonrpc": "2.0", "method": method, "id": self.chainid, "params": params or []}
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.post(self.url, json=payload)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise CodeError(f"{method} failed on {self.url}: {exc}", code="GANACHE_ERROR") from exc

        if not isinstance(data, dict) or data.get("id") != self.chainid:
            raise CodeError(f"{method}: unexpected response id", code="GANACHE_ERROR")
        if "error" in data:
            raise CodeError(f"{method}: {data['error']}", code="GANACHE_ERROR")
        return data.get("result")

    async def eth_chain_id(self) -> int:
        result = await self.rpc("eth_chainId")
        return int(result, 16) if isinstance(result, str) else int(result)

    async def eth_accounts(self) -> list[str]:
        return list(await self.rpc("eth_accounts") or [])

    async def eth_new_filter(self, log_filter: Mapping[str, Any]) -> str:
        return str(await self.rpc("eth_newFilter", [dict(log_filter)]))

    async def eth_uninstall_filter(self, filter_id: str) -> bool:
        return bool(await self.rpc("eth_uninstallFilter", [filter_id]))

    async def fix_filter_id_bug(self, log_filter: Mapping[str, Any]) -> None:
        """Burn filter ids until the next one has two hex digits.

        Single-digit filter ids break several client libraries.
        """
        for _ in range(17):
            filter_id = await self.eth_new_filter(log_filter)
            await self.eth_uninstall_filter(filter_id)
            if int(filter_id, 16) >= 16:
                return
        raise CodeError("Unable to fix ganache filter id", code="GANACHE_ERROR")

    # --- readiness ------------------------------------------------------

    async def _chainid_matches(self) -> bool:
        try:
            return await self.eth_chain_id() == self.chainid
        except CodeError:
            return False

    async def wait_until_ready(self, pid: int, options: StartOptions) -> None:
        async def _probe() -> str | None:
            if await self._chainid_matches():
                return "ready"
            if not await self.probe.exists(pid):
                return "killed"
            return None

        res = await repeat_call_until(
            _probe,
            self.config.readiness.rpc_probe,
            options.cancel,
            description=f"ganache {self.host} readiness",
        )
        if not res.ok:
            assert res.error is not None
            raise res.error
        if res.value == "killed":
            raise ProcessKilledError(f"ganache process killed (pid={pid})")

    async def is_ready(self) -> bool:
        return await self._chainid_matches()

    # --- discovery ------------------------------------------------------

    @classmethod
    def _matches(cls, fields: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
        for name in ("db_path", "chainid", "port", "mnemonic"):
            wanted = filters.get(name)
            if wanted is None:
                continue
            current = fields.get(name)
            if name == "db_path":
                current, wanted = str(current), str(wanted)
            if current != wanted:
                return False
        return True

    @classmethod
    async def _from_fields(
        cls,
        fields: Mapping[str, Any],
        probe: ProcessProbe,
        config: ToolConfig,
    ) -> GanacheService | None:
        try:
            return GanacheService.new_instance(probe=probe, config=config, **fields)
        except (TypeError, ValueError) as exc:
            logger.warning("malformed ganache command line: %s", exc)
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
        handles: list[RuntimeHandle] = []
        for entry in await probe.grep(RUNNING_PATTERN):
            fields = parse_args(entry.command)
            if fields is None:
                if not filters:
                    logger.warning("unable to parse ganache pid=%d", entry.pid)
                    handles.append(RuntimeHandle(entry.pid, None))
                continue
            if not cls._matches(fields, filters):
                continue
            handles.append(RuntimeHandle(entry.pid, await cls._from_fields(fields, probe, config)))
        return handles

    @classmethod
    async def running_grouped_by_chainid(
        cls,
        filters: Mapping[str, Any] | None = None,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> dict[int, list[RuntimeHandle]]:
        grouped: dict[int, list[RuntimeHandle]] = {}
        for handle in await cls.running(filters, probe, config):
            service = handle.service
            if not isinstance(service, GanacheService):
                continue
            grouped.setdefault(service.chainid, []).append(handle)
        return grouped

    @classmethod
    async def running_grouped_by_unique_chainid(
        cls,
        filters: Mapping[str, Any] | None = None,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> dict[int, RuntimeHandle]:
        """Map chain id -> the single live simulator for that chain.

        Raises:
            CodeError: GANACHE_ERROR if two live simulators share a chain id
        """
        unique: dict[int, RuntimeHandle] = {}
        grouped = await cls.running_grouped_by_chainid(filters, probe, config)
        for chainid, handles in grouped.items():
            if len(handles) > 1:
                pids = ", ".join(str(h.pid) for h in handles)
                raise CodeError(
                    f"Multiple ganache services are running with the same chainid={chainid} (pids: {pids})",
                    code="GANACHE_ERROR",
                )
            unique[chainid] = handles[0]
        return unique


DBPATH_BASENAME = "db"
ORIG_BASENAME = "orig"


def _config_basename(config: ToolConfig) -> str:
    return f"{config.app.name}-ganache-poco-config.json"


def _new_dbuuid() -> str:
    return uuid.uuid4().hex


class GanachePoCoService(GanacheService):
    """Ganache instance running out of a managed storage directory.

    Layout::

        <storage>/DBUUID                          identifier of the current db
        <storage>/db/                             live database (dbPath)
        <storage>/orig/                           pristine copy used by reset
        <storage>/<app>-ganache-poco-config.json  chain parameters

    Resetting the database gives it a new identifier, so stores signed
    against the previous chain state are rejected afterwards.
    """

    def __init__(
        self,
        descriptor: GanacheDescriptor,
        dbuuid: str,
        chain_config: Mapping[str, Any],
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> None:
        super().__init__(descriptor, probe, config)
        self.dbuuid = dbuuid
        self.chain_config = dict(chain_config)

    @property
    def storage_dir(self) -> Path:
        return self.db_path.parent

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["DBUUID"] = self.dbuuid
        return payload

    @staticmethod
    def load_config(
        storage_dir: str | Path,
        config: ToolConfig | None = None,
    ) -> tuple[str, dict[str, Any]]:
        """Read the identifier and chain parameters of a storage directory.

        Raises:
            NotFoundError: If the config or DBUUID file is missing
            CodeError: GANACHE_ERROR if either file is invalid
        """
        config = config or default_config()
        root = Path(storage_dir)
        config_file = root / _config_basename(config)
        dbuuid_file = root / DBUUID_BASENAME
        if not config_file.is_file():
            raise NotFoundError(f"Missing config file {config_file}")
        if not dbuuid_file.is_file():
            raise NotFoundError(f"Missing DBUUID file {dbuuid_file}")
        try:
            chain_config = json.loads(config_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise CodeError(f"Invalid config file {config_file}", code="GANACHE_ERROR") from exc
        dbuuid = dbuuid_file.read_text(encoding="utf-8").strip()
        if not dbuuid:
            raise CodeError(f"Invalid DBUUID file {dbuuid_file}", code="GANACHE_ERROR")
        if not isinstance(chain_config, dict) or "chainid" not in chain_config:
            raise CodeError(f"Invalid config file {config_file}", code="GANACHE_ERROR")
        return dbuuid, chain_config

    @classmethod
    def install(
        cls,
        directory: str | Path,
        chain_config: Mapping[str, Any],
        source_db: str | Path,
        config: ToolConfig | None = None,
    ) -> str:
        """Create a storage directory from an already deployed chain database.

        An existing directory with a matching chain id is kept as is; an
        invalid or mismatching one is wiped and recreated.

        Args:
            directory: Storage directory
            chain_config: Chain parameters; must hold ``chainid`` and ``mnemonic``
            source_db: Ganache database directory to import

        Returns:
            The storage identifier
        """
        config = config or default_config()
        root = Path(directory).expanduser().resolve()
        if root.is_dir():
            try:
                dbuuid, existing = cls.load_config(root, config)
            except CodeError:
                shutil.rmtree(root)
            else:
                if existing.get("chainid") == chain_config.get("chainid"):
                    return dbuuid
                shutil.rmtree(root)

        source = Path(source_db)
        if not source.is_dir():
            raise NotFoundError(f"Missing ganache db directory '{source}'")
        root.mkdir(parents=True)
        try:
            dbuuid = _new_dbuuid()
            (root / DBUUID_BASENAME).write_text(dbuuid, encoding="utf-8")
            shutil.copytree(source, root / DBPATH_BASENAME)
            shutil.copytree(root / DBPATH_BASENAME, root / ORIG_BASENAME)
            (root / _config_basename(config)).write_text(
                json.dumps(dict(chain_config), indent=2), encoding="utf-8"
            )
        except OSError:
            shutil.rmtree(root, ignore_errors=True)
            raise
        logger.info("installed ganache storage %s (DBUUID=%s)", root, dbuuid)
        return dbuuid

    @classmethod
    def reset_db(cls, directory: str | Path) -> str:
        """Restore the pristine database and assign a new identifier.

        The instance must be stopped first.
        """
        root = Path(directory)
        db_path = root / DBPATH_BASENAME
        orig = root / ORIG_BASENAME
        backup = db_path.with_name(DBPATH_BASENAME + ".bak")
        if not orig.is_dir():
            raise CodeError(f"Missing pristine ganache db '{orig}'", code="GANACHE_ERROR")
        if backup.exists():
            shutil.rmtree(backup)
        if db_path.exists():
            db_path.rename(backup)
        shutil.copytree(orig, db_path)
        if backup.exists():
            shutil.rmtree(backup)
        dbuuid = _new_dbuuid()
        (root / DBUUID_BASENAME).write_text(dbuuid, encoding="utf-8")
        logger.info("reset ganache db %s (DBUUID=%s)", root, dbuuid)
        return dbuuid

    @classmethod
    def new_instance(  # type: ignore[override]
        cls,
        *,
        directory: str | Path,
        hostname: str = "localhost",
        port: int = 8545,
        log_file: str | Path | None = None,
        pid_file: str | Path | None = None,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
        **options: Any,
    ) -> GanachePoCoService:
        config = config or default_config()
        root = Path(directory).expanduser().resolve()
        if not root.is_dir():
            raise NotFoundError(f"Directory '{root}' does not exist")
        dbuuid, chain_config = cls.load_config(root, config)
        descriptor = GanacheDescriptor(
            type="ganache",
            hostname=hostname,
            port=int(port),
            log_file=None if log_file is None else Path(log_file),
            pid_file=None if pid_file is None else Path(pid_file),
            chainid=int(chain_config["chainid"]),
            mnemonic=str(chain_config["mnemonic"]),
            db_path=root / DBPATH_BASENAME,
            **options,
        )
        return cls(descriptor, dbuuid, chain_config, probe, config)

    @classmethod
    def from_ganache_service(cls, service: GanacheService) -> GanachePoCoService | None:
        """Upgrade a discovered simulator when its dbPath lies in a storage directory."""
        if service.db_path.name != DBPATH_BASENAME:
            return None
        try:
            dbuuid, chain_config = cls.load_config(service.db_path.parent, service.config)
        except CodeError:
            return None
        if chain_config.get("chainid") != service.chainid:
            return None
        if chain_config.get("mnemonic") != service.mnemonic:
            return None
        return cls(service.descriptor, dbuuid, chain_config, service.probe, service.config)  # type: ignore[arg-type]

    @classmethod
    async def _from_fields(
        cls,
        fields: Mapping[str, Any],
        probe: ProcessProbe,
        config: ToolConfig,
    ) -> GanacheService | None:
        plain = await super()._from_fields(fields, probe, config)
        if plain is None:
            return None
        return cls.from_ganache_service(plain)

    async def on_ready(self, pid: int, already_started: bool) -> None:
        if already_started:
            return
        log_filter = self.chain_config.get("schedulerNoticeFilter")
        if log_filter:
            await self.fix_filter_id_bug(log_filter)

    async def on_stopped(self, pid: int | None, options: StopOptions) -> None:
        if options.reset:
            self.dbuuid = self.reset_db(self.storage_dir)
