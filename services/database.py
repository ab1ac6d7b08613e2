"""Database services backed by a signed directory.

A database directory may be shared by several backends. Each consumer
registers a signature in the directory's ledger; a consumer presenting a
different signature under an existing name is refused.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, ClassVar

from controller.contracts import ServiceDescriptor
from controller.service import ServerService, StartOptions, StopOptions
from core.config import ToolConfig
from core.db_directory import DBSignature, DBType, SignedDirectory
from core.errors import CodeError, ErrorCode, ProcessKilledError
from core.ps import ProcessProbe
from core.repeat import repeat_call_until

logger = logging.getLogger(__name__)

LOCALHOST_ALIASES = ("localhost", "127.0.0.1")


@dataclass(frozen=True)
class DatabaseDescriptor(ServiceDescriptor):
    """Database identity.

    Attributes:
        directory: Root of the signed directory holding the store
    """

    directory: Path

    def __post_init__(self) -> None:
        """Validate DatabaseDescriptor."""
        super().__post_init__()
        if self.port is None:
            raise ValueError(f"{self.type} requires a port")
        if not self.directory.is_absolute():
            raise ValueError(f"directory must be an absolute path, got {self.directory}")


def _same_hostname(a: str, b: str) -> bool:
    if a in LOCALHOST_ALIASES and b in LOCALHOST_ALIASES:
        return True
    return a == b


class DatabaseService(ServerService):
    """Server whose data lives in a :class:`SignedDirectory`.

    Subclasses set :attr:`db_type` and :attr:`error_code` and implement
    :meth:`ping`.
    """

    db_type: ClassVar[DBType]
    error_code: ClassVar[ErrorCode]

    def __init__(
        self,
        descriptor: DatabaseDescriptor,
        signed_dir: SignedDirectory,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> None:
        super().__init__(descriptor, probe, config)
        self._db = descriptor
        self.signed_dir = signed_dir

    @property
    def directory(self) -> Path:
        return self._db.directory

    @property
    def dbuuid(self) -> str:
        return self.signed_dir.dbuuid

    @property
    def db_dir(self) -> Path:
        return self.signed_dir.db_dir

    def to_dict(self) -> dict[str, Any]:
        return {**self.descriptor.to_dict(), **self.signed_dir.to_dict()}

    # --- signature ledger ----------------------------------------------

    def is_sig_compatible(self, sig: DBSignature | None) -> bool:
        return self.signed_dir.is_sig_compatible(sig)

    def add_sig(self, sig: DBSignature | None) -> bool:
        return self.signed_dir.add_sig(sig)

    def get_sig(self, name: str) -> dict[str, Any] | None:
        return self.signed_dir.get_sig(name)

    def used_by_service_type(self, service_type: str) -> bool:
        return self.signed_dir.used_by_service_type(service_type)

    # --- storage --------------------------------------------------------

    @classmethod
    def install(cls, directory: str | Path) -> SignedDirectory:
        """Load the directory if it exists, otherwise create it."""
        root = Path(directory).expanduser().resolve()
        if root.exists():
            return SignedDirectory.load(cls.db_type, root)
        return SignedDirectory.install(cls.db_type, root)

    @classmethod
    def reset_db(cls, directory: str | Path) -> SignedDirectory:
        """Wipe the store. The new directory gets a fresh identifier."""
        return SignedDirectory.reset(cls.db_type, directory)

    @classmethod
    async def new_instance(
        cls,
        directory: str | Path,
        port: int,
        hostname: str = "localhost",
        log_file: str | Path | None = None,
        pid_file: str | Path | None = None,
        signature: DBSignature | None = None,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> DatabaseService:
        """Build an instance on an installed directory.

        When an instance is already running on the directory it is
        returned, provided it is compatible with the request.

        Raises:
            NotFoundError: If the directory does not exist
            SignatureConflictError: If ``signature`` conflicts with the ledger
            CodeError: ``error_code`` if a running instance conflicts
        """
        root = Path(directory).expanduser().resolve()
        live = await cls.from_directory(root, probe, config)
        if live is not None:
            cls._check_live(live, hostname, port, log_file, pid_file, signature)
            return live

        signed_dir = SignedDirectory.load(cls.db_type, root, requested_signature=signature)
        descriptor = DatabaseDescriptor(
            type=cls.kind,
            hostname=hostname,
            port=int(port),
            log_file=None if log_file is None else Path(log_file),
            pid_file=None if pid_file is None else Path(pid_file),
            directory=root,
        )
        return cls(descriptor, signed_dir, probe, config)

    @classmethod
    def _check_live(
        cls,
        live: DatabaseService,
        hostname: str,
        port: int,
        log_file: str | Path | None,
        pid_file: str | Path | None,
        signature: DBSignature | None,
    ) -> None:
        def conflict(what: str) -> CodeError:
            return CodeError(
                f"Another {cls.kind} instance is already running {what}", code=cls.error_code
            )

        if live.port != port:
            raise conflict(f"on port={live.port}")
        if not _same_hostname(live.hostname, hostname):
            raise conflict(f"on hostname={live.hostname}")
        if live.log_file and log_file and live.log_file != Path(log_file):
            raise conflict(f"using a conflicting logFile='{live.log_file}'")
        if live.pid_file and pid_file and live.pid_file != Path(pid_file):
            raise conflict(f"using a conflicting pidFile='{live.pid_file}'")
        if not live.is_sig_compatible(signature):
            raise conflict("with a conflicting signature")

    # --- discovery ------------------------------------------------------

    @classmethod
    async def from_directory(
        cls,
        directory: str | Path,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> DatabaseService | None:
        root = Path(directory).expanduser().resolve()
        for handle in await cls.running(None, probe, config):
            service = handle.service
            if isinstance(service, DatabaseService) and service.directory == root:
                return service
        return None

    @classmethod
    async def from_host(
        cls,
        host: str,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> DatabaseService | None:
        """Running instance listening on ``hostname:port``."""
        hostname, _, port_text = host.rpartition(":")
        if not hostname or not port_text.isdigit():
            return None
        for handle in await cls.running({"port": int(port_text)}, probe, config):
            service = handle.service
            if isinstance(service, DatabaseService) and _same_hostname(service.hostname, hostname):
                return service
        return None

    @classmethod
    async def from_service_type(
        cls,
        service_type: str,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> list[DatabaseService]:
        """Running instances whose ledger has an entry for ``service_type``."""
        found: list[DatabaseService] = []
        for handle in await cls.running(None, probe, config):
            service = handle.service
            if isinstance(service, DatabaseService) and service.used_by_service_type(service_type):
                found.append(service)
        return found

    @staticmethod
    def _filter(service: DatabaseService, filters: Mapping[str, Any]) -> bool:
        port = filters.get("port")
        if port is not None and service.port != port:
            return False
        directory = filters.get("directory")
        if directory is not None and service.directory != Path(directory).resolve():
            return False
        return True

    # --- lifecycle ------------------------------------------------------

    @property
    def can_start(self) -> bool:
        return super().can_start and self.db_dir.is_dir()

    async def ping(self) -> bool:
        raise NotImplementedError

    async def wait_until_ready(self, pid: int, options: StartOptions) -> None:
        async def _probe() -> str | None:
            if await self.ping():
                return "ready"
            if not await self.probe.exists(pid):
                return "killed"
            return None

        res = await repeat_call_until(
            _probe,
            self.config.readiness.rpc_probe,
            options.cancel,
            description=f"{self.kind} {self.host} ping",
        )
        if not res.ok:
            assert res.error is not None
            raise res.error
        if res.value == "killed":
            raise ProcessKilledError(f"{self.kind} process killed (pid={pid})")

    async def is_ready(self) -> bool:
        return await self.ping()

    async def on_stopped(self, pid: int | None, options: StopOptions) -> None:
        if options.reset:
            self.signed_dir = self.reset_db(self.directory)
            logger.info("%s directory %s reset", self.kind, self.directory)
