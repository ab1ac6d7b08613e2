"""JVM backends launched with ``gradlew bootRun``.

Identity travels in the process environment (``PREFIX_HOST``,
``PREFIX_APPLICATION_YML`` ...); business parameters live in the
generated ``application.yml``. A live process is only considered ours
when the hash it was started with still matches the file on disk.

Layers:
    FrameworkService        env markers, yml hash, log readiness
    HubFrameworkService     + bound to one chain deployment (DBUUID, HUBKEY)
    MongoFrameworkService   + bound to one document store (MONGOHOST)
"""

from __future__ import annotations

import hashlib
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar

from controller.contracts import ChainDeployment, RuntimeHandle, ServiceDescriptor
from controller.service import ORANDPatterns, ServerService
from core.bash import gen_nohup_script
from core.config import ToolConfig, default_config
from core.errors import CodeError
from core.ps import ProcessEntry, ProcessProbe

logger = logging.getLogger(__name__)

APPLICATION_YML = "application.yml"


def compute_application_yml_hash(spring_config_location: Path | None) -> str:
    """sha256 of ``<location>/application.yml``; empty string when unreadable."""
    if spring_config_location is None:
        return ""
    try:
        data = (spring_config_location / APPLICATION_YML).read_bytes()
    except OSError:
        return ""
    return hashlib.sha256(data).hexdigest()


def dump_application_yml(yml_config: Mapping[str, Any]) -> str:
    import yaml  # lazy import

    text = yaml.dump(dict(yml_config), indent=2, sort_keys=False)
    if not text or not text.strip() or text.strip() == "{}":
        raise CodeError("empty application.yml content", code="CANNOT_START")
    return text


def save_application_yml(spring_config_location: Path, yml_config: Mapping[str, Any]) -> str:
    """Write ``application.yml`` and return its hash."""
    spring_config_location.mkdir(parents=True, exist_ok=True)
    (spring_config_location / APPLICATION_YML).write_text(
        dump_application_yml(yml_config), encoding="utf-8"
    )
    return compute_application_yml_hash(spring_config_location)


def load_application_yml(spring_config_location: Path) -> dict[str, Any] | None:
    import yaml  # lazy import

    try:
        text = (spring_config_location / APPLICATION_YML).read_text(encoding="utf-8")
    except OSError:
        return None
    data = yaml.safe_load(text)
    return data if isinstance(data, dict) else None


def _split_host(host: str) -> tuple[str, int]:
    hostname, _, port = host.rpartition(":")
    if not hostname or not port.isdigit():
        raise ValueError(f"invalid host marker '{host}'")
    return hostname, int(port)


def _optional_int(value: str | None) -> int | None:
    if value is None or value == "":
        return None
    if not value.isdigit():
        raise ValueError(f"expected an integer, got '{value}'")
    return int(value)


@dataclass(frozen=True)
class FrameworkDescriptor(ServiceDescriptor):
    """Spring backend identity.

    Attributes:
        spring_config_location: Directory holding the generated application.yml
        repo_dir: Source checkout the service runs from
        yml_config: Content of application.yml (None when unknown)
    """

    spring_config_location: Path | None = None
    repo_dir: Path | None = None
    yml_config: dict[str, Any] | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        """Validate FrameworkDescriptor."""
        super().__post_init__()
        if self.port is None:
            raise ValueError(f"{self.type} requires a port")
        for name in ("spring_config_location", "repo_dir"):
            value = getattr(self, name)
            if value is not None and not value.is_absolute():
                raise ValueError(f"{name} must be an absolute path, got {value}")

    def marker_env(self) -> dict[str, str]:
        """Identity env vars, unprefixed. Inverse of :meth:`fields_from_env`."""
        env = {"HOST": self.host}
        if self.spring_config_location is not None:
            env["SPRING_CONFIG_LOC"] = str(self.spring_config_location)
        if self.repo_dir is not None:
            env["REPODIR"] = str(self.repo_dir)
        return env

    @classmethod
    def fields_from_env(cls, env: Mapping[str, str]) -> dict[str, Any]:
        """Rebuild descriptor fields from unprefixed env vars.

        Raises:
            ValueError: If a required marker is missing or malformed
        """
        if "HOST" not in env or "SPRING_CONFIG_LOC" not in env:
            raise ValueError("missing HOST or SPRING_CONFIG_LOC marker")
        hostname, port = _split_host(env["HOST"])
        return {
            "hostname": hostname,
            "port": port,
            "spring_config_location": Path(env["SPRING_CONFIG_LOC"]),
            "repo_dir": Path(env["REPODIR"]) if env.get("REPODIR") else None,
        }

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        if self.spring_config_location is not None:
            payload["springConfigLocation"] = str(self.spring_config_location)
        if self.repo_dir is not None:
            payload["repository"] = str(self.repo_dir)
        if self.yml_config is not None:
            payload["ymlConfig"] = self.yml_config
        return payload


@dataclass(frozen=True)
class HubFrameworkDescriptor(FrameworkDescriptor):
    """Adds the chain deployment and the simulator DB identifier."""

    hub: ChainDeployment | None = None
    dbuuid: str | None = None

    def __post_init__(self) -> None:
        """Validate HubFrameworkDescriptor."""
        super().__post_init__()
        if self.hub is None:
            raise ValueError(f"{self.type} requires a hub")

    def marker_env(self) -> dict[str, str]:
        env = super().marker_env()
        env["HUBKEY"] = str(self.hub)
        if self.dbuuid:
            env["DBUUID"] = self.dbuuid
        return env

    @classmethod
    def fields_from_env(cls, env: Mapping[str, str]) -> dict[str, Any]:
        fields = super().fields_from_env(env)
        if not env.get("HUBKEY"):
            raise ValueError("missing HUBKEY marker")
        fields["hub"] = ChainDeployment.parse(env["HUBKEY"])
        fields["dbuuid"] = env.get("DBUUID") or None
        return fields

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["hub"] = str(self.hub)
        if self.dbuuid:
            payload["DBUUID"] = self.dbuuid
        return payload


@dataclass(frozen=True)
class MongoFrameworkDescriptor(HubFrameworkDescriptor):
    """Adds the document store the backend writes to."""

    mongo_host: str | None = None
    mongo_db_name: str | None = None

    def marker_env(self) -> dict[str, str]:
        env = super().marker_env()
        if self.mongo_db_name:
            env["MONGODBNAME"] = self.mongo_db_name
        if self.mongo_host:
            env["MONGOHOST"] = self.mongo_host
        return env

    @classmethod
    def fields_from_env(cls, env: Mapping[str, str]) -> dict[str, Any]:
        fields = super().fields_from_env(env)
        fields["mongo_host"] = env.get("MONGOHOST") or None
        fields["mongo_db_name"] = env.get("MONGODBNAME") or None
        return fields

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        if self.mongo_host:
            payload["mongoHost"] = self.mongo_host
        if self.mongo_db_name:
            payload["mongoDBName"] = self.mongo_db_name
        return payload


class FrameworkService(ServerService):
    """Spring backend located by entry-point class name plus env markers.

    Subclasses set :attr:`CLASSNAME`, :attr:`ENTRY` and
    :attr:`descriptor_class`.
    """

    CLASSNAME: ClassVar[str]
    ENTRY: ClassVar[str]
    descriptor_class: ClassVar[type[FrameworkDescriptor]] = FrameworkDescriptor
    # fields compared against the live process in get_pid
    identity_fields: ClassVar[tuple[str, ...]] = ()

    def __init__(
        self,
        descriptor: FrameworkDescriptor,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> None:
        super().__init__(descriptor, probe, config)
        self._framework = descriptor

    @classmethod
    def new_instance(
        cls,
        *,
        port: int,
        hostname: str = "localhost",
        log_file: str | Path | None = None,
        pid_file: str | Path | None = None,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
        **fields: Any,
    ) -> FrameworkService:
        """Build a validated instance.

        Raises:
            ValueError: If a field is missing or invalid
        """
        for name in ("spring_config_location", "repo_dir"):
            if fields.get(name) is not None:
                fields[name] = Path(fields[name]).expanduser().resolve()
        descriptor = cls.descriptor_class(
            type=cls.kind,
            hostname=hostname,
            port=int(port),
            log_file=None if log_file is None else Path(log_file),
            pid_file=None if pid_file is None else Path(pid_file),
            **fields,
        )
        return cls(descriptor, probe, config)

    @property
    def spring_config_location(self) -> Path | None:
        return self._framework.spring_config_location

    @property
    def repo_dir(self) -> Path | None:
        return self._framework.repo_dir

    @property
    def yml_config(self) -> dict[str, Any] | None:
        return self._framework.yml_config

    @property
    def url(self) -> str:
        return f"http://{self.host}"

    @property
    def can_start(self) -> bool:
        return (
            self.descriptor.is_local
            and self.repo_dir is not None
            and bool(self.yml_config)
            and self.spring_config_location is not None
        )

    @property
    def can_stop(self) -> bool:
        return self.descriptor.is_local and self.spring_config_location is not None

    def application_yml_hash(self) -> str:
        return compute_application_yml_hash(self.spring_config_location)

    def env_vars(self, extras: Mapping[str, str] | None = None) -> dict[str, str]:
        """Full prefixed launch environment."""
        env = {self.env_var(k): v for k, v in (extras or {}).items()}
        for name, value in self._framework.marker_env().items():
            env[self.env_var(name)] = value
        env[self.env_var("APPLICATION_YML")] = self.application_yml_hash()
        return env

    # --- discovery ------------------------------------------------------

    @classmethod
    def _unprefixed_env(cls, entry: ProcessEntry, config: ToolConfig) -> dict[str, str]:
        prefix = config.app.env_prefix + "_"
        return {
            k[len(prefix) :]: v for k, v in entry.environment.items() if k.startswith(prefix)
        }

    @classmethod
    def _parse_entry(cls, entry: ProcessEntry, config: ToolConfig) -> dict[str, Any] | None:
        env = cls._unprefixed_env(entry, config)
        try:
            fields = cls.descriptor_class.fields_from_env(env)
        except ValueError as exc:
            logger.warning("%s pid=%d: %s", cls.kind, entry.pid, exc)
            return None
        fields["application_yml_hash"] = env.get("APPLICATION_YML", "")
        return fields

    @staticmethod
    def _fields_match(fields: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
        for name, wanted in filters.items():
            if wanted is None:
                continue
            current = fields.get(name)
            if isinstance(current, Path) or isinstance(wanted, Path):
                if str(current) != str(wanted):
                    return False
            elif isinstance(current, ChainDeployment) or isinstance(wanted, ChainDeployment):
                if str(current) != str(wanted):
                    return False
            elif current != wanted:
                return False
        return True

    @classmethod
    async def running_entries(
        cls,
        filters: Mapping[str, Any] | None = None,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> list[tuple[ProcessEntry, dict[str, Any]]]:
        """Live processes of this class whose markers pass ``filters``."""
        probe = probe or ProcessProbe()
        config = config or default_config()
        marker = config.env_var_name("SPRING_CONFIG_LOC")
        pattern = f"java .* {re.escape(cls.CLASSNAME)} "
        found: list[tuple[ProcessEntry, dict[str, Any]]] = []
        for entry in await probe.grep(pattern, with_env=True):
            if marker not in entry.environment:
                continue
            fields = cls._parse_entry(entry, config)
            if fields is None:
                continue
            if filters and not cls._fields_match(fields, filters):
                continue
            found.append((entry, fields))
        return found

    async def get_pid(self) -> int | None:
        if not self.descriptor.is_local or self.spring_config_location is None:
            return None
        entries = await self.running_entries(
            {"spring_config_location": self.spring_config_location}, self.probe, self.config
        )
        current_hash = self.application_yml_hash()
        pids = []
        for entry, fields in entries:
            if fields["application_yml_hash"] != current_hash:
                continue
            if any(fields.get(name) != getattr(self, name) for name in self.identity_fields):
                continue
            pids.append(entry.pid)
        if not pids:
            return None
        assert len(pids) == 1, f"several {self.kind} processes use {self.spring_config_location}"
        return pids[0]

    @classmethod
    def _from_fields(
        cls,
        fields: dict[str, Any],
        probe: ProcessProbe,
        config: ToolConfig,
    ) -> FrameworkService | None:
        fields = dict(fields)
        observed_hash = fields.pop("application_yml_hash", "")
        location: Path = fields["spring_config_location"]
        if observed_hash and observed_hash == compute_application_yml_hash(location):
            fields["yml_config"] = load_application_yml(location)
        try:
            return cls.new_instance(probe=probe, config=config, **fields)
        except ValueError as exc:
            logger.warning("malformed %s markers: %s", cls.kind, exc)
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
        return [
            RuntimeHandle(entry.pid, cls._from_fields(fields, probe, config))
            for entry, fields in await cls.running_entries(filters, probe, config)
        ]

    # --- launching ------------------------------------------------------

    async def launch_script(self, env: Mapping[str, str]) -> str:
        if not self.can_start:
            raise CodeError(f"Cannot start {self.kind} service", code="CANNOT_START")
        assert self.spring_config_location is not None and self.yml_config is not None
        save_application_yml(self.spring_config_location, self.yml_config)
        args = ["bootRun", f"--args=--spring.config.location={self.spring_config_location}/"]
        return gen_nohup_script(
            "./gradlew", args, self.env_vars(env), self.log_file, None, self.repo_dir
        )

    def success_patterns(self, pid: int | None) -> ORANDPatterns | None:
        return [[f"Started {self.ENTRY} in", self.CLASSNAME]]

    def failure_patterns(self, pid: int | None) -> ORANDPatterns | None:
        patterns = [["Task :bootRun FAILED"]]
        if pid is not None:
            patterns.append([f"ERROR {pid}"])
        return patterns


class HubFrameworkService(FrameworkService):
    """Backend bound to one contract deployment on one chain simulator."""

    descriptor_class: ClassVar[type[FrameworkDescriptor]] = HubFrameworkDescriptor
    identity_fields: ClassVar[tuple[str, ...]] = ("dbuuid",)
    run_dependencies = ("ganache",)

    @property
    def hub(self) -> ChainDeployment:
        hub = self._framework.hub  # type: ignore[attr-defined]
        assert hub is not None
        return hub

    @property
    def dbuuid(self) -> str | None:
        return self._framework.dbuuid  # type: ignore[attr-defined, no-any-return]

    @property
    def can_start(self) -> bool:
        return super().can_start and bool(self.dbuuid)


class MongoFrameworkService(HubFrameworkService):
    """Backend bound to a chain deployment and to one document store."""

    descriptor_class: ClassVar[type[FrameworkDescriptor]] = MongoFrameworkDescriptor
    run_dependencies = ("ganache", "mongo")

    @property
    def mongo_host(self) -> str | None:
        return self._framework.mongo_host  # type: ignore[attr-defined, no-any-return]

    @property
    def mongo_db_name(self) -> str | None:
        return self._framework.mongo_db_name  # type: ignore[attr-defined, no-any-return]


@dataclass(frozen=True)
class CoreDescriptor(MongoFrameworkDescriptor):
    """Scheduler; links to every other backend."""

    ipfs_host: str | None = None
    sms_url: str | None = None
    result_proxy_url: str | None = None
    blockchain_adapter_url: str | None = None
    wallet_index: int | None = None

    _MARKERS: ClassVar[dict[str, str]] = {
        "IPFSHOST": "ipfs_host",
        "SMSURL": "sms_url",
        "RESULTPROXYURL": "result_proxy_url",
        "BLOCKCHAINADAPTERURL": "blockchain_adapter_url",
    }

    def marker_env(self) -> dict[str, str]:
        env = super().marker_env()
        for name, attr in self._MARKERS.items():
            value = getattr(self, attr)
            if value:
                env[name] = value
        if self.wallet_index is not None:
            env["WALLETINDEX"] = str(self.wallet_index)
        return env

    @classmethod
    def fields_from_env(cls, env: Mapping[str, str]) -> dict[str, Any]:
        fields = super().fields_from_env(env)
        for name, attr in cls._MARKERS.items():
            fields[attr] = env.get(name) or None
        fields["wallet_index"] = _optional_int(env.get("WALLETINDEX"))
        return fields


class CoreService(MongoFrameworkService):
    kind = "core"
    CLASSNAME = "com.iexec.core.Application"
    ENTRY = "Application"
    descriptor_class: ClassVar[type[FrameworkDescriptor]] = CoreDescriptor
    run_dependencies = ("ganache", "mongo", "resultproxy", "sms", "blockchainadapter")

    def exclude_patterns(self, pid: int | None) -> list[str] | None:
        return ["com.iexec.core.chain.DealWatcherService  : Deal has expired"]


class SmsService(HubFrameworkService):
    kind = "sms"
    CLASSNAME = "com.iexec.sms.App"
    ENTRY = "App"


@dataclass(frozen=True)
class ResultProxyDescriptor(MongoFrameworkDescriptor):
    ipfs_host: str | None = None

    def marker_env(self) -> dict[str, str]:
        env = super().marker_env()
        if self.ipfs_host:
            env["IPFSHOST"] = self.ipfs_host
        return env

    @classmethod
    def fields_from_env(cls, env: Mapping[str, str]) -> dict[str, Any]:
        fields = super().fields_from_env(env)
        fields["ipfs_host"] = env.get("IPFSHOST") or None
        return fields


class ResultProxyService(MongoFrameworkService):
    kind = "resultproxy"
    CLASSNAME = "com.iexec.resultproxy.Application"
    ENTRY = "Application"
    descriptor_class: ClassVar[type[FrameworkDescriptor]] = ResultProxyDescriptor
    run_dependencies = ("ganache", "mongo", "ipfs")


class BlockchainAdapterService(MongoFrameworkService):
    kind = "blockchainadapter"
    CLASSNAME = "com.iexec.blockchain.Application"
    ENTRY = "Application"
    run_dependencies = ("ganache", "mongo", "market")


@dataclass(frozen=True)
class WorkerDescriptor(FrameworkDescriptor):
    """Worker identity; bound to one scheduler through ``core_url``."""

    name: str | None = None
    directory: Path | None = None
    core_url: str | None = None
    docker_host: str | None = None
    wallet_index: int | None = None

    def marker_env(self) -> dict[str, str]:
        env = super().marker_env()
        if self.name:
            env["WORKERNAME"] = self.name
        if self.directory is not None:
            env["WORKERDIR"] = str(self.directory)
        if self.core_url:
            env["COREURL"] = self.core_url
        if self.docker_host:
            env["DOCKERHOST"] = self.docker_host
        if self.wallet_index is not None:
            env["WALLETINDEX"] = str(self.wallet_index)
        return env

    @classmethod
    def fields_from_env(cls, env: Mapping[str, str]) -> dict[str, Any]:
        fields = super().fields_from_env(env)
        fields["name"] = env.get("WORKERNAME") or None
        fields["directory"] = Path(env["WORKERDIR"]) if env.get("WORKERDIR") else None
        fields["core_url"] = env.get("COREURL") or None
        fields["docker_host"] = env.get("DOCKERHOST") or None
        fields["wallet_index"] = _optional_int(env.get("WALLETINDEX"))
        return fields


class WorkerService(FrameworkService):
    kind = "worker"
    CLASSNAME = "com.iexec.worker.Application"
    ENTRY = "Application"
    descriptor_class: ClassVar[type[FrameworkDescriptor]] = WorkerDescriptor
    run_dependencies = ("docker", "core")

    @property
    def name(self) -> str | None:
        return self._framework.name  # type: ignore[attr-defined, no-any-return]

    @property
    def core_url(self) -> str | None:
        return self._framework.core_url  # type: ignore[attr-defined, no-any-return]

    @property
    def core_host(self) -> str | None:
        """``hostname:port`` of the scheduler this worker reports to."""
        if not self.core_url:
            return None
        return self.core_url.split("://", 1)[-1].rstrip("/")

    def success_patterns(self, pid: int | None) -> ORANDPatterns | None:
        return [["Cool, your iexec-worker is all set!", self.CLASSNAME]]

    def exclude_patterns(self, pid: int | None) -> list[str] | None:
        return [
            "Failed to check SGX device.",
            "SGX driver is installed but no SGX device was found (SGX not enabled?)",
        ]
