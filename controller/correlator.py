"""PID correlator: one diagnostic row per live process, with shared pids.

Rows are seeded from capabilities rather than concrete types: a service
exposing ``mongo_host``/``redis_host`` shares with the store listening
there, and a worker shares with the scheduler at its ``core_host``. A
second pass makes the relation reflexive.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from controller.contracts import HasHub, HasMongo, HasRedis, RuntimeHandle
from controller.registry import DependencyGraph
from controller.service import Service

UNKNOWN = "??"
LOCALHOST_ALIASES = ("localhost", "127.0.0.1")

COLUMNS: tuple[tuple[str, str], ...] = (
    ("type", "TYPE"),
    ("pid", "PID"),
    ("host", "HOST"),
    ("name", "NAME"),
    ("hub", "CHAINID/HUB"),
    ("config_dir", "CONFIG DIR"),
    ("deps", "DEPS"),
)


@dataclass
class PidRow:
    """One line of the pid table.

    Attributes:
        type: Service type (``market.api``/``market.watcher`` for market members)
        pid: Live pid, ``??`` when unknown
        host: ``hostname[:port]``
        name: Display name
        hub: Chain id (simulators) or ``chainid.deployment`` (backends)
        config_dir: Configuration or data directory
        shares: Pids of the processes this one shares state with
    """

    type: str
    pid: str
    host: str = UNKNOWN
    name: str = ""
    hub: str = ""
    config_dir: str = ""
    shares: list[str] = field(default_factory=list)
    service: Service | None = field(default=None, repr=False, compare=False)

    @property
    def deps(self) -> str:
        return ",".join(self.shares)

    def share(self, pid: str) -> None:
        if pid != UNKNOWN and pid != self.pid and pid not in self.shares:
            self.shares.append(pid)


def normalize_host(host: str | None) -> str | None:
    if not host:
        return None
    hostname, sep, port = host.rpartition(":")
    if not sep:
        return host
    if hostname in LOCALHOST_ALIASES:
        hostname = "localhost"
    return f"{hostname}:{port}"


def _config_dir(service: Service) -> str:
    for attr in ("spring_config_location", "storage_dir", "directory", "repo_dir"):
        value = getattr(service, attr, None)
        if value:
            return str(value)
    db_path = getattr(service, "db_path", None)
    return str(db_path) if db_path else ""


def _hub(kind: str, service: Service) -> str:
    if kind == "ganache":
        return str(getattr(service, "chainid", UNKNOWN))
    if isinstance(service, HasHub):
        return str(service.hub)
    return ""


def _name(kind: str, service: Service) -> str:
    descriptor = service.descriptor
    wallet_index = getattr(descriptor, "wallet_index", None)
    if wallet_index is not None and kind in ("core", "worker"):
        return f"{kind} (wallet #{wallet_index})"
    return kind


def _row(kind: str, handle: RuntimeHandle) -> PidRow:
    service = handle.service
    if service is None:
        return PidRow(type=kind, pid=str(handle.pid), name=kind, hub=UNKNOWN, config_dir=UNKNOWN)
    return PidRow(
        type=kind,
        pid=str(handle.pid),
        host=service.host,
        name=_name(kind, service),
        hub=_hub(kind, service),
        config_dir=_config_dir(service),
        service=service,
    )


def _market_rows(handle: RuntimeHandle) -> list[PidRow]:
    rows = []
    for label, pid, sub in handle.service.sub_processes():  # type: ignore[union-attr]
        hubs = getattr(sub, "chains", None)
        if hubs is not None:
            hub = ",".join(str(c.hub) for c in hubs)
        else:
            hub = str(getattr(sub, "hub", UNKNOWN))
        rows.append(
            PidRow(
                type=label,
                pid=UNKNOWN if pid is None else str(pid),
                host=sub.host,
                name=label,
                hub=hub,
                config_dir=_config_dir(sub),
                service=sub,
            )
        )
    return rows


def correlate(
    running: Mapping[str, Iterable[RuntimeHandle]],
    graph: DependencyGraph | None = None,
) -> list[PidRow]:
    """Build the pid table from grouped discovery output.

    Args:
        running: Service type -> live handles (as returned by
            ``ServiceRegistry.running_all``)
        graph: Dependency graph ordering the rows

    Returns:
        Rows in canonical type order; a market contributes one row per
        API/watcher process and none for itself
    """
    graph = graph or DependencyGraph()
    rows: list[PidRow] = []
    for kind in sorted(running, key=graph.rank):
        for handle in running[kind]:
            if kind == "market" and handle.service is not None:
                rows.extend(_market_rows(handle))
            else:
                rows.append(_row(kind, handle))

    by_host: dict[tuple[str, str | None], PidRow] = {}
    for row in rows:
        by_host.setdefault((row.type, normalize_host(row.host)), row)

    for row in rows:
        service = row.service
        if service is None:
            continue
        if isinstance(service, HasMongo):
            store = by_host.get(("mongo", normalize_host(service.mongo_host)))
            if store is not None:
                row.share(store.pid)
        if isinstance(service, HasRedis):
            store = by_host.get(("redis", normalize_host(service.redis_host)))
            if store is not None:
                row.share(store.pid)
        core_host = getattr(service, "core_host", None)
        if row.type == "worker" and core_host:
            core = by_host.get(("core", normalize_host(core_host)))
            if core is not None:
                row.hub = core.hub
                row.share(core.pid)

    by_pid: dict[str, list[PidRow]] = {}
    for row in rows:
        by_pid.setdefault(row.pid, []).append(row)
    for row in rows:
        if row.pid == UNKNOWN:
            continue
        for pid in list(row.shares):
            for other in by_pid.get(pid, ()):
                other.share(row.pid)
    return rows


def render_table(rows: list[PidRow]) -> str:
    """Fixed-width text table; ``No service is running.`` when empty."""
    if not rows:
        return "No service is running."
    cells = [[str(getattr(row, attr)) for attr, _ in COLUMNS] for row in rows]
    widths = [
        max(len(header), *(len(line[i]) for line in cells))
        for i, (_, header) in enumerate(COLUMNS)
    ]
    lines = ["  ".join(h.ljust(w) for (_, h), w in zip(COLUMNS, widths, strict=True)).rstrip()]
    for line in cells:
        lines.append("  ".join(c.ljust(w) for c, w in zip(line, widths, strict=True)).rstrip())
    return "\n".join(lines)
