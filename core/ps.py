"""Process table inspection and termination.

Every service rediscovers its live instances here: nothing about running
processes is remembered between invocations.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path

import psutil

from core.config import RetryPolicy
from core.errors import OperationCancelledError, OperationTimeoutError
from core.repeat import sleep_or_cancel

logger = logging.getLogger(__name__)

DEFAULT_STOP_POLICY = RetryPolicy(wait_before_first_call=0.1, wait_between_calls=1.0, max_calls=20)


@dataclass(frozen=True)
class ProcessEntry:
    """One row of the process table.

    Attributes:
        pid: Process id
        command: Full command line, arguments joined by single spaces
        environment: Process environment (empty when unreadable)
        cwd: Working directory when readable
    """

    pid: int
    command: str
    environment: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None

    def __post_init__(self) -> None:
        """Validate ProcessEntry."""
        if self.pid <= 0:
            raise ValueError(f"pid must be > 0, got {self.pid}")

    @property
    def full_command(self) -> str:
        """Command line followed by ``NAME=value`` pairs, as ``ps e`` prints it."""
        if not self.environment:
            return self.command
        env_text = " ".join(f"{k}={v}" for k, v in self.environment.items())
        return f"{self.command} {env_text}"


Snapshot = Callable[[bool], Iterable[ProcessEntry]]


def _psutil_snapshot(with_env: bool) -> list[ProcessEntry]:
    entries: list[ProcessEntry] = []
    my_pid = os.getpid()
    for proc in psutil.process_iter(attrs=["pid", "cmdline"]):
        pid = proc.info["pid"]
        cmdline = proc.info.get("cmdline")
        if not cmdline or pid == my_pid:
            continue
        environment: dict[str, str] = {}
        cwd: str | None = None
        if with_env:
            try:
                environment = dict(proc.environ())
                cwd = proc.cwd()
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                pass
        entries.append(
            ProcessEntry(pid=pid, command=" ".join(cmdline), environment=environment, cwd=cwd)
        )
    return entries


class ProcessProbe:
    """Pattern matcher over the live process table.

    Patterns are extended regular expressions searched anywhere in the
    command line (or in the command line plus environment when
    ``with_env`` is set).

    Attributes:
        snapshot: Callable returning the current table; psutil by default
    """

    def __init__(self, snapshot: Snapshot | None = None) -> None:
        self.snapshot: Snapshot = snapshot or _psutil_snapshot
        self._custom = snapshot is not None

    async def _entries(self, with_env: bool) -> list[ProcessEntry]:
        return await asyncio.to_thread(lambda: list(self.snapshot(with_env)))

    async def grep(self, pattern: str, with_env: bool = False) -> list[ProcessEntry]:
        """Return every process whose command line matches ``pattern``.

        Args:
            pattern: Regular expression
            with_env: Also search (and return) the process environment

        Returns:
            Matching entries, in table order (empty when nothing matches)
        """
        if not pattern:
            raise ValueError("pattern must not be empty")
        regex = re.compile(pattern)
        matches: list[ProcessEntry] = []
        for entry in await self._entries(with_env):
            haystack = entry.full_command if with_env else entry.command
            if regex.search(haystack):
                matches.append(entry)
        return matches

    async def grep_pids(self, pattern: str) -> list[int]:
        return [e.pid for e in await self.grep(pattern)]

    async def get_entry(self, pid: int, with_env: bool = True) -> ProcessEntry | None:
        for entry in await self._entries(with_env):
            if entry.pid == pid:
                return entry
        return None

    async def get_env(self, pid: int, name: str) -> str | None:
        entry = await self.get_entry(pid, with_env=True)
        if entry is None:
            return None
        return entry.environment.get(name)

    async def get_cwd(self, pid: int) -> str | None:
        entry = await self.get_entry(pid, with_env=True)
        if entry is None:
            return None
        return entry.cwd

    async def exists(self, pid: int) -> bool:
        if pid <= 0:
            return False
        if self._custom:
            return await self.get_entry(pid, with_env=False) is not None
        return psutil.pid_exists(pid)


def send_signal(pid: int, sig: int) -> bool:
    """Send ``sig`` to ``pid``; return False if the process is already gone."""
    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        return False
    return True


async def kill_and_wait(
    pid: int,
    policy: RetryPolicy = DEFAULT_STOP_POLICY,
    cancel: asyncio.Event | None = None,
    probe: ProcessProbe | None = None,
    kill_signal: int = signal.SIGTERM,
) -> None:
    """Terminate ``pid`` and wait until it disappears from the table.

    Sends ``kill_signal`` (SIGTERM by default), then polls. Once a quarter
    of the checks have elapsed without success, escalates to SIGABRT.

    Args:
        pid: Process to stop
        policy: Check schedule
        cancel: Optional cancellation event
        probe: Probe used for the liveness checks
        kill_signal: First signal to send

    Raises:
        OperationCancelledError: If ``cancel`` fires before the process exits
        OperationTimeoutError: If the process survives every check
    """
    if pid <= 0:
        raise ValueError(f"pid must be > 0, got {pid}")
    probe = probe or ProcessProbe()

    abort_sent = kill_signal == signal.SIGABRT
    if not send_signal(pid, kill_signal):
        return

    wait_first = max(policy.wait_before_first_call, 0.1)
    if await sleep_or_cancel(wait_first, cancel):
        raise OperationCancelledError(f"kill pid={pid} cancelled")

    abort_at = max(policy.max_calls // 4, 1)
    for check in range(policy.max_calls):
        if not await probe.exists(pid):
            logger.debug("pid %d stopped", pid)
            return
        if not abort_sent and check + 1 >= abort_at:
            logger.info("pid %d still alive after %d checks, sending SIGABRT", pid, check + 1)
            abort_sent = True
            if not send_signal(pid, signal.SIGABRT):
                return
        if await sleep_or_cancel(policy.wait_between_calls, cancel):
            raise OperationCancelledError(f"kill pid={pid} cancelled")

    if not await probe.exists(pid):
        return
    raise OperationTimeoutError(f"Unable to stop process pid={pid}")


def read_pid_file(path: str | Path) -> int | None:
    """Return the pid stored in ``path`` or None when missing/invalid."""
    file_path = Path(path)
    try:
        text = file_path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    if not text.isdigit():
        return None
    pid = int(text)
    return pid if pid > 0 else None


def write_pid_file(path: str | Path, pid: int) -> None:
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    file_path.write_text(f"{pid}\n", encoding="utf-8")
