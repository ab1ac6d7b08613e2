"""Service contract: OS-level lifecycle of one supervised instance.

State is never stored. Each call re-derives it from the process table,
the pid/log files and the network::

    unknown -> discover -> absent | running
    absent  -> start    -> starting -> running | failed
    running -> stop     -> absent | failed
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, ClassVar

from controller.contracts import (
    LogStatus,
    RuntimeHandle,
    ServiceDescriptor,
    ServiceKind,
    ServiceState,
    ServiceStatus,
)
from core.bash import run_launch_script
from core.config import ToolConfig, default_config
from core.errors import (
    AlreadyBusyError,
    CodeError,
    GroupError,
    NotReadyError,
    OperationCancelledError,
    ProcessKilledError,
    Result,
    fail,
)
from core.net import is_port_in_use
from core.ps import ProcessProbe, kill_and_wait, read_pid_file, write_pid_file
from core.repeat import repeat_call_until

logger = logging.getLogger(__name__)

ORANDPatterns = list[list[str]]


@dataclass(frozen=True)
class StartOptions:
    """Options accepted by :meth:`Service.start`.

    Attributes:
        strict: Raise instead of returning a failed Result
        cancel: Cancellation event checked by every readiness wait
        create_dir: Create missing pid/log parent directories
        kill_if_failed: Stop the instance if start fails after spawning
        env: Extra environment for the launch script
        only_db: Composite services only: start the stores and return
        context: Caller value echoed back in results and errors
    """

    strict: bool = False
    cancel: asyncio.Event | None = None
    create_dir: bool = False
    kill_if_failed: bool = False
    env: Mapping[str, str] = field(default_factory=dict)
    only_db: bool = False
    context: Any = None


@dataclass(frozen=True)
class StopOptions:
    """Options accepted by :meth:`Service.stop`.

    Attributes:
        strict: Raise instead of returning a failed Result
        cancel: Cancellation event
        reset: Reset the on-disk state once stopped
        ignore_cancel: Ignore ``cancel`` so the stop always runs to completion
        context: Caller value echoed back in results and errors
    """

    strict: bool = False
    cancel: asyncio.Event | None = None
    reset: bool = False
    ignore_cancel: bool = False
    context: Any = None

    @property
    def effective_cancel(self) -> asyncio.Event | None:
        return None if self.ignore_cancel else self.cancel


def _log_line_matches(line: str, or_and: ORANDPatterns | None) -> bool:
    if not or_and:
        return False
    return any(all(p in line for p in and_list) for and_list in or_and)


def scan_log_text(
    text: str,
    pid_alive: bool,
    success: ORANDPatterns | None,
    failure: ORANDPatterns | None,
    exclude: Sequence[str] | None,
) -> LogStatus | None:
    """Classify a log against success/failure markers.

    Lines containing any ``exclude`` substring are ignored. A failure line
    wins over success lines. When nothing matches yet the result is None
    (still starting) unless the process is gone.

    Args:
        text: Log content
        pid_alive: Whether the owning process is still alive
        success: OR of AND-lists of substrings
        failure: OR of AND-lists of substrings
        exclude: Substrings marking benign lines

    Returns:
        LogStatus, or None while undetermined
    """
    if not success and not failure:
        return LogStatus("succeeded" if pid_alive else "killed")

    lines = text.splitlines()
    if exclude:
        lines = [ln for ln in lines if not any(x in ln for x in exclude)]

    matched = [ln for ln in lines if _log_line_matches(ln, success) or _log_line_matches(ln, failure)]
    if not matched:
        return None if pid_alive else LogStatus("killed")

    for line in matched:
        if _log_line_matches(line, failure):
            return LogStatus("failed" if pid_alive else "killed", line)
    return LogStatus("succeeded" if pid_alive else "killed")


class Service:
    """Base class of every supervised service.

    Subclasses set :attr:`kind`, implement :meth:`get_pid`,
    :meth:`launch_script` and :meth:`running`, and may override the
    readiness hooks.

    Attributes:
        kind: Service type tag
        run_dependencies: Types that must be running before this one starts
        probe: Process table probe used by discovery
        config: Tool configuration (policies, env prefix, tmp dir)
    """

    kind: ClassVar[ServiceKind]
    run_dependencies: ClassVar[tuple[ServiceKind, ...]] = ()

    def __init__(
        self,
        descriptor: ServiceDescriptor,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> None:
        self._descriptor = descriptor
        self.probe = probe or ProcessProbe()
        self.config = config or default_config()
        self._in_start = False
        self._in_stop = False

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._descriptor.host})"

    @property
    def descriptor(self) -> ServiceDescriptor:
        return self._descriptor

    @property
    def hostname(self) -> str:
        return self._descriptor.hostname

    @property
    def port(self) -> int | None:
        return self._descriptor.port

    @property
    def host(self) -> str:
        return self._descriptor.host

    @property
    def log_file(self) -> Path | None:
        return self._descriptor.log_file

    @property
    def pid_file(self) -> Path | None:
        return self._descriptor.pid_file

    def env_var(self, name: str) -> str:
        return self.config.env_var_name(name)

    def to_dict(self) -> dict[str, Any]:
        return self._descriptor.to_dict()

    # --- capabilities ---------------------------------------------------

    @property
    def can_start(self) -> bool:
        """Pure check over the descriptor; never touches the OS."""
        return self._descriptor.is_local

    @property
    def can_stop(self) -> bool:
        return self._descriptor.is_local

    # --- discovery ------------------------------------------------------

    async def get_pid(self) -> int | None:
        raise NotImplementedError

    def read_pid(self) -> int | None:
        if self.pid_file is None:
            return None
        return read_pid_file(self.pid_file)

    async def state(self) -> ServiceState:
        try:
            pid = await self.get_pid()
        except CodeError:
            return "unknown"
        return "running" if pid else "absent"

    async def status(self) -> ServiceStatus:
        pid = await self.get_pid()
        return ServiceStatus(
            service_type=self.kind,
            host=self.host,
            state="running" if pid else "absent",
            pid=pid,
        )

    @classmethod
    async def running(
        cls,
        filters: Mapping[str, Any] | None = None,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> list[RuntimeHandle]:
        """Discover every live instance of this type.

        Args:
            filters: Type-specific identity filters (e.g. ``{"port": 8545}``)
            probe: Process probe
            config: Tool configuration

        Returns:
            One handle per live process; ``service`` is None when the
            process could not be parsed back
        """
        raise NotImplementedError

    # --- launching ------------------------------------------------------

    async def check_busy(self) -> None:
        """Raise :class:`AlreadyBusyError` when a foreign process holds our resources."""

    async def launch_script(self, env: Mapping[str, str]) -> str:
        raise NotImplementedError

    def success_patterns(self, pid: int | None) -> ORANDPatterns | None:
        return None

    def failure_patterns(self, pid: int | None) -> ORANDPatterns | None:
        return None

    def exclude_patterns(self, pid: int | None) -> list[str] | None:
        return None

    async def on_ready(self, pid: int, already_started: bool) -> None:
        pass

    async def on_stopped(self, pid: int | None, options: StopOptions) -> None:
        pass

    async def on_start_failed(self, error: CodeError) -> None:
        pass

    async def start(self, options: StartOptions | None = None) -> Result:
        """Launch the service and wait until it is ready.

        If an instance with the same identity is already live, its pid is
        returned with ``already_started=True``.

        Args:
            options: Start options

        Returns:
            ``Result.success(pid, already_started=...)`` or a failed Result

        Raises:
            CodeError: Only when ``options.strict`` is set
        """
        options = options or StartOptions()
        if self._in_start:
            err = CodeError(f"{self.kind} is already starting", "ALREADY_STARTING", options.context)
            return fail(err, options.strict)
        if self._in_stop:
            err = CodeError(f"{self.kind} is stopping", "ALREADY_STOPPING", options.context)
            return fail(err, options.strict)
        if options.cancel is not None and options.cancel.is_set():
            err = OperationCancelledError(f"{self.kind} start cancelled", context=options.context)
            return fail(err, options.strict)

        self._in_start = True
        try:
            pid, already_started = await self._start_core(options)
        except CodeError as err:
            err.context = options.context
            start_error = err
        except OSError as exc:
            start_error = CodeError(f"Cannot start {self.kind}: {exc}", "CANNOT_START", options.context)
        else:
            self._in_start = False
            try:
                await self.on_ready(pid, already_started)
            except CodeError as exc:
                logger.warning("%s on_ready hook failed: %s", self.kind, exc.message)
            logger.info("%s ready pid=%d already_started=%s", self.kind, pid, already_started)
            return Result.success(pid, already_started=already_started, context=options.context)
        finally:
            self._in_start = False

        try:
            await self.on_start_failed(start_error)
        except CodeError as exc:
            logger.warning("%s on_start_failed hook failed: %s", self.kind, exc.message)

        if options.kill_if_failed:
            # no cancel: the failure may come from the cancellation itself
            await self.stop(StopOptions(strict=False, ignore_cancel=True))

        logger.info("%s start failed: %s (%s)", self.kind, start_error.message, start_error.code)
        return fail(start_error, options.strict)

    async def _start_core(self, options: StartOptions) -> tuple[int, bool]:
        if not self.can_start:
            raise CodeError(f"Cannot start {self.kind} service", "CANNOT_START")

        already_started = False
        pid = await self.get_pid()
        if pid:
            already_started = True
            stored = self.read_pid()
            if stored is not None and stored != pid:
                logger.warning("%s pid file says %d, process table says %d", self.kind, stored, pid)
        else:
            await self.check_busy()
            self._prepare_parent(self.pid_file, options.create_dir, "PID_FILE_ERROR")
            self._prepare_parent(self.log_file, options.create_dir, "LOG_FILE_ERROR")
            pid = await self._spawn(options)

        if options.cancel is not None and options.cancel.is_set():
            raise OperationCancelledError(f"{self.kind} start cancelled (pid={pid})")

        await self.wait_until_ready(pid, options)
        return pid, already_started

    @staticmethod
    def _prepare_parent(path: Path | None, create_dir: bool, code: Any) -> None:
        if path is None or path.parent.is_dir():
            return
        if not create_dir:
            raise CodeError(f"Directory '{path.parent}' does not exist", code)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CodeError(f"Unable to create directory '{path.parent}': {exc}", code) from exc

    def launch_env(self) -> dict[str, str]:
        """Environment of the shell running the launch script."""
        return {
            "logstash-gelf.resolutionOrder": "localhost,network",
            "logstash-gelf.skipHostnameResolution": "true",
        }

    async def _spawn(self, options: StartOptions) -> int:
        if self.log_file is not None:
            self.log_file.unlink(missing_ok=True)
        if self.pid_file is not None:
            self.pid_file.unlink(missing_ok=True)

        try:
            script = await self.launch_script(options.env)
        except ValueError as exc:
            raise CodeError(
                f"Unable to generate {self.kind} launch script: {exc}", "BASH_SCRIPT_EXEC_ERROR"
            ) from exc
        if not script:
            raise CodeError(f"Unable to generate {self.kind} launch script", "BASH_SCRIPT_EXEC_ERROR")

        spawned = await run_launch_script(
            script,
            self.config.paths.tmp_dir,
            timeout=self.config.readiness.bash_timeout,
            env=self.launch_env(),
        )
        logger.info("%s launch script done (spawned=%s)", self.kind, spawned)

        async def _poll() -> int | None:
            found = await self.get_pid()
            if found:
                return found
            if spawned is not None and not await self.probe.exists(spawned):
                return 0
            return None

        res = await repeat_call_until(
            _poll,
            self.config.readiness.pid_poll,
            options.cancel,
            description=f"{self.kind} pid lookup",
        )
        if not res.ok:
            assert res.error is not None
            if isinstance(res.error, OperationCancelledError):
                raise res.error
            raise CodeError(f"Unable to find {self.kind} process", "CANNOT_START")
        if res.value == 0:
            raise ProcessKilledError(f"{self.kind} process exited during startup (pid={spawned})")

        pid = int(res.value)
        if self.pid_file is not None:
            write_pid_file(self.pid_file, pid)
        return pid

    # --- readiness ------------------------------------------------------

    def _has_log_patterns(self, pid: int | None) -> bool:
        return bool(self.success_patterns(pid) or self.failure_patterns(pid))

    async def scan_logs(self, pid: int | None) -> LogStatus | None:
        """Scan the log file once; ``pid=None`` skips the liveness check."""
        alive = True if pid is None else await self.probe.exists(pid)
        if self.log_file is None:
            return LogStatus("succeeded" if alive else "killed")
        try:
            text = await asyncio.to_thread(
                self.log_file.read_text, encoding="utf-8", errors="replace"
            )
        except FileNotFoundError:
            return None if alive else LogStatus("killed")
        return scan_log_text(
            text,
            alive,
            self.success_patterns(pid),
            self.failure_patterns(pid),
            self.exclude_patterns(pid),
        )

    async def wait_until_ready(self, pid: int, options: StartOptions) -> None:
        """Block until the log says ready; pid check only without patterns.

        Raises:
            ProcessKilledError: If the process died
            NotReadyError: If a failure marker appeared
            OperationTimeoutError: If the call budget ran out
            OperationCancelledError: If ``options.cancel`` fired
        """
        if (
            self.log_file is None
            or not self.log_file.is_file()
            or not self._has_log_patterns(pid)
        ):
            if await self.probe.exists(pid):
                return
            raise ProcessKilledError(f"{self.kind} process killed (pid={pid})")

        res = await repeat_call_until(
            lambda: self.scan_logs(pid),
            self.config.readiness.log_scan,
            options.cancel,
            description=f"{self.kind} readiness",
        )
        if not res.ok:
            assert res.error is not None
            raise res.error

        log_status: LogStatus = res.value
        if log_status.status == "succeeded":
            return
        message = self.log_line_to_error_message(log_status.log_line)
        if log_status.status == "killed":
            raise ProcessKilledError(f"{self.kind} process killed. {message}".strip())
        raise NotReadyError(f"{self.kind} not ready. {message}".strip())

    def log_line_to_error_message(self, log_line: str | None) -> str:
        return log_line or ""

    async def is_ready(self) -> bool:
        try:
            pid = await self.get_pid()
            if not pid:
                return False
            if not self._has_log_patterns(pid):
                return True
            if self.log_file is None or not self.log_file.is_file():
                return True
            status = await self.scan_logs(None)
        except CodeError:
            return False
        return status is not None and status.status == "succeeded"

    # --- stopping -------------------------------------------------------

    async def stop(self, options: StopOptions | None = None) -> Result:
        """Stop the live instance, if any.

        Nothing to stop is a success (``Result.success(None)``).

        Raises:
            CodeError: Only when ``options.strict`` is set
        """
        options = options or StopOptions()
        if self._in_stop:
            err = CodeError(f"{self.kind} is already stopping", "ALREADY_STOPPING", options.context)
            return fail(err, options.strict)

        self._in_stop = True
        try:
            try:
                pid = await self._stop_core(options)
                await self.on_stopped(pid, options)
            except (OSError, ValueError) as exc:
                raise CodeError(f"Cannot stop {self.kind}: {exc}", "CANNOT_STOP") from exc
        except CodeError as err:
            err.context = options.context
            logger.info("%s stop failed: %s (%s)", self.kind, err.message, err.code)
            return fail(err, options.strict)
        finally:
            self._in_stop = False
        return Result.success(pid, context=options.context)

    async def _stop_core(self, options: StopOptions) -> int | None:
        if not self.can_stop:
            raise CodeError(f"Cannot stop {self.kind} service", "CANNOT_STOP")
        pid = await self.get_pid()
        if not pid:
            return None
        logger.info("%s stopping pid=%d", self.kind, pid)
        await self.stop_process(pid, options)
        return pid

    async def stop_process(self, pid: int, options: StopOptions) -> None:
        await kill_and_wait(
            pid,
            self.config.readiness.stop,
            options.effective_cancel,
            self.probe,
        )

    # --- class-level helpers -------------------------------------------

    @classmethod
    async def stop_all(
        cls,
        filters: Mapping[str, Any] | None = None,
        options: StopOptions | None = None,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> Result:
        handles = await cls.running(filters, probe, config)
        services = [h.service for h in handles if h.service is not None]
        return await group_stop(services, options)

    @classmethod
    async def kill_all(
        cls,
        filters: Mapping[str, Any] | None = None,
        options: StopOptions | None = None,
        probe: ProcessProbe | None = None,
        config: ToolConfig | None = None,
    ) -> Result:
        handles = await cls.running(filters, probe, config)
        return await group_kill([h.pid for h in handles], options, probe, config)


class ServerService(Service):
    """Service listening on ``hostname:port``."""

    @property
    def url(self) -> str:
        return f"http://{self.host}"

    async def check_busy(self) -> None:
        if self.port is None or not self.descriptor.is_local:
            return
        if await is_port_in_use(self.hostname, self.port):
            raise AlreadyBusyError(
                f"{self.kind} cannot start: port {self.port} is already in use",
                code="PORT_IN_USE_ERROR",
            )


def _collect(results: Sequence[Result], label: str, strict: bool) -> Result:
    errors = [r.error for r in results if not r.ok and r.error is not None]
    if errors:
        for err in errors:
            logger.warning("%s: %s", label, err.message)
        return fail(GroupError(f"{label} failed ({len(errors)} error(s))", errors), strict)
    return Result.success([r.value for r in results])


async def group_start(
    services: Sequence[Service | None],
    options: StartOptions | None = None,
) -> Result:
    """Start every service concurrently and report one aggregate outcome.

    Never aborts on the first failure: every start runs to completion.
    """
    options = options or StartOptions()
    sub_options = replace(options, strict=False)
    targets = [s for s in services if s is not None]
    results = await asyncio.gather(*(s.start(sub_options) for s in targets))
    return _collect(results, "group start", options.strict)


async def group_stop(
    services: Sequence[Service | None],
    options: StopOptions | None = None,
) -> Result:
    """Stop every service concurrently and report one aggregate outcome."""
    options = options or StopOptions()
    sub_options = replace(options, strict=False)
    targets = [s for s in services if s is not None]
    results = await asyncio.gather(*(s.stop(sub_options) for s in targets))
    return _collect(results, "group stop", options.strict)


async def group_kill(
    pids: Sequence[int],
    options: StopOptions | None = None,
    probe: ProcessProbe | None = None,
    config: ToolConfig | None = None,
) -> Result:
    """Kill raw pids concurrently; collect every failure."""
    options = options or StopOptions()
    policy = (config or default_config()).readiness.stop

    async def _kill(pid: int) -> Result:
        try:
            await kill_and_wait(pid, policy, options.effective_cancel, probe)
        except CodeError as err:
            return Result.failure(err)
        except OSError as exc:
            return Result.failure(CodeError(f"Unable to kill pid={pid}: {exc}", "CANNOT_STOP"))
        return Result.success(pid)

    results = await asyncio.gather(*(_kill(pid) for pid in pids if pid > 0))
    return _collect(list(results), "group kill", options.strict)
