from __future__ import annotations

from dataclasses import replace
from pathlib import Path

from core.config import ReadinessCfg, RetryPolicy, ToolConfig
from core.ps import ProcessEntry, ProcessProbe

FAST_POLICY = RetryPolicy(wait_before_first_call=0.0, wait_between_calls=0.01, max_calls=5)


class FakeProcessTable:
    """In-memory process table fed to :class:`ProcessProbe`."""

    def __init__(self) -> None:
        self.entries: dict[int, ProcessEntry] = {}

    def add(
        self,
        pid: int,
        command: str,
        environment: dict[str, str] | None = None,
        cwd: str | Path | None = None,
    ) -> ProcessEntry:
        entry = ProcessEntry(
            pid=pid,
            command=command,
            environment=dict(environment or {}),
            cwd=None if cwd is None else str(cwd),
        )
        self.entries[pid] = entry
        return entry

    def remove(self, pid: int) -> None:
        self.entries.pop(pid, None)

    def snapshot(self, with_env: bool) -> list[ProcessEntry]:
        if with_env:
            return list(self.entries.values())
        return [replace(e, environment={}, cwd=None) for e in self.entries.values()]

    def probe(self) -> ProcessProbe:
        return ProcessProbe(self.snapshot)


def build_test_config(tmp_path: Path) -> ToolConfig:
    """Config with millisecond readiness budgets and paths under ``tmp_path``."""
    return ToolConfig.model_validate(
        {
            "app": {"name": "devstack", "env_prefix": "DEVSTACK"},
            "logging": {"level": "INFO", "json_format": False, "log_dir": str(tmp_path / "log")},
            "paths": {"run_dir": str(tmp_path / "run"), "tmp_dir": str(tmp_path / "tmp")},
            "readiness": ReadinessCfg(
                pid_poll=FAST_POLICY,
                log_scan=FAST_POLICY,
                rpc_probe=FAST_POLICY,
                stop=FAST_POLICY,
                bash_timeout=1.0,
            ).model_dump(),
        }
    )
