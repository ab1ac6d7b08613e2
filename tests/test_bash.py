"""Tests for launch-script generation and execution."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from core.bash import (
    args_to_script,
    env_to_script,
    gen_nohup_script,
    gen_setm_script,
    run_command,
    run_launch_script,
)
from core.errors import ExternalToolError
from core.net import is_port_in_use


class TestScriptRendering:
    """Tests for argument and environment rendering."""

    def test_options_start_continuation_lines(self) -> None:
        """Test every option begins a new script line."""
        out = args_to_script(["--port", "8545", "--db", "/tmp/my db"])
        assert out == ' \\\n    --port 8545 \\\n    --db "/tmp/my db"'

    def test_pre_quoted_arguments_are_kept(self) -> None:
        """Test arguments already wrapped in quotes pass through."""
        assert args_to_script(["'a b'"]) == " 'a b'"

    def test_env_assignments(self) -> None:
        """Test values are single-quoted unless they contain spaces."""
        out = env_to_script({"PORT": "3000", "CHAINS": "a b"})
        assert out == "PORT='3000' CHAINS=\"a b\""

    def test_embedded_quotes_are_rejected(self) -> None:
        """Test values containing quote characters are refused."""
        with pytest.raises(ValueError, match="quotes"):
            args_to_script(["it's"])
        with pytest.raises(ValueError, match="quotes"):
            env_to_script({"X": 'say "hi"'})

    def test_empty_inputs(self) -> None:
        """Test missing args and env render as nothing."""
        assert args_to_script(None) == ""
        assert env_to_script({}) == ""


def test_nohup_script_writes_pid_file(tmp_path: Path) -> None:
    script = gen_nohup_script(
        "ganache",
        ["--port", "8545"],
        env={"NODE_ENV": "dev"},
        log_file=tmp_path / "g.log",
        pid_file=tmp_path / "g.pid",
        cwd=tmp_path,
    )

    assert script.startswith("#!/bin/bash\n\n")
    assert f"cd '{tmp_path}'\n" in script
    assert "NODE_ENV='dev' nohup ganache" in script
    assert f"> '{tmp_path / 'g.log'}' 2>&1 &\n" in script
    assert f"echo $pid > '{tmp_path / 'g.pid'}'\n" in script
    assert script.endswith("echo $pid")


def test_setm_script_detaches_without_pid() -> None:
    script = gen_setm_script("node", ["./src/server.js"], env={"PORT": "3000"})

    assert "(set -m ; PORT='3000' node ./src/server.js> '/dev/null' 2>&1 &)" in script
    assert "echo $pid" not in script


class TestRunLaunchScript:
    """Tests that execute real bash scripts."""

    @pytest.mark.asyncio
    async def test_returns_printed_pid(self, tmp_path: Path) -> None:
        """Test the last stdout line is parsed as the pid."""
        pid = await run_launch_script("#!/bin/bash\necho 4242\n", tmp_path)
        assert pid == 4242
        # the temporary script is always removed
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_silent_script_returns_none(self, tmp_path: Path) -> None:
        """Test a script printing nothing yields no pid."""
        assert await run_launch_script("#!/bin/bash\ntrue\n", tmp_path) is None

    @pytest.mark.asyncio
    async def test_failure_carries_stderr(self, tmp_path: Path) -> None:
        """Test a non-zero exit becomes a bash script error."""
        with pytest.raises(ExternalToolError) as exc_info:
            await run_launch_script("#!/bin/bash\necho boom >&2\nexit 3\n", tmp_path)
        assert exc_info.value.code == "BASH_SCRIPT_EXEC_ERROR"
        assert exc_info.value.stderr == "boom"

    @pytest.mark.asyncio
    async def test_garbage_output_is_rejected(self, tmp_path: Path) -> None:
        """Test non-numeric output is not mistaken for a pid."""
        with pytest.raises(ExternalToolError, match="invalid pid"):
            await run_launch_script("#!/bin/bash\necho hello\n", tmp_path)

    @pytest.mark.asyncio
    async def test_timeout(self, tmp_path: Path) -> None:
        """Test a hung script is killed and reported."""
        with pytest.raises(ExternalToolError, match="timed out"):
            await run_launch_script("#!/bin/bash\nsleep 5\n", tmp_path, timeout=0.2)


@pytest.mark.asyncio
async def test_run_command_missing_tool() -> None:
    with pytest.raises(ExternalToolError, match="not installed"):
        await run_command("definitely-not-a-devstack-tool")


@pytest.mark.asyncio
async def test_run_command_returns_stdout() -> None:
    assert await run_command("echo", ["ready"]) == "ready\n"


@pytest.mark.asyncio
async def test_is_port_in_use() -> None:
    server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        assert await is_port_in_use("127.0.0.1", port)
    finally:
        server.close()
        await server.wait_closed()
    assert not await is_port_in_use("127.0.0.1", port)
