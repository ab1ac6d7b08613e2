"""Launch-script generation and execution.

Services never spawn their binary directly: they write a small bash script
that detaches the process, redirects its output and prints its pid.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import stat
import tempfile
from collections.abc import Mapping, Sequence
from pathlib import Path

from core.errors import ExternalToolError

logger = logging.getLogger(__name__)

NEW_LINE_TAB = " \\\n    "


def _check_unquoted(value: str) -> None:
    if '"' in value or "'" in value:
        raise ValueError(f"quotes are not supported in launch values: {value!r}")


def args_to_script(args: Sequence[str] | None) -> str:
    """Render arguments; options start a continuation line."""
    if not args:
        return ""
    out = ""
    for arg in args:
        if arg.startswith("-"):
            out += NEW_LINE_TAB + arg
        elif (arg.startswith('"') and arg.endswith('"')) or (
            arg.startswith("'") and arg.endswith("'")
        ):
            out += " " + arg
        else:
            _check_unquoted(arg)
            out += f' "{arg}"' if " " in arg else " " + arg
    return out


def env_to_script(env: Mapping[str, str] | None) -> str:
    """Render ``NAME='value'`` assignments (double quotes if value has spaces)."""
    if not env:
        return ""
    parts: list[str] = []
    for name, value in env.items():
        if (value.startswith("'") and value.endswith("'")) or (
            value.startswith('"') and value.endswith('"')
        ):
            parts.append(f"{name}={value}")
            continue
        _check_unquoted(value)
        parts.append(f'{name}="{value}"' if " " in value else f"{name}='{value}'")
    return " ".join(parts)


def _header(cwd: str | Path | None) -> str:
    script = "#!/bin/bash\n\n"
    if cwd:
        script += f"cd '{cwd}'\n"
    return script


def gen_nohup_script(
    command: str,
    args: Sequence[str] | None = None,
    env: Mapping[str, str] | None = None,
    log_file: str | Path | None = None,
    pid_file: str | Path | None = None,
    cwd: str | Path | None = None,
) -> str:
    """Build a ``nohup`` launch script that echoes the spawned pid.

    Args:
        command: Executable to launch
        args: Command arguments
        env: Extra environment assignments placed before the command
        log_file: Output redirection target (``/dev/null`` when None)
        pid_file: Optional file receiving the pid
        cwd: Optional working directory

    Returns:
        Script source
    """
    logs = str(log_file) if log_file else "/dev/null"
    script = _header(cwd)
    script += env_to_script(env) + " "
    script += f"nohup {command}{args_to_script(args)}{NEW_LINE_TAB}> '{logs}' 2>&1 &\n"
    script += "pid=$!\n"
    if pid_file:
        script += f"echo $pid > '{pid_file}'\n"
    script += "echo $pid"
    return script


def gen_setm_script(
    command: str,
    args: Sequence[str] | None = None,
    env: Mapping[str, str] | None = None,
    log_file: str | Path | None = None,
    cwd: str | Path | None = None,
) -> str:
    """Build a job-control (``set -m``) launch script.

    The process is fully detached from the script's process group; its pid
    is not printed and must be recovered through discovery.
    """
    logs = str(log_file) if log_file else "/dev/null"
    script = _header(cwd)
    script += f"(set -m ; {env_to_script(env)} {command}{args_to_script(args)}> '{logs}' 2>&1 &)\n"
    return script


async def run_launch_script(
    script: str,
    tmp_dir: str | Path,
    timeout: float = 5.0,
    env: Mapping[str, str] | None = None,
) -> int | None:
    """Save ``script`` to a temporary executable, run it, then delete it.

    Args:
        script: Script source
        tmp_dir: Directory for the temporary file (created if needed)
        timeout: Seconds before the script is considered hung
        env: Environment overrides merged into the current environment

    Returns:
        The pid printed on stdout, or None when the script prints nothing

    Raises:
        ExternalToolError: If the script fails, times out or prints garbage
    """
    tmp_path = Path(tmp_dir)
    tmp_path.mkdir(parents=True, exist_ok=True)
    fd, script_name = tempfile.mkstemp(prefix="launch-", suffix=".sh", dir=tmp_path)
    script_path = Path(script_name)
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        fh.write(script)
    script_path.chmod(script_path.stat().st_mode | stat.S_IXUSR)

    run_env = dict(os.environ)
    run_env["LANG"] = "en_GB.UTF-8"
    if env:
        run_env.update(env)

    try:
        proc = await asyncio.create_subprocess_exec(
            str(script_path),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=run_env,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            raise ExternalToolError(
                f"launch script timed out after {timeout}s",
                code="BASH_SCRIPT_EXEC_ERROR",
            ) from None
    finally:
        script_path.unlink(missing_ok=True)

    err_text = stderr.decode("utf-8", errors="replace").strip()
    if proc.returncode != 0:
        raise ExternalToolError(
            f"launch script exited with code {proc.returncode}",
            code="BASH_SCRIPT_EXEC_ERROR",
            stderr=err_text,
        )

    out_text = stdout.decode("utf-8", errors="replace").strip()
    if not out_text:
        return None
    last_line = out_text.splitlines()[-1].strip()
    if not last_line.isdigit():
        raise ExternalToolError(
            f"launch script printed an invalid pid: {last_line!r}",
            code="BASH_SCRIPT_EXEC_ERROR",
            stderr=err_text,
        )
    logger.debug("launch script spawned pid %s", last_line)
    return int(last_line)


async def run_command(
    program: str,
    args: Sequence[str] = (),
    env: Mapping[str, str] | None = None,
    cwd: str | Path | None = None,
    timeout: float = 60.0,
) -> str:
    """Run a tool to completion and return its stdout.

    Raises:
        ExternalToolError: If the tool is missing, times out or exits non-zero
    """
    run_env = dict(os.environ)
    if env:
        run_env.update(env)
    try:
        proc = await asyncio.create_subprocess_exec(
            program,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=run_env,
            cwd=None if cwd is None else str(cwd),
        )
    except FileNotFoundError as exc:
        raise ExternalToolError(f"'{program}' is not installed") from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        raise ExternalToolError(f"'{program}' timed out after {timeout}s") from None

    if proc.returncode != 0:
        raise ExternalToolError(
            f"'{program} {' '.join(args)}' exited with code {proc.returncode}",
            stderr=stderr.decode("utf-8", errors="replace").strip(),
        )
    return stdout.decode("utf-8", errors="replace")
