"""Shell execution tool — bash."""

from __future__ import annotations

import asyncio
import os
import re
import signal
from pathlib import Path

_WORKSPACE: Path = Path.cwd()
_DEFAULT_TIMEOUT = 30
_MAX_TIMEOUT = 600
_EXTRA_PATH: list[str] = []

_STDOUT_MAX = 50_000
_STDERR_MAX = 10_000
_TIMEOUT_EXIT_CODE = 124

BLOCKED_PATTERNS = [
    re.compile(r"rm\s+-rf\s+/(?!\w)"),
    re.compile(r"sudo\s+"),
]

# Environment variable patterns to filter out of child processes
_SECRET_PREFIXES = ("MINION_",)
_SECRET_SUFFIXES = ("_KEY", "_TOKEN", "_SECRET", "_PASSWORD", "_CREDENTIALS", "_PASS")


def configure(workspace: Path, default_timeout: int = 30, max_timeout: int = 600,
              extra_path: list[str] | None = None) -> None:
    global _WORKSPACE, _DEFAULT_TIMEOUT, _MAX_TIMEOUT, _EXTRA_PATH
    _WORKSPACE = Path(workspace)
    _DEFAULT_TIMEOUT = default_timeout
    _MAX_TIMEOUT = max_timeout
    _EXTRA_PATH = list(extra_path or [])


def child_env(extra_path: list[str] | None = None) -> dict[str, str]:
    """Environment for child processes: secrets removed, extra dirs prepended to PATH."""
    env = {}
    for key, val in os.environ.items():
        if any(key.startswith(p) for p in _SECRET_PREFIXES):
            continue
        if any(key.endswith(s) for s in _SECRET_SUFFIXES):
            continue
        env[key] = val
    dirs = [os.path.expanduser(d) for d in (extra_path if extra_path is not None else _EXTRA_PATH)]
    if dirs:
        env["PATH"] = os.pathsep.join([*dirs, env.get("PATH", "")])
    return env


def blocked_pattern(command: str) -> str | None:
    for pattern in BLOCKED_PATTERNS:
        if pattern.search(command):
            return pattern.pattern
    return None


async def tool_bash(command: str, timeout_seconds: float | None = None) -> dict:
    """Run a shell command in the workspace and return stdout, stderr and exit code."""
    hit = blocked_pattern(command)
    if hit:
        return {"stdout": "", "stderr": f"Blocked: command matches safety pattern /{hit}/", "exit_code": 1}

    timeout = _DEFAULT_TIMEOUT if timeout_seconds is None else timeout_seconds
    timeout = max(1, min(timeout, _MAX_TIMEOUT))

    _WORKSPACE.mkdir(parents=True, exist_ok=True)
    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(_WORKSPACE),
        env=child_env(),
        start_new_session=True,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        try:
            # Kill entire process group to prevent orphans
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        await proc.wait()
        return {
            "stdout": "",
            "stderr": f"Command timed out after {timeout:g}s",
            "exit_code": _TIMEOUT_EXIT_CODE,
        }

    return {
        "stdout": stdout.decode("utf-8", errors="replace")[:_STDOUT_MAX],
        "stderr": stderr.decode("utf-8", errors="replace")[:_STDERR_MAX],
        "exit_code": proc.returncode,
    }


TOOLS = [
    {
        "name": "bash",
        "description": (
            "Execute a shell command on the host. Returns stdout, stderr, and exit code. "
            "Use for quick system commands, brew, open, osascript, etc."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The shell command to execute"},
                "timeout_seconds": {"type": "number", "description": "Timeout in seconds (default 30)"},
            },
            "required": ["command"],
        },
        "function": tool_bash,
    },
]
