"""Delegated subprocess runner — streaming output, bounded tails, timeout.

Spawns one external agent CLI (Claude Code by default) for a job, reads its
stream-json stdout line by line, keeps bounded tails of stdout and stderr
for diagnostics, and resolves exactly once: a result string on exit 0, or a
DelegateError subclass for spawn failure, timeout, or non-zero exit.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from tools import ToolInputError

log = logging.getLogger(__name__)

NO_RESULT = "(no result)"

# Bounded excerpt sizes for fallbacks and failure summaries
_STDOUT_FALLBACK_CHARS = 5_000
_FAILURE_SUMMARY_CHARS = 5_000
_READ_CHUNK = 64 * 1024


class DelegateError(Exception):
    """Base for delegated subprocess failures."""


class DelegateSpawnError(DelegateError):
    """The process could not be started."""


class DelegateTimeout(DelegateError):
    """The process exceeded its wall-clock budget and was killed."""


class DelegateExitError(DelegateError):
    """The process exited with a non-zero code."""

    def __init__(self, message: str, returncode: int | None = None):
        super().__init__(message)
        self.returncode = returncode


@dataclass
class DelegateInput:
    prompt: str
    working_directory: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> DelegateInput:
        """Validate a tool input or stored job payload."""
        if not isinstance(payload, dict):
            raise ToolInputError("claude_code payload must be an object")
        prompt = payload.get("prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            raise ToolInputError("claude_code prompt is required")
        wd = payload.get("working_directory")
        if wd is not None and not isinstance(wd, str):
            raise ToolInputError("claude_code working_directory must be a string")
        return cls(prompt=prompt.strip(), working_directory=wd.strip() if wd and wd.strip() else None)

    def to_payload(self) -> dict:
        payload: dict[str, str] = {"prompt": self.prompt}
        if self.working_directory:
            payload["working_directory"] = self.working_directory
        return payload


@dataclass
class StreamAccumulator:
    result_text: str = ""
    stdout_tail: str = ""
    stderr_tail: str = ""


def truncate_text(text: str, max_chars: int) -> str:
    return text if len(text) <= max_chars else text[:max_chars]


def append_tail(existing: str, incoming: str, max_bytes: int) -> str:
    """Append then keep only the last max_bytes of UTF-8.

    A character split by the cut is dropped rather than kept partially.
    """
    combined = existing + incoming
    # UTF-8 needs at most 4 bytes per character.
    if len(combined) * 4 <= max_bytes:
        return combined
    encoded = combined.encode("utf-8")
    if len(encoded) <= max_bytes:
        return combined
    return encoded[len(encoded) - max_bytes:].decode("utf-8", errors="ignore")


def parse_stream_line(line: str, acc: StreamAccumulator) -> None:
    """Apply one stream-json record to the accumulator.

    "assistant" records overwrite the current best text with their latest
    text block; a "result" record overwrites it definitively. Anything that
    is not a JSON object of a known shape is ignored.
    """
    try:
        obj = json.loads(line)
    except json.JSONDecodeError:
        return
    if not isinstance(obj, dict):
        return

    if obj.get("type") == "result" and isinstance(obj.get("result"), str):
        acc.result_text = obj["result"]
        return

    if obj.get("type") == "assistant":
        message = obj.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, list):
            for block in content:
                if isinstance(block, dict) and block.get("type") == "text" \
                        and isinstance(block.get("text"), str):
                    acc.result_text = block["text"]


class DelegateRunner:
    """Runs one delegated task per call. Stateless between calls."""

    def __init__(
        self,
        command: list[str] | None = None,
        workspace: str | Path = ".",
        timeout: float = 300.0,
        kill_grace: float = 5.0,
        stdout_tail_bytes: int = 200_000,
        stderr_tail_bytes: int = 50_000,
        result_max_chars: int = 50_000,
        extra_path: list[str] | None = None,
    ):
        self.command = list(command or ["claude", "--verbose", "--output-format", "stream-json", "-p"])
        self.workspace = Path(workspace)
        self.timeout = timeout
        self.kill_grace = kill_grace
        self.stdout_tail_bytes = stdout_tail_bytes
        self.stderr_tail_bytes = stderr_tail_bytes
        self.result_max_chars = result_max_chars
        self.extra_path = extra_path or []

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        if self.extra_path:
            dirs = [str(Path(p).expanduser()) for p in self.extra_path]
            env["PATH"] = os.pathsep.join([*dirs, env.get("PATH", "")])
        return env

    async def run(self, task: DelegateInput) -> str:
        cwd = Path(task.working_directory).expanduser().resolve() \
            if task.working_directory else self.workspace
        argv = [*self.command, task.prompt]

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                env=self._env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise DelegateSpawnError(f"Delegate spawn error: {e}") from e

        log.info("Delegate started (pid %d, cwd %s)", proc.pid, cwd)
        acc = StreamAccumulator()

        try:
            await asyncio.wait_for(self._drain(proc, acc), timeout=self.timeout)
        except TimeoutError:
            log.warning("Delegate pid %d timed out after %.0fs", proc.pid, self.timeout)
            await self._terminate(proc)
            raise DelegateTimeout(
                f"Delegated task timed out after {self.timeout:.0f} seconds."
            ) from None
        except asyncio.CancelledError:
            await self._terminate(proc)
            raise

        code = proc.returncode
        if code == 0:
            result = acc.result_text or acc.stdout_tail[-_STDOUT_FALLBACK_CHARS:] or NO_RESULT
            return truncate_text(result, self.result_max_chars)

        suffix = ""
        if code is not None and code < 0:
            try:
                suffix = f" ({signal.Signals(-code).name})"
            except ValueError:
                suffix = f" (signal {-code})"
        summary = truncate_text(
            acc.stderr_tail or acc.stdout_tail or f"Process exited with code {code}",
            _FAILURE_SUMMARY_CHARS,
        )
        raise DelegateExitError(
            f"Delegated task exited with code {code}{suffix}: {summary}", returncode=code,
        )

    async def _drain(self, proc: asyncio.subprocess.Process, acc: StreamAccumulator) -> None:
        await asyncio.gather(
            self._pump_stdout(proc.stdout, acc),
            self._pump_stderr(proc.stderr, acc),
        )
        await proc.wait()

    async def _pump_stdout(self, stream: asyncio.StreamReader, acc: StreamAccumulator) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            text = decoder.decode(chunk)
            acc.stdout_tail = append_tail(acc.stdout_tail, text, self.stdout_tail_bytes)
            buffer += text
            while True:
                newline = buffer.find("\n")
                if newline == -1:
                    break
                line = buffer[:newline].strip()
                buffer = buffer[newline + 1:]
                if line:
                    parse_stream_line(line, acc)
            # A single unterminated line can't grow past the tail budget
            buffer = append_tail(buffer, "", self.stdout_tail_bytes)

        leftover = (buffer + decoder.decode(b"", final=True)).strip()
        if leftover:
            parse_stream_line(leftover, acc)

    async def _pump_stderr(self, stream: asyncio.StreamReader, acc: StreamAccumulator) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            acc.stderr_tail = append_tail(acc.stderr_tail, decoder.decode(chunk), self.stderr_tail_bytes)

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM the process group, then SIGKILL after the grace period."""
        if proc.returncode is not None:
            return
        _signal_group(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.kill_grace)
            return
        except TimeoutError:
            pass
        log.warning("Delegate pid %d ignored SIGTERM, killing", proc.pid)
        _signal_group(proc, signal.SIGKILL)
        await proc.wait()


def _signal_group(proc: asyncio.subprocess.Process, sig: signal.Signals) -> None:
    try:
        os.killpg(proc.pid, sig)
    except (ProcessLookupError, PermissionError):
        try:
            proc.send_signal(sig)
        except ProcessLookupError:
            pass
