"""System prompt assembly.

Two blocks per turn: a ``stable`` block (the prompt file, read fresh each
time so edits apply without a restart, or the configured default) and a
``dynamic`` block with the clock, session framing and runtime notes.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path

log = logging.getLogger(__name__)

_SOURCE_FRAMING = {
    "telegram": (
        "Session type: primary channel (Telegram). "
        "Messages come from the user via Telegram. Replies are rendered as Markdown."
    ),
    "cli": "Session type: CLI. Messages come from a local command-line interface.",
}

_JOBS_NOTE = (
    "Background jobs: claude_code returns immediately with a job id. "
    "The result is posted to this chat when the job finishes; do not wait for it."
)


class ContextBuilder:
    def __init__(self, prompt_file: Path | None, default_prompt: str, workspace: Path):
        self.prompt_file = prompt_file
        self.default_prompt = default_prompt
        self.workspace = workspace

    def build(self, source: str = "", max_iterations: int = 0,
              scheduled_task: str = "") -> list[dict]:
        """Return ``[{"text", "tier"}, ...]`` for provider.format_system."""
        return [
            {"text": self._stable_text(), "tier": "stable"},
            {"text": self._dynamic_text(source, max_iterations, scheduled_task), "tier": "dynamic"},
        ]

    def _stable_text(self) -> str:
        path = self.prompt_file
        if path is None:
            return self.default_prompt
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            log.debug("No prompt file at %s, using default", path)
            return self.default_prompt
        except OSError as e:
            log.warning("Cannot read prompt file %s: %s", path, e)
            return self.default_prompt
        return text if text.strip() else self.default_prompt

    def _dynamic_text(self, source: str, max_iterations: int, scheduled_task: str) -> str:
        lines = [f"Current date/time: {time.strftime('%a, %d. %b %Y - %H:%M %Z')}"]
        if scheduled_task:
            lines.append(
                f"Session type: scheduled task \"{scheduled_task}\". "
                "This message was fired by the cron scheduler, not typed by the user. "
                "Your reply is delivered to the user's chat."
            )
        elif source in _SOURCE_FRAMING:
            lines.append(_SOURCE_FRAMING[source])
        lines.append(f"Workspace directory: {self.workspace}")
        lines.append(_JOBS_NOTE)
        if max_iterations:
            lines.append(f"Tool-use iteration limit: {max_iterations} per message.")
        return "\n".join(lines)
