"""Memory tools — memory_read and memory_update on MEMORY.md."""

from __future__ import annotations

import logging
from pathlib import Path

from . import ToolInputError

log = logging.getLogger(__name__)

# Set at daemon startup
_memory_file: Path | None = None

MISSING_NOTE = "(MEMORY.md does not exist yet)"


def configure(memory_file: Path) -> None:
    global _memory_file
    _memory_file = Path(memory_file)


def _path() -> Path:
    if _memory_file is None:
        raise RuntimeError("Memory file not configured")
    return _memory_file


def tool_memory_read() -> dict:
    """Return the whole memory file."""
    try:
        return {"content": _path().read_text(encoding="utf-8")}
    except FileNotFoundError:
        return {"content": MISSING_NOTE}


def tool_memory_update(action: str, content: str) -> dict:
    """Append to or rewrite the memory file."""
    if action not in ("append", "rewrite"):
        raise ToolInputError(f"Unknown action: {action!r} (expected 'append' or 'rewrite')")
    p = _path()
    p.parent.mkdir(parents=True, exist_ok=True)
    if action == "append":
        with open(p, "a", encoding="utf-8") as f:
            f.write("\n" + content)
    else:
        p.write_text(content, encoding="utf-8")
    log.info("MEMORY.md %s (%d chars)", action, len(content))
    return {"success": True}


TOOLS = [
    {
        "name": "memory_read",
        "description": (
            "Read the persistent MEMORY.md file containing important context "
            "about the user and ongoing projects."
        ),
        "input_schema": {
            "type": "object",
            "properties": {},
        },
        "function": tool_memory_read,
    },
    {
        "name": "memory_update",
        "description": (
            'Update the persistent MEMORY.md file. Use "append" to add new info, '
            '"rewrite" to replace the entire file.'
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "action": {"type": "string", "enum": ["append", "rewrite"], "description": "append or rewrite"},
                "content": {"type": "string", "description": "Content to append or full replacement content"},
            },
            "required": ["action", "content"],
        },
        "function": tool_memory_update,
    },
]
