"""File operation tools — read_file, write_file.

Relative paths resolve against the workspace; absolute paths are used as-is.
"""

from __future__ import annotations

from pathlib import Path

from . import ToolInputError

_WORKSPACE: Path = Path.cwd()
_READ_MAX_CHARS = 100_000


def configure(workspace: Path, read_max_chars: int = 100_000) -> None:
    global _WORKSPACE, _READ_MAX_CHARS
    _WORKSPACE = Path(workspace)
    _READ_MAX_CHARS = read_max_chars


def resolve_path(path: str) -> Path:
    if not path:
        raise ToolInputError("path is required")
    p = Path(path).expanduser()
    if not p.is_absolute():
        p = _WORKSPACE / p
    return p.resolve()


def tool_read_file(path: str) -> dict:
    """Read a text file, truncated to the configured cap."""
    p = resolve_path(path)
    if not p.exists():
        return {"error": f"File not found: {path}"}
    if not p.is_file():
        return {"error": f"Not a file: {path}"}
    try:
        content = p.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return {"error": f"Cannot read binary file: {path}"}
    except PermissionError:
        return {"error": f"Permission denied: {path}"}
    return {"content": content[:_READ_MAX_CHARS]}


def tool_write_file(path: str, content: str) -> dict:
    """Write content to a file, creating directories as needed."""
    p = resolve_path(path)
    try:
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(content, encoding="utf-8")
    except PermissionError:
        return {"error": f"Permission denied: {path}"}
    return {"success": True, "path": str(p)}


TOOLS = [
    {
        "name": "read_file",
        "description": "Read the contents of a file. Path is relative to workspace or absolute.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path to read"},
            },
            "required": ["path"],
        },
        "function": tool_read_file,
    },
    {
        "name": "write_file",
        "description": "Write content to a file (create or overwrite). Auto-creates directories.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path to write"},
                "content": {"type": "string", "description": "Content to write"},
            },
            "required": ["path", "content"],
        },
        "function": tool_write_file,
    },
]
