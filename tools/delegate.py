"""Background delegation tool — claude_code.

Queues the task as a job and returns an acknowledgement in the same
iteration; the dispatcher runs it and posts the outcome to the chat.
"""

from __future__ import annotations

from typing import Any

# Set at daemon startup
_dispatcher: Any = None


def configure(dispatcher: Any) -> None:
    global _dispatcher
    _dispatcher = dispatcher


async def tool_claude_code(conversation_id: str, prompt: str = "",
                           working_directory: str | None = None) -> dict:
    """Submit a delegated coding/research task as a background job."""
    if _dispatcher is None:
        return {"error": "Background jobs are not configured"}
    payload: dict[str, Any] = {"prompt": prompt}
    if working_directory:
        payload["working_directory"] = working_directory
    return _dispatcher.submit(conversation_id, payload)


TOOLS = [
    {
        "name": "claude_code",
        "description": (
            "Delegate complex multi-step coding, debugging, or research tasks to Claude Code CLI. "
            "This gives access to full file editing, bash, web search, and MCP tools. Use for tasks "
            "that need multiple steps or deep context. Runs in the background: returns a job id "
            "immediately and the result is posted to the chat when it finishes."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "prompt": {"type": "string", "description": "The task description for Claude Code"},
                "working_directory": {"type": "string", "description": "Working directory (default: workspace)"},
            },
            "required": ["prompt"],
        },
        "function": tool_claude_code,
    },
]
