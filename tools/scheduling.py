"""Recurring task management — schedule_task.

Tasks are persisted in the scheduled_tasks table and fired by the
scheduler loop into the conversation that created them.
"""

from __future__ import annotations

import logging
from typing import Any

from . import ToolInputError

log = logging.getLogger(__name__)

# Set at daemon startup
_store: Any = None


def configure(store: Any) -> None:
    global _store
    _store = store


async def tool_schedule_task(conversation_id: str, action: str, name: str = "", cron: str = "",
                             prompt: str = "", task_id: int | None = None) -> dict:
    """Create, list, or remove cron tasks for the calling conversation.

    Runs on the event loop thread: the store shares the daemon's connection.
    """
    if _store is None:
        return {"error": "Scheduler not configured"}

    if action == "list":
        return {"tasks": [t.to_dict() for t in _store.list_all()]}

    if action == "remove":
        if task_id is None:
            raise ToolInputError("task_id is required for remove")
        removed = _store.remove(int(task_id))
        if not removed:
            return {"error": f"No task #{task_id} found"}
        log.info("Removed scheduled task #%s", task_id)
        return {"success": True, "removed": int(task_id)}

    if action == "create":
        if not name or not cron or not prompt:
            raise ToolInputError("name, cron, and prompt are required for create")
        try:
            task = _store.create(name, cron, prompt, conversation_id)
        except ValueError as e:
            raise ToolInputError(str(e)) from e
        log.info("Created scheduled task #%d %r (%s) next=%s", task.id, name, cron, task.next_run)
        return {"success": True, "id": task.id, "name": name, "cron": cron, "next_run": task.next_run}

    raise ToolInputError(f"Unknown action: {action}")


TOOLS = [
    {
        "name": "schedule_task",
        "description": "Create, list, or remove scheduled tasks that run on a cron schedule.",
        "input_schema": {
            "type": "object",
            "properties": {
                "action": {"type": "string", "enum": ["create", "list", "remove"], "description": "Action to perform"},
                "name": {"type": "string", "description": "Task name (for create)"},
                "cron": {"type": "string", "description": 'Cron expression, e.g. "0 9 * * *" (for create)'},
                "prompt": {"type": "string", "description": "Prompt to run when task fires (for create)"},
                "task_id": {"type": "integer", "description": "Task ID (for remove)"},
            },
            "required": ["action"],
        },
        "function": tool_schedule_task,
    },
]
