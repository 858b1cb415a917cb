"""Tool registry used by the agent loop.

Each tool module exposes ``configure(...)`` and a ``TOOLS`` list of
``{"name", "description", "input_schema", "function"}`` dicts. Calls never
raise into the loop: failures are returned as ``{"error": message}``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

log = logging.getLogger(__name__)

# Reserved argument filled in by the registry, never by the model.
CONVERSATION_ARG = "conversation_id"


class ToolInputError(ValueError):
    """A tool or job payload is missing a required field or has a bad one."""


@dataclass
class _Tool:
    name: str
    description: str
    input_schema: dict
    func: Callable[..., Any]
    takes_conversation: bool

    def schema(self) -> dict:
        return {"name": self.name, "description": self.description,
                "input_schema": self.input_schema}


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, _Tool] = {}
        self._server_tools: list[dict] = []

    def register(self, name: str, description: str, input_schema: dict,
                 func: Callable[..., Any]) -> None:
        """Add a client tool. A ``conversation_id`` parameter is injected per call."""
        self._tools[name] = _Tool(
            name, description, input_schema, func,
            takes_conversation=CONVERSATION_ARG in inspect.signature(func).parameters,
        )

    def register_many(self, tools: list[dict]) -> None:
        for spec in tools:
            self.register(spec["name"], spec["description"], spec["input_schema"], spec["function"])

    def register_server_tool(self, spec: dict) -> None:
        """Add a tool the API runs itself, e.g. ``web_search_20250305``."""
        self._server_tools.append(dict(spec))

    def get_schemas(self) -> list[dict]:
        return [t.schema() for t in self._tools.values()] + [dict(s) for s in self._server_tools]

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools)

    async def execute(self, name: str, arguments: dict, conversation_id: str = "") -> Any:
        tool = self._tools.get(name)
        if tool is None:
            return {"error": f"Unknown tool: {name}"}

        if not isinstance(arguments, dict):
            arguments = {}
        kwargs = {k: v for k, v in arguments.items() if k != CONVERSATION_ARG}
        if tool.takes_conversation:
            kwargs[CONVERSATION_ARG] = conversation_id

        try:
            if inspect.iscoroutinefunction(tool.func):
                return await tool.func(**kwargs)
            return await asyncio.to_thread(tool.func, **kwargs)
        except ToolInputError as e:
            return {"error": str(e)}
        except TypeError as e:
            log.warning("Bad arguments for tool %s: %s", name, e)
            return {"error": f"Invalid arguments for '{name}': {e}"}
        except Exception as e:
            log.exception("Tool %s raised", name)
            return {"error": str(e) or type(e).__name__}
