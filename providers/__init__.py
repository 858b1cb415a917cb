"""Provider-neutral response types and the provider protocol.

Content blocks stay in Messages API shape as plain dicts, so an assistant
turn can be stored as-is and sent back on later turns.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

log = logging.getLogger(__name__)

STOP_END_TURN = "end_turn"
STOP_MAX_TOKENS = "max_tokens"
STOP_PAUSE_TURN = "pause_turn"
STOP_TOOL_USE = "tool_use"


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0


@dataclass
class LLMResponse:
    content: list[dict]
    stop_reason: str  # "end_turn" | "max_tokens" | "pause_turn" | "tool_use" | ...
    usage: Usage = field(default_factory=Usage)
    raw: Any = None

    @property
    def text(self) -> str:
        """Text blocks joined by newline (empty string if none)."""
        return "\n".join(
            b.get("text", "") for b in self.content if b.get("type") == "text"
        )

    @property
    def thinking(self) -> str:
        return "".join(
            b.get("thinking", "") for b in self.content if b.get("type") == "thinking"
        )

    @property
    def tool_calls(self) -> list[ToolCall]:
        """Client-side tool calls only; server tools run inside the API."""
        return [
            ToolCall(id=b["id"], name=b["name"], arguments=b.get("input") or {})
            for b in self.content if b.get("type") == "tool_use"
        ]

    @property
    def server_tool_calls(self) -> list[ToolCall]:
        return [
            ToolCall(id=b.get("id", ""), name=b.get("name", ""), arguments=b.get("input") or {})
            for b in self.content if b.get("type") == "server_tool_use"
        ]

    def to_internal_message(self) -> dict:
        return {"role": "assistant", "content": self.content}


class LLMProvider(Protocol):
    """What the agent loop and think_hard need from a model backend."""

    model: str

    def format_tools(self, tools: list[dict]) -> list[dict]: ...

    def format_system(self, blocks: list[dict]) -> Any: ...

    async def complete(
        self, system: Any, messages: list[dict], tools: list[dict], **kwargs
    ) -> LLMResponse:
        """One Messages API round trip.

        Recognised kwargs: ``model``, ``max_tokens`` and ``thinking_budget``.
        """
        ...


_ANTHROPIC_NAMES = ("anthropic", "anthropic-compat")


def create_provider(model_config: dict, api_key: str = "") -> LLMProvider:
    """Build the provider for a ``[models.<name>]`` table."""
    kind = model_config.get("provider", "anthropic")
    if kind not in _ANTHROPIC_NAMES:
        raise ValueError(f"Unknown provider type: {kind!r}")

    from .anthropic_compat import AnthropicCompatProvider
    return AnthropicCompatProvider(
        api_key,
        model_config["model"],
        max_tokens=model_config.get("max_tokens", 4096),
        base_url=model_config.get("base_url", ""),
        cache_control=model_config.get("cache_control", False),
    )
