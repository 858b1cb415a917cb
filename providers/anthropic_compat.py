"""Anthropic Messages API adapter.

The SDK client is synchronous and runs in a worker thread. Requests with
a thinking budget go through the streaming endpoint, which the SDK
requires for long generations. Server tools (web_search, web_fetch) are
forwarded untouched; their turns can end with stop_reason "pause_turn".
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import anthropic

from . import LLMResponse, Usage

log = logging.getLogger(__name__)

_EPHEMERAL = {"type": "ephemeral"}


def _as_dict(block: Any) -> dict:
    # History replays blocks verbatim, so keep them as JSON-ready dicts.
    if isinstance(block, dict):
        return block
    return block.model_dump(mode="json", exclude_none=True)


def _usage_from(sdk_usage: Any) -> Usage:
    return Usage(
        input_tokens=sdk_usage.input_tokens,
        output_tokens=sdk_usage.output_tokens,
        cache_read_tokens=getattr(sdk_usage, "cache_read_input_tokens", None) or 0,
        cache_write_tokens=getattr(sdk_usage, "cache_creation_input_tokens", None) or 0,
    )


class AnthropicCompatProvider:
    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int = 4096,
        base_url: str = "",
        cache_control: bool = False,
    ):
        client_kwargs: dict[str, Any] = {"api_key": api_key, "max_retries": 0}
        if base_url:
            client_kwargs["base_url"] = base_url
        # agentic.call_with_retry decides what to retry.
        self.client = anthropic.Anthropic(**client_kwargs)
        self.model = model
        self.max_tokens = max_tokens
        self.cache_control = cache_control

    def format_tools(self, tools: list[dict]) -> list[dict]:
        """Strip client tool specs to the API fields; copy server tools as-is."""
        return [
            {key: spec[key] for key in ("name", "description", "input_schema")}
            if "input_schema" in spec else dict(spec)
            for spec in tools
        ]

    def format_system(self, blocks: list[dict]) -> list[dict]:
        """Turn ``{"text", "tier"}`` prompt blocks into system text blocks.

        With caching on, stable blocks get an ephemeral cache breakpoint.
        """
        system = []
        for block in blocks:
            text_block: dict[str, Any] = {"type": "text", "text": block["text"]}
            if self.cache_control and block.get("tier") == "stable":
                text_block["cache_control"] = dict(_EPHEMERAL)
            system.append(text_block)
        return system

    def _request(self, system: Any, messages: list[dict], tools: list[dict],
                 options: dict) -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": options.get("model") or self.model,
            "max_tokens": options.get("max_tokens") or self.max_tokens,
            "messages": messages,
        }
        if system:
            request["system"] = system
        if tools:
            request["tools"] = tools
        budget = options.get("thinking_budget") or 0
        if budget:
            request["thinking"] = {"type": "enabled", "budget_tokens": budget}
        return request

    def _streamed(self, request: dict[str, Any]) -> Any:
        with self.client.messages.stream(**request) as stream:
            return stream.get_final_message()

    async def complete(
        self, system: Any, messages: list[dict], tools: list[dict], **kwargs
    ) -> LLMResponse:
        request = self._request(system, messages, tools, kwargs)
        if "thinking" in request:
            message = await asyncio.to_thread(self._streamed, request)
        else:
            message = await asyncio.to_thread(self.client.messages.create, **request)
        log.debug("%s stop=%s in=%d out=%d", request["model"], message.stop_reason,
                  message.usage.input_tokens, message.usage.output_tokens)

        return LLMResponse(
            content=[_as_dict(b) for b in message.content],
            stop_reason=message.stop_reason or "end_turn",
            usage=_usage_from(message.usage),
            raw=message,
        )
