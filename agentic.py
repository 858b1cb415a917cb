"""Tool-use agent loop with bounded iterations and retried LLM calls.

One call to run_agent_loop handles one conversational turn: load the
reconciled history window, persist the incoming message, then alternate
LLM calls and tool execution until the model finishes, the iteration cap
is hit, or the API keeps failing. Every path returns text for the chat;
nothing is raised to the caller for upstream failures.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import anthropic

from history import ROLE_ASSISTANT, ROLE_TOOL_RESULTS, ROLE_USER, HistoryStore
from providers import (
    STOP_END_TURN,
    STOP_MAX_TOKENS,
    STOP_PAUSE_TURN,
    STOP_TOOL_USE,
    LLMProvider,
    LLMResponse,
)
from tools import ToolRegistry

log = logging.getLogger(__name__)

T = TypeVar("T")

NO_RESPONSE = "(no response)"
INCOMPLETE = "⚠️ Hit max iterations. Task may be incomplete."


def is_rate_limit_error(exc: BaseException) -> bool:
    if isinstance(exc, anthropic.RateLimitError):
        return True
    return getattr(exc, "status_code", None) == 429


def is_transient_error(exc: BaseException) -> bool:
    """Rate limits, network trouble, timeouts and server-side 5xx/overload."""
    if is_rate_limit_error(exc):
        return True
    if isinstance(exc, (anthropic.APIConnectionError, anthropic.APITimeoutError,
                        anthropic.InternalServerError)):
        return True
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    retries: int = 3,
    base_delay: float = 1.0,
    rate_limit_delay: float = 5.0,
) -> T:
    """Call fn, retrying transient failures with exponential backoff.

    Rate-limit errors start from a longer base delay. The final failure
    (or any non-transient one) is re-raised.
    """
    attempts = max(1, retries)
    for attempt in range(attempts):
        try:
            return await fn()
        except Exception as e:
            if attempt == attempts - 1 or not is_transient_error(e):
                raise
            base = rate_limit_delay if is_rate_limit_error(e) else base_delay
            delay = base * (2 ** attempt)
            log.warning("LLM attempt %d/%d failed: %s. Retrying in %.1fs",
                        attempt + 1, attempts, e, delay)
            await asyncio.sleep(delay)
    raise RuntimeError("unreachable")


async def run_agent_loop(
    provider: LLMProvider,
    history: HistoryStore,
    registry: ToolRegistry,
    conversation_id: str,
    message: str | list[dict],
    system: Any = None,
    save_as: Any = None,
    model: str | None = None,
    max_iterations: int = 25,
    retries: int = 3,
    retry_base_delay: float = 1.0,
    rate_limit_delay: float = 5.0,
    tool_result_max_chars: int = 50_000,
    on_progress: Any = None,
) -> str:
    """Run one turn and return the text to send to the chat.

    Args:
        provider: LLM provider instance.
        history: Conversation history store (read window + append).
        registry: Client tool registry (server tools included in its catalogue).
        conversation_id: Conversation this turn belongs to.
        message: Incoming user content (text or content blocks).
        system: Formatted system prompt.
        save_as: What to persist for the user message, if not the message
            itself (e.g. a text stand-in for image blocks).
        model: Model override for this turn.
        max_iterations: Cap on LLM calls for this turn.
        on_progress: Callback after pause_turn / tool rounds (typing indicator).

    Returns:
        Final text, NO_RESPONSE for an empty answer, INCOMPLETE at the cap,
        or an "API error: ..." string when the LLM call fails for good.
    """
    messages = history.load(conversation_id)
    messages.append({"role": ROLE_USER, "content": message})
    history.save(conversation_id, ROLE_USER, save_as if save_as is not None else message)

    tools = provider.format_tools(registry.get_schemas())

    for iteration in range(max(1, max_iterations)):
        try:
            response: LLMResponse = await call_with_retry(
                lambda: provider.complete(system, messages, tools, model=model),
                retries=retries,
                base_delay=retry_base_delay,
                rate_limit_delay=rate_limit_delay,
            )
        except Exception as e:
            log.error("LLM call failed for %s (iteration %d): %s", conversation_id, iteration, e)
            return f"API error: {e}"

        history.save(conversation_id, ROLE_ASSISTANT, response.content)

        for call in response.server_tool_calls:
            log.info("Server tool: %s(%s)", call.name, _truncate_args(call.arguments))

        if response.stop_reason == STOP_PAUSE_TURN:
            # Long-running server tool turn; send it back to let the API continue
            messages.append(response.to_internal_message())
            await _notify_progress(on_progress)
            continue

        tool_calls = response.tool_calls
        if response.stop_reason != STOP_TOOL_USE or not tool_calls:
            if response.stop_reason not in (STOP_END_TURN, STOP_MAX_TOKENS, STOP_TOOL_USE):
                log.warning("Unexpected stop reason %r for %s", response.stop_reason, conversation_id)
            return response.text or NO_RESPONSE

        async def _execute(call):
            log.info("Tool call: %s(%s)", call.name, _truncate_args(call.arguments))
            result = await registry.execute(call.name, call.arguments, conversation_id)
            return {
                "type": "tool_result",
                "tool_use_id": call.id,
                "content": _serialize_result(result, tool_result_max_chars),
            }

        results = await asyncio.gather(*[_execute(c) for c in tool_calls], return_exceptions=True)

        tool_results = []
        for call, result in zip(tool_calls, results, strict=True):
            if isinstance(result, BaseException):
                log.error("Tool %s raised exception: %s", call.name, result)
                result = {
                    "type": "tool_result",
                    "tool_use_id": call.id,
                    "content": _serialize_result(
                        {"error": f"{type(result).__name__}: {result}"}, tool_result_max_chars,
                    ),
                }
            tool_results.append(result)

        messages.append(response.to_internal_message())
        messages.append({"role": ROLE_USER, "content": tool_results})
        history.save(conversation_id, ROLE_TOOL_RESULTS, tool_results)
        await _notify_progress(on_progress)

    log.warning("Max iterations (%d) reached for %s", max_iterations, conversation_id)
    return INCOMPLETE


async def _notify_progress(callback: Any) -> None:
    if callback is None:
        return
    try:
        result = callback()
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        log.debug("Progress callback failed (non-critical): %s", e)


def _serialize_result(result: Any, max_chars: int) -> str:
    return json.dumps(result, default=str, ensure_ascii=False)[:max_chars]


def _truncate_args(args: dict, max_len: int = 200) -> str:
    """Truncate tool arguments for logging."""
    s = json.dumps(args, default=str, ensure_ascii=False)
    return s[:max_len] + "..." if len(s) > max_len else s
