"""Tests for agentic.py — agent loop stop reasons, tool rounds, retries."""

from unittest.mock import AsyncMock, patch

import anthropic
import httpx
import pytest

from agentic import (
    INCOMPLETE,
    NO_RESPONSE,
    call_with_retry,
    is_rate_limit_error,
    is_transient_error,
    run_agent_loop,
)
from history import ROLE_ASSISTANT, ROLE_TOOL_RESULTS, ROLE_USER
from providers import LLMResponse


class MockProvider:
    """Returns scripted responses; records the messages of each call."""

    model = "mock-model"

    def __init__(self, responses):
        self._responses = list(responses)
        self.calls = []

    def format_tools(self, tools):
        return tools

    def format_system(self, blocks):
        return blocks

    async def complete(self, system, messages, tools, **kwargs):
        self.calls.append({"system": system, "messages": [dict(m) for m in messages],
                           "tools": tools, **kwargs})
        item = self._responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


def _text(text, stop="end_turn"):
    return LLMResponse(content=[{"type": "text", "text": text}], stop_reason=stop)


def _tool_use(name, args, tool_id="tu_1", text=""):
    content = [{"type": "text", "text": text}] if text else []
    content.append({"type": "tool_use", "id": tool_id, "name": name, "input": args})
    return LLMResponse(content=content, stop_reason="tool_use")


class RateLimited(Exception):
    status_code = 429


class Overloaded(Exception):
    status_code = 529


def _rows(history, conversation_id="c1"):
    return [(r["role"], r["content"]) for r in history.conn.execute(
        "SELECT role, content FROM messages WHERE chat_id = ? ORDER BY id", (conversation_id,),
    )]


# ─── Error classification ────────────────────────────────────────


class TestErrorClassification:
    def test_rate_limit(self):
        assert is_rate_limit_error(RateLimited())
        assert is_transient_error(RateLimited())

    def test_server_errors_transient(self):
        assert is_transient_error(Overloaded())
        assert is_transient_error(TimeoutError())
        assert is_transient_error(ConnectionError())
        req = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        assert is_transient_error(anthropic.APIConnectionError(request=req))

    def test_client_errors_not_transient(self):
        assert not is_transient_error(ValueError("bad"))
        err = Exception("bad request")
        err.status_code = 400
        assert not is_transient_error(err)


# ─── call_with_retry ─────────────────────────────────────────────


class TestCallWithRetry:
    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self):
        fn = AsyncMock(side_effect=[TimeoutError(), TimeoutError(), "ok"])
        with patch("agentic.asyncio.sleep", new_callable=AsyncMock) as sleep:
            assert await call_with_retry(fn, retries=3, base_delay=1.0) == "ok"
        assert fn.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_rate_limit_uses_longer_base(self):
        fn = AsyncMock(side_effect=[RateLimited(), "ok"])
        with patch("agentic.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await call_with_retry(fn, retries=3, base_delay=1.0, rate_limit_delay=5.0)
        sleep.assert_awaited_once_with(5.0)

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self):
        fn = AsyncMock(side_effect=TimeoutError("slow"))
        with patch("agentic.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(TimeoutError):
                await call_with_retry(fn, retries=3)
        assert fn.await_count == 3

    @pytest.mark.asyncio
    async def test_non_transient_not_retried(self):
        fn = AsyncMock(side_effect=ValueError("bad"))
        with pytest.raises(ValueError):
            await call_with_retry(fn, retries=3)
        assert fn.await_count == 1


# ─── run_agent_loop ──────────────────────────────────────────────


async def _run(provider, history, registry, message="hello", **kw):
    kw.setdefault("retry_base_delay", 0)
    kw.setdefault("rate_limit_delay", 0)
    return await run_agent_loop(provider, history, registry, "c1", message, **kw)


class TestAgentLoop:
    @pytest.mark.asyncio
    async def test_end_turn_returns_text(self, history, tool_registry):
        provider = MockProvider([_text("Hi there")])
        assert await _run(provider, history, tool_registry) == "Hi there"
        assert [r[0] for r in _rows(history)] == [ROLE_USER, ROLE_ASSISTANT]

    @pytest.mark.asyncio
    async def test_history_window_sent_before_message(self, history, tool_registry):
        history.save("c1", ROLE_USER, "earlier")
        history.save("c1", ROLE_ASSISTANT, "earlier reply")
        provider = MockProvider([_text("ok")])
        await _run(provider, history, tool_registry, message="now")
        sent = provider.calls[0]["messages"]
        assert [m["content"] for m in sent] == ["earlier", "earlier reply", "now"]

    @pytest.mark.asyncio
    async def test_empty_text_gives_placeholder(self, history, tool_registry):
        provider = MockProvider([LLMResponse(content=[], stop_reason="end_turn")])
        assert await _run(provider, history, tool_registry) == NO_RESPONSE

    @pytest.mark.asyncio
    async def test_max_tokens_returns_partial_text(self, history, tool_registry):
        provider = MockProvider([_text("cut of", stop="max_tokens")])
        assert await _run(provider, history, tool_registry) == "cut of"

    @pytest.mark.asyncio
    async def test_tool_round_then_answer(self, history, tool_registry):
        provider = MockProvider([
            _tool_use("async_echo", {"text": "ping"}),
            _text("Echoed"),
        ])
        progress = AsyncMock()
        result = await _run(provider, history, tool_registry, on_progress=progress)

        assert result == "Echoed"
        second = provider.calls[1]["messages"]
        assert second[-2]["role"] == "assistant"
        assert second[-1]["role"] == "user"
        tool_result = second[-1]["content"][0]
        assert tool_result["type"] == "tool_result"
        assert tool_result["tool_use_id"] == "tu_1"
        assert tool_result["content"] == '{"echo": "async:ping"}'
        progress.assert_awaited_once()
        assert [r[0] for r in _rows(history)] == [
            ROLE_USER, ROLE_ASSISTANT, ROLE_TOOL_RESULTS, ROLE_ASSISTANT,
        ]

    @pytest.mark.asyncio
    async def test_parallel_tool_calls_keep_order(self, history, tool_registry):
        both = LLMResponse(content=[
            {"type": "tool_use", "id": "a", "name": "sync_echo", "input": {"text": "1"}},
            {"type": "tool_use", "id": "b", "name": "async_echo", "input": {"text": "2"}},
        ], stop_reason="tool_use")
        provider = MockProvider([both, _text("done")])
        await _run(provider, history, tool_registry)
        results = provider.calls[1]["messages"][-1]["content"]
        assert [r["tool_use_id"] for r in results] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_unknown_tool_reported_to_model(self, history, tool_registry):
        provider = MockProvider([_tool_use("nope", {}), _text("sorry")])
        await _run(provider, history, tool_registry)
        content = provider.calls[1]["messages"][-1]["content"][0]["content"]
        assert "Unknown tool: nope" in content

    @pytest.mark.asyncio
    async def test_tool_result_truncated(self, history, tool_registry):
        provider = MockProvider([_tool_use("async_echo", {"text": "x" * 100}), _text("ok")])
        await _run(provider, history, tool_registry, tool_result_max_chars=20)
        content = provider.calls[1]["messages"][-1]["content"][0]["content"]
        assert len(content) == 20

    @pytest.mark.asyncio
    async def test_pause_turn_continues(self, history, tool_registry):
        paused = LLMResponse(content=[
            {"type": "server_tool_use", "id": "srv_1", "name": "web_search",
             "input": {"query": "news"}},
        ], stop_reason="pause_turn")
        provider = MockProvider([paused, _text("Here is the news")])
        progress = AsyncMock()
        result = await _run(provider, history, tool_registry, on_progress=progress)

        assert result == "Here is the news"
        second = provider.calls[1]["messages"]
        assert second[-1] == {"role": "assistant", "content": paused.content}
        progress.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_tool_use_without_calls_is_final(self, history, tool_registry):
        provider = MockProvider([LLMResponse(
            content=[{"type": "text", "text": "thinking out loud"}], stop_reason="tool_use",
        )])
        assert await _run(provider, history, tool_registry) == "thinking out loud"
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_max_iterations(self, history, tool_registry):
        provider = MockProvider([
            _tool_use("sync_echo", {}, tool_id=f"t{i}") for i in range(3)
        ])
        result = await _run(provider, history, tool_registry, max_iterations=3)
        assert result == INCOMPLETE
        assert len(provider.calls) == 3

    @pytest.mark.asyncio
    async def test_api_error_after_retries(self, history, tool_registry):
        provider = MockProvider([Overloaded("overloaded")] * 3)
        result = await _run(provider, history, tool_registry, retries=3)
        assert result == "API error: overloaded"
        assert len(provider.calls) == 3
        # The user message is persisted even though the turn failed
        assert _rows(history) == [(ROLE_USER, '"hello"')]

    @pytest.mark.asyncio
    async def test_transient_error_recovers(self, history, tool_registry):
        provider = MockProvider([TimeoutError("blip"), _text("fine")])
        assert await _run(provider, history, tool_registry) == "fine"

    @pytest.mark.asyncio
    async def test_save_as_replaces_persisted_message(self, history, tool_registry):
        image_blocks = [{"type": "image", "source": {"type": "base64", "media_type": "image/jpeg",
                                                     "data": "AAAA"}},
                        {"type": "text", "text": "what is this"}]
        provider = MockProvider([_text("a cat")])
        await _run(provider, history, tool_registry, message=image_blocks,
                   save_as="[Image: images/x.jpg] what is this")
        assert provider.calls[0]["messages"][-1]["content"] == image_blocks
        assert _rows(history)[0] == (ROLE_USER, '"[Image: images/x.jpg] what is this"')

    @pytest.mark.asyncio
    async def test_model_override_and_system_passed(self, history, tool_registry):
        provider = MockProvider([_text("ok")])
        await _run(provider, history, tool_registry, system=[{"type": "text", "text": "sys"}],
                   model="deep-model")
        call = provider.calls[0]
        assert call["model"] == "deep-model"
        assert call["system"] == [{"type": "text", "text": "sys"}]
        assert {t["name"] for t in call["tools"]} == {"sync_echo", "async_echo"}
