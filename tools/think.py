"""Deep reasoning tool — think_hard (deep model with extended thinking)."""

from __future__ import annotations

import logging
from typing import Any

from . import ToolInputError

log = logging.getLogger(__name__)

_REASONING_MAX_CHARS = 5000

# Set at daemon startup
_provider: Any = None
_model: str = ""
_max_tokens: int = 16_000
_budget_tokens: int = 10_000


def configure(provider: Any, model: str, max_tokens: int = 16_000,
              budget_tokens: int = 10_000) -> None:
    global _provider, _model, _max_tokens, _budget_tokens
    _provider = provider
    _model = model
    _max_tokens = max_tokens
    _budget_tokens = budget_tokens


async def tool_think_hard(question: str) -> dict:
    """One-shot extended-thinking call; returns a reasoning excerpt and the answer."""
    if _provider is None:
        return {"error": "think_hard is not configured"}
    if not question or not question.strip():
        raise ToolInputError("question is required")

    log.info("think_hard on %s (budget=%d)", _model, _budget_tokens)
    response = await _provider.complete(
        None,
        [{"role": "user", "content": question}],
        [],
        model=_model,
        max_tokens=_max_tokens,
        thinking_budget=_budget_tokens,
    )
    return {
        "reasoning": response.thinking[:_REASONING_MAX_CHARS],
        "answer": response.text,
    }


TOOLS = [
    {
        "name": "think_hard",
        "description": (
            "Use the deep model with extended thinking for genuinely difficult reasoning tasks. "
            "Expensive, so use sparingly."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "question": {"type": "string", "description": "The question requiring deep reasoning"},
            },
            "required": ["question"],
        },
        "function": tool_think_hard,
    },
]
