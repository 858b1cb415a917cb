"""Tests for context.py — system prompt assembly."""

from config import DEFAULT_SYSTEM_PROMPT
from context import ContextBuilder


class TestContextBuilder:
    def test_prompt_file_is_stable_block(self, tmp_workspace):
        ctx = ContextBuilder(tmp_workspace / "SYSTEM.md", DEFAULT_SYSTEM_PROMPT, tmp_workspace)
        blocks = ctx.build(source="telegram")
        assert blocks[0] == {"text": "You are TestMinion.", "tier": "stable"}
        assert blocks[1]["tier"] == "dynamic"

    def test_prompt_file_reread_each_build(self, tmp_workspace):
        ctx = ContextBuilder(tmp_workspace / "SYSTEM.md", DEFAULT_SYSTEM_PROMPT, tmp_workspace)
        ctx.build()
        (tmp_workspace / "SYSTEM.md").write_text("Edited prompt.")
        assert ctx.build()[0]["text"] == "Edited prompt."

    def test_missing_or_blank_file_uses_default(self, tmp_workspace):
        ctx = ContextBuilder(tmp_workspace / "NOPE.md", "fallback", tmp_workspace)
        assert ctx.build()[0]["text"] == "fallback"
        (tmp_workspace / "BLANK.md").write_text("   \n")
        ctx = ContextBuilder(tmp_workspace / "BLANK.md", "fallback", tmp_workspace)
        assert ctx.build()[0]["text"] == "fallback"

    def test_no_prompt_file(self, tmp_workspace):
        ctx = ContextBuilder(None, "default", tmp_workspace)
        assert ctx.build()[0]["text"] == "default"

    def test_dynamic_block_contents(self, tmp_workspace):
        ctx = ContextBuilder(None, "default", tmp_workspace)
        dynamic = ctx.build(source="telegram", max_iterations=25)[1]["text"]
        assert "Current date/time:" in dynamic
        assert "Telegram" in dynamic
        assert f"Workspace directory: {tmp_workspace}" in dynamic
        assert "claude_code returns immediately" in dynamic
        assert "25 per message" in dynamic

    def test_scheduled_task_framing(self, tmp_workspace):
        ctx = ContextBuilder(None, "default", tmp_workspace)
        dynamic = ctx.build(source="telegram", scheduled_task="Morning briefing")[1]["text"]
        assert 'scheduled task "Morning briefing"' in dynamic
        assert "primary channel" not in dynamic

    def test_cli_framing(self, tmp_workspace):
        ctx = ContextBuilder(None, "default", tmp_workspace)
        assert "Session type: CLI" in ctx.build(source="cli")[1]["text"]
