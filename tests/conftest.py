"""Shared fixtures for the Minion test suite.

All tests use temporary directories, temp SQLite databases and mock
objects. Nothing touches ~/.minion/ or the network.
"""

import sys
from pathlib import Path

import pytest

# Add project root to path so imports work
_root = Path(__file__).parent.parent
sys.path.insert(0, str(_root))


@pytest.fixture
def conn(tmp_path):
    """Fresh store with the full schema."""
    from db import connect

    c = connect(tmp_path / "minion.db")
    yield c
    c.close()


@pytest.fixture
def history(conn):
    from history import HistoryStore

    return HistoryStore(conn, ttl_minutes=360, max_messages=50)


@pytest.fixture
def tmp_workspace(tmp_path):
    """Temp workspace with a prompt file and a memory file."""
    ws = tmp_path / "workspace"
    ws.mkdir()
    (ws / "SYSTEM.md").write_text("You are TestMinion.")
    (ws / "MEMORY.md").write_text("# Memory\nLikes tea.")
    return ws


@pytest.fixture
def minimal_toml_data():
    """Minimal valid config data (as parsed dict, not raw TOML)."""
    return {
        "agent": {
            "name": "TestMinion",
            "workspace": "/tmp/test-minion-workspace",
        },
        "channel": {
            "type": "telegram",
            "telegram": {
                "token_env": "MINION_TELEGRAM_TOKEN",
                "allow_from": [123456789],
            },
        },
        "models": {
            "primary": {
                "provider": "anthropic",
                "model": "claude-sonnet-4-5",
                "max_tokens": 8192,
            },
            "deep": {
                "model": "claude-opus-4-1",
            },
        },
        "paths": {
            "state_dir": "/tmp/test-minion-state",
        },
    }


@pytest.fixture
def tool_registry():
    """ToolRegistry with a sync + async dummy tool registered."""
    from tools import ToolRegistry

    reg = ToolRegistry()

    def sync_tool(text: str = "default") -> dict:
        return {"echo": f"sync:{text}"}

    async def async_tool(text: str = "default") -> dict:
        return {"echo": f"async:{text}"}

    reg.register("sync_echo", "A sync echo tool", {
        "type": "object",
        "properties": {"text": {"type": "string"}},
    }, sync_tool)
    reg.register("async_echo", "An async echo tool", {
        "type": "object",
        "properties": {"text": {"type": "string"}},
    }, async_tool)
    return reg
