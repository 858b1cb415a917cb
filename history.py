"""Conversation history — append-only log with a recency window.

Rows are written verbatim as JSON. Reading back applies a TTL window and a
row cap, then reconciles the sequence into strict user/assistant
alternation, because persisted tool results are replayed as user-role
messages and the Messages API rejects malformed alternation.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import UTC, datetime, timedelta
from typing import Any

from db import now_iso, to_iso

log = logging.getLogger(__name__)

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_TOOL_RESULTS = "tool_results"


class HistoryStore:
    def __init__(self, conn: sqlite3.Connection, ttl_minutes: int = 360,
                 max_messages: int = 50):
        self.conn = conn
        self.ttl_minutes = ttl_minutes
        self.max_messages = max_messages

    def save(self, conversation_id: str, role: str, content: Any) -> None:
        """Append one history row."""
        self.conn.execute(
            "INSERT INTO messages (chat_id, role, content, timestamp) VALUES (?, ?, ?, ?)",
            (conversation_id, role, json.dumps(content), now_iso()),
        )

    def load(self, conversation_id: str) -> list[dict]:
        """Load the recent window for a conversation, reconciled for the API."""
        cutoff = to_iso(datetime.now(UTC) - timedelta(minutes=self.ttl_minutes))
        rows = self.conn.execute(
            """SELECT role, content FROM messages
               WHERE chat_id = ? AND timestamp > ?
               ORDER BY timestamp DESC, id DESC LIMIT ?""",
            (conversation_id, cutoff, self.max_messages),
        ).fetchall()
        records = []
        for row in reversed(rows):
            try:
                records.append((row["role"], json.loads(row["content"])))
            except json.JSONDecodeError:
                log.warning("Skipping undecodable history row for %s", conversation_id)
        return reconcile(records)

    def clear(self, conversation_id: str) -> int:
        cur = self.conn.execute("DELETE FROM messages WHERE chat_id = ?", (conversation_id,))
        return cur.rowcount

    def count(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]


def _as_blocks(content: Any) -> list:
    if isinstance(content, list):
        return list(content)
    return [{"type": "text", "text": str(content)}]


def _has_tool_result(content: Any) -> bool:
    return isinstance(content, list) and any(
        isinstance(b, dict) and b.get("type") == "tool_result" for b in content
    )


def reconcile(records: list[tuple[str, Any]]) -> list[dict]:
    """Turn (role, content) rows into an alternating message list.

    tool_results rows become user messages. Consecutive same-role messages
    are merged (strings joined by newline, otherwise block lists
    concatenated). Leading messages are dropped until the sequence starts
    with a user message that carries no orphaned tool_result blocks.
    """
    messages: list[dict] = []
    for role, content in records:
        if role == ROLE_TOOL_RESULTS:
            role = ROLE_USER
        elif role not in (ROLE_USER, ROLE_ASSISTANT):
            continue
        messages.append({"role": role, "content": content})

    cleaned: list[dict] = []
    for msg in messages:
        last = cleaned[-1] if cleaned else None
        if last is not None and last["role"] == msg["role"]:
            if isinstance(last["content"], str) and isinstance(msg["content"], str):
                last["content"] = last["content"] + "\n" + msg["content"]
            else:
                last["content"] = _as_blocks(last["content"]) + _as_blocks(msg["content"])
        else:
            cleaned.append(dict(msg))

    while cleaned:
        first = cleaned[0]
        if first["role"] != ROLE_USER or _has_tool_result(first["content"]):
            cleaned.pop(0)
            continue
        break

    return cleaned
