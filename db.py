"""SQLite store — connection, schema, and timestamp helpers.

Three tables share one database file:

    messages         — append-only conversation history
    scheduled_tasks  — cron-defined prompts, claimed by the scheduler
    jobs             — background delegated jobs with a status lifecycle

The connection runs in autocommit mode: every mutation is one statement,
and invariants that matter (job claim, scheduler claim) are expressed as a
single atomic UPDATE.
"""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path


def now_iso() -> str:
    """Current UTC time as a fixed-width ISO-8601 string."""
    return to_iso(datetime.now(UTC))


def to_iso(dt: datetime) -> str:
    """Normalize to UTC with microseconds so lexical order is chronological."""
    if dt.tzinfo is None:
        dt = dt.astimezone()
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def connect(path: str | Path) -> sqlite3.Connection:
    """Open the store and make sure the schema exists."""
    if str(path) != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), isolation_level=None)
    conn.row_factory = sqlite3.Row
    ensure_schema(conn)
    return conn


def ensure_schema(conn: sqlite3.Connection) -> None:
    """Create all tables and indexes if they don't exist.

    Safe to call on every startup: all statements use IF NOT EXISTS.
    """
    conn.execute("PRAGMA journal_mode=WAL")

    conn.executescript("""
        -- Conversation history (role: user | assistant | tool_results)
        CREATE TABLE IF NOT EXISTS messages (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            chat_id     TEXT NOT NULL,
            role        TEXT NOT NULL,
            content     TEXT NOT NULL,
            timestamp   TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_messages_chat ON messages(chat_id, timestamp);

        -- Cron-driven prompts; next_run is the single source of eligibility
        CREATE TABLE IF NOT EXISTS scheduled_tasks (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            name            TEXT NOT NULL,
            cron_expression TEXT NOT NULL,
            prompt          TEXT NOT NULL,
            chat_id         TEXT NOT NULL,
            enabled         INTEGER NOT NULL DEFAULT 1,
            last_run        TEXT,
            next_run        TEXT,
            created_at      TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_tasks_next ON scheduled_tasks(next_run) WHERE enabled = 1;

        -- Background jobs: queued -> running -> succeeded | failed
        CREATE TABLE IF NOT EXISTS jobs (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            chat_id         TEXT NOT NULL,
            kind            TEXT NOT NULL,
            status          TEXT NOT NULL,
            input_json      TEXT NOT NULL,
            request_excerpt TEXT NOT NULL,
            result_text     TEXT,
            error_text      TEXT,
            created_at      TEXT NOT NULL,
            started_at      TEXT,
            finished_at     TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON jobs(status, created_at);
        CREATE INDEX IF NOT EXISTS idx_jobs_chat_created ON jobs(chat_id, created_at DESC);
    """)
