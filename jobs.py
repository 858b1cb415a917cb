"""Background jobs — durable queue and the single-flight dispatcher.

A job is created by the claude_code tool, claimed oldest-first by the
dispatcher, run through the DelegateRunner, and finalized exactly once as
succeeded or failed. Completion is persisted to the conversation history
and pushed to the chat out-of-band, without going through the conversation
queue. Jobs are never deleted and never resumed after a restart.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import sqlite3
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from db import now_iso
from history import ROLE_ASSISTANT, HistoryStore
from runner import DelegateInput, truncate_text

log = logging.getLogger(__name__)

QUEUED = "queued"
RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"

KIND_CLAUDE_CODE = "claude_code"

STATUS_GLYPHS = {
    QUEUED: "🕒",
    RUNNING: "🏃",
    SUCCEEDED: "✅",
    FAILED: "❌",
}


def status_glyph(status: str) -> str:
    return STATUS_GLYPHS.get(status, "•")


def build_request_excerpt(prompt: str, max_chars: int = 200) -> str:
    """Collapse whitespace and cap length for display in notifications."""
    return truncate_text(re.sub(r"\s+", " ", prompt).strip(), max_chars)


@dataclass
class Job:
    id: int
    conversation_id: str
    kind: str
    status: str
    input_json: str
    request_excerpt: str
    result: str | None
    error: str | None
    created_at: str
    started_at: str | None
    finished_at: str | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Job:
        return cls(
            id=row["id"],
            conversation_id=row["chat_id"],
            kind=row["kind"],
            status=row["status"],
            input_json=row["input_json"],
            request_excerpt=row["request_excerpt"],
            result=row["result_text"],
            error=row["error_text"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in (SUCCEEDED, FAILED)


class JobStore:
    """Job table access. Every transition is one guarded UPDATE."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def enqueue(self, conversation_id: str, kind: str, payload: dict,
                request_excerpt: str) -> int:
        cur = self.conn.execute(
            """INSERT INTO jobs (chat_id, kind, status, input_json, request_excerpt, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (conversation_id, kind, QUEUED, json.dumps(payload), request_excerpt, now_iso()),
        )
        return int(cur.lastrowid)

    def claim_next(self) -> Job | None:
        """Atomically move the oldest queued job to running and return it."""
        row = self.conn.execute(
            """UPDATE jobs
               SET status = ?, started_at = ?, finished_at = NULL, error_text = NULL
               WHERE id = (SELECT id FROM jobs WHERE status = ? ORDER BY id ASC LIMIT 1)
                 AND status = ?
               RETURNING *""",
            (RUNNING, now_iso(), QUEUED, QUEUED),
        ).fetchone()
        return Job.from_row(row) if row else None

    def mark_succeeded(self, job_id: int, result: str) -> bool:
        cur = self.conn.execute(
            """UPDATE jobs SET status = ?, result_text = ?, error_text = NULL, finished_at = ?
               WHERE id = ? AND status = ?""",
            (SUCCEEDED, result, now_iso(), job_id, RUNNING),
        )
        return cur.rowcount == 1

    def mark_failed(self, job_id: int, error: str) -> bool:
        cur = self.conn.execute(
            """UPDATE jobs SET status = ?, error_text = ?, result_text = NULL, finished_at = ?
               WHERE id = ? AND status = ?""",
            (FAILED, error, now_iso(), job_id, RUNNING),
        )
        return cur.rowcount == 1

    def get(self, job_id: int, conversation_id: str | None = None) -> Job | None:
        if conversation_id is None:
            row = self.conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        else:
            row = self.conn.execute(
                "SELECT * FROM jobs WHERE id = ? AND chat_id = ?", (job_id, conversation_id),
            ).fetchone()
        return Job.from_row(row) if row else None

    def list_recent(self, conversation_id: str, limit: int = 10) -> list[Job]:
        rows = self.conn.execute(
            "SELECT * FROM jobs WHERE chat_id = ? ORDER BY id DESC LIMIT ?",
            (conversation_id, limit),
        ).fetchall()
        return [Job.from_row(r) for r in rows]

    def count_by_status(self) -> dict[str, int]:
        rows = self.conn.execute("SELECT status, COUNT(*) FROM jobs GROUP BY status").fetchall()
        return {r[0]: r[1] for r in rows}


Notifier = Callable[[str, str], Awaitable[None]]
Runner = Callable[[DelegateInput], Awaitable[str]]


class JobDispatcher:
    """Single-flight claim/run/finalize loop over the job queue.

    At most one dispatcher loop is active, so at most one delegated process
    runs at a time. kick() is fire-and-forget; duplicate kicks while active
    are no-ops. A watchdog re-kicks periodically to recover missed kicks.
    """

    def __init__(
        self,
        store: JobStore,
        history: HistoryStore,
        run: Runner,
        notify: Notifier,
        result_max_chars: int = 50_000,
        error_max_chars: int = 10_000,
        excerpt_max_chars: int = 200,
    ):
        self.store = store
        self.history = history
        self._run = run
        self._notify = notify
        self.result_max_chars = result_max_chars
        self.error_max_chars = error_max_chars
        self.excerpt_max_chars = excerpt_max_chars
        self._active = False
        self._tasks: set[asyncio.Task] = set()
        self._watchdog: asyncio.Task | None = None

    @property
    def active(self) -> bool:
        return self._active

    def submit(self, conversation_id: str, payload: Any) -> dict:
        """Validate, enqueue, kick. Returns the acknowledgement for the model."""
        task = DelegateInput.from_payload(payload)
        excerpt = build_request_excerpt(task.prompt, self.excerpt_max_chars)
        job_id = self.store.enqueue(conversation_id, KIND_CLAUDE_CODE, task.to_payload(), excerpt)
        log.info("Job #%d queued for %s: %s", job_id, conversation_id, excerpt[:80])
        self.kick()
        return {
            "job_started": True,
            "job_id": job_id,
            "status": QUEUED,
            "note": "Background Claude Code job started; results will be posted when complete.",
        }

    def kick(self) -> None:
        """Start a dispatcher loop without waiting for it."""
        if self._active:
            return
        task = asyncio.create_task(self.process_queue())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def process_queue(self) -> None:
        if self._active:
            return
        self._active = True
        try:
            while True:
                job = self.store.claim_next()
                if job is None:
                    break
                await self._run_job(job)
        finally:
            self._active = False

    async def _run_job(self, job: Job) -> None:
        log.info("Job #%d running (%s)", job.id, job.kind)
        try:
            payload = json.loads(job.input_json)
            result = await self._run(DelegateInput.from_payload(payload))
        except asyncio.CancelledError:
            self._finalize_failure(job, "Job cancelled during shutdown")
            raise
        except Exception as e:
            body, notification = self._finalize_failure(job, str(e) or type(e).__name__)
        else:
            stored = truncate_text(result, self.result_max_chars)
            self.store.mark_succeeded(job.id, stored)
            log.info("Job #%d succeeded (%d chars)", job.id, len(stored))
            header = (f"[Background job #{job.id} completed | kind={job.kind} | "
                      f"original request: {job.request_excerpt}]")
            body = f"{header}\n\n{stored}"
            notification = f"✅ Job #{job.id} completed\n\n{stored}"

        try:
            self.history.save(job.conversation_id, ROLE_ASSISTANT, body)
        except Exception as e:
            log.error("Job #%d: failed to persist completion: %s", job.id, e)
        try:
            await self._notify(job.conversation_id, notification)
        except Exception as e:
            log.error("Job #%d: notification failed: %s", job.id, e)

    def _finalize_failure(self, job: Job, message: str) -> tuple[str, str]:
        error = truncate_text(message, self.error_max_chars)
        self.store.mark_failed(job.id, error)
        log.warning("Job #%d failed: %s", job.id, error[:200])
        header = (f"[Background job #{job.id} failed | kind={job.kind} | "
                  f"original request: {job.request_excerpt}]")
        return f"{header}\n\n{error}", f"❌ Job #{job.id} failed\n\n{error}"

    # --- Watchdog ---

    def start_watchdog(self, interval: float = 30.0) -> None:
        self._watchdog = asyncio.create_task(self._watchdog_loop(interval), name="job-watchdog")

    async def _watchdog_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.kick()

    async def stop(self) -> None:
        """Cancel the watchdog and any in-flight dispatcher loop."""
        pending = list(self._tasks)
        if self._watchdog is not None:
            pending.append(self._watchdog)
            self._watchdog = None
        for task in pending:
            task.cancel()
        for task in pending:
            try:
                await task
            except asyncio.CancelledError:
                pass
