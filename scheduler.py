"""Cron scheduler — claims due tasks, then submits them as conversation turns.

Runs a periodic check loop that:
1. Selects enabled tasks whose next_run <= now
2. Advances last_run/next_run in the store (claim-first)
3. Enqueues the task's prompt on its conversation's queue

Because the claim lands before the turn is submitted, a turn that runs
longer than one tick is never selected twice.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, tzinfo
from zoneinfo import ZoneInfo

from croniter import croniter

from chat_queue import ConversationQueue
from db import now_iso, to_iso

log = logging.getLogger(__name__)


def next_cron_run(expression: str, after: datetime | None = None,
                  tz: tzinfo | None = None) -> datetime:
    """Next occurrence of a cron expression, evaluated in tz (local by default)."""
    if after is None:
        after = datetime.now(UTC)
    base = after.astimezone(tz) if tz is not None else after.astimezone()
    return croniter(expression, base).get_next(datetime)


def resolve_timezone(name: str) -> tzinfo | None:
    """Empty name means the host's local timezone."""
    return ZoneInfo(name) if name else None


@dataclass
class ScheduledTask:
    id: int
    name: str
    cron_expression: str
    prompt: str
    conversation_id: str
    enabled: bool
    last_run: str | None
    next_run: str | None
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> ScheduledTask:
        return cls(
            id=row["id"],
            name=row["name"],
            cron_expression=row["cron_expression"],
            prompt=row["prompt"],
            conversation_id=row["chat_id"],
            enabled=bool(row["enabled"]),
            last_run=row["last_run"],
            next_run=row["next_run"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "cron_expression": self.cron_expression,
            "prompt": self.prompt,
            "enabled": self.enabled,
            "last_run": self.last_run,
            "next_run": self.next_run,
        }


class TaskStore:
    def __init__(self, conn: sqlite3.Connection, tz: tzinfo | None = None):
        self.conn = conn
        self.tz = tz

    def create(self, name: str, cron_expression: str, prompt: str,
               conversation_id: str) -> ScheduledTask:
        if not croniter.is_valid(cron_expression):
            raise ValueError(f"Invalid cron expression: {cron_expression!r}")
        next_run = to_iso(next_cron_run(cron_expression, tz=self.tz))
        cur = self.conn.execute(
            """INSERT INTO scheduled_tasks
               (name, cron_expression, prompt, chat_id, next_run, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (name, cron_expression, prompt, conversation_id, next_run, now_iso()),
        )
        return self.get(int(cur.lastrowid))

    def get(self, task_id: int) -> ScheduledTask | None:
        row = self.conn.execute("SELECT * FROM scheduled_tasks WHERE id = ?", (task_id,)).fetchone()
        return ScheduledTask.from_row(row) if row else None

    def list_all(self) -> list[ScheduledTask]:
        rows = self.conn.execute("SELECT * FROM scheduled_tasks ORDER BY id").fetchall()
        return [ScheduledTask.from_row(r) for r in rows]

    def remove(self, task_id: int) -> bool:
        cur = self.conn.execute("DELETE FROM scheduled_tasks WHERE id = ?", (task_id,))
        return cur.rowcount == 1

    def due(self, now: str) -> list[ScheduledTask]:
        rows = self.conn.execute(
            """SELECT * FROM scheduled_tasks
               WHERE enabled = 1 AND next_run IS NOT NULL AND next_run <= ?
               ORDER BY next_run, id""",
            (now,),
        ).fetchall()
        return [ScheduledTask.from_row(r) for r in rows]

    def claim(self, task: ScheduledTask, last_run: str, next_run: str) -> bool:
        """Advance next_run only if nobody else advanced it first."""
        cur = self.conn.execute(
            """UPDATE scheduled_tasks SET last_run = ?, next_run = ?
               WHERE id = ? AND enabled = 1 AND next_run IS ?""",
            (last_run, next_run, task.id, task.next_run),
        )
        return cur.rowcount == 1

    def disable(self, task_id: int) -> None:
        self.conn.execute("UPDATE scheduled_tasks SET enabled = 0 WHERE id = ?", (task_id,))

    def count_enabled(self) -> int:
        return self.conn.execute(
            "SELECT COUNT(*) FROM scheduled_tasks WHERE enabled = 1"
        ).fetchone()[0]


TurnRunner = Callable[[ScheduledTask], Awaitable[None]]
Notifier = Callable[[str, str], Awaitable[None]]


class Scheduler:
    """Background loop that fires due scheduled tasks every tick."""

    def __init__(self, store: TaskStore, queue: ConversationQueue,
                 run_turn: TurnRunner, notify: Notifier,
                 tick_seconds: float = 60.0):
        self.store = store
        self.queue = queue
        self._run_turn = run_turn
        self._notify = notify
        self.tick_seconds = tick_seconds
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._check_loop(), name="scheduler")
        log.info("Scheduler started (tick=%ss)", self.tick_seconds)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        log.info("Scheduler stopped")

    async def _check_loop(self) -> None:
        while True:
            await asyncio.sleep(self.tick_seconds)
            try:
                fired = self.tick()
                if fired:
                    log.info("Fired %d scheduled task(s)", len(fired))
            except Exception:
                log.exception("Scheduler tick failed")

    def tick(self, now: datetime | None = None) -> list[ScheduledTask]:
        """Claim and submit every due task. Returns the tasks submitted."""
        now_dt = now or datetime.now(UTC)
        now_str = to_iso(now_dt)
        fired = []
        for task in self.store.due(now_str):
            try:
                next_run = to_iso(next_cron_run(task.cron_expression, now_dt, self.store.tz))
            except (ValueError, KeyError) as e:
                log.error("Task #%d %r has a bad cron expression, disabling: %s",
                          task.id, task.name, e)
                self.store.disable(task.id)
                continue
            if not self.store.claim(task, now_str, next_run):
                log.debug("Task #%d already claimed", task.id)
                continue
            self.queue.enqueue(task.conversation_id, lambda t=task: self._fire(t))
            fired.append(task)
        return fired

    async def _fire(self, task: ScheduledTask) -> None:
        log.info("Running scheduled task #%d: %s", task.id, task.name)
        try:
            await self._run_turn(task)
        except Exception as e:
            log.error("Scheduled task %r failed: %s", task.name, e, exc_info=True)
            try:
                await self._notify(
                    task.conversation_id,
                    f"❌ Scheduled task \"{task.name}\" failed: {e}",
                )
            except Exception as notify_err:
                log.error("Failed to report scheduled task failure: %s", notify_err)
