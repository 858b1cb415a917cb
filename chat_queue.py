"""Per-conversation serialization queue.

Each conversation id maps to the task at the tail of its chain. A newly
enqueued unit of work waits for that tail before running, so turns for one
conversation (user message, photo, scheduled prompt) never interleave while
different conversations run concurrently. Failures are logged and never
break the chain. Idle entries are pruned.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

log = logging.getLogger(__name__)

TurnFactory = Callable[[], Awaitable[None]]


class ConversationQueue:
    def __init__(self) -> None:
        self._tails: dict[str, asyncio.Task] = {}
        self._pending: set[asyncio.Task] = set()

    def enqueue(self, conversation_id: str, work: TurnFactory) -> asyncio.Task:
        """Schedule work after everything already queued for this conversation.

        Returns immediately; the returned task is the new tail and never
        raises except on cancellation.
        """
        previous = self._tails.get(conversation_id)
        task = asyncio.create_task(
            self._run_after(conversation_id, previous, work),
            name=f"chat-{conversation_id}",
        )
        self._tails[conversation_id] = task
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        task.add_done_callback(lambda t: self._prune(conversation_id, t))
        return task

    async def _run_after(self, conversation_id: str, previous: asyncio.Task | None,
                         work: TurnFactory) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        try:
            await work()
        except Exception:
            log.exception("Queued task failed for %s", conversation_id)

    def _prune(self, conversation_id: str, task: asyncio.Task) -> None:
        if self._tails.get(conversation_id) is task:
            del self._tails[conversation_id]

    def is_idle(self, conversation_id: str) -> bool:
        return conversation_id not in self._tails

    def __len__(self) -> int:
        return len(self._tails)

    async def drain(self) -> None:
        """Wait for every chain that is currently queued."""
        while self._tails:
            await asyncio.wait(list(self._tails.values()))

    async def cancel_all(self) -> None:
        """Cancel everything queued or running (shutdown)."""
        pending = [t for t in self._pending if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending)
