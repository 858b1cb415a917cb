"""Tests for chat_queue.py — per-conversation FIFO serialization."""

import asyncio

import pytest

from chat_queue import ConversationQueue


class TestOrdering:
    @pytest.mark.asyncio
    async def test_same_conversation_runs_in_submission_order(self):
        q = ConversationQueue()
        events = []

        async def work(name, delay):
            events.append(f"start:{name}")
            await asyncio.sleep(delay)
            events.append(f"end:{name}")

        q.enqueue("c1", lambda: work("A", 0.05))
        q.enqueue("c1", lambda: work("B", 0))
        q.enqueue("c1", lambda: work("C", 0))
        await q.drain()

        assert events == ["start:A", "end:A", "start:B", "end:B", "start:C", "end:C"]

    @pytest.mark.asyncio
    async def test_enqueue_returns_without_waiting(self):
        q = ConversationQueue()
        gate = asyncio.Event()
        started = []

        async def blocked():
            started.append(True)
            await gate.wait()

        task = q.enqueue("c1", blocked)
        assert not task.done()
        await asyncio.sleep(0)
        assert started == [True]
        gate.set()
        await q.drain()

    @pytest.mark.asyncio
    async def test_different_conversations_run_concurrently(self):
        q = ConversationQueue()
        gate = asyncio.Event()
        ran_b = asyncio.Event()

        async def slow_a():
            await gate.wait()

        async def fast_b():
            ran_b.set()

        q.enqueue("a", slow_a)
        q.enqueue("b", fast_b)
        await asyncio.wait_for(ran_b.wait(), timeout=1)
        assert not q.is_idle("a")
        gate.set()
        await q.drain()


class TestFailures:
    @pytest.mark.asyncio
    async def test_failure_does_not_break_chain(self, caplog):
        q = ConversationQueue()
        done = []

        async def boom():
            raise RuntimeError("kaput")

        async def after():
            done.append("after")

        first = q.enqueue("c1", boom)
        q.enqueue("c1", after)
        await q.drain()

        assert done == ["after"]
        # The chain task swallows the failure and logs it
        assert first.exception() is None
        assert "kaput" in caplog.text


class TestPruning:
    @pytest.mark.asyncio
    async def test_idle_entry_is_removed(self):
        q = ConversationQueue()

        async def noop():
            pass

        q.enqueue("c1", noop)
        assert not q.is_idle("c1")
        await q.drain()
        assert q.is_idle("c1")
        assert len(q) == 0

    @pytest.mark.asyncio
    async def test_newer_tail_is_not_pruned_by_older_completion(self):
        q = ConversationQueue()
        gate = asyncio.Event()

        async def first():
            pass

        async def second():
            await gate.wait()

        t1 = q.enqueue("c1", first)
        q.enqueue("c1", second)
        await t1
        await asyncio.sleep(0)
        # First finished but the second is still the tail
        assert not q.is_idle("c1")
        gate.set()
        await q.drain()
        assert q.is_idle("c1")


class TestCancelAll:
    @pytest.mark.asyncio
    async def test_cancel_all_stops_pending_work(self):
        q = ConversationQueue()
        ran = []

        async def forever():
            await asyncio.sleep(3600)

        async def never():
            ran.append(True)

        q.enqueue("c1", forever)
        q.enqueue("c1", never)
        await asyncio.sleep(0)
        await q.cancel_all()
        assert ran == []
        assert q.is_idle("c1")
