"""Unit tests for the reconcile work queue."""

import asyncio

import pytest

from workqueue import WorkQueue


@pytest.mark.asyncio
class TestWorkQueue:
    """Tests for WorkQueue."""

    async def test_add_and_get(self):
        queue = WorkQueue()
        queue.add("a")

        assert len(queue) == 1
        assert await queue.get() == "a"
        assert len(queue) == 0

    async def test_duplicate_adds_collapse(self):
        queue = WorkQueue()
        queue.add("a")
        queue.add("a")
        queue.add("b")

        assert await queue.get() == "a"
        assert await queue.get() == "b"
        assert len(queue) == 0

    async def test_add_while_processing_is_deferred(self):
        queue = WorkQueue()
        queue.add("a")
        key = await queue.get()

        queue.add("a")
        # Not handed out again while still processing
        assert len(queue) == 0

        queue.done(key)
        assert len(queue) == 1
        assert await queue.get() == "a"

    async def test_done_without_readd(self):
        queue = WorkQueue()
        queue.add("a")
        key = await queue.get()
        queue.done(key)

        assert len(queue) == 0

    async def test_add_after(self):
        queue = WorkQueue()
        queue.add_after("a", 0.01)

        assert len(queue) == 0
        assert await asyncio.wait_for(queue.get(), timeout=1) == "a"

    async def test_add_after_zero_adds_immediately(self):
        queue = WorkQueue()
        queue.add_after("a", 0)
        assert len(queue) == 1

    async def test_add_after_replaces_pending_timer(self):
        queue = WorkQueue()
        queue.add_after("a", 0.01)
        queue.add_after("a", 0.02)

        assert await asyncio.wait_for(queue.get(), timeout=1) == "a"
        await asyncio.sleep(0.05)
        assert len(queue) == 0

    async def test_shutdown_releases_workers(self):
        queue = WorkQueue()
        waiters = [asyncio.create_task(queue.get()) for _ in range(3)]
        await asyncio.sleep(0)

        queue.shutdown()
        results = await asyncio.wait_for(asyncio.gather(*waiters), timeout=1)

        assert results == [None, None, None]
        assert queue.shutting_down is True

    async def test_shutdown_cancels_timers_and_ignores_adds(self):
        queue = WorkQueue()
        queue.add_after("a", 0.01)
        queue.shutdown()
        queue.add("b")

        await asyncio.sleep(0.03)
        assert len(queue) == 0
