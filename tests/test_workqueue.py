"""Tests for the work queue."""

import asyncio

import pytest

from glbc.workqueue import WorkQueue


class TestWorkQueue:
    """Tests for WorkQueue semantics."""

    @pytest.mark.asyncio
    async def test_duplicates_coalesce(self):
        queue = WorkQueue("test")
        queue.add("default/a")
        queue.add("default/a")
        queue.add("default/b")

        assert len(queue) == 2
        assert await queue.get() == "default/a"
        assert await queue.get() == "default/b"

    @pytest.mark.asyncio
    async def test_key_not_handed_out_while_processing(self):
        queue = WorkQueue("test")
        queue.add("default/a")
        key = await queue.get()

        queue.add("default/a")
        assert len(queue) == 0

        queue.done(key)
        assert len(queue) == 1
        assert await queue.get() == "default/a"

    @pytest.mark.asyncio
    async def test_readded_while_processing_requeued_once(self):
        queue = WorkQueue("test")
        queue.add("default/a")
        key = await queue.get()
        queue.add("default/a")
        queue.add("default/a")
        queue.done(key)

        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_get_waits_for_add(self):
        queue = WorkQueue("test")
        getter = asyncio.create_task(queue.get())
        await asyncio.sleep(0)
        assert not getter.done()

        queue.add("default/a")
        assert await asyncio.wait_for(getter, timeout=1) == "default/a"

    @pytest.mark.asyncio
    async def test_shutdown_releases_waiters(self):
        queue = WorkQueue("test")
        getter = asyncio.create_task(queue.get())
        await asyncio.sleep(0)

        queue.shutdown()
        assert await asyncio.wait_for(getter, timeout=1) is None

        queue.add("default/a")
        assert len(queue) == 0

    def test_backoff_grows_and_caps(self):
        queue = WorkQueue("test", base_delay=1, max_delay=5)
        assert [queue.when("k") for _ in range(5)] == [1, 2, 4, 5, 5]
        assert queue.num_requeues("k") == 5

        queue.forget("k")
        assert queue.num_requeues("k") == 0
        assert queue.when("k") == 1

    @pytest.mark.asyncio
    async def test_add_rate_limited_delays(self):
        queue = WorkQueue("test", base_delay=0.01)
        queue.add_rate_limited("default/a")
        assert len(queue) == 0

        key = await asyncio.wait_for(queue.get(), timeout=1)
        assert key == "default/a"
        assert queue.num_requeues("default/a") == 1

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pending_retries(self):
        queue = WorkQueue("test", base_delay=0.01)
        queue.add_rate_limited("default/a")
        queue.shutdown()

        await asyncio.sleep(0.05)
        assert len(queue) == 0
