"""Tests for the controller worker pool."""

import asyncio
import threading

import pytest

from glbc.controller import Controller
from glbc.errors import ConflictError, PermanentError
from glbc.workqueue import WorkQueue


class Recorder:
    """Reconcile function that records calls and can fail on demand."""

    def __init__(self, failures=None, delay=0.0):
        self.calls = []
        self.failures = dict(failures or {})
        self.delay = delay
        self.active = set()
        self.overlap = False

    async def __call__(self, key):
        if key in self.active:
            self.overlap = True
        self.active.add(key)
        try:
            self.calls.append(key)
            if self.delay:
                await asyncio.sleep(self.delay)
            errors = self.failures.get(key)
            if errors:
                raise errors.pop(0)
        finally:
            self.active.discard(key)


async def drain(controller, workers=2, timeout=1.0):
    """Run workers until the queue is idle, then shut down."""
    task = asyncio.create_task(controller.run(workers))
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        await asyncio.sleep(0.02)
        queue = controller.queue
        if len(queue) == 0 and not queue._processing and not queue._waiting:
            break
    controller.shutdown()
    await asyncio.wait_for(task, timeout=1)


class TestController:
    """Tests for Controller."""

    @pytest.mark.asyncio
    async def test_processes_keys(self):
        recorder = Recorder()
        controller = Controller("test", recorder)
        controller.enqueue("default/a")
        controller.enqueue("default/b")

        await drain(controller)

        assert sorted(recorder.calls) == ["default/a", "default/b"]
        assert controller.processed == 2

    @pytest.mark.asyncio
    async def test_transient_error_requeued(self):
        recorder = Recorder({"default/a": [ConflictError("conflict")]})
        controller = Controller("test", recorder, queue=WorkQueue("test", base_delay=0.001))
        controller.enqueue("default/a")

        await drain(controller)

        assert recorder.calls == ["default/a", "default/a"]
        assert controller.failed == 1
        assert controller.processed == 1
        assert controller.queue.num_requeues("default/a") == 0

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self):
        recorder = Recorder({"default/a": [PermanentError("forbidden")]})
        controller = Controller("test", recorder, queue=WorkQueue("test", base_delay=0.001))
        controller.enqueue("default/a")

        await drain(controller)

        assert recorder.calls == ["default/a"]
        assert controller.failed == 1
        assert controller.dropped == []

    @pytest.mark.asyncio
    async def test_dropped_after_max_retries(self):
        recorder = Recorder({"default/a": [RuntimeError("boom") for _ in range(10)]})
        controller = Controller("test", recorder, max_retries=2,
                                queue=WorkQueue("test", base_delay=0.001))
        controller.enqueue("default/a")

        await drain(controller)

        assert recorder.calls == ["default/a"] * 3
        assert controller.dropped == ["default/a"]

    @pytest.mark.asyncio
    async def test_key_never_processed_concurrently(self):
        recorder = Recorder(delay=0.02)
        controller = Controller("test", recorder)
        task = asyncio.create_task(controller.run(4))

        for _ in range(5):
            controller.enqueue("default/a")
            await asyncio.sleep(0.005)

        await asyncio.sleep(0.1)
        controller.shutdown()
        await asyncio.wait_for(task, timeout=1)

        assert not recorder.overlap
        assert len(recorder.calls) >= 2

    @pytest.mark.asyncio
    async def test_enqueue_from_thread(self):
        recorder = Recorder()
        controller = Controller("test", recorder)
        controller.bind(asyncio.get_running_loop())

        thread = threading.Thread(target=controller.enqueue, args=("default/a",))
        thread.start()
        thread.join()

        await drain(controller)
        assert recorder.calls == ["default/a"]

    @pytest.mark.asyncio
    async def test_status(self):
        controller = Controller("ingress", Recorder())
        controller.enqueue("default/a")

        status = controller.status()

        assert status.name == "ingress"
        assert status.queue_depth == 1
        assert status.processed == 0
