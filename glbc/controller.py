"""Worker pool that drains a WorkQueue into a reconcile function."""

import asyncio
from typing import Awaitable, Callable, List, Optional

from .errors import PermanentError
from .logging_config import get_logger
from .models import ControllerStatus
from .workqueue import WorkQueue

logger = get_logger(__name__)

ReconcileFunc = Callable[[str], Awaitable[None]]


class Controller:
    """Runs ``workers`` tasks that reconcile keys pulled from a shared queue.

    Failures are requeued with per-key backoff until ``max_retries`` is
    exceeded, at which point the key is dropped and logged. PermanentError is
    never retried. No failure stops the worker.
    """

    def __init__(self, name: str, reconcile: ReconcileFunc, max_retries: int = 15,
                 queue: Optional[WorkQueue] = None):
        self.name = name
        self.queue = queue or WorkQueue(name)
        self.max_retries = max_retries
        self._reconcile = reconcile
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._workers: List[asyncio.Task] = []
        self.processed = 0
        self.failed = 0
        self.dropped: List[str] = []

    def enqueue(self, key: str) -> None:
        """Queue a key. Safe to call from watch threads."""
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if self._loop is not None and running is not self._loop:
            self._loop.call_soon_threadsafe(self.queue.add, key)
        else:
            self.queue.add(key)

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        """Route enqueues from other threads onto ``loop`` before workers start."""
        self._loop = loop

    async def run(self, workers: int) -> None:
        """Run worker tasks until the queue is shut down."""
        self._loop = asyncio.get_running_loop()
        logger.info("Starting controller", controller=self.name, workers=workers)
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"{self.name}-worker-{i}")
            for i in range(workers)
        ]
        try:
            await asyncio.gather(*self._workers)
        finally:
            logger.info("Controller stopped", controller=self.name)

    def shutdown(self) -> None:
        """Stop handing out keys; workers exit after their current item."""
        self.queue.shutdown()

    async def _worker(self, index: int) -> None:
        while await self.process_next_item():
            pass
        logger.debug("Worker exiting", controller=self.name, worker=index)

    async def process_next_item(self) -> bool:
        key = await self.queue.get()
        if key is None:
            return False
        try:
            await self._reconcile(key)
        except PermanentError as e:
            self.failed += 1
            self.queue.forget(key)
            logger.error("Reconcile failed permanently", controller=self.name, key=key,
                         reason=e.reason, error=str(e))
        except Exception as e:
            self.failed += 1
            self._handle_error(key, e)
        else:
            self.queue.forget(key)
            self.processed += 1
        finally:
            self.queue.done(key)
        return True

    def _handle_error(self, key: str, error: Exception) -> None:
        requeues = self.queue.num_requeues(key)
        if requeues < self.max_retries:
            logger.warning("Reconcile failed, requeueing", controller=self.name, key=key,
                           attempt=requeues + 1, error=str(error))
            self.queue.add_rate_limited(key)
            return

        logger.error("Dropping key after exhausting retries", controller=self.name, key=key,
                     retries=requeues, error=str(error))
        self.queue.forget(key)
        self.dropped.append(key)

    def status(self) -> ControllerStatus:
        return ControllerStatus(
            name=self.name,
            workers=len(self._workers),
            queue_depth=len(self.queue),
            processed=self.processed,
            failed=self.failed,
            dropped=list(self.dropped),
        )
