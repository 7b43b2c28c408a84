"""Deduplicating, rate-limited work queue for reconciliation keys."""

import asyncio
from collections import deque
from typing import Deque, Dict, Optional, Set


class WorkQueue:
    """An asyncio work queue with the semantics controllers rely on.

    * A key waiting in the queue is stored once; re-adding it is a no-op.
    * A key is handed to at most one worker at a time. If it is re-added while
      being processed, it is queued again when the worker calls ``done``.
    * ``add_rate_limited`` re-adds a key after a per-key exponential backoff;
      ``forget`` resets that backoff.

    All methods except ``get`` must be called from the event loop thread.
    """

    def __init__(self, name: str = "", base_delay: float = 0.005, max_delay: float = 1000.0):
        self.name = name
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._queue: Deque[str] = deque()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._failures: Dict[str, int] = {}
        self._waiting: Dict[str, asyncio.TimerHandle] = {}
        self._wakeup = asyncio.Event()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._wakeup.set()

    async def get(self) -> Optional[str]:
        """Wait for the next key. Returns None once the queue is shut down."""
        while not self._queue or self._shutting_down:
            if self._shutting_down:
                return None
            self._wakeup.clear()
            await self._wakeup.wait()
        key = self._queue.popleft()
        self._processing.add(key)
        self._dirty.discard(key)
        return key

    def done(self, key: str) -> None:
        """Mark a key as finished; re-queue it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty:
            self._queue.append(key)
            self._wakeup.set()

    def add_after(self, key: str, delay: float) -> None:
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return
        if key in self._waiting:
            return
        loop = asyncio.get_running_loop()

        def fire() -> None:
            self._waiting.pop(key, None)
            self.add(key)

        self._waiting[key] = loop.call_later(delay, fire)

    def when(self, key: str) -> float:
        """Backoff delay for the next retry of ``key``; increments its failure count."""
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        return min(self.base_delay * (2 ** failures), self.max_delay)

    def add_rate_limited(self, key: str) -> None:
        self.add_after(key, self.when(key))

    def forget(self, key: str) -> None:
        self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        return self._failures.get(key, 0)

    def shutdown(self) -> None:
        self._shutting_down = True
        for handle in self._waiting.values():
            handle.cancel()
        self._waiting.clear()
        self._wakeup.set()
