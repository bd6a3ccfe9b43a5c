"""
Work Queue - Deduplicating queue of reconcile requests.

A key is never handed to two workers at once: a key added while it is being
processed is held back and queued again once the worker is done with it.
A key added several times before a worker picks it up is processed once.
"""

import asyncio
import logging
from typing import Dict, Hashable, Optional, Set

logger = logging.getLogger(__name__)


class WorkQueue:
    """
    asyncio work queue with the semantics of a controller rate-limited queue.

    Keys move through three states: queued (waiting for a worker),
    processing (held by a worker) and dirty (added again while processing).
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._queued: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._dirty: Set[Hashable] = set()
        self._timers: Dict[Hashable, asyncio.TimerHandle] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queued)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: Hashable) -> None:
        """Queue a key unless it is already waiting."""
        if self._shutting_down:
            return
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.put_nowait(key)

    def add_after(self, key: Hashable, delay: float) -> None:
        """
        Queue a key after a delay in seconds.

        A later call for the same key replaces an earlier pending one, so a
        key waits for at most one timer.
        """
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        existing = self._timers.pop(key, None)
        if existing is not None:
            existing.cancel()

        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(delay, self._fire, key)
        logger.debug(f"Requeue of {key} scheduled in {delay}s")

    def _fire(self, key: Hashable) -> None:
        self._timers.pop(key, None)
        self.add(key)

    async def get(self) -> Optional[Hashable]:
        """
        Wait for the next key and mark it as processing.

        Returns:
            The key, or None once the queue is shut down.
        """
        key = await self._queue.get()
        if key is None:
            # Wake the next waiting worker too
            self._queue.put_nowait(None)
            return None
        self._queued.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: Hashable) -> None:
        """Release a key; queue it again if it was added while processing."""
        self._processing.discard(key)
        if key in self._dirty:
            self._dirty.discard(key)
            self.add(key)

    def shutdown(self) -> None:
        """Stop accepting keys, cancel pending timers and release workers."""
        self._shutting_down = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._queue.put_nowait(None)
