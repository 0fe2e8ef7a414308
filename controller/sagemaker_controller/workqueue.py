"""
Keyed Work Queue

Work queue with the semantics controllers rely on:
- A key is queued at most once no matter how often it is added
- A key is never handed to two workers at the same time; a key re-added
  while being processed is queued again once the worker calls done()
- Delayed adds (add_after) for backoff, cancellable per key (on deletion)
"""

import asyncio
import logging
from collections import deque
from typing import Deque, Dict, Optional, Set

logger = logging.getLogger(__name__)


class WorkQueue:
    """asyncio work queue keyed by resource identity ("namespace/name")."""

    def __init__(self):
        self._queue: Deque[str] = deque()
        self._dirty: Set[str] = set()       # keys waiting to be processed
        self._processing: Set[str] = set()  # keys held by a worker
        self._delayed: Dict[str, asyncio.TimerHandle] = {}
        self._wakeup = asyncio.Event()
        self._shutting_down = False

    def add(self, key: str) -> None:
        """Queue a key for processing now."""
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            # Re-queued by done()
            return
        self._queue.append(key)
        self._wakeup.set()

    def add_after(self, key: str, delay: float) -> None:
        """Queue a key after delay seconds. An earlier pending delayed add wins."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        due = loop.time() + delay
        existing = self._delayed.get(key)
        if existing is not None:
            if existing.when() <= due:
                return
            existing.cancel()

        self._delayed[key] = loop.call_at(due, self._fire_delayed, key)

    def _fire_delayed(self, key: str) -> None:
        self._delayed.pop(key, None)
        self.add(key)

    def is_scheduled(self, key: str) -> bool:
        """True while a delayed add for key is pending."""
        return key in self._delayed

    def cancel_delayed(self, key: str) -> bool:
        """Drop a pending delayed add for key. Returns True if one was pending."""
        handle = self._delayed.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    async def get(self) -> Optional[str]:
        """
        Wait for the next key and mark it as processing.

        Returns:
            The key, or None once the queue is shut down
        """
        while True:
            if self._shutting_down:
                return None
            if self._queue:
                key = self._queue.popleft()
                self._processing.add(key)
                self._dirty.discard(key)
                return key
            self._wakeup.clear()
            await self._wakeup.wait()

    def done(self, key: str) -> None:
        """Release a key taken with get(); re-queue it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty:
            self._queue.append(key)
            self._wakeup.set()

    def shutdown(self) -> None:
        """Stop handing out keys and drop every pending delayed add."""
        self._shutting_down = True
        for handle in self._delayed.values():
            handle.cancel()
        self._delayed.clear()
        self._wakeup.set()

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    def is_processing(self, key: str) -> bool:
        return key in self._processing

    def __len__(self) -> int:
        return len(self._queue)
