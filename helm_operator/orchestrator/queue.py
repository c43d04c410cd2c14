"""Deduplicating work queue of resource keys.

A key is queued at most once. A key handed to a worker is marked as
processing and is never handed to a second worker; if it is added again in
the meantime it is marked dirty and queued again once the worker calls
`done`. Delayed adds are event loop timers, and only the earliest pending
timer for a key is kept.
"""

import asyncio
from collections import deque
import datetime
import logging

from helm_operator.manifest import NamedResource

_LOGGER = logging.getLogger(__name__)

__all__ = ["WorkQueue"]


class WorkQueue:
    """Queue of resource keys waiting to be reconciled."""

    def __init__(self) -> None:
        self._queue: deque[NamedResource] = deque()
        self._queued: set[NamedResource] = set()
        self._processing: set[NamedResource] = set()
        self._dirty: set[NamedResource] = set()
        self._timers: dict[NamedResource, asyncio.TimerHandle] = {}
        self._ready = asyncio.Event()
        self._shutdown = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutdown

    @property
    def idle(self) -> bool:
        """True when nothing is queued or being processed."""
        return not self._queue and not self._processing

    def add(self, key: NamedResource) -> None:
        """Queue the key unless it is already queued."""
        if self._shutdown:
            return
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.append(key)
        self._ready.set()

    def add_after(self, key: NamedResource, delay: datetime.timedelta) -> None:
        """Queue the key once the delay has passed."""
        if self._shutdown:
            return
        seconds = delay.total_seconds()
        if seconds <= 0:
            self.add(key)
            return
        loop = asyncio.get_running_loop()
        when = loop.time() + seconds
        if (existing := self._timers.get(key)) is not None:
            if existing.when() <= when:
                return
            existing.cancel()
        _LOGGER.debug("Requeue %s in %0.2fs", key, seconds)
        self._timers[key] = loop.call_at(when, self._fire, key)

    def _fire(self, key: NamedResource) -> None:
        self._timers.pop(key, None)
        self.add(key)

    async def get(self) -> NamedResource | None:
        """Wait for the next key, returning None once the queue is shut down."""
        while not self._shutdown:
            if self._queue:
                key = self._queue.popleft()
                self._queued.discard(key)
                self._processing.add(key)
                return key
            self._ready.clear()
            await self._ready.wait()
        return None

    def done(self, key: NamedResource) -> None:
        """Mark the key as processed, requeueing it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty:
            self._dirty.discard(key)
            self.add(key)

    def shutdown(self) -> None:
        """Stop handing out keys and cancel pending timers."""
        self._shutdown = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._ready.set()
