"""Request coalescing for in-flight computations.

Concurrent callers asking for the same key share one in-flight task
instead of recomputing.  Entries are removed when the task completes, so
a later call after completion starts a fresh computation.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Generic, Hashable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestCoalescer(Generic[T]):
    """Map of key -> in-flight task.

    A caller cancelled while waiting does not cancel the shared task; the
    remaining waiters still receive its result.  Exceptions propagate to
    every waiter.
    """

    def __init__(self) -> None:
        self._inflight: dict[Hashable, asyncio.Task[T]] = {}
        self.started: int = 0
        self.coalesced: int = 0

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> T:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            self.started += 1
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        else:
            self.coalesced += 1
            logger.debug("Coalesced request for %s", key)
        return await asyncio.shield(task)

    def _forget(self, key: Hashable, task: asyncio.Task[T]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Retrieve the exception so an orphaned failure is not reported as unhandled.
        if not task.cancelled():
            task.exception()

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)
