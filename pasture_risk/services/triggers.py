"""Cycle triggers — what tells the coordinator to start the next cycle.

``IntervalTrigger`` fires on a fixed wall-clock interval in production.
``ManualTrigger`` fires only when told to, so tests can drive cycles
without sleeping.
"""

from __future__ import annotations

import asyncio
from typing import Protocol


class CycleTrigger(Protocol):
    async def wait(self) -> bool:
        """Block until the next cycle is due.  False means shut down."""
        ...

    def close(self) -> None:
        ...


class IntervalTrigger:
    """Fires immediately, then once every *interval_seconds*."""

    def __init__(self, interval_seconds: float, fire_immediately: bool = True) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._interval = interval_seconds
        self._first = fire_immediately
        self._closed = asyncio.Event()

    async def wait(self) -> bool:
        if self._closed.is_set():
            return False
        if self._first:
            self._first = False
            return True
        try:
            await asyncio.wait_for(self._closed.wait(), self._interval)
        except asyncio.TimeoutError:
            return True
        return False

    def close(self) -> None:
        self._closed.set()


class ManualTrigger:
    """Fires once per ``fire()`` call, in order."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[bool] = asyncio.Queue()
        self._closed = False

    def fire(self, times: int = 1) -> None:
        for _ in range(times):
            self._queue.put_nowait(True)

    async def wait(self) -> bool:
        if self._closed and self._queue.empty():
            return False
        return await self._queue.get()

    def close(self) -> None:
        self._closed = True
        self._queue.put_nowait(False)
