"""AlertStream — in-process alert log with consumer-group fan-out.

Semantics:
    - publish() appends to a single ordered log, so alerts for one field
      are delivered in publish order.
    - Every consumer group sees every alert (broadcast, not a shared queue).
    - Each group keeps a committed offset.  read() returns everything past
      it; entries are only skipped once acked.  A consumer that fails
      before acking gets the same entries again: at-least-once delivery.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from pasture_risk.domain.alert import Alert
from pasture_risk.domain.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

AlertHandler = Callable[[Alert], Awaitable[None]]


class StreamEntry:
    __slots__ = ("offset", "alert")

    def __init__(self, offset: int, alert: Alert) -> None:
        self.offset = offset
        self.alert = alert

    def __repr__(self) -> str:
        return f"StreamEntry(offset={self.offset}, alert_id={self.alert.alert_id})"


class AlertStream:
    """Append-only alert log implementing the AlertSink protocol."""

    def __init__(self) -> None:
        self._log: list[Alert] = []
        self._committed: dict[str, int] = {}
        self._changed = asyncio.Condition()
        self._fail_publishes = 0

    # ── Producer side ────────────────────────────────────────────────────

    def fail_next(self, times: int = 1) -> None:
        """Make the next *times* publishes raise StoreUnavailableError."""
        self._fail_publishes += times

    async def publish(self, alert: Alert) -> str:
        if self._fail_publishes > 0:
            self._fail_publishes -= 1
            raise StoreUnavailableError("alert stream unavailable")
        async with self._changed:
            self._log.append(alert)
            self._changed.notify_all()
        return str(alert.alert_id)

    # ── Consumer groups ──────────────────────────────────────────────────

    def create_group(self, group: str, from_start: bool = True) -> None:
        """Register *group*; it sees the whole log or only new alerts."""
        if group not in self._committed:
            self._committed[group] = 0 if from_start else len(self._log)
            logger.info("Consumer group %s created at offset %d", group, self._committed[group])

    @property
    def groups(self) -> list[str]:
        return sorted(self._committed)

    async def read(self, group: str, count: int = 100, timeout: float | None = None) -> list[StreamEntry]:
        """Entries past the group's committed offset (oldest first).

        With *timeout*, waits up to that long for something to arrive.
        """
        self.create_group(group)
        if timeout and self._committed[group] >= len(self._log):
            try:
                async with self._changed:
                    await asyncio.wait_for(
                        self._changed.wait_for(lambda: self._committed[group] < len(self._log)),
                        timeout,
                    )
            except asyncio.TimeoutError:
                return []
        start = self._committed[group]
        return [
            StreamEntry(offset, self._log[offset])
            for offset in range(start, min(start + count, len(self._log)))
        ]

    def ack(self, group: str, offset: int) -> None:
        """Commit everything up to and including *offset* for *group*."""
        self.create_group(group)
        if offset >= len(self._log):
            raise IndexError(f"offset {offset} beyond end of stream ({len(self._log)})")
        self._committed[group] = max(self._committed[group], offset + 1)

    def pending(self, group: str) -> int:
        self.create_group(group)
        return len(self._log) - self._committed[group]

    async def consume(self, group: str, handler: AlertHandler, count: int = 100) -> int:
        """Deliver pending alerts to *handler*, acking each on success.

        Stops at the first handler failure; that entry and everything after
        it are redelivered on the next call.  Returns the number acked.
        """
        delivered = 0
        for entry in await self.read(group, count):
            try:
                await handler(entry.alert)
            except Exception:
                logger.exception(
                    "Consumer group %s failed on offset %d; will replay", group, entry.offset
                )
                break
            self.ack(group, entry.offset)
            delivered += 1
        return delivered

    # ── Introspection ────────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._log)

    def alerts(self, field_id: str | None = None) -> list[Alert]:
        """Log contents, optionally filtered to one field, in publish order."""
        return [a for a in self._log if field_id is None or a.field_id == field_id]
