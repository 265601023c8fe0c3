"""Exponential backoff for store calls that may be temporarily unavailable."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from pasture_risk.domain.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 30.0,
    description: str = "store call",
) -> T:
    """Run *operation*, retrying StoreUnavailableError with exponential backoff.

    Delays double from *base_delay* and are capped at *max_delay*.  The
    last failure is re-raised once *attempts* are exhausted.  The caller's
    deadline still applies: cancellation interrupts the sleep.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    delay = base_delay
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except StoreUnavailableError as exc:
            if attempt == attempts:
                raise
            logger.warning(
                "%s unavailable (attempt %d/%d): %s; retrying in %.2fs",
                description, attempt, attempts, exc, delay,
            )
            await asyncio.sleep(delay)
            delay = min(delay * 2, max_delay)
    raise AssertionError("unreachable")
