"""Aggregator — rolling 7/14/30-day statistics per field per metric.

Design principles:
    1. Aggregates are a pure function of the valid readings in the window.
       Readings are put in a canonical order before any arithmetic, so the
       same input set always yields bit-identical output.
    2. Only readings flagged ``valid`` contribute.
    3. A window below its minimum reading count is absent, not zero.
    4. Concurrent requests for the same (field, metric, window, as_of)
       share one computation.  Different keys never wait on each other.

Trend:
    Ordinary least-squares slope of value against elapsed days since the
    window start.  Undefined (None) with fewer than 3 points or when every
    reading shares the same timestamp.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Iterable

from pasture_risk.core.coalescer import RequestCoalescer
from pasture_risk.domain.enums import MetricType, Window
from pasture_risk.domain.errors import InsufficientDataError
from pasture_risk.domain.telemetry import Aggregate, AggregateSet, Reading
from pasture_risk.foundation.retry import with_backoff
from pasture_risk.store.protocols import TimeSeriesReader

logger = logging.getLogger(__name__)

MIN_TREND_POINTS = 3

WindowKey = tuple[str, MetricType, Window, datetime]


# ── Pure statistics ──────────────────────────────────────────────────────────

def _canonical(readings: Iterable[Reading]) -> list[Reading]:
    return sorted(readings, key=lambda r: (r.timestamp, r.sensor_id, r.value))


def ols_slope(points: list[tuple[float, float]]) -> float | None:
    """Least-squares slope of y over x, or None if undefined."""
    n = len(points)
    if n < MIN_TREND_POINTS:
        return None
    mean_x = math.fsum(x for x, _ in points) / n
    mean_y = math.fsum(y for _, y in points) / n
    sxx = math.fsum((x - mean_x) ** 2 for x, _ in points)
    if sxx == 0.0:
        return None
    sxy = math.fsum((x - mean_x) * (y - mean_y) for x, y in points)
    return sxy / sxx


def summarise(
    readings: Iterable[Reading],
    *,
    field_id: str,
    metric_type: MetricType,
    window: Window,
    as_of: datetime,
    min_count: int = 1,
) -> Aggregate:
    """Compute one window's aggregate from *readings*.

    Readings outside ``(as_of - window, as_of]``, for another field or
    metric, or not flagged valid are ignored.

    Raises:
        InsufficientDataError: Fewer than *min_count* valid readings remain.
    """
    start = as_of - window.span
    selected = _canonical(
        r for r in readings
        if r.is_valid
        and r.field_id == field_id
        and r.metric_type == metric_type
        and start < r.timestamp <= as_of
    )
    required = max(min_count, 1)
    if len(selected) < required:
        raise InsufficientDataError(field_id, metric_type.value, window.value, len(selected), required)

    values = [r.value for r in selected]
    points = [((r.timestamp - start).total_seconds() / 86400.0, r.value) for r in selected]

    return Aggregate(
        field_id=field_id,
        metric_type=metric_type,
        window=window,
        computed_at=as_of,
        min=min(values),
        max=max(values),
        avg=math.fsum(values) / len(values),
        count=len(values),
        trend=ols_slope(points),
    )


# ── Aggregator ───────────────────────────────────────────────────────────────

class Aggregator:
    """Reads raw telemetry and rolls it up into windowed aggregates.

    Args:
        reader: Time-series store binding.
        min_readings: Minimum valid readings per window.
        retry_attempts: Store read attempts before giving up.
        retry_base_delay: First backoff delay in seconds.
        retry_max_delay: Backoff ceiling in seconds.
    """

    def __init__(
        self,
        reader: TimeSeriesReader,
        min_readings: dict[Window, int] | None = None,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 30.0,
    ) -> None:
        self._reader = reader
        self._min_readings = min_readings or {w: 1 for w in Window}
        self._retry_attempts = retry_attempts
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay
        self._coalescer: RequestCoalescer[Aggregate] = RequestCoalescer()

    # ── Public API ───────────────────────────────────────────────────────

    async def compute_aggregates(
        self, field_id: str, metric_type: MetricType, as_of: datetime
    ) -> AggregateSet:
        """Compute every window for one field and metric.

        A window with too few valid readings is recorded in ``missing``;
        the other windows are unaffected.  StoreUnavailableError propagates.
        """
        windows: dict[Window, Aggregate] = {}
        missing: dict[Window, str] = {}
        for window in Window:
            try:
                windows[window] = await self.compute_window(field_id, metric_type, window, as_of)
            except InsufficientDataError as exc:
                missing[window] = str(exc)
                logger.debug("Window absent: %s", exc)
        return AggregateSet(
            field_id=field_id,
            metric_type=metric_type,
            as_of=as_of,
            windows=windows,
            missing=missing,
        )

    async def compute_window(
        self, field_id: str, metric_type: MetricType, window: Window, as_of: datetime
    ) -> Aggregate:
        """Compute a single window, sharing any identical in-flight request."""
        key: WindowKey = (field_id, metric_type, window, as_of)
        return await self._coalescer.run(
            key, lambda: self._compute(field_id, metric_type, window, as_of)
        )

    @property
    def coalescer(self) -> RequestCoalescer[Aggregate]:
        return self._coalescer

    # ── Internals ────────────────────────────────────────────────────────

    async def _compute(
        self, field_id: str, metric_type: MetricType, window: Window, as_of: datetime
    ) -> Aggregate:
        readings = await with_backoff(
            lambda: self._read(field_id, metric_type, as_of - window.span, as_of),
            attempts=self._retry_attempts,
            base_delay=self._retry_base_delay,
            max_delay=self._retry_max_delay,
            description=f"telemetry read {field_id}/{metric_type.value}/{window.value}",
        )
        return summarise(
            readings,
            field_id=field_id,
            metric_type=metric_type,
            window=window,
            as_of=as_of,
            min_count=self._min_readings.get(window, 1),
        )

    async def _read(
        self, field_id: str, metric_type: MetricType, start: datetime, end: datetime
    ) -> list[Reading]:
        return [r async for r in self._reader.read_range(field_id, metric_type, start, end)]
