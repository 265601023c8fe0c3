"""In-process bindings for the store protocols.

These back the wiring in ``main`` and the test suite.  Each store can be
told to fail (``fail_next``) to exercise StoreUnavailable handling.

Design notes:
    - The cache keeps one tier per field in a single dict; the tier sets
      are derived from it, so a field is always in exactly one set or, if
      never enrolled, in none.
    - Assessment, recommendations and tier are replaced together in one
      locked step, so a failed swap leaves all three untouched.
    - A per-field asyncio.Lock serialises operations on the same field.
      Different fields never contend.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import AsyncIterator, Iterable, Sequence

from pasture_risk.domain.assessment import RiskAssessment
from pasture_risk.domain.enums import MetricType, RiskTier
from pasture_risk.domain.errors import StoreUnavailableError
from pasture_risk.domain.field import FieldContext, Treatment
from pasture_risk.domain.rules import Recommendation
from pasture_risk.domain.telemetry import AggregateSet, Reading
from pasture_risk.foundation.clock import utc_now

logger = logging.getLogger(__name__)


class _FailureSwitch:
    """Counts down injected failures, optionally per key."""

    def __init__(self, store_name: str) -> None:
        self._store_name = store_name
        self._pending: dict[str | None, int] = defaultdict(int)

    def fail_next(self, times: int = 1, key: str | None = None) -> None:
        self._pending[key] += times

    def check(self, key: str | None = None) -> None:
        for k in (key, None):
            if self._pending.get(k, 0) > 0:
                self._pending[k] -= 1
                raise StoreUnavailableError(f"{self._store_name} unavailable")


# ── Time series ──────────────────────────────────────────────────────────────

class _ReadingRange:
    """Lazy, restartable view over a slice of readings, newest first."""

    def __init__(self, store: InMemoryTimeSeries, field_id: str, metric_type: MetricType,
                 start: datetime, end: datetime, sensor_id: str | None) -> None:
        self._store = store
        self._args = (field_id, metric_type, start, end, sensor_id)

    def __aiter__(self) -> AsyncIterator[Reading]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Reading]:
        field_id, metric_type, start, end, sensor_id = self._args
        self._store.failures.check(field_id)
        latency = self._store.field_latency.get(field_id, self._store.latency)
        if latency:
            await asyncio.sleep(latency)
        self._store.read_calls += 1
        rows = [
            r for r in self._store.readings_for(field_id, metric_type)
            if start <= r.timestamp <= end and (sensor_id is None or r.sensor_id == sensor_id)
        ]
        for reading in sorted(rows, key=lambda r: r.timestamp, reverse=True):
            yield reading


class InMemoryTimeSeries:
    """Append-only reading store keyed by (field, metric)."""

    def __init__(self, readings: Iterable[Reading] = (), latency: float = 0.0) -> None:
        self._readings: dict[tuple[str, MetricType], list[Reading]] = defaultdict(list)
        self.latency = latency
        self.field_latency: dict[str, float] = {}
        self.read_calls = 0
        self.failures = _FailureSwitch("time-series store")
        self.extend(readings)

    def append(self, reading: Reading) -> None:
        self._readings[(reading.field_id, reading.metric_type)].append(reading)

    def extend(self, readings: Iterable[Reading]) -> None:
        for r in readings:
            self.append(r)

    def readings_for(self, field_id: str, metric_type: MetricType) -> list[Reading]:
        return list(self._readings.get((field_id, metric_type), ()))

    def fail_next(self, times: int = 1, field_id: str | None = None) -> None:
        self.failures.fail_next(times, field_id)

    def read_range(
        self,
        field_id: str,
        metric_type: MetricType,
        start: datetime,
        end: datetime,
        sensor_id: str | None = None,
    ) -> _ReadingRange:
        return _ReadingRange(self, field_id, metric_type, start, end, sensor_id)


# ── Metadata ─────────────────────────────────────────────────────────────────

class InMemoryMetadata:
    """Field contexts and treatment history."""

    def __init__(
        self,
        contexts: Iterable[FieldContext] = (),
        treatments: Iterable[Treatment] = (),
    ) -> None:
        self._contexts: dict[str, FieldContext] = {c.field_id: c for c in contexts}
        self._treatments: dict[str, list[Treatment]] = defaultdict(list)
        self.failures = _FailureSwitch("metadata store")
        for t in treatments:
            self.add_treatment(t)

    def add_treatment(self, treatment: Treatment) -> None:
        self._treatments[treatment.field_id].append(treatment)

    def clear_treatments(self, field_id: str) -> None:
        self._treatments.pop(field_id, None)

    def fail_next(self, times: int = 1, field_id: str | None = None) -> None:
        self.failures.fail_next(times, field_id)

    async def list_fields(self) -> list[str]:
        self.failures.check()
        return sorted(self._contexts)

    async def get_field_context(self, field_id: str) -> FieldContext:
        self.failures.check(field_id)
        try:
            return self._contexts[field_id]
        except KeyError:
            raise KeyError(f"Unknown field: {field_id}") from None

    async def get_treatment_history(self, field_id: str) -> Sequence[Treatment]:
        self.failures.check(field_id)
        return list(self._treatments.get(field_id, ()))


# ── Cache ────────────────────────────────────────────────────────────────────

class InMemoryCache:
    """Latest aggregates, current assessments, tier membership, recommendations."""

    def __init__(self) -> None:
        self._latest: dict[str, tuple[datetime, tuple[AggregateSet, ...]]] = {}
        self._assessments: dict[str, RiskAssessment] = {}
        self._tiers: dict[str, RiskTier] = {}
        self._recommendations: dict[str, dict[str, Recommendation]] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.failures = _FailureSwitch("cache store")

    def fail_next(self, times: int = 1, field_id: str | None = None) -> None:
        self.failures.fail_next(times, field_id)

    # ── Aggregates ───────────────────────────────────────────────────────

    async def set_latest(
        self, field_id: str, aggregates: Sequence[AggregateSet], ttl_seconds: int
    ) -> None:
        self.failures.check(field_id)
        expires = utc_now() + timedelta(seconds=ttl_seconds)
        self._latest[field_id] = (expires, tuple(aggregates))

    async def get_latest(self, field_id: str) -> tuple[AggregateSet, ...] | None:
        entry = self._latest.get(field_id)
        if entry is None:
            return None
        expires, aggregates = entry
        if utc_now() >= expires:
            del self._latest[field_id]
            return None
        return aggregates

    # ── Assessments & tiers ──────────────────────────────────────────────

    async def get_current_assessment(self, field_id: str) -> RiskAssessment | None:
        self.failures.check(field_id)
        return self._assessments.get(field_id)

    async def tier_of(self, field_id: str) -> RiskTier | None:
        return self._tiers.get(field_id)

    async def tier_members(self, tier: RiskTier) -> frozenset[str]:
        return frozenset(f for f, t in self._tiers.items() if t == tier)

    async def swap_tier_membership(
        self,
        field_id: str,
        old_tier: RiskTier | None,
        new_tier: RiskTier,
        assessment: RiskAssessment | None = None,
        recommendations: Sequence[Recommendation] | None = None,
    ) -> None:
        async with self._locks[field_id]:
            self.failures.check(field_id)
            current = self._tiers.get(field_id)
            if current != old_tier:
                logger.warning(
                    "Tier swap for %s expected %s but found %s",
                    field_id, old_tier, current,
                )
            # Single assignment per map, no await in between
            if assessment is not None:
                self._assessments[field_id] = assessment
            if recommendations is not None:
                self._recommendations[field_id] = {r.rule_id: r for r in recommendations}
            self._tiers[field_id] = new_tier

    # ── Recommendations ──────────────────────────────────────────────────

    async def recommendations_for(self, field_id: str) -> list[Recommendation]:
        return sorted(self._recommendations.get(field_id, {}).values(), key=lambda r: r.rank)
