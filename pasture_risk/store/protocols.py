"""Abstract collaborator interfaces.

The pipeline depends only on these protocols.  Bindings to concrete
stores live outside the core; ``store.memory`` provides in-process ones.
Every method may raise StoreUnavailableError.
"""

from __future__ import annotations

from datetime import datetime
from typing import AsyncIterable, Protocol, Sequence

from pasture_risk.domain.alert import Alert
from pasture_risk.domain.assessment import RiskAssessment
from pasture_risk.domain.enums import MetricType, RiskTier
from pasture_risk.domain.field import FieldContext, Treatment
from pasture_risk.domain.rules import Recommendation, RuleSnapshot
from pasture_risk.domain.telemetry import AggregateSet, Reading


class TimeSeriesReader(Protocol):
    def read_range(
        self,
        field_id: str,
        metric_type: MetricType,
        start: datetime,
        end: datetime,
        sensor_id: str | None = None,
    ) -> AsyncIterable[Reading]:
        """Readings with start <= timestamp <= end, newest first.

        The returned iterable is lazy, finite and restartable: iterating it
        again replays the same range.
        """
        ...


class MetadataReader(Protocol):
    async def list_fields(self) -> list[str]:
        """IDs of every monitored field."""
        ...

    async def get_field_context(self, field_id: str) -> FieldContext:
        ...

    async def get_treatment_history(self, field_id: str) -> Sequence[Treatment]:
        ...


class CacheStore(Protocol):
    async def set_latest(
        self, field_id: str, aggregates: Sequence[AggregateSet], ttl_seconds: int
    ) -> None:
        ...

    async def get_current_assessment(self, field_id: str) -> RiskAssessment | None:
        ...

    async def swap_tier_membership(
        self,
        field_id: str,
        old_tier: RiskTier | None,
        new_tier: RiskTier,
        assessment: RiskAssessment | None = None,
        recommendations: Sequence[Recommendation] | None = None,
    ) -> None:
        """Atomically move *field_id* from *old_tier* to *new_tier*.

        When *assessment* or *recommendations* are given they replace the
        field's current ones in the same atomic step.  Either everything is
        applied or nothing is.
        """
        ...

    async def tier_of(self, field_id: str) -> RiskTier | None:
        ...

    async def tier_members(self, tier: RiskTier) -> frozenset[str]:
        ...

    async def recommendations_for(self, field_id: str) -> list[Recommendation]:
        ...


class AlertSink(Protocol):
    async def publish(self, alert: Alert) -> str:
        """Append *alert* to the stream and return its id (at-least-once)."""
        ...


class RuleSource(Protocol):
    async def load_rules(self) -> RuleSnapshot:
        ...
