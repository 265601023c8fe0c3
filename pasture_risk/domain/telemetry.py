"""Telemetry models — raw readings and their windowed aggregates.

A Reading is immutable once ingested.  An Aggregate is a pure function of
the valid readings inside its window: recomputing it over the same input
yields the same numbers.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from pasture_risk.domain.enums import MetricType, QualityFlag, Window
from pasture_risk.foundation.clock import ensure_utc


class Reading(BaseModel):
    """A single sensor observation for one field and metric."""

    field_id: str = Field(..., min_length=1)
    sensor_id: str = Field(..., min_length=1)
    metric_type: MetricType
    timestamp: datetime = Field(..., description="Observation time (UTC-aware)")
    value: float
    quality_flag: QualityFlag = QualityFlag.VALID

    model_config = {"frozen": True}

    @field_validator("timestamp")
    @classmethod
    def timestamp_must_be_aware(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def is_valid(self) -> bool:
        return self.quality_flag == QualityFlag.VALID


class Aggregate(BaseModel):
    """Rolling statistics for one (field, metric, window)."""

    field_id: str
    metric_type: MetricType
    window: Window
    computed_at: datetime
    min: float
    max: float
    avg: float
    count: int = Field(..., ge=1)
    trend: float | None = Field(
        None, description="OLS slope in units per day (None if < 3 points)"
    )

    model_config = {"frozen": True}


class AggregateSet(BaseModel):
    """All windows computed for one (field, metric) at one instant.

    Windows that could not be computed are listed in ``missing`` with the
    reason.  They are absent, never zero.
    """

    field_id: str
    metric_type: MetricType
    as_of: datetime
    windows: dict[Window, Aggregate] = Field(default_factory=dict)
    missing: dict[Window, str] = Field(default_factory=dict)

    model_config = {"frozen": True}

    def get(self, window: Window) -> Aggregate | None:
        return self.windows.get(window)


class FieldAggregates(BaseModel):
    """Every AggregateSet computed for one field in one cycle."""

    field_id: str
    as_of: datetime
    metrics: dict[MetricType, AggregateSet] = Field(default_factory=dict)

    model_config = {"frozen": True}

    def lookup(self, metric: MetricType, window: Window) -> Aggregate | None:
        """Return the aggregate for *metric*/*window*, or None if absent."""
        agg_set = self.metrics.get(metric)
        if agg_set is None:
            return None
        return agg_set.get(window)
