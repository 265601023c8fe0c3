"""Controlled enumerations for the pasture-risk domain.

Every categorical field in the domain MUST reference an enum defined here.
Free-form strings are not acceptable for classification fields.
"""

from __future__ import annotations

from datetime import timedelta
from enum import Enum
from typing import Iterable


class QualityFlag(str, Enum):
    """Upstream quality verdict attached to every reading."""

    VALID = "valid"
    SUSPECT = "suspect"
    INVALID = "invalid"


class MetricType(str, Enum):
    """Telemetry metrics the aggregator knows how to roll up."""

    SOIL_MOISTURE = "soil_moisture"
    NDVI = "ndvi"
    SOIL_PH = "soil_ph"
    UTILIZATION = "utilization"
    AIR_TEMPERATURE = "air_temperature"
    SOIL_NITROGEN = "soil_nitrogen"


class Window(str, Enum):
    """Trailing aggregation windows."""

    D7 = "7d"
    D14 = "14d"
    D30 = "30d"

    @property
    def days(self) -> int:
        return int(self.value[:-1])

    @property
    def span(self) -> timedelta:
        return timedelta(days=self.days)


class RiskTier(str, Enum):
    """Ordered risk classification: low < medium < high."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    @classmethod
    def highest(cls, tiers: Iterable[RiskTier]) -> RiskTier:
        """Maximum tier of *tiers*; LOW when empty."""
        return max(tiers, key=lambda t: t.rank, default=cls.LOW)


_TIER_RANK = {RiskTier.LOW: 0, RiskTier.MEDIUM: 1, RiskTier.HIGH: 2}


class ConditionCode(str, Enum):
    """Canonical identifiers for triggerable risk conditions."""

    MOISTURE_LOW = "moisture_low"
    MOISTURE_EXCESS = "moisture_excess"
    NDVI_DECLINE = "ndvi_decline"
    OVERGRAZING_SLOPE = "overgrazing_slope"
    SOIL_ACIDIC = "soil_acidic"
    HEAT_STRESS = "heat_stress"
    NITROGEN_LOW = "nitrogen_low"
    RECENT_IRRIGATION = "recent_irrigation"
    RECENT_GRAZING = "recent_grazing"


class FieldStage(str, Enum):
    """Per-field pipeline state within one cycle."""

    IDLE = "idle"
    AGGREGATING = "aggregating"
    CLASSIFYING = "classifying"
    MATCHING = "matching"
    DISPATCHING = "dispatching"
    FAILED = "failed"


class ErrorKind(str, Enum):
    """Error taxonomy reported in cycle summaries."""

    INSUFFICIENT_DATA = "insufficient_data"
    STORE_UNAVAILABLE = "store_unavailable"
    INCONSISTENT_CONTEXT = "inconsistent_context"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    CORRUPT_RULE_SNAPSHOT = "corrupt_rule_snapshot"
    INTERNAL = "internal"
