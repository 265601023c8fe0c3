"""Condition catalog — thresholds as configuration data.

A ConditionDefinition is a named conjunction of clauses.  Clauses come in
three kinds: a comparison on an aggregate statistic, a comparison on a
field attribute, and a "treatment applied within N days" check.  The
catalog is data so agronomists can retune thresholds without code changes.
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from pasture_risk.domain.enums import ConditionCode, MetricType, RiskTier, Window


class Statistic(str, Enum):
    AVG = "avg"
    MIN = "min"
    MAX = "max"
    TREND = "trend"
    DECLINE = "decline"


class Operator(str, Enum):
    LT = "lt"
    LE = "le"
    GT = "gt"
    GE = "ge"

    def apply(self, value: float, threshold: float) -> bool:
        if self is Operator.LT:
            return value < threshold
        if self is Operator.LE:
            return value <= threshold
        if self is Operator.GT:
            return value > threshold
        return value >= threshold


class AggregateClause(BaseModel):
    kind: Literal["aggregate"] = "aggregate"
    metric_type: MetricType
    window: Window
    statistic: Statistic = Statistic.AVG
    operator: Operator
    threshold: float

    model_config = {"frozen": True}


class ContextClause(BaseModel):
    kind: Literal["context"] = "context"
    attribute: Literal["slope_percent"] = "slope_percent"
    operator: Operator
    threshold: float

    model_config = {"frozen": True}


class TreatmentClause(BaseModel):
    kind: Literal["treatment"] = "treatment"
    treatment_type: str
    within_days: int = Field(..., ge=0)

    model_config = {"frozen": True}


Clause = Annotated[
    Union[AggregateClause, ContextClause, TreatmentClause],
    Field(discriminator="kind"),
]


class ConditionDefinition(BaseModel):
    """One triggerable condition: all clauses must hold."""

    code: ConditionCode
    severity: RiskTier
    clauses: tuple[Clause, ...] = Field(..., min_length=1)
    description: str = ""

    model_config = {"frozen": True}

    @property
    def metrics(self) -> set[MetricType]:
        return {c.metric_type for c in self.clauses if isinstance(c, AggregateClause)}


_CATALOG_ADAPTER = TypeAdapter(list[ConditionDefinition])


def default_condition_catalog() -> list[ConditionDefinition]:
    """Illustrative agronomic defaults, evaluated in this order."""
    return [
        ConditionDefinition(
            code=ConditionCode.MOISTURE_LOW,
            severity=RiskTier.HIGH,
            description="Soil moisture below 15% on every reading of the last 7 days",
            clauses=(
                AggregateClause(metric_type=MetricType.SOIL_MOISTURE, window=Window.D7,
                                statistic=Statistic.MAX, operator=Operator.LT, threshold=15.0),
            ),
        ),
        ConditionDefinition(
            code=ConditionCode.MOISTURE_EXCESS,
            severity=RiskTier.MEDIUM,
            description="7-day average soil moisture above 45% (waterlogging)",
            clauses=(
                AggregateClause(metric_type=MetricType.SOIL_MOISTURE, window=Window.D7,
                                operator=Operator.GT, threshold=45.0),
            ),
        ),
        ConditionDefinition(
            code=ConditionCode.NDVI_DECLINE,
            severity=RiskTier.MEDIUM,
            description="NDVI fell by more than 0.15 across 14 days",
            clauses=(
                AggregateClause(metric_type=MetricType.NDVI, window=Window.D14,
                                statistic=Statistic.DECLINE, operator=Operator.GT, threshold=0.15),
            ),
        ),
        ConditionDefinition(
            code=ConditionCode.OVERGRAZING_SLOPE,
            severity=RiskTier.HIGH,
            description="Slope above 10% with utilization above 50%",
            clauses=(
                ContextClause(operator=Operator.GT, threshold=10.0),
                AggregateClause(metric_type=MetricType.UTILIZATION, window=Window.D7,
                                operator=Operator.GT, threshold=50.0),
            ),
        ),
        ConditionDefinition(
            code=ConditionCode.SOIL_ACIDIC,
            severity=RiskTier.MEDIUM,
            description="30-day average soil pH below 6.0",
            clauses=(
                AggregateClause(metric_type=MetricType.SOIL_PH, window=Window.D30,
                                operator=Operator.LT, threshold=6.0),
            ),
        ),
        ConditionDefinition(
            code=ConditionCode.HEAT_STRESS,
            severity=RiskTier.MEDIUM,
            description="7-day maximum air temperature above 35C",
            clauses=(
                AggregateClause(metric_type=MetricType.AIR_TEMPERATURE, window=Window.D7,
                                statistic=Statistic.MAX, operator=Operator.GT, threshold=35.0),
            ),
        ),
        ConditionDefinition(
            code=ConditionCode.NITROGEN_LOW,
            severity=RiskTier.LOW,
            description="14-day average soil nitrogen below 20 ppm",
            clauses=(
                AggregateClause(metric_type=MetricType.SOIL_NITROGEN, window=Window.D14,
                                operator=Operator.LT, threshold=20.0),
            ),
        ),
        ConditionDefinition(
            code=ConditionCode.RECENT_IRRIGATION,
            severity=RiskTier.LOW,
            description="Irrigated within the last 7 days",
            clauses=(TreatmentClause(treatment_type="irrigation", within_days=7),),
        ),
        ConditionDefinition(
            code=ConditionCode.RECENT_GRAZING,
            severity=RiskTier.LOW,
            description="Grazed within the last 14 days",
            clauses=(TreatmentClause(treatment_type="grazing", within_days=14),),
        ),
    ]


def load_condition_catalog(path: str | Path) -> list[ConditionDefinition]:
    """Load a condition catalog from a JSON array of definitions.

    Raises:
        FileNotFoundError: If *path* does not exist.
        pydantic.ValidationError: If any definition is malformed.
    """
    path = Path(path)
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    return _CATALOG_ADAPTER.validate_python(raw)
