"""RiskAssessment — the classifier's verdict for one field in one cycle.

An assessment is never mutated.  The next cycle's output supersedes it.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from pasture_risk.domain.enums import ConditionCode, RiskTier


class ConditionObservation(BaseModel):
    """The measured value that made a condition trigger."""

    code: ConditionCode
    severity: RiskTier
    value: float | None = None
    threshold: float | None = None

    model_config = {"frozen": True}


class RiskAssessment(BaseModel):
    """Risk tier plus the set of triggered conditions for one field."""

    field_id: str
    tier: RiskTier = RiskTier.LOW
    triggered_conditions: frozenset[ConditionCode] = Field(default_factory=frozenset)
    observations: dict[ConditionCode, ConditionObservation] = Field(default_factory=dict)
    computed_at: datetime

    model_config = {"frozen": True}

    def newly_triggered(self, previous: RiskAssessment | None) -> list[ConditionCode]:
        """Conditions present now but absent in *previous*, in enum order."""
        before = previous.triggered_conditions if previous else frozenset()
        return [c for c in ConditionCode if c in self.triggered_conditions and c not in before]
