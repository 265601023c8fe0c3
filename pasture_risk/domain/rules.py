"""Advisory rule reference data and the recommendations derived from it.

Rules are owned externally and loaded read-only as a versioned snapshot.
Recommendations are regenerated every cycle; only (field_id, rule_id)
identifies one across cycles.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from pasture_risk.foundation.clock import utc_now


class AdvisoryRule(BaseModel):
    """A single advisory rule.

    ``trigger_predicate`` is a boolean expression over condition codes,
    e.g. ``"moisture_low AND NOT recent_irrigation"``.  ``treatment_type``
    names the treatment the action applies, used for the over-application
    cooldown.
    """

    rule_id: str = Field(..., min_length=1)
    priority: int = Field(..., description="1 = highest priority")
    trigger_predicate: str = Field(..., min_length=1)
    applicable_species: frozenset[str] = Field(default_factory=frozenset)
    action: str
    expected_outcome: str = ""
    treatment_type: str | None = None
    cooldown_days: int | None = Field(
        None, ge=0, description="Overrides the configured cooldown for treatment_type"
    )

    model_config = {"frozen": True}

    @field_validator("treatment_type")
    @classmethod
    def normalise_treatment(cls, v: str | None) -> str | None:
        return v.strip().lower() if v else v


class RuleSnapshot(BaseModel):
    """Immutable, versioned load of the advisory rule set for one cycle.

    ``species_catalog`` lists every species the rule base knows about.  An
    empty catalog means species references are not checked.
    """

    version: str
    loaded_at: datetime = Field(default_factory=utc_now)
    rules: tuple[AdvisoryRule, ...] = ()
    species_catalog: frozenset[str] = Field(default_factory=frozenset)

    model_config = {"frozen": True}


class Recommendation(BaseModel):
    """A ranked advisory for one field, produced by the rule matcher."""

    field_id: str
    rule_id: str
    rank: int = Field(..., ge=1)
    generated_at: datetime
    action: str = ""

    model_config = {"frozen": True}

    @property
    def dedup_key(self) -> tuple[str, str]:
        return (self.field_id, self.rule_id)
