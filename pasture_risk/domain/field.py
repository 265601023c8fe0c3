"""Field metadata: the relational context the matcher traverses."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from pasture_risk.foundation.clock import ensure_utc


class FieldContext(BaseModel):
    """Static description of a monitored field."""

    field_id: str = Field(..., min_length=1)
    farm_id: str | None = None
    species: frozenset[str] = Field(
        default_factory=frozenset, description="Species currently grown on the field"
    )
    slope_percent: float = Field(0.0, ge=0.0)
    soil_type: str | None = None
    sensors: tuple[str, ...] = ()

    model_config = {"frozen": True}


class Treatment(BaseModel):
    """A treatment applied to a field (lime, fertiliser, irrigation, ...)."""

    field_id: str
    treatment_type: str = Field(..., min_length=1)
    applied_at: datetime
    product: str | None = None
    amount: float | None = None

    model_config = {"frozen": True}

    @field_validator("applied_at")
    @classmethod
    def applied_at_must_be_aware(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @field_validator("treatment_type")
    @classmethod
    def normalise_type(cls, v: str) -> str:
        return v.strip().lower()
