"""Alert — an append-only, immutable stream entry."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel

from pasture_risk.domain.enums import ConditionCode, RiskTier


class Alert(BaseModel):
    """Emitted once per transition into a triggered condition.

    Delivery is at-least-once; consumers deduplicate by ``alert_id``.
    """

    alert_id: UUID
    field_id: str
    condition_code: ConditionCode
    severity: RiskTier
    value: float | None = None
    threshold: float | None = None
    timestamp: datetime

    model_config = {"frozen": True}
