"""AlertDispatcher — edge-triggered alerts and the tier-set swap.

Order of effects for one field:
    1. Read the previous assessment from the cache.
    2. Publish one alert per condition present now and absent before.
    3. Atomically replace the current assessment and the field's
       recommendation records, and move the field between tier sets.

If 1 or 2 fails, step 3 never runs, and if step 3 fails it applies
nothing, so the previous assessment, recommendations and tier membership
remain in place.  Alert ids are derived from the transition (field,
condition, previous assessment time), so replaying the same transition
republishes the same ids and consumers can deduplicate.
"""

from __future__ import annotations

import logging
from typing import Sequence
from uuid import UUID

from pasture_risk.domain.alert import Alert
from pasture_risk.domain.assessment import RiskAssessment
from pasture_risk.domain.rules import Recommendation
from pasture_risk.foundation.identifiers import stable_id
from pasture_risk.store.protocols import AlertSink, CacheStore

logger = logging.getLogger(__name__)


def transition_alert_id(field_id: str, code: str, previous: RiskAssessment | None) -> UUID:
    anchor = previous.computed_at.isoformat() if previous else "initial"
    return stable_id(field_id, code, anchor)


class AlertDispatcher:
    def __init__(self, sink: AlertSink, cache: CacheStore) -> None:
        self._sink = sink
        self._cache = cache

    async def dispatch(
        self,
        assessment: RiskAssessment,
        recommendations: Sequence[Recommendation] = (),
    ) -> list[Alert]:
        """Publish alerts for newly triggered conditions and commit the assessment.

        Returns the alerts published.  StoreUnavailableError from the sink
        or cache propagates before any cached state is changed.
        """
        field_id = assessment.field_id
        previous = await self._cache.get_current_assessment(field_id)
        old_tier = await self._cache.tier_of(field_id)

        published: list[Alert] = []
        for code in assessment.newly_triggered(previous):
            obs = assessment.observations.get(code)
            alert = Alert(
                alert_id=transition_alert_id(field_id, code.value, previous),
                field_id=field_id,
                condition_code=code,
                severity=obs.severity if obs else assessment.tier,
                value=obs.value if obs else None,
                threshold=obs.threshold if obs else None,
                timestamp=assessment.computed_at,
            )
            await self._sink.publish(alert)
            published.append(alert)
            logger.info(
                "Alert %s: field=%s condition=%s severity=%s",
                alert.alert_id, field_id, code.value, alert.severity.value,
            )

        await self._cache.swap_tier_membership(
            field_id,
            old_tier,
            assessment.tier,
            assessment=assessment,
            recommendations=_dedupe(recommendations),
        )
        if old_tier != assessment.tier:
            logger.info(
                "Field %s moved %s -> %s",
                field_id, old_tier.value if old_tier else "none", assessment.tier.value,
            )
        return published


def _dedupe(recommendations: Sequence[Recommendation]) -> list[Recommendation]:
    seen: set[tuple[str, str]] = set()
    unique: list[Recommendation] = []
    for rec in recommendations:
        if rec.dedup_key in seen:
            continue
        seen.add(rec.dedup_key)
        unique.append(rec)
    return unique
