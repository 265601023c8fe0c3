"""RiskClassifier — deterministic tier assignment from aggregates and metadata.

Design principles:
    1. Pure function: aggregates + field context in, RiskAssessment out.
    2. No I/O.  Never blocks.
    3. Conditions are evaluated in catalog order; each one that holds is
       added to the triggered set.
    4. A condition whose inputs are missing (absent window, undefined
       trend) is skipped.  It never triggers and never aborts the others.
    5. Tier = highest severity among triggered conditions; LOW when none.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Sequence

from pasture_risk.domain.assessment import ConditionObservation, RiskAssessment
from pasture_risk.domain.conditions import (
    AggregateClause,
    ConditionDefinition,
    ContextClause,
    Statistic,
    TreatmentClause,
    default_condition_catalog,
)
from pasture_risk.domain.enums import ConditionCode, MetricType, RiskTier
from pasture_risk.domain.field import FieldContext, Treatment
from pasture_risk.domain.telemetry import FieldAggregates

logger = logging.getLogger(__name__)


class ClauseResult:
    """Outcome of one clause: ``holds`` is None when indeterminate."""

    __slots__ = ("holds", "value", "threshold")

    def __init__(self, holds: bool | None, value: float | None = None, threshold: float | None = None) -> None:
        self.holds = holds
        self.value = value
        self.threshold = threshold


_INDETERMINATE = ClauseResult(None)


class RiskClassifier:
    """Evaluates an ordered condition catalog against one field.

    This classifier is stateless: it never mutates its inputs.
    """

    def __init__(self, catalog: Sequence[ConditionDefinition] | None = None) -> None:
        self._catalog: tuple[ConditionDefinition, ...] = tuple(
            catalog if catalog is not None else default_condition_catalog()
        )
        codes = [c.code for c in self._catalog]
        if len(codes) != len(set(codes)):
            raise ValueError("condition catalog contains duplicate codes")

    @property
    def catalog(self) -> tuple[ConditionDefinition, ...]:
        return self._catalog

    @property
    def required_metrics(self) -> list[MetricType]:
        """Metrics referenced by any aggregate clause, in enum order."""
        used: set[MetricType] = set()
        for definition in self._catalog:
            used |= definition.metrics
        return [m for m in MetricType if m in used]

    # ── Public API ───────────────────────────────────────────────────────

    def classify(
        self,
        aggregates: FieldAggregates,
        context: FieldContext,
        treatments: Sequence[Treatment] = (),
        computed_at: datetime | None = None,
    ) -> RiskAssessment:
        """Produce the field's RiskAssessment for this cycle."""
        as_of = computed_at or aggregates.as_of
        triggered: list[ConditionCode] = []
        observations: dict[ConditionCode, ConditionObservation] = {}

        for definition in self._catalog:
            observation = self._evaluate(definition, aggregates, context, treatments, as_of)
            if observation is None:
                continue
            triggered.append(definition.code)
            observations[definition.code] = observation

        tier = RiskTier.highest(observations[c].severity for c in triggered)
        logger.debug(
            "Classified %s: tier=%s triggered=%s",
            context.field_id, tier.value, [c.value for c in triggered],
        )
        return RiskAssessment(
            field_id=context.field_id,
            tier=tier,
            triggered_conditions=frozenset(triggered),
            observations=observations,
            computed_at=as_of,
        )

    # ── Condition evaluation ─────────────────────────────────────────────

    def _evaluate(
        self,
        definition: ConditionDefinition,
        aggregates: FieldAggregates,
        context: FieldContext,
        treatments: Sequence[Treatment],
        as_of: datetime,
    ) -> ConditionObservation | None:
        held: list[tuple[object, ClauseResult]] = []
        for clause in definition.clauses:
            result = self._evaluate_clause(clause, aggregates, context, treatments, as_of)
            if result.holds is None:
                logger.debug(
                    "Skipping %s for %s: inputs unavailable", definition.code.value, context.field_id
                )
                return None
            if not result.holds:
                return None
            held.append((clause, result))

        # Report the aggregate measurement when there is one
        evidence = next(
            (r for c, r in held if isinstance(c, AggregateClause)), held[0][1]
        )
        return ConditionObservation(
            code=definition.code,
            severity=definition.severity,
            value=evidence.value,
            threshold=evidence.threshold,
        )

    def _evaluate_clause(
        self,
        clause,
        aggregates: FieldAggregates,
        context: FieldContext,
        treatments: Sequence[Treatment],
        as_of: datetime,
    ) -> ClauseResult:
        if isinstance(clause, AggregateClause):
            return self._aggregate_clause(clause, aggregates)
        if isinstance(clause, ContextClause):
            value = getattr(context, clause.attribute)
            return ClauseResult(clause.operator.apply(value, clause.threshold), value, clause.threshold)
        if isinstance(clause, TreatmentClause):
            return self._treatment_clause(clause, treatments, as_of)
        raise TypeError(f"Unknown clause type: {type(clause).__name__}")

    @staticmethod
    def _aggregate_clause(clause: AggregateClause, aggregates: FieldAggregates) -> ClauseResult:
        agg = aggregates.lookup(clause.metric_type, clause.window)
        if agg is None:
            return _INDETERMINATE

        stat = clause.statistic
        if stat == Statistic.AVG:
            value = agg.avg
        elif stat == Statistic.MIN:
            value = agg.min
        elif stat == Statistic.MAX:
            value = agg.max
        elif agg.trend is None:
            return _INDETERMINATE
        elif stat == Statistic.TREND:
            value = agg.trend
        else:
            # Fitted change across the whole window, positive when falling
            value = -agg.trend * clause.window.days

        return ClauseResult(clause.operator.apply(value, clause.threshold), value, clause.threshold)

    @staticmethod
    def _treatment_clause(
        clause: TreatmentClause, treatments: Sequence[Treatment], as_of: datetime
    ) -> ClauseResult:
        since = as_of - timedelta(days=clause.within_days)
        recent = [
            t.applied_at for t in treatments
            if t.treatment_type == clause.treatment_type.lower() and since <= t.applied_at <= as_of
        ]
        if not recent:
            return ClauseResult(False)
        age_days = (as_of - max(recent)).total_seconds() / 86400.0
        return ClauseResult(True, round(age_days, 4), float(clause.within_days))
