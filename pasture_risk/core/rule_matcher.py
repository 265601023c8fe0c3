"""RuleMatcher — selects and ranks advisory rules for a classified field.

A rule matches when:
    1. its trigger predicate holds over the assessment's triggered conditions,
    2. its applicable species is empty or overlaps the field's species, and
    3. the treatment it recommends was not applied inside its cooldown.

Ranking: priority ascending (1 = highest), then rule_id lexicographic.
Output is capped at top-K using the same order.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from pasture_risk.core.field_graph import FieldGraph
from pasture_risk.core.predicate import Predicate, compile_predicate
from pasture_risk.domain.assessment import RiskAssessment
from pasture_risk.domain.errors import CorruptRuleSnapshotError, InconsistentContextError
from pasture_risk.domain.rules import AdvisoryRule, Recommendation, RuleSnapshot
from pasture_risk.foundation.clock import utc_now

logger = logging.getLogger(__name__)


def validate_snapshot(snapshot: RuleSnapshot) -> dict[str, Predicate]:
    """Structurally validate *snapshot* and compile its predicates.

    Raises:
        CorruptRuleSnapshotError: Duplicate rule_id, priority below 1, or an
            unparsable predicate.
    """
    compiled: dict[str, Predicate] = {}
    for rule in snapshot.rules:
        if rule.rule_id in compiled:
            raise CorruptRuleSnapshotError(
                f"Snapshot {snapshot.version}: duplicate rule_id {rule.rule_id!r}"
            )
        if rule.priority < 1:
            raise CorruptRuleSnapshotError(
                f"Snapshot {snapshot.version}: rule {rule.rule_id!r} has priority {rule.priority}"
            )
        compiled[rule.rule_id] = compile_predicate(rule.trigger_predicate)
    return compiled


def rank_key(rule: AdvisoryRule) -> tuple[int, str]:
    return (rule.priority, rule.rule_id)


class RuleMatcher:
    """Matches one consistent rule snapshot against classified fields.

    Args:
        snapshot: The rule snapshot for this cycle (validated here).
        top_k: Maximum recommendations per field.
        cooldown_days: Default cooldown per treatment type.
    """

    def __init__(
        self,
        snapshot: RuleSnapshot,
        top_k: int = 5,
        cooldown_days: dict[str, int] | None = None,
    ) -> None:
        if top_k < 1:
            raise ValueError("top_k must be at least 1")
        self._snapshot = snapshot
        self._predicates = validate_snapshot(snapshot)
        self._rules = {r.rule_id: r for r in snapshot.rules}
        self._top_k = top_k
        self._cooldowns = {k.lower(): v for k, v in (cooldown_days or {}).items()}

    @property
    def snapshot(self) -> RuleSnapshot:
        return self._snapshot

    # ── Public API ───────────────────────────────────────────────────────

    def match(
        self,
        assessment: RiskAssessment,
        graph: FieldGraph,
        as_of: datetime | None = None,
    ) -> list[Recommendation]:
        """Return the ranked recommendations for *assessment*'s field.

        Raises:
            InconsistentContextError: The field has no context in *graph*.
        """
        field_id = assessment.field_id
        if not graph.is_linked(field_id):
            raise InconsistentContextError(f"Field {field_id} has no context in the rule graph")
        now = as_of or assessment.computed_at or utc_now()

        matched: list[AdvisoryRule] = []
        for rule_id in graph.candidate_rules(field_id):
            rule = self._rules.get(rule_id)
            if rule is None:
                continue
            if not self._predicates[rule_id].evaluate(assessment.triggered_conditions):
                continue
            if self._in_cooldown(rule, field_id, graph, now):
                logger.debug("Suppressed %s for %s: treatment cooldown", rule_id, field_id)
                continue
            matched.append(rule)

        matched.sort(key=rank_key)
        if len(matched) > self._top_k:
            logger.debug(
                "Capping %s recommendations for %s at %d", len(matched), field_id, self._top_k
            )
        return [
            Recommendation(
                field_id=field_id,
                rule_id=rule.rule_id,
                rank=rank,
                generated_at=now,
                action=rule.action,
            )
            for rank, rule in enumerate(matched[: self._top_k], start=1)
        ]

    # ── Internals ────────────────────────────────────────────────────────

    def cooldown_for(self, rule: AdvisoryRule) -> timedelta | None:
        if not rule.treatment_type:
            return None
        days = rule.cooldown_days
        if days is None:
            days = self._cooldowns.get(rule.treatment_type)
        return timedelta(days=days) if days is not None else None

    def _in_cooldown(
        self, rule: AdvisoryRule, field_id: str, graph: FieldGraph, now: datetime
    ) -> bool:
        cooldown = self.cooldown_for(rule)
        if cooldown is None:
            return False
        last = graph.last_treatment(field_id, rule.treatment_type)
        return last is not None and now - last < cooldown
