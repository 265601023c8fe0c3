"""FieldPipelineState — the state object the stage graph reads and writes.

One state instance flows through the analysis stages for one field in one
cycle.  Every node receives the full state and returns a partial update.
Nodes never touch the tier sets or the alert stream; that is the
dispatcher's job, after the graph has finished.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, TypedDict

from pasture_risk.core.field_graph import FieldGraph
from pasture_risk.core.rule_matcher import RuleMatcher
from pasture_risk.domain.assessment import RiskAssessment
from pasture_risk.domain.enums import FieldStage
from pasture_risk.domain.field import FieldContext, Treatment
from pasture_risk.domain.rules import Recommendation
from pasture_risk.domain.telemetry import FieldAggregates


class FieldPipelineState(TypedDict, total=False):
    """LangGraph state for one field's analysis stages.

    Fields:
        field_id: The field being processed.
        as_of: Cycle instant; window ends and assessment time.
        rule_graph: Per-snapshot adjacency index shared by the cycle.
        matcher: RuleMatcher for the cycle's snapshot (None if no valid snapshot).
        context: Field metadata read during aggregation.
        treatments: Treatment history read during aggregation.
        aggregates: Every metric's AggregateSet for this field.
        assessment: Classifier output.
        recommendations: Ranked matcher output.
        notes: Non-fatal observations (e.g. matching skipped).
        error: The PipelineError that stopped the field, if any.
        failed_stage: Stage in which ``error`` was raised.
    """

    field_id: str
    as_of: datetime
    rule_graph: FieldGraph | None
    matcher: RuleMatcher | None

    context: FieldContext
    treatments: list[Treatment]
    aggregates: FieldAggregates
    assessment: RiskAssessment
    recommendations: list[Recommendation]
    notes: list[str]

    error: Any
    failed_stage: FieldStage | None
