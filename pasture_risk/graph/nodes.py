"""Stage nodes — one per analysis stage of the field pipeline.

Each node:
    - Receives the full FieldPipelineState
    - Returns a partial dict update
    - Converts PipelineError into ``error``/``failed_stage`` instead of
      raising, so the router can stop the graph cleanly

Aggregation is the only stage that performs I/O.  Classification and
matching are pure computation.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Sequence

from pasture_risk.core.aggregator import Aggregator
from pasture_risk.core.risk_classifier import RiskClassifier
from pasture_risk.domain.enums import FieldStage, MetricType
from pasture_risk.domain.errors import (
    CorruptRuleSnapshotError,
    InconsistentContextError,
    PipelineError,
)
from pasture_risk.domain.telemetry import FieldAggregates
from pasture_risk.foundation.retry import with_backoff
from pasture_risk.graph.state import FieldPipelineState
from pasture_risk.store.protocols import CacheStore, MetadataReader

logger = logging.getLogger(__name__)

Node = Callable[[FieldPipelineState], Awaitable[dict]]

def _failure(stage: FieldStage, field_id: str, exc: PipelineError) -> dict:
    logger.warning("Field %s failed in %s: %s", field_id, stage.value, exc)
    return {"error": exc, "failed_stage": stage}


# ── 1. aggregate ────────────────────────────────────────────────────────────

def make_aggregate_node(
    aggregator: Aggregator,
    metadata: MetadataReader,
    cache: CacheStore,
    metrics: Sequence[MetricType],
    cache_ttl_seconds: int = 3600,
    retry_attempts: int = 3,
    retry_base_delay: float = 0.5,
    retry_max_delay: float = 30.0,
) -> Node:
    """Read field metadata and compute every required metric's windows."""

    def _retrying(op, description: str):
        return with_backoff(
            op,
            attempts=retry_attempts,
            base_delay=retry_base_delay,
            max_delay=retry_max_delay,
            description=description,
        )

    async def aggregate(state: FieldPipelineState) -> dict:
        field_id = state["field_id"]
        as_of = state["as_of"]
        try:
            context = await _retrying(
                lambda: metadata.get_field_context(field_id), f"field context {field_id}"
            )
            treatments = list(await _retrying(
                lambda: metadata.get_treatment_history(field_id), f"treatments {field_id}"
            ))
            sets = {}
            for metric in metrics:
                sets[metric] = await aggregator.compute_aggregates(field_id, metric, as_of)
            await _retrying(
                lambda: cache.set_latest(field_id, list(sets.values()), cache_ttl_seconds),
                f"cache latest {field_id}",
            )
        except PipelineError as exc:
            return _failure(FieldStage.AGGREGATING, field_id, exc)

        return {
            "context": context,
            "treatments": treatments,
            "aggregates": FieldAggregates(field_id=field_id, as_of=as_of, metrics=sets),
        }

    return aggregate


# ── 2. classify ─────────────────────────────────────────────────────────────

def make_classify_node(classifier: RiskClassifier) -> Node:
    async def classify(state: FieldPipelineState) -> dict:
        try:
            assessment = classifier.classify(
                state["aggregates"],
                state["context"],
                state.get("treatments", []),
                computed_at=state["as_of"],
            )
        except PipelineError as exc:
            return _failure(FieldStage.CLASSIFYING, state["field_id"], exc)
        return {"assessment": assessment}

    return classify


# ── 3. match ────────────────────────────────────────────────────────────────

async def match(state: FieldPipelineState) -> dict:
    """Link the field into the rule graph and rank matching rules.

    An inconsistent context skips matching for this field only; the
    assessment still goes on to dispatch with no recommendations.
    """
    field_id = state["field_id"]
    matcher = state.get("matcher")
    rule_graph = state.get("rule_graph")
    if matcher is None or rule_graph is None:
        return _failure(
            FieldStage.MATCHING,
            field_id,
            CorruptRuleSnapshotError("No valid rule snapshot available for matching"),
        )

    notes = list(state.get("notes", []))
    try:
        rule_graph.link_field(state["context"], state.get("treatments", []))
        recommendations = matcher.match(state["assessment"], rule_graph, as_of=state["as_of"])
    except InconsistentContextError as exc:
        logger.warning("Skipping matching for %s: %s", field_id, exc)
        notes.append(f"{exc.kind.value}: {exc}")
        return {"recommendations": [], "notes": notes}
    except PipelineError as exc:
        return _failure(FieldStage.MATCHING, field_id, exc)

    return {"recommendations": recommendations, "notes": notes}


# ── Routing ─────────────────────────────────────────────────────────────────

def route_after_stage(state: FieldPipelineState) -> str:
    """Stop the graph once a stage has recorded a failure."""
    return "failed" if state.get("error") is not None else "continue"
