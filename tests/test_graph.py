"""Tests for the LangGraph field pipeline: node wiring and failure routing."""

from __future__ import annotations

import pytest

from pasture_risk.core.aggregator import Aggregator
from pasture_risk.core.field_graph import FieldGraph
from pasture_risk.core.risk_classifier import RiskClassifier
from pasture_risk.core.rule_matcher import RuleMatcher
from pasture_risk.domain.enums import ConditionCode, ErrorKind, FieldStage, MetricType, RiskTier
from pasture_risk.domain.errors import StoreUnavailableError
from pasture_risk.domain.rules import RuleSnapshot
from pasture_risk.graph.builder import build_field_graph
from pasture_risk.graph.nodes import make_aggregate_node, make_classify_node, route_after_stage
from pasture_risk.graph.state import FieldPipelineState
from pasture_risk.store.memory import InMemoryCache, InMemoryMetadata, InMemoryTimeSeries
from pasture_risk.store.rule_source import DEFAULT_SPECIES, default_rules

from tests.test_models import _BASE, _context, _week


# ── Helpers ──────────────────────────────────────────────────────────────────

def _graph(readings=(), contexts=None, retry_attempts: int = 1):
    ts = InMemoryTimeSeries(readings)
    meta = InMemoryMetadata(contexts if contexts is not None else [_context()])
    cache = InMemoryCache()
    classifier = RiskClassifier()
    app = build_field_graph(
        make_aggregate_node(
            Aggregator(ts, retry_attempts=retry_attempts, retry_base_delay=0.0),
            meta,
            cache,
            classifier.required_metrics,
            retry_attempts=retry_attempts,
            retry_base_delay=0.0,
        ),
        make_classify_node(classifier),
    )
    return app, ts, meta, cache


def _state(field_id: str = "F1", with_rules: bool = True) -> FieldPipelineState:
    snapshot = RuleSnapshot(version="v1", rules=tuple(default_rules()), species_catalog=DEFAULT_SPECIES)
    return {
        "field_id": field_id,
        "as_of": _BASE,
        "rule_graph": FieldGraph(snapshot) if with_rules else None,
        "matcher": RuleMatcher(snapshot) if with_rules else None,
        "notes": [],
        "error": None,
        "failed_stage": None,
    }


# ── Routing ──────────────────────────────────────────────────────────────────

class TestRouting:
    def test_route_continue_without_error(self) -> None:
        assert route_after_stage({"error": None}) == "continue"

    def test_route_failed_with_error(self) -> None:
        assert route_after_stage({"error": StoreUnavailableError("x")}) == "failed"


# ── Full graph ───────────────────────────────────────────────────────────────

class TestFieldGraphRun:
    @pytest.mark.asyncio
    async def test_dry_field_flows_through_every_stage(self) -> None:
        app, _, _, cache = _graph(_week(12.0))
        result = await app.ainvoke(_state())
        assert result["error"] is None
        assert result["assessment"].tier == RiskTier.HIGH
        assert result["assessment"].triggered_conditions == {ConditionCode.MOISTURE_LOW}
        assert [r.rule_id for r in result["recommendations"]] == ["irrigate-dry-pasture"]
        assert await cache.get_latest("F1") is not None

    @pytest.mark.asyncio
    async def test_aggregates_cover_required_metrics(self) -> None:
        app, _, _, _ = _graph(_week(20.0))
        result = await app.ainvoke(_state())
        assert set(result["aggregates"].metrics) == set(MetricType)

    @pytest.mark.asyncio
    async def test_store_failure_stops_at_aggregating(self) -> None:
        app, ts, _, _ = _graph(_week(12.0))
        ts.fail_next(1, field_id="F1")
        result = await app.ainvoke(_state())
        assert result["failed_stage"] == FieldStage.AGGREGATING
        assert result["error"].kind == ErrorKind.STORE_UNAVAILABLE
        assert "assessment" not in result

    @pytest.mark.asyncio
    async def test_metadata_failure_stops_at_aggregating(self) -> None:
        app, _, meta, _ = _graph(_week(12.0))
        meta.fail_next(1, field_id="F1")
        result = await app.ainvoke(_state())
        assert result["failed_stage"] == FieldStage.AGGREGATING

    @pytest.mark.asyncio
    async def test_no_rule_snapshot_fails_matching(self) -> None:
        app, _, _, _ = _graph(_week(12.0))
        result = await app.ainvoke(_state(with_rules=False))
        assert result["failed_stage"] == FieldStage.MATCHING
        assert result["error"].kind == ErrorKind.CORRUPT_RULE_SNAPSHOT
        assert result["assessment"].tier == RiskTier.HIGH

    @pytest.mark.asyncio
    async def test_unknown_species_skips_matching_only(self) -> None:
        app, _, _, _ = _graph(_week(12.0), contexts=[_context(species=frozenset({"kikuyu"}))])
        result = await app.ainvoke(_state())
        assert result["error"] is None
        assert result["recommendations"] == []
        assert result["notes"] and result["notes"][0].startswith("inconsistent_context")
        assert result["assessment"].tier == RiskTier.HIGH

    @pytest.mark.asyncio
    async def test_stream_reports_nodes_in_order(self) -> None:
        app, _, _, _ = _graph(_week(20.0))
        nodes = []
        async for update in app.astream(_state(), stream_mode="updates"):
            nodes.extend(update)
        assert nodes == ["aggregate", "classify", "match"]
