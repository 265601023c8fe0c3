"""Tests for the RiskClassifier and the condition catalog."""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from pasture_risk.core.risk_classifier import RiskClassifier
from pasture_risk.domain.conditions import (
    AggregateClause,
    ConditionDefinition,
    Operator,
    default_condition_catalog,
    load_condition_catalog,
)
from pasture_risk.domain.enums import ConditionCode, MetricType, RiskTier, Window
from pasture_risk.domain.telemetry import FieldAggregates

from tests.test_models import _BASE, _aggregate, _context, _field_aggregates, _treatment


@pytest.fixture
def classifier() -> RiskClassifier:
    return RiskClassifier()


class TestCatalog:
    def test_default_catalog_codes_unique(self) -> None:
        codes = [c.code for c in default_condition_catalog()]
        assert len(codes) == len(set(codes))

    def test_required_metrics_cover_aggregate_clauses(self, classifier: RiskClassifier) -> None:
        assert classifier.required_metrics == [
            MetricType.SOIL_MOISTURE,
            MetricType.NDVI,
            MetricType.SOIL_PH,
            MetricType.UTILIZATION,
            MetricType.AIR_TEMPERATURE,
            MetricType.SOIL_NITROGEN,
        ]

    def test_duplicate_codes_rejected(self) -> None:
        catalog = default_condition_catalog()
        with pytest.raises(ValueError):
            RiskClassifier(catalog + catalog[:1])

    def test_catalog_loads_from_json(self, tmp_path) -> None:
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps([
            {
                "code": "moisture_low",
                "severity": "medium",
                "clauses": [
                    {"kind": "aggregate", "metric_type": "soil_moisture", "window": "7d",
                     "operator": "lt", "threshold": 20.0},
                ],
            },
            {
                "code": "recent_grazing",
                "severity": "low",
                "clauses": [{"kind": "treatment", "treatment_type": "grazing", "within_days": 5}],
            },
        ]))
        catalog = load_condition_catalog(path)
        assert [c.code for c in catalog] == [ConditionCode.MOISTURE_LOW, ConditionCode.RECENT_GRAZING]
        assert isinstance(catalog[0].clauses[0], AggregateClause)
        assert catalog[0].severity == RiskTier.MEDIUM

    def test_condition_needs_a_clause(self) -> None:
        with pytest.raises(ValidationError):
            ConditionDefinition(code="moisture_low", severity="high", clauses=())


class TestClassify:
    def test_nothing_triggered_is_low(self, classifier: RiskClassifier) -> None:
        aggs = _field_aggregates(_aggregate(MetricType.SOIL_MOISTURE, Window.D7, 25.0))
        result = classifier.classify(aggs, _context())
        assert result.tier == RiskTier.LOW
        assert result.triggered_conditions == frozenset()
        assert result.computed_at == _BASE

    def test_dry_soil_triggers_moisture_low(self, classifier: RiskClassifier) -> None:
        aggs = _field_aggregates(_aggregate(MetricType.SOIL_MOISTURE, Window.D7, 12.0))
        result = classifier.classify(aggs, _context())
        assert result.triggered_conditions == frozenset({ConditionCode.MOISTURE_LOW})
        assert result.tier == RiskTier.HIGH
        obs = result.observations[ConditionCode.MOISTURE_LOW]
        assert obs.value == 12.0
        assert obs.threshold == 15.0

    def test_one_wet_day_keeps_moisture_low_off(self, classifier: RiskClassifier) -> None:
        aggs = _field_aggregates(_aggregate(MetricType.SOIL_MOISTURE, Window.D7, 12.0, lo=9.0, hi=18.0))
        assert classifier.classify(aggs, _context()).triggered_conditions == frozenset()

    def test_threshold_is_strict(self, classifier: RiskClassifier) -> None:
        aggs = _field_aggregates(_aggregate(MetricType.SOIL_MOISTURE, Window.D7, 15.0))
        assert classifier.classify(aggs, _context()).triggered_conditions == frozenset()

    def test_tier_is_highest_severity(self, classifier: RiskClassifier) -> None:
        aggs = _field_aggregates(
            _aggregate(MetricType.SOIL_PH, Window.D30, 5.5),
            _aggregate(MetricType.SOIL_NITROGEN, Window.D14, 10.0),
        )
        result = classifier.classify(aggs, _context())
        assert result.triggered_conditions == {ConditionCode.SOIL_ACIDIC, ConditionCode.NITROGEN_LOW}
        assert result.tier == RiskTier.MEDIUM

    def test_missing_window_skips_only_its_condition(self, classifier: RiskClassifier) -> None:
        # 30-day pH absent; 7-day moisture still evaluated
        aggs = _field_aggregates(
            _aggregate(MetricType.SOIL_MOISTURE, Window.D7, 10.0),
            _aggregate(MetricType.SOIL_PH, Window.D7, 5.0),
        )
        result = classifier.classify(aggs, _context())
        assert result.triggered_conditions == frozenset({ConditionCode.MOISTURE_LOW})

    def test_empty_aggregates_classify_low(self, classifier: RiskClassifier) -> None:
        aggs = FieldAggregates(field_id="F1", as_of=_BASE)
        assert classifier.classify(aggs, _context()).tier == RiskTier.LOW

    def test_ndvi_decline_uses_window_trend(self, classifier: RiskClassifier) -> None:
        aggs = _field_aggregates(_aggregate(MetricType.NDVI, Window.D14, 0.6, trend=-0.02))
        result = classifier.classify(aggs, _context())
        assert ConditionCode.NDVI_DECLINE in result.triggered_conditions
        assert result.observations[ConditionCode.NDVI_DECLINE].value == pytest.approx(0.28)

    def test_gentle_ndvi_decline_ignored(self, classifier: RiskClassifier) -> None:
        aggs = _field_aggregates(_aggregate(MetricType.NDVI, Window.D14, 0.6, trend=-0.005))
        assert classifier.classify(aggs, _context()).triggered_conditions == frozenset()

    def test_undefined_trend_skips_decline(self, classifier: RiskClassifier) -> None:
        aggs = _field_aggregates(_aggregate(MetricType.NDVI, Window.D14, 0.6, trend=None, count=2))
        assert classifier.classify(aggs, _context()).triggered_conditions == frozenset()

    def test_overgrazing_needs_slope_and_utilization(self, classifier: RiskClassifier) -> None:
        aggs = _field_aggregates(_aggregate(MetricType.UTILIZATION, Window.D7, 65.0))
        flat = classifier.classify(aggs, _context(slope_percent=4.0))
        steep = classifier.classify(aggs, _context(slope_percent=14.0))
        assert ConditionCode.OVERGRAZING_SLOPE not in flat.triggered_conditions
        assert ConditionCode.OVERGRAZING_SLOPE in steep.triggered_conditions
        assert steep.tier == RiskTier.HIGH
        assert steep.observations[ConditionCode.OVERGRAZING_SLOPE].value == 65.0

    def test_heat_stress_uses_window_max(self, classifier: RiskClassifier) -> None:
        aggs = _field_aggregates(
            _aggregate(MetricType.AIR_TEMPERATURE, Window.D7, 28.0, lo=18.0, hi=37.5)
        )
        assert ConditionCode.HEAT_STRESS in classifier.classify(aggs, _context()).triggered_conditions

    def test_recent_irrigation_from_treatment_history(self, classifier: RiskClassifier) -> None:
        aggs = FieldAggregates(field_id="F1", as_of=_BASE)
        recent = classifier.classify(aggs, _context(), [_treatment("irrigation", 2)])
        stale = classifier.classify(aggs, _context(), [_treatment("irrigation", 20)])
        assert recent.triggered_conditions == frozenset({ConditionCode.RECENT_IRRIGATION})
        assert recent.observations[ConditionCode.RECENT_IRRIGATION].value == pytest.approx(2.0)
        assert stale.triggered_conditions == frozenset()

    def test_future_treatments_ignored(self, classifier: RiskClassifier) -> None:
        aggs = FieldAggregates(field_id="F1", as_of=_BASE)
        result = classifier.classify(aggs, _context(), [_treatment("grazing", -3)])
        assert result.triggered_conditions == frozenset()

    def test_custom_catalog(self) -> None:
        catalog = [
            ConditionDefinition(
                code=ConditionCode.MOISTURE_LOW,
                severity=RiskTier.MEDIUM,
                clauses=(AggregateClause(metric_type=MetricType.SOIL_MOISTURE, window=Window.D14,
                                         operator=Operator.LE, threshold=20.0),),
            ),
        ]
        aggs = _field_aggregates(_aggregate(MetricType.SOIL_MOISTURE, Window.D14, 20.0))
        result = RiskClassifier(catalog).classify(aggs, _context())
        assert result.tier == RiskTier.MEDIUM

    def test_inputs_not_mutated(self, classifier: RiskClassifier) -> None:
        aggs = _field_aggregates(_aggregate(MetricType.SOIL_MOISTURE, Window.D7, 10.0))
        before = aggs.model_dump()
        classifier.classify(aggs, _context())
        assert aggs.model_dump() == before
