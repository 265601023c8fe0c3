"""Tests for windowed aggregation, trend fitting and request coalescing."""

from __future__ import annotations

import asyncio
import random

import pytest

from pasture_risk.core.aggregator import Aggregator, ols_slope, summarise
from pasture_risk.domain.enums import MetricType, QualityFlag, Window
from pasture_risk.domain.errors import InsufficientDataError, StoreUnavailableError
from pasture_risk.store.memory import InMemoryTimeSeries

from tests.test_models import _BASE, _reading, _week

_MIN = {Window.D7: 1, Window.D14: 2, Window.D30: 3}


def _aggregator(readings=(), **kw) -> tuple[Aggregator, InMemoryTimeSeries]:
    ts = InMemoryTimeSeries(readings, latency=kw.pop("latency", 0.0))
    kw.setdefault("retry_base_delay", 0.0)
    return Aggregator(ts, min_readings=_MIN, **kw), ts


class _GatedReader:
    """Holds reads for one field until ``gate`` is set."""

    def __init__(self, readings, held_field: str) -> None:
        self._ts = InMemoryTimeSeries(readings)
        self._held = held_field
        self.gate = asyncio.Event()

    def read_range(self, field_id, metric_type, start, end, sensor_id=None):
        return self._read(field_id, metric_type, start, end)

    async def _read(self, field_id, metric_type, start, end):
        if field_id == self._held:
            await self.gate.wait()
        async for r in self._ts.read_range(field_id, metric_type, start, end):
            yield r


# ── Pure statistics ──────────────────────────────────────────────────────────

class TestSummarise:
    def test_basic_statistics(self) -> None:
        readings = [_reading(v, days_ago=d) for v, d in [(10.0, 3.5), (20.0, 2.5), (30.0, 1.5)]]
        agg = summarise(readings, field_id="F1", metric_type=MetricType.SOIL_MOISTURE,
                        window=Window.D7, as_of=_BASE)
        assert agg.min == 10.0
        assert agg.max == 30.0
        assert agg.avg == pytest.approx(20.0)
        assert agg.count == 3
        assert agg.computed_at == _BASE

    def test_input_order_does_not_change_result(self) -> None:
        readings = [
            _reading(10.0 + i * 0.37, days_ago=(i % 13) + 0.25, sensor_id=f"s-{i % 3}")
            for i in range(40)
        ]
        shuffled = list(readings)
        random.Random(7).shuffle(shuffled)
        kwargs = dict(field_id="F1", metric_type=MetricType.SOIL_MOISTURE,
                      window=Window.D14, as_of=_BASE)
        assert summarise(readings, **kwargs) == summarise(shuffled, **kwargs)

    def test_suspect_and_invalid_readings_excluded(self) -> None:
        readings = [
            _reading(10.0, days_ago=1.5),
            _reading(90.0, days_ago=1.0, quality=QualityFlag.SUSPECT),
            _reading(-5.0, days_ago=0.5, quality=QualityFlag.INVALID),
        ]
        agg = summarise(readings, field_id="F1", metric_type=MetricType.SOIL_MOISTURE,
                        window=Window.D7, as_of=_BASE)
        assert agg.count == 1
        assert agg.max == 10.0

    def test_window_is_open_at_start_and_closed_at_end(self) -> None:
        readings = [_reading(1.0, days_ago=7.0), _reading(2.0, days_ago=0.0)]
        agg = summarise(readings, field_id="F1", metric_type=MetricType.SOIL_MOISTURE,
                        window=Window.D7, as_of=_BASE)
        assert agg.count == 1
        assert agg.avg == 2.0

    def test_below_minimum_raises(self) -> None:
        with pytest.raises(InsufficientDataError) as exc_info:
            summarise([_reading(1.0)], field_id="F1", metric_type=MetricType.SOIL_MOISTURE,
                      window=Window.D30, as_of=_BASE, min_count=3)
        assert exc_info.value.count == 1
        assert exc_info.value.required == 3

    def test_no_valid_readings_raises_even_with_zero_minimum(self) -> None:
        with pytest.raises(InsufficientDataError):
            summarise([], field_id="F1", metric_type=MetricType.NDVI,
                      window=Window.D7, as_of=_BASE, min_count=0)


class TestTrend:
    def test_trend_undefined_below_three_points(self) -> None:
        readings = [_reading(10.0, days_ago=2.5), _reading(12.0, days_ago=1.5)]
        agg = summarise(readings, field_id="F1", metric_type=MetricType.SOIL_MOISTURE,
                        window=Window.D7, as_of=_BASE)
        assert agg.trend is None

    def test_trend_is_slope_per_day(self) -> None:
        readings = [_reading(v, days_ago=d) for v, d in [(10.0, 2.5), (12.0, 1.5), (14.0, 0.5)]]
        agg = summarise(readings, field_id="F1", metric_type=MetricType.SOIL_MOISTURE,
                        window=Window.D7, as_of=_BASE)
        assert agg.trend == pytest.approx(2.0)

    def test_falling_series_has_negative_trend(self) -> None:
        readings = [
            _reading(0.8 - 0.02 * (13 - d), days_ago=d + 0.5, metric=MetricType.NDVI)
            for d in range(14)
        ]
        agg = summarise(readings, field_id="F1", metric_type=MetricType.NDVI,
                        window=Window.D14, as_of=_BASE)
        assert agg.trend == pytest.approx(-0.02)

    def test_identical_timestamps_have_no_trend(self) -> None:
        assert ols_slope([(1.0, 2.0), (1.0, 3.0), (1.0, 4.0)]) is None


# ── Aggregator ───────────────────────────────────────────────────────────────

class TestAggregator:
    @pytest.mark.asyncio
    async def test_full_week_yields_all_windows_it_can(self) -> None:
        agg, _ = _aggregator(_week(18.0))
        result = await agg.compute_aggregates("F1", MetricType.SOIL_MOISTURE, _BASE)
        assert set(result.windows) == {Window.D7, Window.D14, Window.D30}
        assert result.missing == {}
        assert result.get(Window.D7).avg == pytest.approx(18.0)

    @pytest.mark.asyncio
    async def test_thin_history_only_drops_the_wide_window(self) -> None:
        agg, _ = _aggregator([_reading(10.0, days_ago=1.0), _reading(12.0, days_ago=2.0)])
        result = await agg.compute_aggregates("F1", MetricType.SOIL_MOISTURE, _BASE)
        assert set(result.windows) == {Window.D7, Window.D14}
        assert set(result.missing) == {Window.D30}
        assert "2 valid reading(s), 3 required" in result.missing[Window.D30]

    @pytest.mark.asyncio
    async def test_no_data_at_all_is_all_missing(self) -> None:
        agg, _ = _aggregator()
        result = await agg.compute_aggregates("F1", MetricType.NDVI, _BASE)
        assert result.windows == {}
        assert set(result.missing) == set(Window)

    @pytest.mark.asyncio
    async def test_other_fields_do_not_leak_in(self) -> None:
        agg, _ = _aggregator(_week(18.0) + _week(99.0, field_id="F2"))
        result = await agg.compute_aggregates("F1", MetricType.SOIL_MOISTURE, _BASE)
        assert result.get(Window.D7).max == 18.0

    @pytest.mark.asyncio
    async def test_transient_store_failure_is_retried(self) -> None:
        agg, ts = _aggregator(_week(18.0))
        ts.fail_next(1)
        result = await agg.compute_window("F1", MetricType.SOIL_MOISTURE, Window.D7, _BASE)
        assert result.count == 7
        assert ts.read_calls == 1

    @pytest.mark.asyncio
    async def test_persistent_store_failure_propagates(self) -> None:
        agg, ts = _aggregator(_week(18.0), retry_attempts=2)
        ts.fail_next(5, field_id="F1")
        with pytest.raises(StoreUnavailableError):
            await agg.compute_aggregates("F1", MetricType.SOIL_MOISTURE, _BASE)


class TestCoalescing:
    @pytest.mark.asyncio
    async def test_concurrent_identical_requests_share_one_read(self) -> None:
        agg, ts = _aggregator(_week(18.0), latency=0.01)
        results = await asyncio.gather(*(
            agg.compute_window("F1", MetricType.SOIL_MOISTURE, Window.D7, _BASE) for _ in range(5)
        ))
        assert ts.read_calls == 1
        assert all(r == results[0] for r in results)
        assert agg.coalescer.started == 1
        assert agg.coalescer.coalesced == 4
        assert agg.coalescer.inflight_count == 0

    @pytest.mark.asyncio
    async def test_sequential_requests_recompute(self) -> None:
        agg, ts = _aggregator(_week(18.0))
        await agg.compute_window("F1", MetricType.SOIL_MOISTURE, Window.D7, _BASE)
        await agg.compute_window("F1", MetricType.SOIL_MOISTURE, Window.D7, _BASE)
        assert ts.read_calls == 2

    @pytest.mark.asyncio
    async def test_different_keys_do_not_wait_on_each_other(self) -> None:
        reader = _GatedReader(_week(18.0) + _week(30.0, field_id="SLOW"), held_field="SLOW")
        agg = Aggregator(reader, min_readings=_MIN)
        slow = asyncio.ensure_future(
            agg.compute_window("SLOW", MetricType.SOIL_MOISTURE, Window.D7, _BASE)
        )
        await asyncio.sleep(0)
        fast = await asyncio.wait_for(
            agg.compute_window("F1", MetricType.SOIL_MOISTURE, Window.D7, _BASE), timeout=1.0
        )
        assert fast.avg == pytest.approx(18.0)
        assert not slow.done()
        reader.gate.set()
        assert (await slow).avg == pytest.approx(30.0)

    @pytest.mark.asyncio
    async def test_failure_reaches_every_waiter(self) -> None:
        agg, ts = _aggregator(_week(18.0), latency=0.01, retry_attempts=1)
        ts.fail_next(1)
        results = await asyncio.gather(
            *(agg.compute_window("F1", MetricType.SOIL_MOISTURE, Window.D7, _BASE) for _ in range(3)),
            return_exceptions=True,
        )
        assert all(isinstance(r, StoreUnavailableError) for r in results)
        assert agg.coalescer.inflight_count == 0
