"""pasture-risk — risk classification and advisory pipeline.

This is the process entry point.  It wires the Aggregator, RiskClassifier,
AlertDispatcher and PipelineCoordinator to store bindings and runs one
cycle per scheduling interval.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from pasture_risk.config import Settings, settings
from pasture_risk.core.aggregator import Aggregator
from pasture_risk.core.dispatcher import AlertDispatcher
from pasture_risk.core.risk_classifier import RiskClassifier
from pasture_risk.domain.conditions import default_condition_catalog, load_condition_catalog
from pasture_risk.services.alert_stream import AlertStream
from pasture_risk.services.coordinator import PipelineCoordinator
from pasture_risk.services.triggers import IntervalTrigger
from pasture_risk.store.memory import InMemoryCache, InMemoryMetadata, InMemoryTimeSeries
from pasture_risk.store.protocols import (
    AlertSink,
    CacheStore,
    MetadataReader,
    RuleSource,
    TimeSeriesReader,
)
from pasture_risk.store.rule_source import JsonRuleSource, StaticRuleSource

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )


def build_coordinator(
    reader: TimeSeriesReader,
    metadata: MetadataReader,
    cache: CacheStore,
    sink: AlertSink,
    rule_source: RuleSource | None = None,
    config: Settings | None = None,
) -> PipelineCoordinator:
    """Wire the pipeline components from *config* (default: process settings)."""
    cfg = config or settings

    catalog = (
        load_condition_catalog(cfg.condition_catalog_path)
        if cfg.condition_catalog_path
        else default_condition_catalog()
    )
    if rule_source is None:
        rule_source = JsonRuleSource(cfg.rules_path) if cfg.rules_path else StaticRuleSource()

    interval = timedelta(minutes=cfg.cycle_interval_minutes)
    retry_max_delay = min(cfg.store_retry_max_seconds, interval.total_seconds())

    aggregator = Aggregator(
        reader,
        min_readings=cfg.min_readings,
        retry_attempts=cfg.store_retry_attempts,
        retry_base_delay=cfg.store_retry_base_seconds,
        retry_max_delay=retry_max_delay,
    )
    return PipelineCoordinator(
        aggregator,
        RiskClassifier(catalog),
        AlertDispatcher(sink, cache),
        metadata,
        cache,
        rule_source,
        interval=interval,
        worker_pool_size=cfg.worker_pool_size,
        top_k=cfg.top_k_recommendations,
        cooldown_days=cfg.treatment_cooldown_days,
        cache_ttl_seconds=cfg.aggregate_cache_ttl_seconds,
        retry_attempts=cfg.store_retry_attempts,
        retry_base_delay=cfg.store_retry_base_seconds,
        retry_max_delay=retry_max_delay,
    )


async def run() -> None:
    configure_logging(settings.log_level)
    coordinator = build_coordinator(
        InMemoryTimeSeries(),
        InMemoryMetadata(),
        InMemoryCache(),
        AlertStream(),
    )
    trigger = IntervalTrigger(coordinator.interval.total_seconds())
    logger.info("%s starting", settings.app_name)
    try:
        await coordinator.run_forever(trigger)
    finally:
        coordinator.stop()


def main() -> None:
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
