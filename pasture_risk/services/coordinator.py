"""PipelineCoordinator — drives the periodic aggregate → classify → match → dispatch cycle.

Design notes:
    - One coordinator owns the schedule.  ``run_cycle`` can be awaited
      directly, and ``run_forever`` waits on an injected trigger, so tests
      never depend on wall-clock time.
    - The rule snapshot is loaded once at the start of a cycle and used
      unchanged by every field.  A snapshot that fails validation is
      replaced by the last valid one.
    - Fields run concurrently under a bounded worker pool.  Each field's
      stages are strictly sequential.
    - The cycle deadline (= interval) applies to everything before
      Dispatching.  Once a field starts dispatching it runs to completion,
      so the tier-set swap is never cut in half.
    - Any failure leaves the field's previous assessment and tier in place
      and is reported in the CycleSummary.  One field never affects another.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Iterable
from uuid import UUID

from pydantic import BaseModel, Field

from pasture_risk.core.aggregator import Aggregator
from pasture_risk.core.dispatcher import AlertDispatcher
from pasture_risk.core.field_graph import FieldGraph
from pasture_risk.core.risk_classifier import RiskClassifier
from pasture_risk.core.rule_matcher import RuleMatcher
from pasture_risk.domain.enums import ErrorKind, FieldStage, RiskTier
from pasture_risk.domain.errors import (
    CorruptRuleSnapshotError,
    DeadlineExceededError,
    PipelineError,
    StoreUnavailableError,
)
from pasture_risk.domain.rules import RuleSnapshot
from pasture_risk.foundation.clock import utc_now
from pasture_risk.foundation.identifiers import new_id
from pasture_risk.foundation.retry import with_backoff
from pasture_risk.graph.builder import build_field_graph
from pasture_risk.graph.nodes import make_aggregate_node, make_classify_node
from pasture_risk.graph.state import FieldPipelineState
from pasture_risk.services.triggers import CycleTrigger
from pasture_risk.store.protocols import CacheStore, MetadataReader, RuleSource

logger = logging.getLogger(__name__)


# ── Reporting models ─────────────────────────────────────────────────────────

class FieldOutcome(BaseModel):
    """Terminal state of one field in one cycle."""

    field_id: str
    state: FieldStage = Field(..., description="IDLE on success, FAILED otherwise")
    failed_stage: FieldStage | None = None
    error_kind: ErrorKind | None = None
    message: str | None = None
    tier: RiskTier | None = None
    alerts_published: int = 0
    recommendations: int = 0
    notes: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}

    @property
    def succeeded(self) -> bool:
        return self.state == FieldStage.IDLE


class CycleSummary(BaseModel):
    """Per-cycle report: terminal state and error kind for every field."""

    cycle_id: UUID
    started_at: datetime
    finished_at: datetime
    snapshot_version: str | None = None
    snapshot_fallback: bool = False
    error: str | None = None
    outcomes: dict[str, FieldOutcome] = Field(default_factory=dict)
    untiered: list[str] = Field(
        default_factory=list, description="Fields left in no tier set because the cache was down"
    )

    model_config = {"frozen": True}

    @property
    def succeeded(self) -> list[str]:
        return sorted(f for f, o in self.outcomes.items() if o.succeeded)

    @property
    def failed(self) -> list[str]:
        return sorted(f for f, o in self.outcomes.items() if not o.succeeded)

    @property
    def alerts_published(self) -> int:
        return sum(o.alerts_published for o in self.outcomes.values())

    def to_dict(self) -> dict:
        return {
            "cycle_id": str(self.cycle_id),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "snapshot_version": self.snapshot_version,
            "snapshot_fallback": self.snapshot_fallback,
            "error": self.error,
            "fields": len(self.outcomes),
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "alerts_published": self.alerts_published,
            "untiered": list(self.untiered),
            "failures": {
                f: {
                    "stage": o.failed_stage.value if o.failed_stage else None,
                    "kind": o.error_kind.value if o.error_kind else None,
                    "message": o.message,
                }
                for f, o in sorted(self.outcomes.items())
                if not o.succeeded
            },
        }


class _FieldRun:
    """Mutable stage tracker for one field; read when the deadline fires."""

    __slots__ = ("field_id", "stage")

    def __init__(self, field_id: str) -> None:
        self.field_id = field_id
        self.stage = FieldStage.IDLE

    def advance(self, stage: FieldStage) -> None:
        logger.debug("Field %s: %s -> %s", self.field_id, self.stage.value, stage.value)
        self.stage = stage


# Stage entered once the named graph node has completed
_STAGE_AFTER_NODE: dict[str, FieldStage] = {
    "aggregate": FieldStage.CLASSIFYING,
    "classify": FieldStage.MATCHING,
}


# ── Coordinator ──────────────────────────────────────────────────────────────

class PipelineCoordinator:
    """Owns the cycle schedule and the per-field state machine.

    Args:
        aggregator: Windowed aggregation over the time-series store.
        classifier: Condition catalog evaluator.
        dispatcher: Alert publishing and tier-set swap.
        metadata: Field context and treatment history.
        cache: Aggregate cache, current assessments, tier sets.
        rule_source: Advisory rule snapshots.
        interval: Scheduling interval; also the per-cycle deadline.
        worker_pool_size: Maximum fields processed concurrently.
        top_k: Recommendation cap per field.
        cooldown_days: Default treatment cooldowns for the matcher.
        cache_ttl_seconds: TTL for cached aggregates.
        retry_attempts / retry_base_delay / retry_max_delay: Store backoff.
        history_size: How many cycle summaries to retain.
    """

    def __init__(
        self,
        aggregator: Aggregator,
        classifier: RiskClassifier,
        dispatcher: AlertDispatcher,
        metadata: MetadataReader,
        cache: CacheStore,
        rule_source: RuleSource,
        *,
        interval: timedelta = timedelta(minutes=15),
        worker_pool_size: int = 8,
        top_k: int = 5,
        cooldown_days: dict[str, int] | None = None,
        cache_ttl_seconds: int = 3600,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 30.0,
        history_size: int = 50,
    ) -> None:
        if worker_pool_size < 1:
            raise ValueError("worker_pool_size must be at least 1")
        self._classifier = classifier
        self._dispatcher = dispatcher
        self._metadata = metadata
        self._cache = cache
        self._rule_source = rule_source
        self._interval = interval
        self._pool_size = worker_pool_size
        self._top_k = top_k
        self._cooldowns = dict(cooldown_days or {})
        self._retry_attempts = retry_attempts
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = min(retry_max_delay, interval.total_seconds())

        self._graph = build_field_graph(
            make_aggregate_node(
                aggregator,
                metadata,
                cache,
                classifier.required_metrics,
                cache_ttl_seconds=cache_ttl_seconds,
                retry_attempts=retry_attempts,
                retry_base_delay=retry_base_delay,
                retry_max_delay=self._retry_max_delay,
            ),
            make_classify_node(classifier),
        )

        self._cycle_lock = asyncio.Lock()
        self._last_valid: tuple[RuleSnapshot, RuleMatcher] | None = None
        self._consecutive_failures: dict[str, int] = {}
        self._history: deque[CycleSummary] = deque(maxlen=history_size)
        self._running = False
        self._trigger: CycleTrigger | None = None

    # ── Introspection ────────────────────────────────────────────────────

    @property
    def interval(self) -> timedelta:
        return self._interval

    @property
    def history(self) -> list[CycleSummary]:
        return list(self._history)

    @property
    def last_summary(self) -> CycleSummary | None:
        return self._history[-1] if self._history else None

    def consecutive_failures(self, field_id: str) -> int:
        return self._consecutive_failures.get(field_id, 0)

    @property
    def is_running(self) -> bool:
        return self._running

    # ── Scheduling ───────────────────────────────────────────────────────

    async def run_forever(self, trigger: CycleTrigger) -> None:
        """Run one cycle per trigger firing until ``stop`` is called."""
        if self._running:
            raise RuntimeError("Coordinator is already running")
        self._running = True
        self._trigger = trigger
        logger.info("Coordinator started (interval=%s)", self._interval)
        try:
            while self._running:
                if not await trigger.wait():
                    break
                if not self._running:
                    break
                await self.run_cycle()
        finally:
            self._running = False
            self._trigger = None
            logger.info("Coordinator stopped")

    def stop(self) -> None:
        self._running = False
        if self._trigger is not None:
            self._trigger.close()

    # ── Cycle ────────────────────────────────────────────────────────────

    async def run_cycle(
        self,
        field_ids: Iterable[str] | None = None,
        as_of: datetime | None = None,
    ) -> CycleSummary:
        """Run one full cycle across *field_ids* (default: every field)."""
        async with self._cycle_lock:
            return await self._run_cycle(field_ids, as_of)

    async def _run_cycle(self, field_ids: Iterable[str] | None, as_of: datetime | None) -> CycleSummary:
        cycle_id = new_id()
        started = utc_now()
        as_of = as_of or started
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._interval.total_seconds()

        snapshot, matcher, fallback = await self._load_snapshot()

        if field_ids is None:
            try:
                ids = await self._metadata.list_fields()
            except StoreUnavailableError as exc:
                logger.error("Cycle %s aborted: cannot list fields: %s", cycle_id, exc)
                return self._record(CycleSummary(
                    cycle_id=cycle_id, started_at=started, finished_at=utc_now(),
                    snapshot_version=snapshot.version if snapshot else None,
                    snapshot_fallback=fallback, error=str(exc),
                ))
        else:
            ids = list(field_ids)
        ids = list(dict.fromkeys(ids))

        await self._enroll(ids)

        rule_graph = FieldGraph(snapshot) if snapshot is not None else None
        slots = asyncio.Semaphore(self._pool_size)
        logger.info(
            "Cycle %s started: %d field(s), snapshot=%s%s",
            cycle_id, len(ids), snapshot.version if snapshot else "none",
            " (fallback)" if fallback else "",
        )

        results = await asyncio.gather(
            *(self._run_field(fid, as_of, deadline, slots, rule_graph, matcher) for fid in ids)
        )
        # A field that failed before ever being placed still needs a tier
        untiered = await self._enroll([o.field_id for o in results if not o.succeeded])

        summary = CycleSummary(
            cycle_id=cycle_id,
            started_at=started,
            finished_at=utc_now(),
            snapshot_version=snapshot.version if snapshot else None,
            snapshot_fallback=fallback,
            outcomes={o.field_id: o for o in results},
            untiered=untiered,
        )
        for outcome in results:
            if outcome.succeeded:
                self._consecutive_failures.pop(outcome.field_id, None)
            else:
                self._consecutive_failures[outcome.field_id] = (
                    self._consecutive_failures.get(outcome.field_id, 0) + 1
                )
        logger.info(
            "Cycle %s finished: %d ok, %d failed, %d alert(s)",
            cycle_id, len(summary.succeeded), len(summary.failed), summary.alerts_published,
        )
        return self._record(summary)

    def _record(self, summary: CycleSummary) -> CycleSummary:
        self._history.append(summary)
        return summary

    async def _load_snapshot(self) -> tuple[RuleSnapshot | None, RuleMatcher | None, bool]:
        """Load and validate this cycle's snapshot, falling back to the last valid one."""
        try:
            snapshot = await self._rule_source.load_rules()
            matcher = RuleMatcher(snapshot, top_k=self._top_k, cooldown_days=self._cooldowns)
        except (CorruptRuleSnapshotError, StoreUnavailableError) as exc:
            if self._last_valid is None:
                logger.error("Rule snapshot rejected and no previous snapshot: %s", exc)
                return None, None, True
            logger.error(
                "Rule snapshot rejected, using last valid snapshot %s: %s",
                self._last_valid[0].version, exc,
            )
            return self._last_valid[0], self._last_valid[1], True
        self._last_valid = (snapshot, matcher)
        return snapshot, matcher, False

    async def _enroll(self, field_ids: list[str]) -> list[str]:
        """Place never-assessed fields in the LOW tier set.

        Returns the fields that are still in no tier set after retrying.
        """
        untiered: list[str] = []
        for field_id in field_ids:
            try:
                if await self._cache.tier_of(field_id) is not None:
                    continue
                await with_backoff(
                    lambda: self._cache.swap_tier_membership(field_id, None, RiskTier.LOW),
                    attempts=self._retry_attempts,
                    base_delay=self._retry_base_delay,
                    max_delay=self._retry_max_delay,
                    description=f"tier enrollment for {field_id}",
                )
                logger.info("Enrolled field %s in tier %s", field_id, RiskTier.LOW.value)
            except StoreUnavailableError as exc:
                logger.warning("Could not enroll field %s: %s", field_id, exc)
                untiered.append(field_id)
        return untiered

    # ── Per-field state machine ──────────────────────────────────────────

    async def _run_field(
        self,
        field_id: str,
        as_of: datetime,
        deadline: float,
        slots: asyncio.Semaphore,
        rule_graph: FieldGraph | None,
        matcher: RuleMatcher | None,
    ) -> FieldOutcome:
        run = _FieldRun(field_id)
        run.advance(FieldStage.AGGREGATING)
        acquired = False
        try:
            async with asyncio.timeout_at(deadline):
                await slots.acquire()
                acquired = True
                state = await self._analyse(run, field_id, as_of, rule_graph, matcher)

            if state.get("error") is not None:
                return self._failed(run, state["error"], state.get("failed_stage"))

            run.advance(FieldStage.DISPATCHING)
            assessment = state["assessment"]
            recommendations = state.get("recommendations", [])
            alerts = await self._dispatcher.dispatch(assessment, recommendations)
        except TimeoutError:
            exc = DeadlineExceededError(
                f"Field {field_id} did not reach dispatching before the cycle deadline"
            )
            return self._failed(run, exc, run.stage)
        except PipelineError as exc:
            return self._failed(run, exc, run.stage)
        except Exception as exc:
            logger.exception("Unexpected failure for field %s in %s", field_id, run.stage.value)
            return self._failed(run, exc, run.stage)
        finally:
            if acquired:
                slots.release()

        run.advance(FieldStage.IDLE)
        return FieldOutcome(
            field_id=field_id,
            state=FieldStage.IDLE,
            tier=assessment.tier,
            alerts_published=len(alerts),
            recommendations=len(recommendations),
            notes=state.get("notes", []),
        )

    async def _analyse(
        self,
        run: _FieldRun,
        field_id: str,
        as_of: datetime,
        rule_graph: FieldGraph | None,
        matcher: RuleMatcher | None,
    ) -> FieldPipelineState:
        state: FieldPipelineState = {
            "field_id": field_id,
            "as_of": as_of,
            "rule_graph": rule_graph,
            "matcher": matcher,
            "notes": [],
            "error": None,
            "failed_stage": None,
        }
        async for update in self._graph.astream(state, stream_mode="updates"):
            for node, delta in update.items():
                if delta:
                    state.update(delta)
                if state.get("error") is None and node in _STAGE_AFTER_NODE:
                    run.advance(_STAGE_AFTER_NODE[node])
        return state

    def _failed(self, run: _FieldRun, exc: BaseException, stage: FieldStage | None) -> FieldOutcome:
        failed_stage = stage or run.stage
        kind = exc.kind if isinstance(exc, PipelineError) else ErrorKind.INTERNAL
        run.advance(FieldStage.FAILED)
        logger.warning(
            "Field %s failed(%s): %s: %s", run.field_id, failed_stage.value, kind.value, exc
        )
        return FieldOutcome(
            field_id=run.field_id,
            state=FieldStage.FAILED,
            failed_stage=failed_stage,
            error_kind=kind,
            message=str(exc),
        )
