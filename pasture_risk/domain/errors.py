"""Error taxonomy for the risk & advisory pipeline.

Every error carries an ErrorKind so the coordinator can report it in the
cycle summary without inspecting exception classes.
"""

from __future__ import annotations

from pasture_risk.domain.enums import ErrorKind


class PipelineError(Exception):
    """Base exception for all pipeline-related errors."""

    kind: ErrorKind = ErrorKind.INTERNAL


class InsufficientDataError(PipelineError):
    """Too few valid readings in a window to aggregate it."""

    kind = ErrorKind.INSUFFICIENT_DATA

    def __init__(self, field_id: str, metric: str, window: str, count: int, required: int) -> None:
        self.field_id = field_id
        self.metric = metric
        self.window = window
        self.count = count
        self.required = required
        super().__init__(
            f"{field_id}/{metric}/{window}: {count} valid reading(s), {required} required"
        )


class StoreUnavailableError(PipelineError):
    """A backing store could not be reached.  Retried next cycle."""

    kind = ErrorKind.STORE_UNAVAILABLE


class InconsistentContextError(PipelineError):
    """Field metadata references something the rule snapshot does not know."""

    kind = ErrorKind.INCONSISTENT_CONTEXT


class DeadlineExceededError(PipelineError):
    """The field pipeline did not reach dispatching before the cycle deadline."""

    kind = ErrorKind.DEADLINE_EXCEEDED


class CorruptRuleSnapshotError(PipelineError):
    """A rule snapshot failed structural validation."""

    kind = ErrorKind.CORRUPT_RULE_SNAPSHOT


class PredicateSyntaxError(CorruptRuleSnapshotError):
    """A rule's trigger predicate could not be parsed."""

    def __init__(self, expression: str, reason: str) -> None:
        self.expression = expression
        self.reason = reason
        super().__init__(f"Invalid predicate {expression!r}: {reason}")
