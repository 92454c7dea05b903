"""Custom exception classes for the keyword scheduler."""

from typing import Any


class KeywordSchedulerError(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


# Fatal cycle errors (returned to the caller of run_cycle before any dispatch)
class CycleAbortedError(KeywordSchedulerError):
    """Base class for errors that abort a cycle before dispatch."""

    pass


class UnresolvableLocality(CycleAbortedError):
    """No canonical coverage key could be computed for a locality hint."""

    def __init__(self, hint_description: str) -> None:
        super().__init__(
            f"Unable to resolve locality: {hint_description}",
            details={"hint": hint_description},
        )


class CoverageNotExecutable(CycleAbortedError):
    """Resolved coverage area is identity-only and has no execution targets."""

    def __init__(self, coverage_key: str) -> None:
        self.coverage_key = coverage_key
        super().__init__(
            f"Coverage area is identity-only: {coverage_key}",
            details={"coverage_key": coverage_key},
        )


class ConcurrentCycleConflict(CycleAbortedError):
    """Another cycle already holds the lease for this coverage key."""

    def __init__(self, coverage_key: str) -> None:
        self.coverage_key = coverage_key
        super().__init__(
            f"Cycle already running for coverage key: {coverage_key}",
            details={"coverage_key": coverage_key},
        )


class CycleCancelled(CycleAbortedError):
    """Cancellation was observed before the cycle dispatched its keywords."""

    def __init__(self, cycle_id: str, state: str) -> None:
        self.cycle_id = cycle_id
        self.state = state
        super().__init__(
            f"Cycle {cycle_id} cancelled during {state}",
            details={"cycle_id": cycle_id, "state": state},
        )


# Non-fatal errors (absorbed locally, surfaced through the cycle summary)
class DegradedSignal(KeywordSchedulerError):
    """A signal read failed or timed out and was replaced with defaults."""

    def __init__(self, source: str, reason: str) -> None:
        self.source = source
        self.reason = reason
        super().__init__(
            f"Degraded signal from {source}: {reason}",
            details={"source": source, "reason": reason},
        )


class AllocationUnderfill(KeywordSchedulerError):
    """A slice could not fill its sub-budget because its pool ran out."""

    def __init__(self, slice_name: str, requested: int, filled: int) -> None:
        self.slice_name = slice_name
        self.requested = requested
        self.filled = filled
        super().__init__(
            f"Slice {slice_name} underfilled: {filled}/{requested}",
            details={"slice": slice_name, "requested": requested, "filled": filled},
        )


class ExecutionReportMismatch(KeywordSchedulerError):
    """An outcome report references a term missing from the latest cycle."""

    def __init__(self, normalized_term: str, coverage_key: str) -> None:
        super().__init__(
            f"Outcome reported for unselected term {normalized_term!r} in {coverage_key}",
            details={"normalized_term": normalized_term, "coverage_key": coverage_key},
        )


# Validation Errors
class ValidationError(KeywordSchedulerError):
    """Data validation failed."""

    pass
