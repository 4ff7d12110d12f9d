"""Resilience contract for outbound calls: timeout, bounded retry, idempotency."""

from policy_engine.resilience.backoff import backoff_schedule, compute_backoff_delay, nominal_delay
from policy_engine.resilience.classification import attempt_outcome, is_transient
from policy_engine.resilience.wrapper import (
    AttemptSink,
    ExecutionResult,
    ResilienceWrapper,
)

__all__ = [
    "AttemptSink",
    "ExecutionResult",
    "ResilienceWrapper",
    "attempt_outcome",
    "backoff_schedule",
    "compute_backoff_delay",
    "is_transient",
    "nominal_delay",
]
