"""Transient-versus-permanent failure classification for retry eligibility."""

from __future__ import annotations

import asyncio

from policy_engine.domain.errors import (
    OperationCancelled,
    OperationTimeout,
    TransientOperationError,
)
from policy_engine.domain.models import AttemptOutcome

_TRANSIENT_TYPES: tuple[type[BaseException], ...] = (
    TimeoutError,
    OperationTimeout,
    ConnectionError,
    TransientOperationError,
)

# Attribute names callers' exception types may set to opt into retry.
_TRANSIENT_MARKERS: tuple[str, ...] = ("retryable", "transient")


def is_transient(exc: BaseException) -> bool:
    """Network/timeout class failures are transient; validation and logic errors are not."""

    if isinstance(exc, (OperationCancelled, asyncio.CancelledError)):
        return False
    if isinstance(exc, _TRANSIENT_TYPES):
        return True
    return any(getattr(exc, marker, False) is True for marker in _TRANSIENT_MARKERS)


def attempt_outcome(exc: BaseException | None) -> AttemptOutcome:
    if exc is None:
        return AttemptOutcome.SUCCESS
    if isinstance(exc, (OperationCancelled, asyncio.CancelledError)):
        return AttemptOutcome.CANCELLED
    if isinstance(exc, (OperationTimeout, TimeoutError)):
        return AttemptOutcome.TIMEOUT
    if is_transient(exc):
        return AttemptOutcome.TRANSIENT_ERROR
    return AttemptOutcome.ERROR


__all__ = ["attempt_outcome", "is_transient"]
