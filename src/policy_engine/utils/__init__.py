"""Cancellation, per-key locking and secret masking helpers."""

from policy_engine.utils.concurrency import (
    CancellationToken,
    KeyedLocks,
    cancellable_sleep,
    run_with_timeout,
)
from policy_engine.utils.redaction import is_sensitive_key, redact, scrub_text

__all__ = [
    "CancellationToken",
    "KeyedLocks",
    "cancellable_sleep",
    "is_sensitive_key",
    "redact",
    "run_with_timeout",
    "scrub_text",
]
