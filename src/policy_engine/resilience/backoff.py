"""Bounded exponential backoff with symmetric jitter."""

from __future__ import annotations

import random as random_module
from collections.abc import Callable
from typing import TypeAlias

from policy_engine.domain.models import ResiliencePolicy

UniformFn: TypeAlias = Callable[[float, float], float]


def nominal_delay(attempt: int, policy: ResiliencePolicy) -> float:
    """Return the un-jittered delay before ``attempt`` (1-based); attempt 1 is immediate."""

    if isinstance(attempt, bool) or not isinstance(attempt, int) or attempt <= 0:
        raise ValueError("attempt must be a positive integer")
    if attempt == 1:
        return 0.0
    exponent = attempt - 2
    # Past this point the doubled delay always exceeds any finite cap.
    if exponent >= 64:
        return policy.max_delay
    return min(policy.max_delay, policy.base_delay * (2**exponent))


def compute_backoff_delay(
    attempt: int,
    policy: ResiliencePolicy,
    *,
    uniform: UniformFn = random_module.uniform,
) -> float:
    """Return ``min(max_delay, base_delay * 2^(attempt-2)) * (1 + jitter)``.

    ``jitter`` is drawn from ``uniform(-jitter_ratio, +jitter_ratio)``. With a
    zero jitter ratio the random source is never consulted.
    """

    bounded = nominal_delay(attempt, policy)
    if bounded == 0.0 or policy.jitter_ratio == 0.0:
        return bounded

    ratio = policy.jitter_ratio
    jitter = uniform(-ratio, ratio)
    if not -ratio <= jitter <= ratio:
        raise ValueError("uniform must return values within [-jitter_ratio, +jitter_ratio]")
    return max(0.0, bounded * (1.0 + jitter))


def backoff_schedule(policy: ResiliencePolicy) -> tuple[float, ...]:
    """Nominal delays before each retry (attempts 2..max_attempts)."""

    return tuple(nominal_delay(attempt, policy) for attempt in range(2, policy.max_attempts + 1))


__all__ = ["UniformFn", "backoff_schedule", "compute_backoff_delay", "nominal_delay"]
