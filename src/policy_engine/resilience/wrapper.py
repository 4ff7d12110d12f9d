"""
Resilience wrapper: timeout, cancellation, bounded retry and idempotency.

Every outbound call made on behalf of a change request goes through
``ResilienceWrapper.execute``. The wrapper

- runs each attempt under the caller's cancellation token and a hard timeout;
- retries only idempotent operations (``idempotency_key`` set) and only for
  transient failures, with exponential backoff and jitter between attempts;
- surfaces failures as exceptions from the operation error taxonomy, chained
  to the underlying cause;
- records every attempt and forwards it to an optional fire-and-forget sink.
"""

from __future__ import annotations

import asyncio
import inspect
import random as random_module
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeAlias, TypeVar

import structlog

from policy_engine.domain.errors import (
    NonIdempotentFailure,
    OperationCancelled,
    OperationFailed,
    OperationTimeout,
    RetriesExhausted,
)
from policy_engine.domain.models import AttemptOutcome, AttemptRecord, Operation, ResiliencePolicy
from policy_engine.resilience.backoff import UniformFn, compute_backoff_delay
from policy_engine.resilience.classification import attempt_outcome, is_transient
from policy_engine.utils.concurrency import CancellationToken, cancellable_sleep, run_with_timeout

T = TypeVar("T")

SleepFn: TypeAlias = Callable[[float], Awaitable[None]]
ClockFn: TypeAlias = Callable[[], float]
AttemptSink: TypeAlias = Callable[[AttemptRecord], object]
Action: TypeAlias = Callable[[], Awaitable[T]]


@dataclass(frozen=True, slots=True)
class ExecutionResult(Generic[T]):
    """Successful execution: the action's value plus the attempt history."""

    value: T
    operation_id: str
    attempts: tuple[AttemptRecord, ...]

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)


class ResilienceWrapper:
    """Executes operation actions under a ``ResiliencePolicy``."""

    def __init__(
        self,
        *,
        sink: AttemptSink | None = None,
        sleep: SleepFn = asyncio.sleep,
        uniform: UniformFn = random_module.uniform,
        clock: ClockFn = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        self._sink = sink
        self._sleep = sleep
        self._uniform = uniform
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._sink_tasks: set[asyncio.Task[object]] = set()

    async def execute(
        self,
        op: Operation,
        policy: ResiliencePolicy,
        action: Action[T],
        *,
        cancel_token: CancellationToken,
        timeout_seconds: float | None = None,
    ) -> ExecutionResult[T]:
        timeout = policy.timeout_seconds if timeout_seconds is None else timeout_seconds
        if timeout <= 0:
            raise ValueError("timeout_seconds must be > 0")

        # Non-idempotent operations get exactly one attempt whatever the policy says.
        max_attempts = policy.max_attempts if op.is_idempotent else 1
        attempts: list[AttemptRecord] = []

        for attempt in range(1, max_attempts + 1):
            delay = compute_backoff_delay(attempt, policy, uniform=self._uniform)
            if attempt > 1:
                self._logger.info(
                    "resilience_retry_scheduled",
                    operation_id=op.id,
                    kind=op.kind.value,
                    attempt=attempt,
                    delay_seconds=delay,
                )
                try:
                    await cancellable_sleep(delay, cancel_token, sleep=self._sleep)
                except asyncio.CancelledError:
                    if not cancel_token.is_cancelled:
                        raise
                    raise self._cancelled(op, attempts, "cancelled during retry delay") from None

            if cancel_token.is_cancelled:
                raise self._cancelled(op, attempts, "cancelled before attempt started")

            started = self._clock()
            failure: BaseException | None = None
            try:
                value = await run_with_timeout(action(), timeout, cancel_token)
            except asyncio.CancelledError:
                if not cancel_token.is_cancelled:
                    raise
                self._record(
                    attempts, op, attempt, delay, AttemptOutcome.CANCELLED, started, "Cancelled"
                )
                raise self._cancelled(op, attempts, "cancelled while in flight") from None
            except TimeoutError as exc:
                failure = OperationTimeout(
                    f"attempt {attempt} timed out after {timeout} seconds",
                    operation_id=op.id,
                    kind=op.kind.value,
                )
                failure.__cause__ = exc
            except Exception as exc:  # noqa: BLE001
                failure = exc
            else:
                self._record(attempts, op, attempt, delay, AttemptOutcome.SUCCESS, started, None)
                return ExecutionResult(value=value, operation_id=op.id, attempts=tuple(attempts))

            self._record(
                attempts,
                op,
                attempt,
                delay,
                attempt_outcome(failure),
                started,
                type(failure).__name__,
            )

            if not op.is_idempotent:
                raise NonIdempotentFailure(
                    f"non-idempotent operation {op.id} failed: {failure}",
                    operation_id=op.id,
                    kind=op.kind.value,
                    attempts=attempts,
                ) from failure
            if not is_transient(failure):
                raise OperationFailed(
                    f"operation {op.id} failed permanently on attempt {attempt}: {failure}",
                    operation_id=op.id,
                    kind=op.kind.value,
                    attempts=attempts,
                ) from failure
            if attempt >= max_attempts:
                raise RetriesExhausted(
                    f"operation {op.id} exhausted {max_attempts} attempts: {failure}",
                    operation_id=op.id,
                    kind=op.kind.value,
                    attempts=attempts,
                ) from failure

        raise AssertionError("unreachable: attempt loop exited without a result")

    def _cancelled(
        self, op: Operation, attempts: list[AttemptRecord], detail: str
    ) -> OperationCancelled:
        self._logger.info(
            "resilience_cancelled",
            operation_id=op.id,
            kind=op.kind.value,
            attempt_count=len(attempts),
            detail=detail,
        )
        return OperationCancelled(
            f"operation {op.id} {detail}",
            operation_id=op.id,
            kind=op.kind.value,
            attempts=attempts,
        )

    def _record(
        self,
        attempts: list[AttemptRecord],
        op: Operation,
        attempt: int,
        delay: float,
        outcome: AttemptOutcome,
        started: float,
        error_type: str | None,
    ) -> None:
        record = AttemptRecord(
            operation_id=op.id,
            attempt=attempt,
            delay_seconds=delay,
            outcome=outcome,
            error_type=error_type,
            duration_seconds=max(0.0, self._clock() - started),
        )
        attempts.append(record)
        self._logger.info(
            "resilience_attempt",
            operation_id=op.id,
            kind=op.kind.value,
            attempt=attempt,
            delay_seconds=delay,
            outcome=outcome.value,
            error_type=error_type,
            idempotent=op.is_idempotent,
        )
        self._emit(record)

    def _emit(self, record: AttemptRecord) -> None:
        if self._sink is None:
            return
        try:
            result = self._sink(record)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._sink_tasks.add(task)
                task.add_done_callback(self._sink_done)
        except Exception as exc:  # noqa: BLE001
            self._logger.warning(
                "attempt_sink_failed", operation_id=record.operation_id, error=repr(exc)
            )

    def _sink_done(self, task: asyncio.Task[object]) -> None:
        self._sink_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.warning("attempt_sink_failed", error=repr(exc))


__all__ = ["Action", "AttemptSink", "ExecutionResult", "ResilienceWrapper", "SleepFn"]
