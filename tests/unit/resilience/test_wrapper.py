"""Unit tests for the resilience wrapper: timeout, retry, idempotency, cancellation."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import pytest

from policy_engine.domain.errors import (
    NonIdempotentFailure,
    OperationCancelled,
    OperationFailed,
    OperationTimeout,
    RetriesExhausted,
    TransientOperationError,
)
from policy_engine.domain.models import (
    AttemptOutcome,
    AttemptRecord,
    Operation,
    OperationKind,
    ResiliencePolicy,
)
from policy_engine.resilience.wrapper import ResilienceWrapper
from policy_engine.utils.concurrency import CancellationToken


@dataclass(slots=True)
class RecordingLogger:
    events: list[tuple[str, dict[str, object]]] = field(default_factory=list)

    def info(self, event: str, **kwargs: object) -> None:
        self.events.append((event, dict(kwargs)))

    def warning(self, event: str, **kwargs: object) -> None:
        self.events.append((event, dict(kwargs)))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


@dataclass(slots=True)
class FakeSleep:
    delays: list[float] = field(default_factory=list)

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FlakyAction:
    """Fails with the queued exceptions in order, then returns ``value``."""

    def __init__(self, *failures: BaseException, value: object = "ok") -> None:
        self._failures = list(failures)
        self.value = value
        self.calls = 0

    async def __call__(self) -> object:
        self.calls += 1
        if self._failures:
            raise self._failures.pop(0)
        return self.value


def _wrapper(**kwargs: object) -> tuple[ResilienceWrapper, FakeSleep, RecordingLogger]:
    sleep = FakeSleep()
    logger = RecordingLogger()
    wrapper = ResilienceWrapper(
        sleep=sleep,
        uniform=lambda low, high: 0.0,
        logger=logger,
        **kwargs,  # type: ignore[arg-type]
    )
    return wrapper, sleep, logger


POLICY = ResiliencePolicy(max_attempts=4, base_delay=0.5, max_delay=2.0, timeout_seconds=5.0)


async def test_success_on_first_attempt_records_one_attempt() -> None:
    wrapper, sleep, _ = _wrapper()
    op = Operation(kind=OperationKind.DATABASE, idempotency_key="upsert-1")

    result = await wrapper.execute(
        op, POLICY, FlakyAction(value=42), cancel_token=CancellationToken()
    )

    assert result.value == 42
    assert result.attempt_count == 1
    assert result.attempts[0].outcome is AttemptOutcome.SUCCESS
    assert sleep.delays == []


async def test_idempotent_transient_failures_are_retried_with_backoff() -> None:
    wrapper, sleep, logger = _wrapper()
    op = Operation(kind=OperationKind.NETWORK_SYSTEM, idempotency_key="fetch-docs")
    action = FlakyAction(TimeoutError(), ConnectionError("reset"), value="docs")

    result = await wrapper.execute(op, POLICY, action, cancel_token=CancellationToken())

    assert result.value == "docs"
    assert action.calls == 3
    assert [item.outcome for item in result.attempts] == [
        AttemptOutcome.TIMEOUT,
        AttemptOutcome.TRANSIENT_ERROR,
        AttemptOutcome.SUCCESS,
    ]
    assert sleep.delays == [0.5, 1.0]
    assert logger.names().count("resilience_retry_scheduled") == 2


async def test_hard_timeout_abandons_attempt() -> None:
    wrapper, _, _ = _wrapper()
    op = Operation(kind=OperationKind.NETWORK_SYSTEM, idempotency_key="slow")
    policy = ResiliencePolicy(max_attempts=1, timeout_seconds=0.01)

    async def hang() -> None:
        await asyncio.Event().wait()

    with pytest.raises(RetriesExhausted) as excinfo:
        await wrapper.execute(op, policy, hang, cancel_token=CancellationToken())

    assert isinstance(excinfo.value.__cause__, OperationTimeout)
    assert excinfo.value.attempts[0].outcome is AttemptOutcome.TIMEOUT


async def test_non_idempotent_operation_gets_exactly_one_attempt() -> None:
    wrapper, sleep, _ = _wrapper()
    op = Operation(kind=OperationKind.VCS)
    action = FlakyAction(TransientOperationError("push rejected"))

    with pytest.raises(NonIdempotentFailure) as excinfo:
        await wrapper.execute(op, POLICY, action, cancel_token=CancellationToken())

    assert action.calls == 1
    assert excinfo.value.attempt_count == 1
    assert isinstance(excinfo.value.__cause__, TransientOperationError)
    assert sleep.delays == []


async def test_non_idempotent_timeout_surfaces_as_single_attempt() -> None:
    wrapper, _, _ = _wrapper()
    op = Operation(kind=OperationKind.DATABASE)

    with pytest.raises(NonIdempotentFailure) as excinfo:
        await wrapper.execute(
            op, POLICY, FlakyAction(TimeoutError()), cancel_token=CancellationToken()
        )

    assert isinstance(excinfo.value.__cause__, OperationTimeout)


async def test_permanent_failure_is_not_retried() -> None:
    wrapper, _, _ = _wrapper()
    op = Operation(kind=OperationKind.FILESYSTEM, idempotency_key="write-config")
    action = FlakyAction(ValueError("bad path"))

    with pytest.raises(OperationFailed) as excinfo:
        await wrapper.execute(op, POLICY, action, cancel_token=CancellationToken())

    assert type(excinfo.value) is OperationFailed
    assert action.calls == 1
    assert excinfo.value.attempts[0].outcome is AttemptOutcome.ERROR


async def test_exhausted_retries_report_every_attempt() -> None:
    wrapper, sleep, _ = _wrapper()
    op = Operation(kind=OperationKind.NETWORK_SYSTEM, idempotency_key="ping")
    action = FlakyAction(*(ConnectionError() for _ in range(4)))

    with pytest.raises(RetriesExhausted) as excinfo:
        await wrapper.execute(op, POLICY, action, cancel_token=CancellationToken())

    assert excinfo.value.attempt_count == 4
    assert sleep.delays == [0.5, 1.0, 2.0]
    assert excinfo.value.code == "retries_exhausted"


async def test_cancellation_during_retry_delay_stops_further_attempts() -> None:
    token = CancellationToken()

    async def cancelling_sleep(delay: float) -> None:
        token.cancel("change request cancelled")
        await asyncio.sleep(0)

    wrapper = ResilienceWrapper(sleep=cancelling_sleep, logger=RecordingLogger())
    op = Operation(kind=OperationKind.NETWORK_SYSTEM, idempotency_key="ping")
    action = FlakyAction(ConnectionError(), value="never")

    with pytest.raises(OperationCancelled) as excinfo:
        await wrapper.execute(op, POLICY, action, cancel_token=token)

    assert action.calls == 1
    assert excinfo.value.attempt_count == 1


async def test_cancellation_in_flight_records_cancelled_attempt() -> None:
    wrapper, _, logger = _wrapper()
    token = CancellationToken()
    op = Operation(kind=OperationKind.DATABASE, idempotency_key="migrate")

    async def hang() -> None:
        asyncio.get_running_loop().call_soon(token.cancel)
        await asyncio.Event().wait()

    with pytest.raises(OperationCancelled) as excinfo:
        await wrapper.execute(op, POLICY, hang, cancel_token=token)

    assert excinfo.value.attempts[-1].outcome is AttemptOutcome.CANCELLED
    assert "resilience_cancelled" in logger.names()


async def test_precancelled_token_never_runs_action() -> None:
    wrapper, _, _ = _wrapper()
    token = CancellationToken()
    token.cancel()
    action = FlakyAction()

    with pytest.raises(OperationCancelled):
        await wrapper.execute(
            Operation(kind=OperationKind.VCS), POLICY, action, cancel_token=token
        )

    assert action.calls == 0


async def test_sink_failures_do_not_change_the_outcome() -> None:
    received: list[AttemptRecord] = []

    def sink(record: AttemptRecord) -> None:
        received.append(record)
        raise RuntimeError("sink down")

    wrapper, _, logger = _wrapper(sink=sink)
    op = Operation(kind=OperationKind.GENERIC, idempotency_key="noop")

    result = await wrapper.execute(
        op, POLICY, FlakyAction(value=1), cancel_token=CancellationToken()
    )

    assert result.value == 1
    assert len(received) == 1
    assert "attempt_sink_failed" in logger.names()


async def test_per_call_timeout_override_must_be_positive() -> None:
    wrapper, _, _ = _wrapper()

    with pytest.raises(ValueError):
        await wrapper.execute(
            Operation(kind=OperationKind.VCS),
            POLICY,
            FlakyAction(),
            cancel_token=CancellationToken(),
            timeout_seconds=0,
        )
