"""
End-to-end change-request scenarios through the public engine surface.

Each test drives one change request from admission to its final state with a
fake backoff sleeper and zero jitter so attempt schedules are deterministic.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import pytest

from policy_engine.config import default_config, merge_config
from policy_engine.control_plane import PolicyEngine
from policy_engine.domain.errors import (
    ConfirmationDenied,
    ConfirmationPending,
    DuplicateConfirmation,
    NonIdempotentFailure,
    OperationCancelled,
)
from policy_engine.domain.events import EventType
from policy_engine.domain.models import (
    AttemptOutcome,
    ConfirmationDecision,
    OperationStatus,
    WorkflowState,
)
from policy_engine.resilience.wrapper import ResilienceWrapper

_DECISION = {"timeout": "60s", "retry": "3x on deadlock", "idempotency": "upsert by key"}


@dataclass(slots=True)
class FakeSleep:
    delays: list[float] = field(default_factory=list)

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class SlowThenFast:
    """Hangs past the attempt timeout ``slow_calls`` times, then returns ``value``."""

    def __init__(self, slow_calls: int, value: object = "ok") -> None:
        self.slow_calls = slow_calls
        self.value = value
        self.calls = 0

    async def __call__(self) -> object:
        self.calls += 1
        if self.calls <= self.slow_calls:
            await asyncio.sleep(5)
        return self.value


def _engine(
    overlay: dict[str, object] | None = None, *, sleep: FakeSleep | None = None
) -> PolicyEngine:
    config = merge_config(default_config(), overlay or {})
    wrapper = ResilienceWrapper(sleep=sleep or FakeSleep(), uniform=lambda low, high: 0.0)
    return PolicyEngine(config, wrapper=wrapper)


def _plan(**overrides: object) -> dict[str, object]:
    plan: dict[str, object] = {
        "objective": "backfill order notes",
        "architecture": "repository layer and api serializer",
        "data_model_changes": "orders.note text null",
        "api_contracts": "GET /orders/{id} gains an optional note",
        "manual_test_plan": "create an order with a note and fetch it",
        "operation_kinds": ["database"],
        "resilience_decisions": {"database": dict(_DECISION)},
    }
    plan.update(overrides)
    return plan


async def test_planned_change_runs_to_done() -> None:
    engine = _engine()
    handle = engine.submit(
        {
            "id": "cr-notes",
            "description": "add order notes",
            "affected_modules": ["orders", "api"],
            "flags": {"multi_file": True},
        }
    )
    assert engine.get_state(handle) is WorkflowState.PLAN

    incomplete = engine.submit_plan(handle, _plan(manual_test_plan="  "))
    assert incomplete.missing == frozenset({"manual_test_plan"})
    assert engine.get_state(handle) is WorkflowState.PLAN

    assert engine.submit_plan(handle, _plan()).valid
    assert engine.get_state(handle) is WorkflowState.BUILD

    # Dangerous database op: pending, then denied, and never executed.
    drop = engine.queue_operation(handle, {"kind": "database", "dangerous": True})
    assert drop.confirmation_id is not None
    with pytest.raises(ConfirmationPending):
        await engine.execute_operation(drop, SlowThenFast(0))
    engine.resolve_confirmation(drop.confirmation_id, "denied", decided_by="reviewer")
    with pytest.raises(DuplicateConfirmation):
        engine.resolve_confirmation(drop.confirmation_id, ConfirmationDecision.APPROVED)
    with pytest.raises(ConfirmationDenied):
        await engine.execute_operation(drop, SlowThenFast(0))

    # Idempotent upsert survives two timeouts.
    upsert = engine.queue_operation(
        handle, {"kind": "database", "idempotency_key": "upsert-42"}
    )
    result = await engine.execute_operation(upsert, SlowThenFast(2), timeout_seconds=0.05)
    assert result.value == "ok"
    assert result.attempt_count == 3
    assert [record.outcome for record in result.attempts] == [
        AttemptOutcome.TIMEOUT,
        AttemptOutcome.TIMEOUT,
        AttemptOutcome.SUCCESS,
    ]

    engine.record_test_evidence(handle, "fetched order 42, note present")
    assert engine.finish_build(handle) is WorkflowState.VERIFY
    report = engine.verify(handle)

    assert report.passed
    assert engine.get_state(handle) is WorkflowState.DONE
    statuses = {op.operation_id: op.status for op in engine.describe(handle).operations}
    assert statuses == {
        drop.operation_id: OperationStatus.REJECTED,
        upsert.operation_id: OperationStatus.SUCCEEDED,
    }
    types = [event.event_type for event in engine.event_bus.replay(correlation_id="cr-notes")]
    assert EventType.PLAN_REJECTED in types
    assert EventType.CONFIRMATION_REQUESTED in types
    assert types[-1] is EventType.WORKFLOW_TRANSITIONED


async def test_non_idempotent_operation_gets_one_attempt() -> None:
    sleep = FakeSleep()
    engine = _engine(sleep=sleep)
    handle = engine.submit({"id": "cr-insert", "description": "insert audit row"})
    op = engine.queue_operation(handle, {"kind": "database"})
    action = SlowThenFast(3)

    with pytest.raises(NonIdempotentFailure) as excinfo:
        await engine.execute_operation(op, action, timeout_seconds=0.05)

    assert action.calls == 1
    assert excinfo.value.attempt_count == 1
    assert sleep.delays == []
    [snapshot] = engine.describe(handle).operations
    assert snapshot.status is OperationStatus.FAILED


async def test_backoff_delays_grow_to_the_cap() -> None:
    sleep = FakeSleep()
    engine = _engine(
        {
            "resilience": {
                "vcs": {
                    "max_attempts": 5,
                    "base_delay_seconds": 0.25,
                    "max_delay_seconds": 0.75,
                }
            }
        },
        sleep=sleep,
    )
    handle = engine.submit({"id": "cr-fetch", "description": "fetch upstream"})
    op = engine.queue_operation(handle, {"kind": "vcs", "idempotency_key": "fetch-origin"})

    result = await engine.execute_operation(op, SlowThenFast(4), timeout_seconds=0.05)

    assert result.attempt_count == 5
    assert sleep.delays == [0.25, 0.5, 0.75, 0.75]
    assert sleep.delays == sorted(sleep.delays)


async def test_cancel_halts_pending_retries() -> None:
    engine: PolicyEngine | None = None

    class CancellingSleep(FakeSleep):
        async def __call__(self, delay: float) -> None:
            self.delays.append(delay)
            assert engine is not None
            engine.cancel("cr-cancel")

    sleep = CancellingSleep()
    engine = _engine(sleep=sleep)
    handle = engine.submit({"id": "cr-cancel", "description": "sync lockfile"})
    op = engine.queue_operation(handle, {"kind": "dependency", "idempotency_key": "lock-sync"})
    action = SlowThenFast(5)

    with pytest.raises(OperationCancelled):
        await engine.execute_operation(op, action, timeout_seconds=0.05)

    assert action.calls == 1
    assert len(sleep.delays) == 1
    snapshot = engine.describe(handle)
    assert snapshot.state is WorkflowState.BLOCKED
    assert snapshot.block_reason == "cancelled"
    assert snapshot.operations[0].status is OperationStatus.CANCELLED


async def test_cancel_stops_in_flight_execution() -> None:
    engine = _engine()
    handle = engine.submit({"id": "cr-hang", "description": "long migration"})
    op = engine.queue_operation(handle, {"kind": "filesystem", "idempotency_key": "copy-assets"})
    pending = asyncio.create_task(engine.execute_operation(op, SlowThenFast(1)))
    await asyncio.sleep(0.01)

    assert engine.cancel(handle) is WorkflowState.BLOCKED
    with pytest.raises(OperationCancelled):
        await pending
    assert engine.describe(handle).operations[0].status is OperationStatus.CANCELLED


async def test_waiting_execution_resumes_after_approval() -> None:
    engine = _engine({"engine": {"wait_for_confirmation": True}})
    handle = engine.submit({"id": "cr-push", "description": "rewrite release branch"})
    op = engine.queue_operation(
        handle, {"kind": "vcs", "dangerous": True, "reversible": False}
    )
    assert op.confirmation_id is not None
    pending = asyncio.create_task(engine.execute_operation(op, SlowThenFast(0, value="pushed")))
    await asyncio.sleep(0.01)
    assert not pending.done()

    engine.resolve_confirmation(op.confirmation_id, "approved", decided_by="release-manager")
    result = await pending

    assert result.value == "pushed"
    assert engine.pending_confirmations() == ()
