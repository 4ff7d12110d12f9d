"""Unit tests for the policy engine facade."""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field

import pytest

from policy_engine.config import default_config, merge_config
from policy_engine.control_plane.engine import PolicyEngine
from policy_engine.domain.errors import (
    ConfirmationDenied,
    ConfirmationPending,
    InvalidRequest,
    OperationCancelled,
    PolicyViolation,
    UnknownWorkflow,
    ValidationIncomplete,
    WorkflowStateError,
)
from policy_engine.domain.events import EventType, PolicyEvent
from policy_engine.domain.models import (
    OperationKind,
    OperationStatus,
    WorkflowState,
)
from policy_engine.observability.events import EventBus
from policy_engine.resilience.wrapper import ResilienceWrapper

_DECISION = {"timeout": "15s", "retry": "3x", "idempotency": "GET only"}


@dataclass(slots=True)
class RecordingLogger:
    events: list[tuple[str, dict[str, object]]] = field(default_factory=list)

    def info(self, event: str, **kwargs: object) -> None:
        self.events.append((event, dict(kwargs)))

    def warning(self, event: str, **kwargs: object) -> None:
        self.events.append((event, dict(kwargs)))

    def named(self, name: str) -> list[dict[str, object]]:
        return [kwargs for event, kwargs in self.events if event == name]


async def _no_sleep(delay: float) -> None:
    return None


def _engine(config: dict[str, object] | None = None) -> tuple[PolicyEngine, RecordingLogger]:
    logger = RecordingLogger()
    wrapper = ResilienceWrapper(sleep=_no_sleep, uniform=lambda low, high: 0.0, logger=logger)
    return PolicyEngine(config, wrapper=wrapper, logger=logger), logger


def _plan(**overrides: object) -> dict[str, object]:
    plan: dict[str, object] = {
        "objective": "add a column",
        "architecture": "repository change only",
        "data_model_changes": "orders.note text",
        "api_contracts": "unchanged",
        "manual_test_plan": "create an order with a note",
        "operation_kinds": ["database"],
        "resilience_decisions": {"database": dict(_DECISION)},
    }
    plan.update(overrides)
    return plan


async def _ok() -> str:
    return "done"


def test_submit_routes_simple_change_to_build() -> None:
    engine, logger = _engine()

    handle = engine.submit({"id": "cr-1", "description": "typo fix"})

    assert engine.get_state(handle) is WorkflowState.BUILD
    assert logger.named("classifier_decision") == [
        {"change_request_id": "cr-1", "required": False, "rationale": [], "module_count": 0}
    ]
    types = [event.event_type for event in engine.event_bus.replay(correlation_id="cr-1")]
    assert types == [
        EventType.CHANGE_ADMITTED,
        EventType.CHANGE_CLASSIFIED,
        EventType.WORKFLOW_TRANSITIONED,
    ]


def test_submit_rejects_duplicates_and_malformed_requests() -> None:
    engine, _ = _engine()
    engine.submit({"id": "cr-1", "description": "first"})

    with pytest.raises(InvalidRequest):
        engine.submit({"id": "cr-1", "description": "again"})
    with pytest.raises(InvalidRequest):
        engine.submit({"description": "no id"})
    with pytest.raises(InvalidRequest):
        engine.submit(["not", "a", "mapping"])  # type: ignore[arg-type]


def test_unknown_handles_raise() -> None:
    engine, _ = _engine()

    with pytest.raises(UnknownWorkflow):
        engine.get_state("cr-missing")


def test_incomplete_plan_keeps_workflow_in_plan() -> None:
    engine, _ = _engine()
    handle = engine.submit(
        {"id": "cr-2", "description": "schema", "flags": ["schema_change"]}
    )

    result = engine.submit_plan(handle, _plan(manual_test_plan=""))

    assert not result.valid
    assert engine.get_state(handle) is WorkflowState.PLAN
    rejected = engine.event_bus.replay(event_type=EventType.PLAN_REJECTED)
    assert rejected[-1].payload["missing"] == ["manual_test_plan"]

    assert engine.submit_plan(handle, _plan()).valid
    assert engine.get_state(handle) is WorkflowState.BUILD
    plan_view = engine.describe(handle).plan
    assert plan_view is not None
    assert plan_view.operation_kinds == frozenset({OperationKind.DATABASE})


def test_strict_plan_submission_raises_for_incomplete_plans() -> None:
    engine, _ = _engine()
    handle = engine.submit({"id": "cr-2b", "description": "schema", "flags": ["schema_change"]})

    with pytest.raises(ValidationIncomplete) as excinfo:
        engine.submit_plan(handle, _plan(objective=" ", manual_test_plan=""), strict=True)

    assert excinfo.value.missing == ("manual_test_plan", "objective")
    assert engine.get_state(handle) is WorkflowState.PLAN
    assert engine.event_bus.replay(event_type=EventType.PLAN_REJECTED)
    assert engine.submit_plan(handle, _plan(), strict=True).valid
    assert engine.get_state(handle) is WorkflowState.BUILD



def test_queue_operation_requires_build() -> None:
    engine, _ = _engine()
    handle = engine.submit({"id": "cr-3", "description": "auth", "flags": ["auth_related"]})

    with pytest.raises(WorkflowStateError):
        engine.queue_operation(handle, {"kind": "filesystem"})


async def test_safe_operation_executes_and_records_attempts() -> None:
    engine, _ = _engine()
    handle = engine.submit({"id": "cr-4", "description": "docs"})
    op_handle = engine.queue_operation(handle, {"kind": "filesystem"})

    result = await engine.execute_operation(op_handle, _ok)

    assert result.value == "done"
    snapshot = engine.describe(handle)
    assert snapshot.operations[0].status is OperationStatus.SUCCEEDED
    assert snapshot.operations[0].attempt_count == 1
    assert engine.event_bus.replay(event_type=EventType.ATTEMPT_RECORDED)


async def test_dangerous_operation_is_fail_closed() -> None:
    engine, _ = _engine()
    handle = engine.submit({"id": "cr-5", "description": "cleanup"})
    op_handle = engine.queue_operation(
        handle, {"kind": "filesystem", "dangerous": True, "description": "rm -rf build/"}
    )
    calls: list[int] = []

    async def action() -> None:
        calls.append(1)

    assert op_handle.confirmation_id is not None
    with pytest.raises(ConfirmationPending):
        await engine.execute_operation(op_handle, action)

    engine.resolve_confirmation(op_handle.confirmation_id, "approved", decided_by="bob")
    await engine.execute_operation(op_handle, action)

    assert calls == [1]
    requested = engine.event_bus.replay(event_type=EventType.CONFIRMATION_REQUESTED)
    assert requested[0].payload["danger_category"] == "destructive_filesystem"


async def test_denied_operation_never_runs() -> None:
    engine, _ = _engine()
    handle = engine.submit({"id": "cr-6", "description": "force push"})
    op_handle = engine.queue_operation(handle, {"kind": "vcs", "dangerous": True})
    assert op_handle.confirmation_id is not None

    engine.resolve_confirmation(op_handle.confirmation_id, "denied")

    with pytest.raises(ConfirmationDenied):
        await engine.execute_operation(op_handle, _ok)
    assert engine.describe(handle).operations[0].status is OperationStatus.REJECTED
    assert engine.event_bus.replay(event_type=EventType.OPERATION_REJECTED)


async def test_wait_for_confirmation_suspends_until_resolved() -> None:
    engine, _ = _engine()
    handle = engine.submit({"id": "cr-7", "description": "drop index"})
    op_handle = engine.queue_operation(handle, {"kind": "database", "dangerous": True})
    assert op_handle.confirmation_id is not None
    asyncio.get_running_loop().call_later(
        0.01, engine.resolve_confirmation, op_handle.confirmation_id, "approved"
    )

    result = await engine.execute_operation(op_handle, _ok, wait_for_confirmation=True)

    assert result.value == "done"


async def test_wait_for_confirmation_from_config() -> None:
    config = merge_config(default_config(), {"engine": {"wait_for_confirmation": True}})
    engine, _ = _engine(config)
    handle = engine.submit({"id": "cr-8", "description": "drop index"})
    op_handle = engine.queue_operation(handle, {"kind": "database", "dangerous": True})
    assert op_handle.confirmation_id is not None
    asyncio.get_running_loop().call_later(
        0.01, engine.resolve_confirmation, op_handle.confirmation_id, "denied"
    )

    with pytest.raises(ConfirmationDenied):
        await engine.execute_operation(op_handle, _ok)


async def test_lookup_reference_is_allowed_during_plan() -> None:
    engine, _ = _engine()
    handle = engine.submit({"id": "cr-9", "description": "auth", "flags": ["auth_related"]})

    async def fetch() -> str:
        return "rfc6749"

    result = await engine.lookup_reference(handle, fetch, description="OAuth docs")

    assert result.value == "rfc6749"
    operation = engine.describe(handle).operations[0]
    assert operation.kind == "network_system"
    assert operation.idempotent
    assert engine.get_state(handle) is WorkflowState.PLAN


def test_reported_unconfirmed_execution_blocks_the_workflow() -> None:
    engine, logger = _engine()
    handle = engine.submit({"id": "cr-10", "description": "migrate"})
    op_handle = engine.queue_operation(handle, {"kind": "database", "dangerous": True})

    with pytest.raises(PolicyViolation):
        engine.report_execution(op_handle, succeeded=True)

    assert engine.get_state(handle) is WorkflowState.BLOCKED
    assert logger.named("policy_violation")
    assert engine.event_bus.replay(event_type=EventType.WORKFLOW_BLOCKED)


def test_verify_returns_to_build_on_missing_test_evidence() -> None:
    engine, _ = _engine()
    handle = engine.submit({"id": "cr-11", "description": "schema", "flags": ["schema_change"]})
    engine.submit_plan(handle, _plan())
    engine.finish_build(handle)

    report = engine.verify(handle)

    assert [finding.code for finding in report.gaps] == ["missing_manual_test_evidence"]
    assert engine.get_state(handle) is WorkflowState.BUILD

    engine.record_test_evidence(handle, "ran the migration on a copy")
    engine.finish_build(handle)
    assert engine.verify(handle).passed
    assert engine.get_state(handle) is WorkflowState.DONE


async def test_verify_reports_undeclared_kinds_as_advisory() -> None:
    engine, _ = _engine()
    handle = engine.submit({"id": "cr-12", "description": "schema", "flags": ["schema_change"]})
    engine.submit_plan(handle, _plan())
    op_handle = engine.queue_operation(handle, {"kind": "vcs"})
    await engine.execute_operation(op_handle, _ok)
    engine.record_test_evidence(handle, "checked")
    engine.finish_build(handle)

    report = engine.verify(handle)

    assert report.passed
    assert [finding.code for finding in report.advisories] == ["undeclared_operation_kind"]


def test_cancel_blocks_and_is_idempotent() -> None:
    engine, _ = _engine()
    handle = engine.submit({"id": "cr-13", "description": "x"})

    assert engine.cancel(handle) is WorkflowState.BLOCKED
    assert engine.cancel(handle) is WorkflowState.BLOCKED
    assert engine.describe(handle).block_reason == "cancelled"
    with pytest.raises(WorkflowStateError):
        engine.queue_operation(handle, {"kind": "vcs"})


async def test_cancelled_execution_marks_operation_cancelled() -> None:
    engine, _ = _engine()
    handle = engine.submit({"id": "cr-14", "description": "slow fetch"})
    op_handle = engine.queue_operation(
        handle, {"kind": "network_system", "idempotency_key": "fetch-1"}
    )

    async def hang() -> None:
        asyncio.get_running_loop().call_soon(engine.cancel, handle)
        await asyncio.Event().wait()

    with pytest.raises(OperationCancelled):
        await engine.execute_operation(op_handle, hang)

    assert engine.describe(handle).operations[0].status is OperationStatus.CANCELLED


def test_subscriber_failures_are_logged_not_raised() -> None:
    bus = EventBus()

    def broken(event: PolicyEvent) -> None:
        raise RuntimeError("subscriber down")

    bus.subscribe(None, broken)
    logger = RecordingLogger()
    engine = PolicyEngine(event_bus=bus, logger=logger)

    engine.submit({"id": "cr-15", "description": "x"})

    assert engine.get_state("cr-15") is WorkflowState.BUILD
    assert logger.named("event_dispatch_failed")


def test_policy_for_uses_configured_kind_tables() -> None:
    engine, _ = _engine()

    assert engine.policy_for("network_system").max_attempts == 4
    assert engine.policy_for(OperationKind.DATABASE).timeout_seconds == 60.0
    assert engine.policies[OperationKind.FILESYSTEM].timeout_seconds == 30.0


async def test_resolution_from_another_thread_releases_a_waiting_operation() -> None:
    engine, _ = _engine()
    handle = engine.submit({"id": "cr-7b", "description": "drop index"})
    op_handle = engine.queue_operation(handle, {"kind": "database", "dangerous": True})
    assert op_handle.confirmation_id is not None
    approver = threading.Timer(
        0.05, engine.resolve_confirmation, args=(op_handle.confirmation_id, "approved")
    )
    approver.start()
    try:
        result = await asyncio.wait_for(
            engine.execute_operation(op_handle, _ok, wait_for_confirmation=True), timeout=2.0
        )
    finally:
        approver.join()

    assert result.value == "done"


def test_abandon_and_cancel_withdraw_pending_confirmations() -> None:
    engine, logger = _engine()
    handle = engine.submit({"id": "cr-15", "description": "cleanup"})
    abandoned = engine.queue_operation(handle, {"kind": "filesystem", "dangerous": True})
    left = engine.queue_operation(handle, {"kind": "vcs", "dangerous": True})
    assert len(engine.pending_confirmations()) == 2

    engine.abandon_operation(abandoned)

    assert [record.operation_id for record in engine.pending_confirmations()] == [
        left.operation_id
    ]

    engine.cancel(handle)

    assert engine.pending_confirmations() == ()
    statuses = [operation.status for operation in engine.describe(handle).operations]
    assert sorted(status.value for status in statuses) == ["cancelled", "rejected"]
    withdrawn = logger.named("confirmation_withdrawn")
    assert {entry["operation_id"] for entry in withdrawn} == {
        abandoned.operation_id,
        left.operation_id,
    }
