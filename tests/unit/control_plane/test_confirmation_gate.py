"""Unit tests for the fail-closed confirmation gate."""

from __future__ import annotations

import asyncio
import threading

import pytest

from policy_engine.control_plane.confirmation_gate import ConfirmationGate
from policy_engine.domain.errors import (
    ConfirmationDenied,
    ConfirmationPending,
    DuplicateConfirmation,
    OperationCancelled,
    UnknownConfirmation,
)
from policy_engine.domain.models import (
    ConfirmationDecision,
    ConfirmationRecord,
    Operation,
    OperationKind,
)
from policy_engine.utils.concurrency import CancellationToken


def _dangerous(kind: OperationKind = OperationKind.DATABASE) -> Operation:
    return Operation(kind=kind, dangerous=True, reversible=False, description="drop table")


def test_request_creates_pending_record_and_notifies_requester() -> None:
    seen: list[tuple[ConfirmationRecord, Operation]] = []
    gate = ConfirmationGate(requester=lambda record, op: seen.append((record, op)))
    op = _dangerous()

    record = gate.request_confirmation(op)

    assert record.decision is ConfirmationDecision.PENDING
    assert record.id.startswith("cfm-")
    assert seen == [(record, op)]
    assert gate.pending() == (record,)
    assert gate.record_for(op.id) == record


def test_repeated_request_returns_the_pending_record() -> None:
    gate = ConfirmationGate()
    op = _dangerous()

    assert gate.request_confirmation(op) == gate.request_confirmation(op)
    assert len(gate.pending()) == 1


def test_safe_operations_need_no_confirmation() -> None:
    gate = ConfirmationGate()
    op = Operation(kind=OperationKind.FILESYSTEM)

    with pytest.raises(ValueError):
        gate.request_confirmation(op)
    assert gate.may_execute(op)
    gate.require_approval(op)


def test_gate_fails_closed_until_approved() -> None:
    gate = ConfirmationGate()
    op = _dangerous()

    with pytest.raises(ConfirmationPending):
        gate.require_approval(op)

    record = gate.request_confirmation(op)
    with pytest.raises(ConfirmationPending) as excinfo:
        gate.require_approval(op)
    assert excinfo.value.confirmation_id == record.id
    assert not gate.may_execute(op)

    gate.resolve(record.id, "approved", decided_by="alice")
    gate.require_approval(op)
    assert gate.may_execute(op)
    assert gate.get(record.id).decided_by == "alice"


def test_denied_record_blocks_for_good() -> None:
    gate = ConfirmationGate()
    op = _dangerous(OperationKind.VCS)
    record = gate.request_confirmation(op)

    gate.resolve(record.id, ConfirmationDecision.DENIED)

    with pytest.raises(ConfirmationDenied):
        gate.require_approval(op)
    with pytest.raises(DuplicateConfirmation):
        gate.request_confirmation(op)


def test_records_resolve_exactly_once() -> None:
    gate = ConfirmationGate()
    record = gate.request_confirmation(_dangerous())
    gate.resolve(record.id, "approved")

    with pytest.raises(DuplicateConfirmation):
        gate.resolve(record.id, "denied")
    assert gate.get(record.id).decision is ConfirmationDecision.APPROVED


def test_resolve_rejects_pending_and_unknown() -> None:
    gate = ConfirmationGate()
    record = gate.request_confirmation(_dangerous())

    with pytest.raises(ValueError):
        gate.resolve(record.id, "pending")
    with pytest.raises(ValueError):
        gate.resolve(record.id, "maybe")
    with pytest.raises(UnknownConfirmation):
        gate.resolve("cfm-missing", "approved")


def test_requester_failure_leaves_record_pending() -> None:
    def broken(record: ConfirmationRecord, op: Operation) -> None:
        raise RuntimeError("chat down")

    gate = ConfirmationGate(requester=broken)

    record = gate.request_confirmation(_dangerous())

    assert gate.get(record.id).decision is ConfirmationDecision.PENDING


async def test_wait_for_decision_wakes_on_resolve() -> None:
    gate = ConfirmationGate()
    record = gate.request_confirmation(_dangerous())
    asyncio.get_running_loop().call_later(0.01, gate.resolve, record.id, "approved")

    resolved = await gate.wait_for_decision(record.id, CancellationToken())

    assert resolved.is_approved


async def test_wait_for_decision_honours_cancellation() -> None:
    gate = ConfirmationGate()
    record = gate.request_confirmation(_dangerous())
    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.01, token.cancel)

    with pytest.raises(OperationCancelled):
        await gate.wait_for_decision(record.id, token)
    assert gate.get(record.id).decision is ConfirmationDecision.PENDING


async def test_resolve_from_another_thread_wakes_the_waiter() -> None:
    gate = ConfirmationGate()
    record = gate.request_confirmation(_dangerous())
    approver = threading.Timer(0.05, gate.resolve, args=(record.id, "approved"))
    approver.start()
    try:
        resolved = await asyncio.wait_for(
            gate.wait_for_decision(record.id, CancellationToken()), timeout=2.0
        )
    finally:
        approver.join()

    assert resolved.is_approved


def test_withdraw_drops_pending_record_and_keeps_gate_closed() -> None:
    gate = ConfirmationGate()
    op = _dangerous()
    record = gate.request_confirmation(op)

    assert gate.withdraw(op.id) == record

    assert gate.pending() == ()
    assert gate.record_for(op.id) is None
    assert not gate.may_execute(op)
    assert gate.withdraw(op.id) is None
    with pytest.raises(UnknownConfirmation):
        gate.resolve(record.id, "approved")


def test_withdraw_leaves_resolved_records_in_place() -> None:
    gate = ConfirmationGate()
    op = _dangerous()
    record = gate.request_confirmation(op)
    gate.resolve(record.id, "approved")

    assert gate.withdraw(op.id) is None
    assert gate.may_execute(op)


async def test_withdraw_wakes_waiter_with_cancellation() -> None:
    gate = ConfirmationGate()
    op = _dangerous()
    record = gate.request_confirmation(op)
    asyncio.get_running_loop().call_later(0.01, gate.withdraw, op.id)

    with pytest.raises(OperationCancelled, match="withdrawn"):
        await gate.wait_for_decision(record.id, CancellationToken())
