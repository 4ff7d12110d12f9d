"""
Per-change-request workflow aggregate.

``ChangeWorkflow`` owns everything the engine knows about one change request:
its trigger decision, the state machine, the accepted plan's completeness view,
the queued operations and the root cancellation token. A ``threading.Lock``
serializes every synchronous update and is never held across an ``await``.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from policy_engine.control_plane.state_machine import (
    TransitionReason,
    TransitionRecord,
    WorkflowStateMachine,
)
from policy_engine.domain.errors import (
    ConfirmationPending,
    DuplicateOperation,
    OperationCancelled,
    PolicyViolation,
    UnknownOperation,
    WorkflowStateError,
)
from policy_engine.domain.models import (
    AttemptRecord,
    ChangeRequest,
    ConfirmationDecision,
    Operation,
    OperationStatus,
    PlanArtifact,
    PlanCompleteness,
    TriggerDecision,
    ValidationResult,
    WorkflowState,
)
from policy_engine.planning.plan_validator import completeness_view, validate
from policy_engine.utils.concurrency import CancellationToken
from policy_engine.verification_plane.policy_audit import (
    AuditReport,
    AuditSubject,
    OperationEvidence,
)


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class WorkflowHandle:
    change_request_id: str


@dataclass(frozen=True, slots=True)
class OperationHandle:
    change_request_id: str
    operation_id: str
    confirmation_id: str | None = None


@dataclass(slots=True)
class OperationEntry:
    """Mutable bookkeeping for one queued operation."""

    operation: Operation
    status: OperationStatus
    confirmation_id: str | None = None
    confirmation: ConfirmationDecision | None = None
    attempts: tuple[AttemptRecord, ...] = ()
    reported_attempts: int = 0
    error_code: str | None = None
    token: CancellationToken | None = field(default=None, repr=False)

    @property
    def attempt_count(self) -> int:
        return max(len(self.attempts), self.reported_attempts)

    def snapshot(self) -> OperationSnapshot:
        return OperationSnapshot(
            operation_id=self.operation.id,
            kind=self.operation.kind.value,
            dangerous=self.operation.dangerous,
            idempotent=self.operation.is_idempotent,
            status=self.status,
            confirmation_id=self.confirmation_id,
            attempt_count=self.attempt_count,
            error_code=self.error_code,
        )


@dataclass(frozen=True, slots=True)
class OperationSnapshot:
    operation_id: str
    kind: str
    dangerous: bool
    idempotent: bool
    status: OperationStatus
    confirmation_id: str | None
    attempt_count: int
    error_code: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "operation_id": self.operation_id,
            "kind": self.kind,
            "dangerous": self.dangerous,
            "idempotent": self.idempotent,
            "status": self.status.value,
            "confirmation_id": self.confirmation_id,
            "attempt_count": self.attempt_count,
            "error_code": self.error_code,
        }


@dataclass(frozen=True, slots=True)
class WorkflowSnapshot:
    """Read-only view of a workflow for callers and the CLI."""

    change_request_id: str
    state: WorkflowState
    decision: TriggerDecision
    plan: PlanCompleteness | None
    operations: tuple[OperationSnapshot, ...]
    history: tuple[TransitionRecord, ...]
    block_reason: str | None = None
    test_evidence_count: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "change_request_id": self.change_request_id,
            "state": self.state.value,
            "decision": self.decision.to_dict(),
            "plan": None if self.plan is None else self.plan.to_dict(),
            "operations": [item.to_dict() for item in self.operations],
            "history": [item.to_dict() for item in self.history],
            "block_reason": self.block_reason,
            "test_evidence_count": self.test_evidence_count,
        }


class ChangeWorkflow:
    """Single-writer state for one admitted change request."""

    def __init__(
        self,
        request: ChangeRequest,
        decision: TriggerDecision,
        *,
        clock: Callable[[], datetime] = _utc_now,
        logger: Any | None = None,
    ) -> None:
        self._request = request
        self._decision = decision
        self._clock = clock
        self._lock = threading.Lock()
        self._machine = WorkflowStateMachine(request.id, clock=clock, logger=logger)
        self._token = CancellationToken()
        self._plan: PlanCompleteness | None = None
        self._operations: dict[str, OperationEntry] = {}
        self._test_evidence: list[str] = []

    @property
    def change_request_id(self) -> str:
        return self._request.id

    @property
    def decision(self) -> TriggerDecision:
        return self._decision

    @property
    def state(self) -> WorkflowState:
        with self._lock:
            return self._machine.state

    @property
    def token(self) -> CancellationToken:
        return self._token

    def admit(self) -> TransitionRecord:
        with self._lock:
            if self._decision.required:
                return self._machine.transition(
                    WorkflowState.PLAN,
                    TransitionReason.PLANNING_REQUIRED,
                    detail=", ".join(self._decision.rationale),
                )
            return self._machine.transition(
                WorkflowState.BUILD, TransitionReason.PLANNING_NOT_REQUIRED
            )

    def submit_plan(self, plan: PlanArtifact) -> tuple[ValidationResult, TransitionRecord | None]:
        """Validate ``plan``; a valid plan submitted in Plan moves the workflow to Build.

        A plan submitted in Build for a change that did not require planning is
        kept for its declared kinds only.
        """
        result = validate(plan)
        with self._lock:
            state = self._machine.state
            if state is WorkflowState.BUILD and not self._decision.required:
                if result.valid:
                    self._plan = completeness_view(plan, validated_at=self._clock())
                return result, None
            self._machine.require(WorkflowState.PLAN, action="submit a plan")
            if not result.valid:
                return result, None
            self._plan = completeness_view(plan, validated_at=self._clock())
            record = self._machine.transition(
                WorkflowState.BUILD, TransitionReason.PLAN_VALIDATED
            )
            return result, record

    def register_operation(
        self, op: Operation, *, allowed_states: Sequence[WorkflowState]
    ) -> OperationEntry:
        with self._lock:
            self._machine.require(*allowed_states, action="queue an operation")
            if self._token.is_cancelled:
                raise OperationCancelled(
                    f"change request {self._request.id} was cancelled",
                    operation_id=op.id,
                    kind=op.kind.value,
                )
            if op.id in self._operations:
                raise DuplicateOperation(f"operation {op.id} was already queued")
            status = (
                OperationStatus.AWAITING_CONFIRMATION if op.dangerous else OperationStatus.QUEUED
            )
            entry = OperationEntry(operation=op, status=status)
            self._operations[op.id] = entry
            return entry

    def attach_confirmation(
        self, operation_id: str, confirmation_id: str, decision: ConfirmationDecision
    ) -> None:
        with self._lock:
            entry = self._entry(operation_id)
            entry.confirmation_id = confirmation_id
            entry.confirmation = decision

    def confirmation_resolved(
        self, operation_id: str, decision: ConfirmationDecision
    ) -> OperationStatus:
        """Approved operations become runnable; denied ones are rejected for good."""
        with self._lock:
            entry = self._entry(operation_id)
            entry.confirmation = decision
            if entry.status is OperationStatus.AWAITING_CONFIRMATION:
                if decision is ConfirmationDecision.APPROVED:
                    entry.status = OperationStatus.QUEUED
                elif decision is ConfirmationDecision.DENIED:
                    entry.status = OperationStatus.REJECTED
                    entry.error_code = "confirmation_denied"
            return entry.status

    def operation(self, operation_id: str) -> Operation:
        with self._lock:
            return self._entry(operation_id).operation

    def begin_execution(self, operation_id: str) -> CancellationToken:
        """Mark the operation running and hand out its child cancellation token."""
        with self._lock:
            entry = self._entry(operation_id)
            if self._token.is_cancelled:
                raise OperationCancelled(
                    f"change request {self._request.id} was cancelled",
                    operation_id=operation_id,
                    kind=entry.operation.kind.value,
                )
            if entry.status is OperationStatus.AWAITING_CONFIRMATION:
                raise ConfirmationPending(
                    f"operation {operation_id} is awaiting confirmation",
                    operation_id=operation_id,
                    confirmation_id=entry.confirmation_id,
                )
            if entry.status is not OperationStatus.QUEUED:
                raise WorkflowStateError(
                    f"operation {operation_id} is {entry.status.value}; operations run once"
                )
            entry.status = OperationStatus.RUNNING
            entry.token = self._token.child()
            return entry.token

    def finish_execution(
        self,
        operation_id: str,
        status: OperationStatus,
        attempts: Iterable[AttemptRecord] = (),
        *,
        error_code: str | None = None,
    ) -> None:
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal operation status")
        with self._lock:
            entry = self._entry(operation_id)
            entry.status = status
            entry.attempts = tuple(attempts)
            entry.error_code = error_code
            if entry.token is not None:
                entry.token.detach()
                entry.token = None

    def report_execution(
        self, operation_id: str, *, succeeded: bool, attempts: int, approved: bool
    ) -> OperationStatus:
        """Record a side effect the caller applied itself.

        Raises ``PolicyViolation`` (after blocking the workflow) when the report
        shows a dangerous operation without approval or a retried non-idempotent one.
        """
        if isinstance(attempts, bool) or not isinstance(attempts, int) or attempts < 1:
            raise ValueError("attempts must be an integer >= 1")
        with self._lock:
            entry = self._entry(operation_id)
            op = entry.operation
            # A rejected dangerous operation reported as executed is still a violation.
            settled = entry.status.is_terminal and not (
                entry.status is OperationStatus.REJECTED and op.dangerous
            )
            if settled or entry.status is OperationStatus.RUNNING:
                raise WorkflowStateError(
                    f"operation {operation_id} is already {entry.status.value}"
                )
            findings: list[str] = []
            if op.dangerous and not approved:
                findings.append("unconfirmed_dangerous_execution")
            if not op.is_idempotent and attempts > 1:
                findings.append("non_idempotent_retry")

            entry.reported_attempts = attempts
            entry.status = OperationStatus.SUCCEEDED if succeeded else OperationStatus.FAILED
            if not findings:
                return entry.status

            entry.error_code = findings[0]
            detail = f"operation {operation_id}: {', '.join(findings)}"
            if not self._machine.state.is_terminal:
                self._machine.block(TransitionReason.POLICY_VIOLATION, detail=detail)
        raise PolicyViolation(f"policy violation on {detail}", findings=findings)

    def abandon(self, operation_id: str) -> OperationStatus:
        with self._lock:
            entry = self._entry(operation_id)
            if entry.status is OperationStatus.REJECTED:
                return entry.status
            if entry.status is not OperationStatus.AWAITING_CONFIRMATION:
                raise WorkflowStateError(
                    f"operation {operation_id} is {entry.status.value}; only operations "
                    "awaiting confirmation can be abandoned"
                )
            entry.status = OperationStatus.REJECTED
            entry.error_code = "abandoned"
            return entry.status

    def record_test_evidence(self, evidence: str) -> int:
        text = " ".join(str(evidence).split())
        if not text:
            raise ValueError("test evidence must not be empty")
        with self._lock:
            self._machine.require(
                WorkflowState.BUILD, WorkflowState.VERIFY, action="record test evidence"
            )
            self._test_evidence.append(text)
            return len(self._test_evidence)

    def finish_build(self) -> TransitionRecord:
        with self._lock:
            self._machine.require(WorkflowState.BUILD, action="finish build")
            for entry in self._sorted_entries():
                if entry.status is OperationStatus.AWAITING_CONFIRMATION:
                    raise ConfirmationPending(
                        f"operation {entry.operation.id} is still awaiting confirmation",
                        operation_id=entry.operation.id,
                        confirmation_id=entry.confirmation_id,
                    )
                if not entry.status.is_terminal:
                    raise WorkflowStateError(
                        f"operation {entry.operation.id} is still {entry.status.value}"
                    )
            return self._machine.transition(
                WorkflowState.VERIFY, TransitionReason.OPERATIONS_SETTLED
            )

    def audit_subject(self) -> AuditSubject:
        with self._lock:
            self._machine.require(WorkflowState.VERIFY, action="verify")
            return AuditSubject(
                change_request_id=self._request.id,
                planning_required=self._decision.required,
                declared_kinds=(
                    self._plan.operation_kinds if self._plan is not None else frozenset()
                ),
                operations=tuple(
                    OperationEvidence(
                        operation=entry.operation,
                        status=entry.status,
                        attempt_count=entry.attempt_count,
                        confirmation=entry.confirmation,
                    )
                    for entry in self._sorted_entries()
                ),
                test_evidence=tuple(self._test_evidence),
            )

    def apply_audit(self, report: AuditReport) -> TransitionRecord:
        """Move Verify to Done, back to Build on gaps, or to Blocked on violations."""
        with self._lock:
            self._machine.require(WorkflowState.VERIFY, action="apply an audit")
            if report.violations:
                codes = ", ".join(sorted({finding.code for finding in report.violations}))
                return self._machine.block(TransitionReason.POLICY_VIOLATION, detail=codes)
            if report.gaps:
                codes = ", ".join(sorted({finding.code for finding in report.gaps}))
                return self._machine.transition(
                    WorkflowState.BUILD, TransitionReason.AUDIT_GAPS, detail=codes
                )
            return self._machine.transition(WorkflowState.DONE, TransitionReason.AUDIT_PASSED)

    def cancel(self, reason: str = "cancelled by caller") -> TransitionRecord | None:
        """Cancel every in-flight execution and block the workflow.

        Returns ``None`` when the workflow had already reached a terminal state.
        """
        with self._lock:
            self._token.cancel(reason)
            for entry in self._operations.values():
                if entry.status in (
                    OperationStatus.QUEUED,
                    OperationStatus.AWAITING_CONFIRMATION,
                ):
                    entry.status = OperationStatus.CANCELLED
                    entry.error_code = "cancelled"
            if self._machine.state.is_terminal:
                return None
            return self._machine.block(TransitionReason.CANCELLED, detail=reason)

    def snapshot(self) -> WorkflowSnapshot:
        with self._lock:
            block_reason = self._machine.block_reason
            return WorkflowSnapshot(
                change_request_id=self._request.id,
                state=self._machine.state,
                decision=self._decision,
                plan=self._plan,
                operations=tuple(entry.snapshot() for entry in self._sorted_entries()),
                history=self._machine.history,
                block_reason=None if block_reason is None else block_reason.value,
                test_evidence_count=len(self._test_evidence),
            )

    def _entry(self, operation_id: str) -> OperationEntry:
        entry = self._operations.get(operation_id)
        if entry is None:
            raise UnknownOperation(
                f"operation {operation_id!r} is not queued for change request {self._request.id}"
            )
        return entry

    def _sorted_entries(self) -> list[OperationEntry]:
        return [self._operations[key] for key in sorted(self._operations)]


__all__ = [
    "ChangeWorkflow",
    "OperationEntry",
    "OperationHandle",
    "OperationSnapshot",
    "WorkflowHandle",
    "WorkflowSnapshot",
]
