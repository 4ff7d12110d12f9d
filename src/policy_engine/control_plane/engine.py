"""
Policy engine facade: the external interface of the control plane.

``PolicyEngine`` is a keyed registry of ``ChangeWorkflow`` objects. It wires
the classifier, plan validator, confirmation gate, resilience wrapper and policy
audit together, publishes a ``PolicyEvent`` for every observable step and logs
each decision with ``structlog``. Event-bus and logging failures never change a
workflow's outcome.

Typical flow::

    engine = PolicyEngine()
    handle = engine.submit(request)              # Idle -> Plan or Build
    engine.submit_plan(handle, plan)             # Plan -> Build when valid
    op_handle = engine.queue_operation(handle, op)
    engine.resolve_confirmation(op_handle.confirmation_id, "approved")
    await engine.execute_operation(op_handle, action)
    engine.record_test_evidence(handle, "manual run of the checkout flow")
    engine.finish_build(handle)                  # Build -> Verify
    engine.verify(handle)                        # Verify -> Done / Build / Blocked
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Final, TypeVar

import structlog

from policy_engine.config.schema import assert_valid_config, default_config, resilience_policies
from policy_engine.control_plane.confirmation_gate import ConfirmationGate
from policy_engine.control_plane.state_machine import TransitionRecord
from policy_engine.control_plane.workflow import (
    ChangeWorkflow,
    OperationHandle,
    WorkflowHandle,
    WorkflowSnapshot,
)
from policy_engine.domain import ids as domain_ids
from policy_engine.domain.errors import (
    InvalidRequest,
    OperationCancelled,
    OperationError,
    PolicyViolation,
    UnknownWorkflow,
)
from policy_engine.domain.events import EventType
from policy_engine.domain.models import (
    AttemptRecord,
    ChangeRequest,
    ConfirmationDecision,
    ConfirmationRecord,
    Operation,
    OperationKind,
    OperationStatus,
    PlanArtifact,
    ResiliencePolicy,
    ValidationResult,
    WorkflowState,
)
from policy_engine.observability.events import EventBus
from policy_engine.observability.logging import correlation_scope
from policy_engine.planning.classifier import classify
from policy_engine.resilience.wrapper import ExecutionResult, ResilienceWrapper
from policy_engine.utils.concurrency import CancellationToken
from policy_engine.verification_plane.policy_audit import AuditReport, audit

T = TypeVar("T")

_QUEUE_STATES: Final[tuple[WorkflowState, ...]] = (WorkflowState.BUILD,)
_LOOKUP_STATES: Final[tuple[WorkflowState, ...]] = (
    WorkflowState.PLAN,
    WorkflowState.BUILD,
    WorkflowState.VERIFY,
)


class PolicyEngine:
    """Keyed registry of change-request workflows with policy enforcement."""

    def __init__(
        self,
        config: Mapping[str, object] | None = None,
        *,
        gate: ConfirmationGate | None = None,
        wrapper: ResilienceWrapper | None = None,
        event_bus: EventBus | None = None,
        logger: Any | None = None,
    ) -> None:
        effective = assert_valid_config(config if config is not None else default_config())
        self._config = effective
        self._policies = resilience_policies(effective)
        self._wait_for_confirmation = bool(effective["engine"]["wait_for_confirmation"])
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._gate = gate if gate is not None else ConfirmationGate(logger=self._logger)
        self._wrapper = wrapper if wrapper is not None else ResilienceWrapper(logger=self._logger)
        self._bus = (
            event_bus
            if event_bus is not None
            else EventBus(buffer_size=effective["observability"]["event_buffer_size"])
        )
        # Guards insertion only; each workflow serializes its own updates.
        self._registry_guard = threading.Lock()
        self._workflows: dict[str, ChangeWorkflow] = {}
        self._operation_owner: dict[str, str] = {}

    @property
    def event_bus(self) -> EventBus:
        return self._bus

    @property
    def gate(self) -> ConfirmationGate:
        return self._gate

    @property
    def policies(self) -> dict[OperationKind, ResiliencePolicy]:
        return dict(self._policies)

    def policy_for(self, kind: OperationKind | str) -> ResiliencePolicy:
        return self._policies[OperationKind(kind)]

    def submit(self, request: ChangeRequest | Mapping[str, object]) -> WorkflowHandle:
        """Classify and admit a change request: Idle -> Plan or Idle -> Build."""
        parsed = _as_change_request(request)
        decision = classify(parsed)
        self._logger.info(
            "classifier_decision",
            change_request_id=parsed.id,
            required=decision.required,
            rationale=list(decision.rationale),
            module_count=parsed.module_count,
        )

        workflow = ChangeWorkflow(parsed, decision, logger=self._logger)
        with self._registry_guard:
            if parsed.id in self._workflows:
                raise InvalidRequest(f"change request {parsed.id} was already submitted")
            self._workflows[parsed.id] = workflow

        record = workflow.admit()
        self._publish(EventType.CHANGE_ADMITTED, parsed.id, {"description": parsed.description})
        self._publish(EventType.CHANGE_CLASSIFIED, parsed.id, decision.to_dict())
        self._publish_transition(parsed.id, record)
        return WorkflowHandle(change_request_id=parsed.id)

    def get_state(self, handle: WorkflowHandle | str) -> WorkflowState:
        return self._workflow(handle).state

    def describe(self, handle: WorkflowHandle | str) -> WorkflowSnapshot:
        return self._workflow(handle).snapshot()

    def submit_plan(
        self,
        handle: WorkflowHandle | str,
        plan: PlanArtifact | Mapping[str, object],
        *,
        strict: bool = False,
    ) -> ValidationResult:
        """Validate a plan; the workflow moves to Build only when it is complete.

        An incomplete plan is reported in the returned result, or raised as
        ``ValidationIncomplete`` when ``strict`` is set. Either way the workflow
        stays in Plan.
        """
        workflow = self._workflow(handle)
        parsed = plan if isinstance(plan, PlanArtifact) else PlanArtifact.from_dict(plan)
        cr_id = workflow.change_request_id
        self._publish(
            EventType.PLAN_SUBMITTED,
            cr_id,
            {"operation_kinds": sorted(kind.value for kind in parsed.operation_kinds)},
        )

        result, record = workflow.submit_plan(parsed)
        self._logger.info(
            "plan_validated",
            change_request_id=cr_id,
            valid=result.valid,
            missing=sorted(result.missing),
        )
        if result.valid:
            self._publish(EventType.PLAN_ACCEPTED, cr_id, {})
        else:
            self._publish(
                EventType.PLAN_REJECTED,
                cr_id,
                {"missing": sorted(result.missing), "issues": list(result.issues)},
            )
        if record is not None:
            self._publish_transition(cr_id, record)
        if strict:
            result.raise_if_incomplete()
        return result

    def queue_operation(
        self, handle: WorkflowHandle | str, op: Operation | Mapping[str, object]
    ) -> OperationHandle:
        """Queue an operation in Build; dangerous ones get a pending confirmation."""
        workflow = self._workflow(handle)
        parsed = op if isinstance(op, Operation) else Operation.from_dict(op)
        return self._register(workflow, parsed, allowed_states=_QUEUE_STATES)

    def resolve_confirmation(
        self,
        record_id: str,
        decision: ConfirmationDecision | str,
        *,
        decided_by: str | None = None,
    ) -> ConfirmationRecord:
        record = self._gate.resolve(record_id, decision, decided_by=decided_by)
        cr_id = self._operation_owner.get(record.operation_id)
        payload = {
            "confirmation_id": record.id,
            "operation_id": record.operation_id,
            "decision": record.decision.value,
            "decided_by": decided_by,
        }
        self._publish(EventType.CONFIRMATION_RESOLVED, cr_id, payload)
        if cr_id is not None:
            status = self._workflows[cr_id].confirmation_resolved(
                record.operation_id, record.decision
            )
            if status is OperationStatus.REJECTED:
                self._publish(
                    EventType.OPERATION_REJECTED,
                    cr_id,
                    {"operation_id": record.operation_id, "reason": "confirmation_denied"},
                )
        return record

    def pending_confirmations(self) -> tuple[ConfirmationRecord, ...]:
        return self._gate.pending()

    async def execute_operation(
        self,
        op_handle: OperationHandle,
        action: Callable[[], Awaitable[T]],
        *,
        timeout_seconds: float | None = None,
        wait_for_confirmation: bool | None = None,
    ) -> ExecutionResult[T]:
        """Run ``action`` as the side effect of a queued operation.

        Dangerous operations need an approved confirmation first: by default a
        pending record raises ``ConfirmationPending`` at once, and with
        ``wait_for_confirmation`` the call suspends until the record resolves or
        the change request is cancelled. A denied record raises
        ``ConfirmationDenied``.
        """
        workflow = self._workflow(op_handle.change_request_id)
        op = workflow.operation(op_handle.operation_id)
        wait = (
            self._wait_for_confirmation if wait_for_confirmation is None else wait_for_confirmation
        )

        with correlation_scope(change_request_id=workflow.change_request_id, operation_id=op.id):
            if op.dangerous:
                record = self._gate.record_for(op.id)
                if wait and record is not None and not record.is_resolved:
                    self._logger.info(
                        "confirmation_wait", operation_id=op.id, confirmation_id=record.id
                    )
                    await self._gate.wait_for_decision(record.id, workflow.token)
                self._gate.require_approval(op)
                # The resolving thread may not have updated the workflow yet.
                workflow.confirmation_resolved(op.id, ConfirmationDecision.APPROVED)

            token = workflow.begin_execution(op.id)
            self._publish(
                EventType.OPERATION_STARTED,
                workflow.change_request_id,
                {"operation_id": op.id, "kind": op.kind.value},
            )
            return await self._run(workflow, op, action, token, timeout_seconds)

    async def lookup_reference(
        self,
        handle: WorkflowHandle | str,
        fetch: Callable[[], Awaitable[T]],
        *,
        description: str = "reference lookup",
        timeout_seconds: float | None = None,
    ) -> ExecutionResult[T]:
        """Run a documentation/reference lookup as an idempotent ``network_system`` operation."""
        workflow = self._workflow(handle)
        op_id = domain_ids.generate_operation_id()
        op = Operation(
            kind=OperationKind.NETWORK_SYSTEM,
            idempotency_key=f"reference-lookup:{op_id}",
            description=description,
            id=op_id,
        )
        op_handle = self._register(workflow, op, allowed_states=_LOOKUP_STATES)
        return await self.execute_operation(op_handle, fetch, timeout_seconds=timeout_seconds)

    def abandon_operation(self, op_handle: OperationHandle) -> OperationStatus:
        workflow = self._workflow(op_handle.change_request_id)
        status = workflow.abandon(op_handle.operation_id)
        self._gate.withdraw(op_handle.operation_id)
        self._publish(
            EventType.OPERATION_REJECTED,
            workflow.change_request_id,
            {"operation_id": op_handle.operation_id, "reason": "abandoned"},
        )
        return status

    def report_execution(
        self, op_handle: OperationHandle, *, succeeded: bool, attempts: int = 1
    ) -> OperationStatus:
        """Record a side effect the caller applied outside ``execute_operation``."""
        workflow = self._workflow(op_handle.change_request_id)
        op = workflow.operation(op_handle.operation_id)
        cr_id = workflow.change_request_id
        try:
            status = workflow.report_execution(
                op.id, succeeded=succeeded, attempts=attempts, approved=self._gate.may_execute(op)
            )
        except PolicyViolation as exc:
            self._on_violation(workflow, exc)
            raise

        event_type = (
            EventType.OPERATION_SUCCEEDED
            if status is OperationStatus.SUCCEEDED
            else EventType.OPERATION_FAILED
        )
        self._publish(
            event_type, cr_id, {"operation_id": op.id, "attempts": attempts, "reported": True}
        )
        return status

    def record_test_evidence(self, handle: WorkflowHandle | str, evidence: str) -> int:
        return self._workflow(handle).record_test_evidence(evidence)

    def finish_build(self, handle: WorkflowHandle | str) -> WorkflowState:
        """Build -> Verify once every queued operation is terminal."""
        workflow = self._workflow(handle)
        record = workflow.finish_build()
        self._publish_transition(workflow.change_request_id, record)
        return record.to_state

    def verify(self, handle: WorkflowHandle | str) -> AuditReport:
        """Audit the change: Done when clean, back to Build on gaps, Blocked on violations."""
        workflow = self._workflow(handle)
        cr_id = workflow.change_request_id
        report = audit(workflow.audit_subject())
        record = workflow.apply_audit(report)
        self._logger.info(
            "policy_audit",
            change_request_id=cr_id,
            passed=report.passed,
            findings=[finding.code for finding in report.findings],
        )

        if report.violations:
            violation = PolicyViolation(
                f"change request {cr_id} violated policy: {record.detail}",
                findings=[finding.code for finding in report.violations],
            )
            self._publish(EventType.POLICY_VIOLATED, cr_id, report.to_dict())
            self._publish_transition(cr_id, record)
            raise violation
        if report.gaps:
            self._publish(EventType.VERIFICATION_GAPS_FOUND, cr_id, report.to_dict())
        else:
            self._publish(EventType.VERIFICATION_PASSED, cr_id, report.to_dict())
        self._publish_transition(cr_id, record)
        return report

    def cancel(self, handle: WorkflowHandle | str) -> WorkflowState:
        """Cancel the change request: in-flight work stops and the workflow is Blocked."""
        workflow = self._workflow(handle)
        record = workflow.cancel()
        for entry in workflow.snapshot().operations:
            if entry.dangerous and entry.status is OperationStatus.CANCELLED:
                self._gate.withdraw(entry.operation_id)
        self._logger.info(
            "change_request_cancelled",
            change_request_id=workflow.change_request_id,
            already_terminal=record is None,
        )
        self._publish(EventType.CHANGE_CANCELLED, workflow.change_request_id, {})
        if record is not None:
            self._publish_transition(workflow.change_request_id, record)
            return record.to_state
        return workflow.state

    async def _run(
        self,
        workflow: ChangeWorkflow,
        op: Operation,
        action: Callable[[], Awaitable[T]],
        token: CancellationToken,
        timeout_seconds: float | None,
    ) -> ExecutionResult[T]:
        cr_id = workflow.change_request_id
        policy = self._policies[op.kind]
        try:
            result = await self._wrapper.execute(
                op, policy, action, cancel_token=token, timeout_seconds=timeout_seconds
            )
        except OperationCancelled as exc:
            workflow.finish_execution(
                op.id, OperationStatus.CANCELLED, exc.attempts, error_code=exc.code
            )
            self._publish_attempts(cr_id, exc.attempts)
            self._publish(EventType.OPERATION_CANCELLED, cr_id, {"operation_id": op.id})
            raise
        except OperationError as exc:
            workflow.finish_execution(
                op.id, OperationStatus.FAILED, exc.attempts, error_code=exc.code
            )
            self._publish_attempts(cr_id, exc.attempts)
            self._publish(
                EventType.OPERATION_FAILED,
                cr_id,
                {"operation_id": op.id, "code": exc.code, "attempts": exc.attempt_count},
            )
            raise
        except asyncio.CancelledError:
            workflow.finish_execution(op.id, OperationStatus.CANCELLED, error_code="cancelled")
            raise
        except Exception:
            workflow.finish_execution(op.id, OperationStatus.FAILED, error_code="internal_error")
            raise

        workflow.finish_execution(op.id, OperationStatus.SUCCEEDED, result.attempts)
        self._publish_attempts(cr_id, result.attempts)
        self._publish(
            EventType.OPERATION_SUCCEEDED,
            cr_id,
            {"operation_id": op.id, "attempts": result.attempt_count},
        )
        return result

    def _register(
        self,
        workflow: ChangeWorkflow,
        op: Operation,
        *,
        allowed_states: tuple[WorkflowState, ...],
    ) -> OperationHandle:
        cr_id = workflow.change_request_id
        workflow.register_operation(op, allowed_states=allowed_states)
        with self._registry_guard:
            self._operation_owner[op.id] = cr_id
        self._logger.info(
            "operation_queued",
            change_request_id=cr_id,
            operation_id=op.id,
            kind=op.kind.value,
            dangerous=op.dangerous,
            idempotent=op.is_idempotent,
        )
        self._publish(
            EventType.OPERATION_QUEUED,
            cr_id,
            {"operation_id": op.id, "kind": op.kind.value, "dangerous": op.dangerous},
        )

        confirmation_id: str | None = None
        if op.dangerous:
            record = self._gate.request_confirmation(op)
            workflow.attach_confirmation(op.id, record.id, record.decision)
            confirmation_id = record.id
            category = op.danger_category
            self._publish(
                EventType.CONFIRMATION_REQUESTED,
                cr_id,
                {
                    "confirmation_id": record.id,
                    "operation_id": op.id,
                    "danger_category": None if category is None else category.value,
                    "reversible": op.reversible,
                    "description": op.description,
                },
            )
        return OperationHandle(
            change_request_id=cr_id, operation_id=op.id, confirmation_id=confirmation_id
        )

    def _on_violation(self, workflow: ChangeWorkflow, exc: PolicyViolation) -> None:
        cr_id = workflow.change_request_id
        self._logger.warning(
            "policy_violation", change_request_id=cr_id, findings=list(exc.findings)
        )
        self._publish(EventType.POLICY_VIOLATED, cr_id, {"findings": list(exc.findings)})
        history = workflow.snapshot().history
        if history and history[-1].to_state is WorkflowState.BLOCKED:
            self._publish_transition(cr_id, history[-1])

    def _workflow(self, handle: WorkflowHandle | str) -> ChangeWorkflow:
        cr_id = handle.change_request_id if isinstance(handle, WorkflowHandle) else handle
        workflow = self._workflows.get(cr_id)
        if workflow is None:
            raise UnknownWorkflow(f"unknown change request {cr_id!r}")
        return workflow

    def _publish_transition(self, cr_id: str, record: TransitionRecord) -> None:
        event_type = (
            EventType.WORKFLOW_BLOCKED
            if record.to_state is WorkflowState.BLOCKED
            else EventType.WORKFLOW_TRANSITIONED
        )
        self._publish(event_type, cr_id, record.to_dict())

    def _publish_attempts(self, cr_id: str, attempts: tuple[AttemptRecord, ...]) -> None:
        for attempt in attempts:
            self._publish(EventType.ATTEMPT_RECORDED, cr_id, attempt.to_dict())

    def _publish(
        self, event_type: EventType, cr_id: str | None, payload: Mapping[str, object]
    ) -> None:
        _, errors = self._bus.emit(event_type, payload, correlation_id=cr_id)
        for error in errors:
            self._logger.warning(
                "event_dispatch_failed",
                event_type=event_type.value,
                stage=error.stage,
                target=error.target,
                error_type=error.error_type,
            )


def _as_change_request(request: object) -> ChangeRequest:
    if isinstance(request, ChangeRequest):
        return request
    if isinstance(request, Mapping):
        return ChangeRequest.from_dict(request)
    raise InvalidRequest(
        f"change request must be a ChangeRequest or mapping, got {type(request).__name__}"
    )


__all__ = ["PolicyEngine"]
