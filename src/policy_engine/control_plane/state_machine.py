"""
Workflow state machine for one change request.

State flow::

    Idle -> Plan -> Build -> Verify -> Done
                        ^--------/
    (any non-terminal) -> Blocked

Verify -> Build is the single backward edge (correctable verification gaps).
Done and Blocked are terminal. The machine holds no lock of its own; the owning
``ChangeWorkflow`` serializes access.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Final

import structlog

from policy_engine.domain.errors import WorkflowStateError
from policy_engine.domain.models import WorkflowState

VALID_TRANSITIONS: Final[Mapping[WorkflowState, frozenset[WorkflowState]]] = {
    WorkflowState.IDLE: frozenset(
        {WorkflowState.PLAN, WorkflowState.BUILD, WorkflowState.BLOCKED}
    ),
    WorkflowState.PLAN: frozenset({WorkflowState.BUILD, WorkflowState.BLOCKED}),
    WorkflowState.BUILD: frozenset({WorkflowState.VERIFY, WorkflowState.BLOCKED}),
    WorkflowState.VERIFY: frozenset(
        {WorkflowState.DONE, WorkflowState.BUILD, WorkflowState.BLOCKED}
    ),
    WorkflowState.DONE: frozenset(),
    WorkflowState.BLOCKED: frozenset(),
}


class TransitionReason(StrEnum):
    """Why a workflow moved between states."""

    PLANNING_REQUIRED = "planning_required"
    PLANNING_NOT_REQUIRED = "planning_not_required"
    PLAN_VALIDATED = "plan_validated"
    OPERATIONS_SETTLED = "operations_settled"
    AUDIT_PASSED = "audit_passed"
    AUDIT_GAPS = "audit_gaps"
    POLICY_VIOLATION = "policy_violation"
    CANCELLED = "cancelled"


BLOCK_REASONS: Final[frozenset[TransitionReason]] = frozenset(
    {TransitionReason.POLICY_VIOLATION, TransitionReason.CANCELLED}
)


@dataclass(frozen=True, slots=True)
class TransitionRecord:
    """One entry of the ordered transition history."""

    from_state: WorkflowState
    to_state: WorkflowState
    reason: TransitionReason
    at: datetime
    detail: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "from": self.from_state.value,
            "to": self.to_state.value,
            "reason": self.reason.value,
            "at": self.at.isoformat(),
            "detail": self.detail,
        }


def _utc_now() -> datetime:
    return datetime.now(UTC)


def can_transition(from_state: WorkflowState, to_state: WorkflowState) -> bool:
    return to_state in VALID_TRANSITIONS[from_state]


class WorkflowStateMachine:
    """Tracks the state and transition history of one change request."""

    def __init__(
        self,
        change_request_id: str,
        *,
        clock: Callable[[], datetime] = _utc_now,
        logger: Any | None = None,
    ) -> None:
        self._change_request_id = change_request_id
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._state = WorkflowState.IDLE
        self._history: list[TransitionRecord] = []

    @property
    def state(self) -> WorkflowState:
        return self._state

    @property
    def history(self) -> tuple[TransitionRecord, ...]:
        return tuple(self._history)

    @property
    def block_reason(self) -> TransitionReason | None:
        if self._state is not WorkflowState.BLOCKED or not self._history:
            return None
        return self._history[-1].reason

    def require(self, *states: WorkflowState, action: str) -> None:
        """Raise ``WorkflowStateError`` unless the machine is in one of ``states``."""
        if self._state in states:
            return
        expected = ", ".join(state.value for state in states)
        raise WorkflowStateError(
            f"cannot {action} for change request {self._change_request_id} in state "
            f"{self._state.value}; expected {expected}"
        )

    def transition(
        self,
        to_state: WorkflowState,
        reason: TransitionReason,
        *,
        detail: str = "",
    ) -> TransitionRecord:
        if to_state is WorkflowState.BLOCKED and reason not in BLOCK_REASONS:
            raise ValueError(f"{reason.value} is not a block reason")
        if not can_transition(self._state, to_state):
            raise WorkflowStateError(
                f"invalid transition for change request {self._change_request_id}: "
                f"{self._state.value} -> {to_state.value}"
            )

        record = TransitionRecord(
            from_state=self._state,
            to_state=to_state,
            reason=reason,
            at=self._clock(),
            detail=detail,
        )
        self._history.append(record)
        self._state = to_state
        self._logger.info(
            "workflow_transition",
            change_request_id=self._change_request_id,
            from_state=record.from_state.value,
            to_state=record.to_state.value,
            reason=reason.value,
            detail=detail or None,
        )
        return record

    def block(self, reason: TransitionReason, *, detail: str = "") -> TransitionRecord:
        return self.transition(WorkflowState.BLOCKED, reason, detail=detail)


__all__ = [
    "BLOCK_REASONS",
    "TransitionReason",
    "TransitionRecord",
    "VALID_TRANSITIONS",
    "WorkflowStateMachine",
    "can_transition",
]
