"""Control plane: workflow state machine, confirmation gate and the engine facade."""

from policy_engine.control_plane.confirmation_gate import ApprovalRequester, ConfirmationGate
from policy_engine.control_plane.engine import PolicyEngine
from policy_engine.control_plane.state_machine import (
    VALID_TRANSITIONS,
    TransitionReason,
    TransitionRecord,
    WorkflowStateMachine,
    can_transition,
)
from policy_engine.control_plane.workflow import (
    ChangeWorkflow,
    OperationHandle,
    OperationSnapshot,
    WorkflowHandle,
    WorkflowSnapshot,
)

__all__ = [
    "ApprovalRequester",
    "ChangeWorkflow",
    "ConfirmationGate",
    "OperationHandle",
    "OperationSnapshot",
    "PolicyEngine",
    "TransitionReason",
    "TransitionRecord",
    "VALID_TRANSITIONS",
    "WorkflowHandle",
    "WorkflowSnapshot",
    "WorkflowStateMachine",
    "can_transition",
]
