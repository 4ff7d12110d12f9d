"""Domain types shared across planes; free of I/O side effects."""

from policy_engine.domain.errors import (
    ConfirmationDenied,
    ConfirmationError,
    ConfirmationPending,
    DuplicateConfirmation,
    DuplicateOperation,
    InvalidRequest,
    NonIdempotentFailure,
    OperationCancelled,
    OperationError,
    OperationFailed,
    OperationTimeout,
    PolicyEngineError,
    PolicyViolation,
    RetriesExhausted,
    TransientOperationError,
    UnknownConfirmation,
    UnknownOperation,
    UnknownWorkflow,
    ValidationIncomplete,
    WorkflowStateError,
)
from policy_engine.domain.events import EventType, PolicyEvent
from policy_engine.domain.models import (
    DANGER_CATEGORY_BY_KIND,
    AttemptOutcome,
    AttemptRecord,
    ChangeFlag,
    ChangeRequest,
    ConfirmationDecision,
    ConfirmationRecord,
    DangerCategory,
    Operation,
    OperationKind,
    OperationStatus,
    PlanArtifact,
    PlanCompleteness,
    ResilienceDecision,
    ResiliencePolicy,
    TriggerDecision,
    ValidationResult,
    WorkflowState,
)

__all__ = [
    "DANGER_CATEGORY_BY_KIND",
    "AttemptOutcome",
    "AttemptRecord",
    "ChangeFlag",
    "ChangeRequest",
    "ConfirmationDecision",
    "ConfirmationDenied",
    "ConfirmationError",
    "ConfirmationPending",
    "ConfirmationRecord",
    "DangerCategory",
    "DuplicateConfirmation",
    "DuplicateOperation",
    "EventType",
    "InvalidRequest",
    "NonIdempotentFailure",
    "Operation",
    "OperationCancelled",
    "OperationError",
    "OperationFailed",
    "OperationKind",
    "OperationStatus",
    "OperationTimeout",
    "PlanArtifact",
    "PlanCompleteness",
    "PolicyEngineError",
    "PolicyEvent",
    "PolicyViolation",
    "ResilienceDecision",
    "ResiliencePolicy",
    "RetriesExhausted",
    "TransientOperationError",
    "TriggerDecision",
    "UnknownConfirmation",
    "UnknownOperation",
    "UnknownWorkflow",
    "ValidationIncomplete",
    "ValidationResult",
    "WorkflowState",
]
