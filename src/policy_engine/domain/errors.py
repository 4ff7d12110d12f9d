"""
policy-engine — error taxonomy.

Every error raised by the engine derives from ``PolicyEngineError`` and carries a
stable machine-readable ``code``. Operation-scoped errors also carry the
operation id, its kind and the attempt history so callers can decide on manual
remediation without parsing messages.

Only idempotent transient failures are recovered locally (by retry inside the
resilience wrapper). Everything else propagates to the caller.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from policy_engine.domain.models import AttemptRecord


class PolicyEngineError(Exception):
    """Base class for engine errors with a deterministic ``code``."""

    code: str = "policy_engine_error"

    def __init__(self, detail: str) -> None:
        self.detail = " ".join(str(detail).split()) or "unknown error"
        super().__init__(self.detail)


class InvalidRequest(PolicyEngineError, ValueError):
    """Malformed change request or operation, rejected before admission."""

    code = "invalid_request"


class UnknownWorkflow(PolicyEngineError, KeyError):
    """Handle does not refer to an admitted change request."""

    code = "unknown_workflow"

    def __str__(self) -> str:
        return self.detail


class UnknownOperation(PolicyEngineError, KeyError):
    """Operation handle does not refer to a queued operation."""

    code = "unknown_operation"

    def __str__(self) -> str:
        return self.detail


class DuplicateOperation(PolicyEngineError):
    """An operation id was queued twice; operations are consumed once."""

    code = "duplicate_operation"


class WorkflowStateError(PolicyEngineError):
    """Requested action is not legal in the workflow's current state."""

    code = "invalid_transition"


class ValidationIncomplete(PolicyEngineError):
    """Plan is missing required sections; the workflow stays in Plan."""

    code = "validation_incomplete"

    def __init__(self, missing: Sequence[str], detail: str | None = None) -> None:
        self.missing = tuple(sorted(missing))
        super().__init__(
            detail or f"plan is missing required sections: {', '.join(self.missing)}"
        )


class ConfirmationError(PolicyEngineError):
    """Base class for confirmation-gate failures."""

    code = "confirmation_error"

    def __init__(
        self,
        detail: str,
        *,
        operation_id: str | None = None,
        confirmation_id: str | None = None,
    ) -> None:
        self.operation_id = operation_id
        self.confirmation_id = confirmation_id
        super().__init__(detail)


class ConfirmationPending(ConfirmationError):
    """Dangerous operation has no approved confirmation yet."""

    code = "confirmation_pending"


class ConfirmationDenied(ConfirmationError):
    """Dangerous operation was explicitly denied; it will never execute."""

    code = "confirmation_denied"


class DuplicateConfirmation(ConfirmationError):
    """Confirmation already resolved; records resolve exactly once."""

    code = "duplicate_confirmation"


class UnknownConfirmation(ConfirmationError, KeyError):
    """Confirmation record id is not known to the gate."""

    code = "unknown_confirmation"

    def __str__(self) -> str:
        return self.detail


class OperationError(PolicyEngineError):
    """Base class for failures of a single operation execution."""

    code = "operation_error"

    def __init__(
        self,
        detail: str,
        *,
        operation_id: str | None = None,
        kind: str | None = None,
        attempts: Sequence[AttemptRecord] = (),
    ) -> None:
        self.operation_id = operation_id
        self.kind = kind
        self.attempts = tuple(attempts)
        super().__init__(detail)

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)


class OperationTimeout(OperationError):
    """A single attempt exceeded its hard timeout and was abandoned."""

    code = "timeout"


class OperationCancelled(OperationError):
    """The caller's cancellation signal fired; never retried."""

    code = "cancelled"


class OperationFailed(OperationError):
    """Operation failed permanently; ``__cause__`` holds the last error."""

    code = "operation_failed"


class RetriesExhausted(OperationFailed):
    """Transient failures persisted through the whole retry budget."""

    code = "retries_exhausted"


class NonIdempotentFailure(OperationFailed):
    """Single failed attempt of a non-idempotent operation, never retried."""

    code = "non_idempotent_failure"


class TransientOperationError(RuntimeError):
    """Raised by operation actions to mark a failure as transient (retryable)."""

    retryable = True


class PolicyViolation(PolicyEngineError):
    """Fatal caller defect; the workflow is Blocked and needs a human."""

    code = "policy_violation"

    def __init__(self, detail: str, *, findings: Sequence[str] = ()) -> None:
        self.findings = tuple(findings)
        super().__init__(detail)


__all__ = [
    "ConfirmationDenied",
    "ConfirmationError",
    "ConfirmationPending",
    "DuplicateConfirmation",
    "DuplicateOperation",
    "InvalidRequest",
    "NonIdempotentFailure",
    "OperationCancelled",
    "OperationError",
    "OperationFailed",
    "OperationTimeout",
    "PolicyEngineError",
    "PolicyViolation",
    "RetriesExhausted",
    "TransientOperationError",
    "UnknownConfirmation",
    "UnknownOperation",
    "UnknownWorkflow",
    "ValidationIncomplete",
    "WorkflowStateError",
]
