"""
Verify-phase policy audit.

The audit is a pure function over an ``AuditSubject`` snapshot of one change
request. Findings come in three severities:

- ``violation``: a fatal caller defect (a dangerous operation executed without
  an approved confirmation, or a non-idempotent operation attempted more than
  once). The workflow is Blocked and never auto-recovers.
- ``gap``: correctable; the workflow returns to Build (for example, a planned
  change with no manual test evidence).
- ``advisory``: reported only; never changes the workflow state.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import Final

from policy_engine.domain.models import (
    ConfirmationDecision,
    Operation,
    OperationKind,
    OperationStatus,
)


class FindingSeverity(StrEnum):
    VIOLATION = "violation"
    GAP = "gap"
    ADVISORY = "advisory"


@dataclass(frozen=True, slots=True)
class Finding:
    code: str
    severity: FindingSeverity
    message: str
    operation_id: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {
            "code": self.code,
            "severity": self.severity.value,
            "message": self.message,
            "operation_id": self.operation_id,
        }


@dataclass(frozen=True, slots=True)
class OperationEvidence:
    """What the workflow knows about one operation at Verify time."""

    operation: Operation
    status: OperationStatus
    attempt_count: int
    confirmation: ConfirmationDecision | None = None

    @property
    def executed(self) -> bool:
        return self.attempt_count > 0


@dataclass(frozen=True, slots=True)
class AuditSubject:
    change_request_id: str
    planning_required: bool
    declared_kinds: frozenset[OperationKind]
    operations: tuple[OperationEvidence, ...]
    test_evidence: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class AuditReport:
    change_request_id: str
    findings: tuple[Finding, ...]

    @property
    def violations(self) -> tuple[Finding, ...]:
        return self._with(FindingSeverity.VIOLATION)

    @property
    def gaps(self) -> tuple[Finding, ...]:
        return self._with(FindingSeverity.GAP)

    @property
    def advisories(self) -> tuple[Finding, ...]:
        return self._with(FindingSeverity.ADVISORY)

    @property
    def passed(self) -> bool:
        return not self.violations and not self.gaps

    def to_dict(self) -> dict[str, object]:
        return {
            "change_request_id": self.change_request_id,
            "passed": self.passed,
            "findings": [finding.to_dict() for finding in self.findings],
        }

    def _with(self, severity: FindingSeverity) -> tuple[Finding, ...]:
        return tuple(finding for finding in self.findings if finding.severity is severity)


OperationCheck = Callable[[AuditSubject, OperationEvidence], Iterable[Finding]]


def _unconfirmed_dangerous_execution(
    subject: AuditSubject, evidence: OperationEvidence
) -> Iterable[Finding]:
    op = evidence.operation
    if not (op.dangerous and evidence.executed):
        return
    if evidence.confirmation is not ConfirmationDecision.APPROVED:
        state = evidence.confirmation.value if evidence.confirmation is not None else "absent"
        yield Finding(
            code="unconfirmed_dangerous_execution",
            severity=FindingSeverity.VIOLATION,
            message=f"dangerous {op.kind.value} operation executed with confirmation {state}",
            operation_id=op.id,
        )


def _non_idempotent_retry(
    subject: AuditSubject, evidence: OperationEvidence
) -> Iterable[Finding]:
    op = evidence.operation
    if not op.is_idempotent and evidence.attempt_count > 1:
        yield Finding(
            code="non_idempotent_retry",
            severity=FindingSeverity.VIOLATION,
            message=(
                f"non-idempotent operation was attempted {evidence.attempt_count} times"
            ),
            operation_id=op.id,
        )


def _undeclared_operation_kind(
    subject: AuditSubject, evidence: OperationEvidence
) -> Iterable[Finding]:
    op = evidence.operation
    if not subject.planning_required or op.kind is OperationKind.GENERIC:
        return
    if op.kind not in subject.declared_kinds:
        yield Finding(
            code="undeclared_operation_kind",
            severity=FindingSeverity.ADVISORY,
            message=f"operation kind {op.kind.value} was not declared in the plan",
            operation_id=op.id,
        )


def _failed_operation(subject: AuditSubject, evidence: OperationEvidence) -> Iterable[Finding]:
    if evidence.status is OperationStatus.FAILED:
        yield Finding(
            code="operation_failed",
            severity=FindingSeverity.ADVISORY,
            message="operation failed; its effect may need manual remediation",
            operation_id=evidence.operation.id,
        )


OPERATION_CHECKS: Final[tuple[OperationCheck, ...]] = (
    _unconfirmed_dangerous_execution,
    _non_idempotent_retry,
    _undeclared_operation_kind,
    _failed_operation,
)


def audit(subject: AuditSubject) -> AuditReport:
    """Run every check against ``subject`` in a deterministic order."""
    findings: list[Finding] = []
    for evidence in sorted(subject.operations, key=lambda item: item.operation.id):
        for check in OPERATION_CHECKS:
            findings.extend(check(subject, evidence))

    if subject.planning_required and not any(item.strip() for item in subject.test_evidence):
        findings.append(
            Finding(
                code="missing_manual_test_evidence",
                severity=FindingSeverity.GAP,
                message="planned change has no recorded manual test evidence",
            )
        )

    order = list(FindingSeverity)
    findings.sort(key=lambda finding: order.index(finding.severity))
    return AuditReport(change_request_id=subject.change_request_id, findings=tuple(findings))


__all__ = [
    "OPERATION_CHECKS",
    "AuditReport",
    "AuditSubject",
    "Finding",
    "FindingSeverity",
    "OperationEvidence",
    "audit",
]
