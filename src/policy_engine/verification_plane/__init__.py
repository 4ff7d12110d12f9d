"""Verification plane: the policy audit run before a workflow is marked Done."""

from policy_engine.verification_plane.policy_audit import (
    OPERATION_CHECKS,
    AuditReport,
    AuditSubject,
    Finding,
    FindingSeverity,
    OperationEvidence,
    audit,
)

__all__ = [
    "OPERATION_CHECKS",
    "AuditReport",
    "AuditSubject",
    "Finding",
    "FindingSeverity",
    "OperationEvidence",
    "audit",
]
