"""Plan artifact completeness validation; the sole gate for Plan -> Build."""

from __future__ import annotations

from datetime import UTC, datetime

from policy_engine.constants import REQUIRED_PLAN_SECTIONS
from policy_engine.domain.models import (
    OperationKind,
    PlanArtifact,
    PlanCompleteness,
    ValidationResult,
)

RESILIENCE_SECTION = "resilience_decisions"


def validate(plan: PlanArtifact) -> ValidationResult:
    """Check ``plan`` against the fixed required-section schema.

    Deterministic and total: every ``PlanArtifact`` yields a result. A section is
    present only when its text is non-blank. ``resilience_decisions`` is present
    only when the structured decisions name timeout, retry and idempotency
    choices for every declared operation kind (at least one decision when no
    kind is declared).
    """
    missing: set[str] = set()
    issues: list[str] = []

    for name in REQUIRED_PLAN_SECTIONS:
        if name == RESILIENCE_SECTION:
            continue
        if not plan.section_text(name):
            missing.add(name)
            issues.append(f"section {name!r} is missing or empty")

    resilience_issues = _resilience_issues(plan)
    if resilience_issues:
        missing.add(RESILIENCE_SECTION)
        issues.extend(resilience_issues)

    return ValidationResult(valid=not missing, missing=frozenset(missing), issues=tuple(issues))


def completeness_view(
    plan: PlanArtifact, *, validated_at: datetime | None = None
) -> PlanCompleteness:
    """Metadata kept for an accepted plan; section content is dropped."""
    present = frozenset(name for name in REQUIRED_PLAN_SECTIONS if plan.section_text(name))
    if plan.resilience_decisions:
        present = present | {RESILIENCE_SECTION}
    return PlanCompleteness(
        present_sections=present,
        operation_kinds=plan.operation_kinds,
        validated_at=validated_at or datetime.now(UTC),
    )


def _resilience_issues(plan: PlanArtifact) -> list[str]:
    decisions = plan.resilience_decisions
    if not decisions:
        if plan.section_text(RESILIENCE_SECTION):
            return [
                "resilience_decisions must enumerate timeout/retry/idempotency per "
                "operation kind; free text is not enough"
            ]
        return ["section 'resilience_decisions' is missing or empty"]

    issues: list[str] = []
    for kind in sorted(plan.operation_kinds, key=_kind_order):
        decision = decisions.get(kind)
        if decision is None:
            issues.append(f"resilience_decisions has no entry for declared kind {kind.value!r}")
            continue
        for choice in decision.missing_choices():
            issues.append(f"resilience_decisions.{kind.value} does not state a {choice} choice")

    if not plan.operation_kinds:
        for kind in sorted(decisions, key=_kind_order):
            for choice in decisions[kind].missing_choices():
                issues.append(
                    f"resilience_decisions.{kind.value} does not state a {choice} choice"
                )
    return issues


def _kind_order(kind: OperationKind) -> int:
    return list(OperationKind).index(kind)


__all__ = ["RESILIENCE_SECTION", "completeness_view", "validate"]
