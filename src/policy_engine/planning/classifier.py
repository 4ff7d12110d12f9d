"""Decide whether a change request needs a formal planning phase.

A change request is checked against a fixed, ordered rule table. Every matching
rule is recorded in priority order, so the rationale explains all of the
reasons a plan is needed, not just the first one. Classification is pure
and deterministic, and does no I/O.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from policy_engine.domain.errors import InvalidRequest
from policy_engine.domain.models import ChangeFlag, ChangeRequest, TriggerDecision


@dataclass(frozen=True, slots=True)
class TriggerRule:
    name: str
    description: str
    predicate: Callable[[ChangeRequest], bool]

    def matches(self, request: ChangeRequest) -> bool:
        return self.predicate(request)


def spans_multiple_modules(request: ChangeRequest) -> bool:
    """True for multi-file/multi-layer changes; the ``multi_file`` flag counts as such."""
    return request.module_count > 1 or request.has_flag(ChangeFlag.MULTI_FILE)


# Priority order is the rationale order.
TRIGGER_RULES: tuple[TriggerRule, ...] = (
    TriggerRule(
        name="multi_module_change",
        description="change touches more than one module or layer",
        predicate=spans_multiple_modules,
    ),
    TriggerRule(
        name="schema_change",
        description="database schema or API contract change",
        predicate=lambda request: request.has_flag(ChangeFlag.SCHEMA_CHANGE),
    ),
    TriggerRule(
        name="complex_refactor",
        description="complex refactor",
        predicate=lambda request: request.has_flag(ChangeFlag.COMPLEX_REFACTOR),
    ),
    TriggerRule(
        name="auth_related",
        description="authentication, authorization or security middleware",
        predicate=lambda request: request.has_flag(ChangeFlag.AUTH_RELATED),
    ),
    TriggerRule(
        name="nontrivial_multi_module_bugfix",
        description="non-trivial bug fix spanning several modules",
        predicate=lambda request: (
            request.has_flag(ChangeFlag.NONTRIVIAL_BUGFIX) and spans_multiple_modules(request)
        ),
    ),
)

TRIGGER_RULE_NAMES: tuple[str, ...] = tuple(rule.name for rule in TRIGGER_RULES)


def classify(request: ChangeRequest) -> TriggerDecision:
    """Return the trigger decision for ``request``.

    Raises ``InvalidRequest`` when ``request`` is not a ``ChangeRequest``.
    """
    if not isinstance(request, ChangeRequest):
        raise InvalidRequest(
            f"classify expects a ChangeRequest, got {type(request).__name__}"
        )
    matched = tuple(rule.name for rule in TRIGGER_RULES if rule.matches(request))
    return TriggerDecision(required=bool(matched), rationale=matched)


__all__ = [
    "TRIGGER_RULES",
    "TRIGGER_RULE_NAMES",
    "TriggerRule",
    "classify",
    "spans_multiple_modules",
]
