"""Planning plane: trigger classification and plan completeness validation."""

from policy_engine.planning.classifier import (
    TRIGGER_RULE_NAMES,
    TRIGGER_RULES,
    TriggerRule,
    classify,
)
from policy_engine.planning.loaders import (
    load_change_request,
    load_plan_artifact,
    plan_artifact_from_mapping,
)
from policy_engine.planning.plan_validator import completeness_view, validate

__all__ = [
    "TRIGGER_RULES",
    "TRIGGER_RULE_NAMES",
    "TriggerRule",
    "classify",
    "completeness_view",
    "load_change_request",
    "load_plan_artifact",
    "plan_artifact_from_mapping",
    "validate",
]
