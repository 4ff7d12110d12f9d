"""Stable constants shared across engine planes."""

from __future__ import annotations

from typing import Final

# Schema versions for config and serialized models.
CONFIG_SCHEMA_VERSION: Final[int] = 1
MODEL_SCHEMA_VERSION: Final[int] = 1

DEFAULT_CONFIG_FILE: Final[str] = "policy_engine.toml"
ENV_PREFIX: Final[str] = "POLICY_ENGINE_"
DEFAULT_LOGGER_NAME: Final[str] = "policy_engine"

# Plan sections every planned change must fill in, in presentation order.
REQUIRED_PLAN_SECTIONS: Final[tuple[str, ...]] = (
    "objective",
    "architecture",
    "data_model_changes",
    "api_contracts",
    "resilience_decisions",
    "manual_test_plan",
)

# Choices a plan must spell out per operation kind under ``resilience_decisions``.
RESILIENCE_DECISION_FIELDS: Final[tuple[str, ...]] = ("timeout", "retry", "idempotency")

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_CONFIG_FILE",
    "DEFAULT_LOGGER_NAME",
    "ENV_PREFIX",
    "MODEL_SCHEMA_VERSION",
    "REQUIRED_PLAN_SECTIONS",
    "RESILIENCE_DECISION_FIELDS",
]
