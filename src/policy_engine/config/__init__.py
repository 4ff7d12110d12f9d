"""
policy-engine config package public API.

Loads ``policy_engine.toml`` plus ``POLICY_ENGINE_`` env overrides and
resolves the per-operation-kind resilience policies the engine runs with.
"""

from policy_engine.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    effective_config,
    env_bindings,
    load_config,
    normalize_paths,
)
from policy_engine.config.schema import (
    BUILTIN_PROFILE_NAMES,
    DEFAULT_CONFIG,
    RESILIENCE_TABLES,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    FieldRule,
    PolicyEngineConfig,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
    resilience_policies,
    validate_config,
)

__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "DEFAULT_CONFIG",
    "RESILIENCE_TABLES",
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "FieldRule",
    "PolicyEngineConfig",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "effective_config",
    "env_bindings",
    "load_config",
    "merge_config",
    "normalize_paths",
    "redact_config",
    "resilience_policies",
    "validate_config",
]
