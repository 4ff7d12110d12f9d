"""
policy-engine — unit tests for config schema validation.

Covers defaults, structured validation issues, profile overlays and the
resolution of per-operation-kind resilience policies.
"""

from __future__ import annotations

import pytest

from policy_engine.config.schema import (
    BUILTIN_PROFILE_NAMES,
    ConfigValidationError,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    resilience_policies,
    validate_config,
)
from policy_engine.domain.models import OperationKind


def _issue_paths(config: dict[str, object]) -> list[str]:
    return [issue.path for issue in validate_config(config).issues]


def test_defaults_are_valid_and_isolated() -> None:
    first = default_config()
    first["engine"]["default_timeout_seconds"] = 1.0

    assert validate_config(default_config()).is_valid
    assert default_config()["engine"]["default_timeout_seconds"] == 30.0


def test_builtin_profiles_are_defined() -> None:
    profiles = default_config()["profiles"]

    assert set(BUILTIN_PROFILE_NAMES) <= set(profiles)


@pytest.mark.parametrize(
    ("overlay", "path"),
    [
        ({"engine": {"default_timeout_seconds": 0}}, "engine.default_timeout_seconds"),
        ({"engine": {"wait_for_confirmation": "yes"}}, "engine.wait_for_confirmation"),
        ({"resilience": {"vcs": {"max_attempts": 0}}}, "resilience.vcs.max_attempts"),
        ({"resilience": {"default": {"jitter_ratio": 1.5}}}, "resilience.default.jitter_ratio"),
        ({"resilience": {"mainframe": {}}}, "resilience.mainframe"),
        ({"observability": {"log_level": "LOUD"}}, "observability.log_level"),
        ({"observability": {"event_buffer_size": 0}}, "observability.event_buffer_size"),
        ({"meta": {"schema_version": 2}}, "meta.schema_version"),
    ],
)
def test_invalid_values_report_their_path(overlay: dict[str, object], path: str) -> None:
    assert path in _issue_paths(merge_config(default_config(), overlay))


def test_base_delay_above_cap_is_a_cross_field_issue() -> None:
    config = merge_config(
        default_config(), {"resilience": {"database": {"base_delay_seconds": 9.0}}}
    )

    result = validate_config(config)

    assert not result.is_valid
    assert [issue.path for issue in result.issues] == ["resilience.database"]


def test_embedded_secrets_are_rejected() -> None:
    config = merge_config(default_config(), {"engine": {"api_key": "sk-live"}})

    result = validate_config(config)

    assert [(issue.path, issue.message) for issue in result.issues] == [
        ("engine.api_key", "embedded secret values are forbidden")
    ]


def test_assert_valid_config_renders_all_issues() -> None:
    config = merge_config(
        default_config(),
        {"engine": {"default_timeout_seconds": -1}, "observability": {"log_dir": ""}},
    )

    with pytest.raises(ConfigValidationError) as excinfo:
        assert_valid_config(config)

    assert len(excinfo.value.issues) == 2
    assert "engine.default_timeout_seconds" in str(excinfo.value)


def test_profile_overlay_is_applied_and_validated() -> None:
    strict = apply_profile_overlay(default_config(), "strict")

    assert strict["engine"]["default_timeout_seconds"] == 10.0
    assert strict["resilience"]["network_system"]["max_attempts"] == 1
    with pytest.raises(ConfigValidationError, match="not defined"):
        apply_profile_overlay(default_config(), "reckless")


def test_profiles_cannot_overlay_meta() -> None:
    config = merge_config(
        default_config(), {"profiles": {"odd": {"meta": {"schema_version": 1}}}}
    )

    assert "profiles.odd" in _issue_paths(config)


def test_resilience_policies_overlay_kind_tables_on_default() -> None:
    policies = resilience_policies()

    assert set(policies) == set(OperationKind)
    network = policies[OperationKind.NETWORK_SYSTEM]
    assert network.max_attempts == 4
    assert network.timeout_seconds == 15.0
    assert network.base_delay == 0.25
    generic = policies[OperationKind.GENERIC]
    assert generic.max_attempts == 3
    assert generic.timeout_seconds == 30.0
    assert generic.jitter_ratio == 0.1


def test_resilience_policies_follow_engine_default_timeout() -> None:
    config = merge_config(default_config(), {"engine": {"default_timeout_seconds": 12.5}})

    policies = resilience_policies(config)

    assert policies[OperationKind.VCS].timeout_seconds == 12.5
    assert policies[OperationKind.DATABASE].timeout_seconds == 60.0


def test_migration_guidance_names_direction() -> None:
    assert "older" in migration_guidance(0)
    assert "newer" in migration_guidance(99)


def test_redact_config_masks_sensitive_keys() -> None:
    redacted = redact_config({"engine": {"client_secret": "x", "default_timeout_seconds": 3}})

    assert redacted == {"engine": {"client_secret": "<redacted>", "default_timeout_seconds": 3}}
