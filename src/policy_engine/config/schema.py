"""
policy-engine — configuration schema and validation.

Defaults, per-field rules and profile overlays for ``policy_engine.toml``.
Every scalar setting is described by a ``FieldRule``; validation walks the
rule tables and reports each problem as a ``ConfigValidationIssue`` with a
dotted path, so one pass shows the operator everything that is wrong.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, NotRequired, TypedDict

from policy_engine.constants import CONFIG_SCHEMA_VERSION
from policy_engine.domain.models import OperationKind, ResiliencePolicy
from policy_engine.utils.redaction import is_sensitive_key, redact

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "lenient")
RESILIENCE_DEFAULT_TABLE: Final[str] = "default"
RESILIENCE_TABLES: Final[tuple[str, ...]] = (
    RESILIENCE_DEFAULT_TABLE,
    *(kind.value for kind in OperationKind),
)

FieldType = Literal["int", "float", "bool", "str"]

_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")


class MetaConfig(TypedDict):
    schema_version: int


class EngineConfig(TypedDict):
    default_timeout_seconds: float
    wait_for_confirmation: bool


class ResilienceTable(TypedDict, total=False):
    max_attempts: int
    base_delay_seconds: float
    max_delay_seconds: float
    jitter_ratio: float
    timeout_seconds: float


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stdout: bool
    event_buffer_size: int
    redact_secrets: bool


class ProfileOverlay(TypedDict, total=False):
    engine: dict[str, object]
    resilience: dict[str, object]
    observability: dict[str, object]


class PolicyEngineConfig(TypedDict):
    meta: MetaConfig
    engine: EngineConfig
    resilience: dict[str, ResilienceTable]
    observability: ObservabilityConfig
    profiles: NotRequired[dict[str, ProfileOverlay]]


DEFAULT_CONFIG: Final[PolicyEngineConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "engine": {
        "default_timeout_seconds": 30.0,
        "wait_for_confirmation": False,
    },
    "resilience": {
        "default": {
            "max_attempts": 3,
            "base_delay_seconds": 0.25,
            "max_delay_seconds": 4.0,
            "jitter_ratio": 0.1,
        },
        "network_system": {
            "max_attempts": 4,
            "timeout_seconds": 15.0,
        },
        "database": {
            "timeout_seconds": 60.0,
        },
        "vcs": {
            "max_attempts": 2,
        },
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": "logs/",
        "log_to_stdout": False,
        "event_buffer_size": 512,
        "redact_secrets": True,
    },
    "profiles": {
        "strict": {
            "engine": {"default_timeout_seconds": 10.0},
            "resilience": {
                "default": {"max_attempts": 1},
                "network_system": {"max_attempts": 1, "timeout_seconds": 5.0},
                "vcs": {"max_attempts": 1},
            },
        },
        "lenient": {
            "engine": {"default_timeout_seconds": 120.0},
            "resilience": {
                "default": {"max_attempts": 5, "max_delay_seconds": 10.0},
                "network_system": {"max_attempts": 6},
            },
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered or '- <root>: unknown validation failure'}")


_Issues = list[ConfigValidationIssue]


@dataclass(frozen=True, slots=True)
class FieldRule:
    """Type and bounds of one scalar setting.

    ``coerce`` returns the normalized value, or ``None`` after recording an
    issue. No setting accepts ``None`` as a value.
    """

    value_type: FieldType
    minimum: float | None = None
    maximum: float | None = None
    positive: bool = False
    choices: tuple[str, ...] = ()
    path_like: bool = False

    def coerce(self, value: object, path: str, issues: _Issues) -> object | None:
        if self.value_type == "bool":
            if isinstance(value, bool):
                return value
            return _reject(issues, path, f"expected boolean, got {type(value).__name__}")
        if self.value_type == "str":
            return self._coerce_text(value, path, issues)
        return self._coerce_number(value, path, issues)

    def _coerce_number(self, value: object, path: str, issues: _Issues) -> object | None:
        wants_int = self.value_type == "int"
        accepted = (int,) if wants_int else (int, float)
        if isinstance(value, bool) or not isinstance(value, accepted):
            expected = "integer" if wants_int else "number"
            return _reject(issues, path, f"expected {expected}, got {type(value).__name__}")

        number: int | float = value if wants_int else float(value)  # type: ignore[assignment]
        if not math.isfinite(number):
            return _reject(issues, path, "must be finite")
        if self.positive and number <= 0:
            return _reject(issues, path, "must be > 0")
        if self.minimum is not None and number < self.minimum:
            return _reject(issues, path, f"must be >= {self.minimum:g}")
        if self.maximum is not None and number > self.maximum:
            return _reject(issues, path, f"must be <= {self.maximum}")
        return number

    def _coerce_text(self, value: object, path: str, issues: _Issues) -> str | None:
        if not isinstance(value, str):
            return _reject(issues, path, f"expected string, got {type(value).__name__}")
        text = value.strip()
        if not text:
            return _reject(issues, path, "must not be empty")
        if self.path_like and "\x00" in text:
            return _reject(issues, path, "must not contain NUL bytes")
        if self.choices:
            text = text.upper()
            if text not in self.choices:
                expected = ", ".join(sorted(self.choices))
                return _reject(issues, path, f"invalid value {text!r}; expected one of: {expected}")
        return text


_TIMEOUT_RULE = FieldRule("float", positive=True)

SECTION_RULES: Final[Mapping[str, Mapping[str, FieldRule]]] = {
    "meta": {"schema_version": FieldRule("int", minimum=1)},
    "engine": {
        "default_timeout_seconds": _TIMEOUT_RULE,
        "wait_for_confirmation": FieldRule("bool"),
    },
    "observability": {
        "log_level": FieldRule("str", choices=_LOG_LEVELS),
        "log_dir": FieldRule("str", path_like=True),
        "log_to_stdout": FieldRule("bool"),
        "event_buffer_size": FieldRule("int", minimum=1),
        "redact_secrets": FieldRule("bool"),
    },
}

# Shared by ``[resilience.default]`` and every ``[resilience.<kind>]`` table.
RESILIENCE_FIELDS: Final[Mapping[str, FieldRule]] = {
    "max_attempts": FieldRule("int", minimum=1),
    "base_delay_seconds": FieldRule("float", minimum=0.0),
    "max_delay_seconds": FieldRule("float", minimum=0.0),
    "jitter_ratio": FieldRule("float", minimum=0.0, maximum=1.0),
    "timeout_seconds": _TIMEOUT_RULE,
}

# Config paths that are normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = tuple(
    (section, name)
    for section, rules in SECTION_RULES.items()
    for name, rule in rules.items()
    if rule.path_like
)

_DOCUMENT_SECTIONS: Final[tuple[str, ...]] = (
    "engine",
    "meta",
    "observability",
    "profiles",
    "resilience",
)
_OVERLAY_SECTIONS: Final[tuple[str, ...]] = ("engine", "observability", "resilience")


def default_config() -> PolicyEngineConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade policy_engine.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the policy-engine runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; neither input is mutated."""

    merged = _plain_copy(base)
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, dict):
            merged[key] = merge_config(current, value)
        else:
            merged[key] = _plain_copy(value)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Merge the named ``[profiles.<name>]`` table over ``config`` and re-validate."""

    selected = (profile or "").strip()
    if not selected:
        return _plain_copy(config)

    profiles = config.get("profiles")
    overlay = profiles.get(selected) if isinstance(profiles, Mapping) else None
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    return assert_valid_config(merge_config(config, overlay), active_profile=selected)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Check every section against its rules and collect all issues."""

    issues: _Issues = []
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=tuple(issues))

    normalized = _check_document(root, "", issues, overlay=False)
    selected = (active_profile or "").strip()
    if selected and selected not in normalized.get("profiles", {}):
        issues.append(ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"))

    if issues:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def resilience_policies(
    config: Mapping[str, object] | None = None,
) -> dict[OperationKind, ResiliencePolicy]:
    """Resolve the effective ``ResiliencePolicy`` for every operation kind.

    Each ``[resilience.<kind>]`` table overlays ``[resilience.default]``; a
    missing ``timeout_seconds`` falls back to ``engine.default_timeout_seconds``.
    """

    effective = assert_valid_config(config if config is not None else default_config())
    fallback_timeout = effective["engine"]["default_timeout_seconds"]
    return {
        kind: _policy_from_table(_kind_table(effective["resilience"], kind.value), fallback_timeout)
        for kind in OperationKind
    }


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Copy ``config`` with every secret-looking key masked as ``<redacted>``."""

    if not isinstance(config, Mapping):
        return {}
    return redact(config, mask="<redacted>")  # type: ignore[return-value]


def _check_document(
    payload: Mapping[str, object], path: str, issues: _Issues, *, overlay: bool
) -> dict[str, Any]:
    sections = _OVERLAY_SECTIONS if overlay else _DOCUMENT_SECTIONS
    if overlay and ("meta" in payload or "profiles" in payload):
        issues.append(
            ConfigValidationIssue(path, "profiles may only overlay engine/resilience/observability")
        )
    _check_unknown_keys(
        payload, (*sections, "meta", "profiles") if overlay else sections, path, issues
    )

    out: dict[str, Any] = {}
    for name in sections:
        section_path = _join(path, name)
        if name not in payload:
            if not overlay and name != "profiles":
                issues.append(ConfigValidationIssue(section_path, "missing required field"))
            continue
        section = _as_object(payload[name], section_path, issues)
        if section is None:
            continue
        if name == "resilience":
            out[name] = _check_resilience(section, section_path, issues)
        elif name == "profiles":
            out[name] = _check_profiles(section, section_path, issues)
        else:
            out[name] = _check_fields(
                section, SECTION_RULES[name], section_path, issues, require_all=not overlay
            )

    version = out.get("meta", {}).get("schema_version")
    if version is not None and version != ConfigSchemaVersion:
        issues.append(
            ConfigValidationIssue(_join(path, "meta.schema_version"), migration_guidance(version))
        )
    if not overlay and "resilience" in out:
        _check_delay_caps(out["resilience"], _join(path, "resilience"), issues)
    return out


def _check_fields(
    payload: Mapping[str, object],
    rules: Mapping[str, FieldRule],
    path: str,
    issues: _Issues,
    *,
    require_all: bool,
) -> dict[str, Any]:
    _check_unknown_keys(payload, tuple(rules), path, issues)
    out: dict[str, Any] = {}
    for name, rule in rules.items():
        field_path = _join(path, name)
        if name not in payload:
            if require_all:
                issues.append(ConfigValidationIssue(field_path, "missing required field"))
            continue
        value = rule.coerce(payload[name], field_path, issues)
        if value is not None:
            out[name] = value
    return out


def _check_resilience(
    payload: Mapping[str, object], path: str, issues: _Issues
) -> dict[str, Any]:
    _check_unknown_keys(payload, RESILIENCE_TABLES, path, issues)
    tables: dict[str, Any] = {}
    for table in RESILIENCE_TABLES:
        if table not in payload:
            continue
        table_path = _join(path, table)
        table_obj = _as_object(payload[table], table_path, issues)
        if table_obj is not None:
            tables[table] = _check_fields(
                table_obj, RESILIENCE_FIELDS, table_path, issues, require_all=False
            )
    return tables


def _check_delay_caps(resilience: Mapping[str, Any], path: str, issues: _Issues) -> None:
    for table in RESILIENCE_TABLES:
        merged = _kind_table(resilience, table)
        base = merged.get("base_delay_seconds", 0.0)
        cap = merged.get("max_delay_seconds", base)
        if base > cap:
            issues.append(
                ConfigValidationIssue(
                    _join(path, table),
                    f"base_delay_seconds ({base}) must be <= max_delay_seconds ({cap})",
                )
            )


def _check_profiles(payload: Mapping[str, object], path: str, issues: _Issues) -> dict[str, Any]:
    profiles: dict[str, Any] = {}
    for name in sorted(payload):
        profile_path = _join(path, name)
        if not _PROFILE_NAME_PATTERN.fullmatch(name):
            issues.append(
                ConfigValidationIssue(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            )
            continue
        overlay = _as_object(payload[name], profile_path, issues)
        if overlay is not None:
            profiles[name] = _check_document(overlay, profile_path, issues, overlay=True)
    return profiles


def _check_unknown_keys(
    payload: Mapping[str, object], allowed: Sequence[str], path: str, issues: _Issues
) -> None:
    for key in sorted(set(payload) - set(allowed)):
        message = (
            "embedded secret values are forbidden" if is_sensitive_key(key) else "unknown field"
        )
        issues.append(ConfigValidationIssue(_join(path, key), message))


def _kind_table(resilience: Mapping[str, Any], table: str) -> dict[str, Any]:
    return {**resilience.get(RESILIENCE_DEFAULT_TABLE, {}), **resilience.get(table, {})}


def _policy_from_table(table: Mapping[str, Any], fallback_timeout: float) -> ResiliencePolicy:
    base_delay = table.get("base_delay_seconds", 0.0)
    return ResiliencePolicy(
        max_attempts=table.get("max_attempts", 1),
        base_delay=base_delay,
        max_delay=table.get("max_delay_seconds", base_delay),
        jitter_ratio=table.get("jitter_ratio", 0.0),
        timeout_seconds=table.get("timeout_seconds", fallback_timeout),
    )


def _as_object(value: object, path: str, issues: _Issues) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        return _reject(issues, path, f"expected object, got {type(value).__name__}")
    bad_keys = [key for key in value if not isinstance(key, str)]
    if bad_keys:
        return _reject(issues, path, f"object keys must be strings, got {bad_keys[0]!r}")
    return dict(value)


def _reject(issues: _Issues, path: str, message: str) -> None:
    issues.append(ConfigValidationIssue(path, message))


def _plain_copy(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _plain_copy(item) for key, item in value.items()}
    return copy.deepcopy(value)


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "DEFAULT_CONFIG",
    "PATH_FIELDS",
    "RESILIENCE_FIELDS",
    "RESILIENCE_TABLES",
    "SECTION_RULES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "FieldRule",
    "FieldType",
    "PolicyEngineConfig",
    "ProfileOverlay",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "resilience_policies",
    "validate_config",
]
