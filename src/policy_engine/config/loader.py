"""
policy-engine — runtime config loader.

Builds the effective config from four layers, lowest first: built-in
defaults, ``policy_engine.toml``, ``POLICY_ENGINE_*`` environment variables
and CLI overrides. A selected profile is overlaid between the file and the
environment, so operators can still pin single values on top of it.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any, Final

from policy_engine.config.schema import (
    PATH_FIELDS,
    RESILIENCE_FIELDS,
    RESILIENCE_TABLES,
    SECTION_RULES,
    FieldType,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)
from policy_engine.constants import DEFAULT_CONFIG_FILE, ENV_PREFIX

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})
_PROFILE_ENV: Final[str] = f"{ENV_PREFIX}PROFILE"

ConfigPath = tuple[str, ...]


class ConfigLoadError(ValueError):
    """Raised when config cannot be read or an override cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Load the effective config: CLI > env > profile > file > defaults.

    Without ``config_path`` a ``policy_engine.toml`` in the working directory
    is used when present. An explicit path must exist.
    """

    path = _config_file(config_path)
    env = os.environ if environ is None else environ
    overrides = dict(cli_overrides or {})

    config = assert_valid_config(
        merge_config(default_config(), _read_toml(path, required=config_path is not None))
    )
    selected = _pick_profile(profile, overrides, env)
    if selected:
        config = apply_profile_overlay(config, selected)

    for layer in (_env_layer(env), _cli_layer(overrides)):
        config = merge_config(config, layer)
    return normalize_paths(assert_valid_config(config), base_dir=path.parent)


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Resolve relative path settings against ``base_dir``."""

    out = merge_config({}, config)
    for field_path in PATH_FIELDS:
        section = out.get(field_path[0])
        if not isinstance(section, dict):
            continue
        raw = section.get(field_path[-1])
        if isinstance(raw, str):
            section[field_path[-1]] = _absolute(raw, base_dir)
    return out


def effective_config(config: Mapping[str, object]) -> dict[str, Any]:
    return redact_config(config)


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Serialize the redacted config as stable, compact JSON."""

    return json.dumps(
        effective_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def env_bindings() -> dict[str, tuple[ConfigPath, FieldType]]:
    """Map every supported ``POLICY_ENGINE_*`` variable to its config path and type."""

    return {_env_name(path): (path, value_type) for path, value_type in _settable_fields()}


def _settable_fields() -> Iterator[tuple[ConfigPath, FieldType]]:
    for section, rules in SECTION_RULES.items():
        if section == "meta":
            continue
        for name, rule in rules.items():
            yield (section, name), rule.value_type
    for table in RESILIENCE_TABLES:
        for name, rule in RESILIENCE_FIELDS.items():
            yield ("resilience", table, name), rule.value_type


def _config_file(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _pick_profile(
    profile: str | None, overrides: Mapping[str, object], env: Mapping[str, str]
) -> str | None:
    if profile is not None:
        candidate: object = profile
    elif "profile" in overrides:
        candidate = overrides["profile"]
        if not isinstance(candidate, str):
            raise ConfigLoadError("cli override 'profile' must be a string")
    else:
        candidate = env.get(_PROFILE_ENV, "")
    return str(candidate).strip() or None


def _env_layer(env: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for name, (path, value_type) in sorted(env_bindings().items()):
        if name in env:
            _assign(layer, path, _parse_env(name, env[name], value_type, path))
    return layer


def _parse_env(name: str, raw: str, value_type: FieldType, path: ConfigPath) -> object:
    text = raw.strip()
    target = f"{name} -> {'.'.join(path)}"
    if value_type == "str":
        return text
    if value_type == "bool":
        if text.lower() in _TRUTHY:
            return True
        if text.lower() in _FALSY:
            return False
        raise ConfigLoadError(f"{target} must be a boolean (true/false/1/0/yes/no/on/off)")
    try:
        return int(text) if value_type == "int" else float(text)
    except ValueError as exc:
        expected = "an integer" if value_type == "int" else "a number"
        raise ConfigLoadError(f"{target} must be {expected}") from exc


def _cli_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for key, value in sorted(overrides.items()):
        if key == "profile":
            continue
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        _assign(layer, path, value)
    return layer


def _assign(target: dict[str, Any], path: ConfigPath, value: object) -> None:
    *parents, leaf = path
    for part in parents:
        target = target.setdefault(part, {})
    target[leaf] = value


def _absolute(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


def _env_name(path: ConfigPath) -> str:
    return ENV_PREFIX + "_".join(path).upper()


__all__ = [
    "ConfigLoadError",
    "dump_effective_config",
    "effective_config",
    "env_bindings",
    "load_config",
    "normalize_paths",
]
