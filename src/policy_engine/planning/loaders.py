"""Load change requests and plan artifacts from YAML or JSON documents."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import cast

import yaml

from policy_engine.domain.errors import InvalidRequest
from policy_engine.domain.models import ChangeRequest, PlanArtifact


def load_document(path: str | Path) -> dict[str, object]:
    """Parse a YAML (or JSON, a YAML subset) document whose root is a mapping."""
    source = Path(path)
    try:
        with source.open("r", encoding="utf-8") as handle:
            loaded = cast("object", yaml.safe_load(handle))
    except OSError as exc:
        raise InvalidRequest(f"{source}: unable to read document ({exc})") from exc
    except yaml.YAMLError as exc:
        raise InvalidRequest(f"{source}: invalid YAML/JSON ({exc})") from exc

    if not isinstance(loaded, Mapping):
        raise InvalidRequest(
            f"{source}: expected top-level mapping, got {type(loaded).__name__}"
        )
    return _as_string_key_mapping(loaded, str(source))


def plan_artifact_from_mapping(data: Mapping[str, object]) -> PlanArtifact:
    """Build a ``PlanArtifact`` from a parsed mapping.

    Sections may be given at the top level or under ``sections``;
    ``resilience_decisions`` maps each operation kind to its
    ``timeout``/``retry``/``idempotency`` choices.
    """
    return PlanArtifact.from_dict(data)


def load_plan_artifact(path: str | Path) -> PlanArtifact:
    return plan_artifact_from_mapping(load_document(path))


def load_change_request(path: str | Path) -> ChangeRequest:
    return ChangeRequest.from_dict(load_document(path))


def render_yaml(payload: object) -> str:
    rendered = yaml.safe_dump(
        payload,
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=False,
        width=120,
    )
    if not rendered.endswith("\n"):
        rendered = rendered + "\n"
    return rendered


def _as_string_key_mapping(value: Mapping[object, object], location: str) -> dict[str, object]:
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise InvalidRequest(f"{location}: mapping keys must be strings, got {key!r}")
        out[key] = item
    return out


__all__ = [
    "load_change_request",
    "load_document",
    "load_plan_artifact",
    "plan_artifact_from_mapping",
    "render_yaml",
]
