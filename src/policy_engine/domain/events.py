"""Policy lifecycle events and their JSON envelope."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import Final

from policy_engine.domain import ids
from policy_engine.utils.redaction import redact

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_MAX_PAYLOAD_DEPTH: Final[int] = 16
_ENVELOPE_FIELDS: Final[frozenset[str]] = frozenset(
    {"event_id", "event_type", "timestamp", "correlation_id", "payload"}
)


class EventType(StrEnum):
    """Lifecycle events emitted by the policy engine."""

    CHANGE_ADMITTED = "ChangeAdmitted"
    CHANGE_CLASSIFIED = "ChangeClassified"
    CHANGE_CANCELLED = "ChangeCancelled"

    PLAN_SUBMITTED = "PlanSubmitted"
    PLAN_ACCEPTED = "PlanAccepted"
    PLAN_REJECTED = "PlanRejected"

    WORKFLOW_TRANSITIONED = "WorkflowTransitioned"
    WORKFLOW_BLOCKED = "WorkflowBlocked"

    OPERATION_QUEUED = "OperationQueued"
    OPERATION_STARTED = "OperationStarted"
    OPERATION_SUCCEEDED = "OperationSucceeded"
    OPERATION_FAILED = "OperationFailed"
    OPERATION_REJECTED = "OperationRejected"
    OPERATION_CANCELLED = "OperationCancelled"

    ATTEMPT_RECORDED = "AttemptRecorded"

    CONFIRMATION_REQUESTED = "ConfirmationRequested"
    CONFIRMATION_RESOLVED = "ConfirmationResolved"

    VERIFICATION_PASSED = "VerificationPassed"
    VERIFICATION_GAPS_FOUND = "VerificationGapsFound"
    POLICY_VIOLATED = "PolicyViolated"


@dataclass(frozen=True, slots=True)
class PolicyEvent:
    """Immutable event envelope.

    ``correlation_id`` carries the change request id. Inputs are normalized on
    construction: event types given as strings become ``EventType`` members,
    ISO-8601 timestamps are parsed to aware UTC datetimes and the payload is
    reduced to plain JSON values.
    """

    event_type: EventType
    correlation_id: str | None = None
    payload: dict[str, JSONValue] = field(default_factory=dict)
    event_id: str = field(default_factory=ids.generate_event_id)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        ids.validate_event_id(self.event_id)
        normalized = {
            "event_type": _event_type(self.event_type),
            "timestamp": _utc_timestamp(self.timestamp),
            "correlation_id": _correlation(self.correlation_id),
            "payload": _payload(self.payload),
        }
        for name, value in normalized.items():
            object.__setattr__(self, name, value)

    def to_dict(self) -> dict[str, JSONValue]:
        stamp = self.timestamp.isoformat(timespec="microseconds").replace("+00:00", "Z")
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": stamp,
            "correlation_id": self.correlation_id,
            "payload": self.payload,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> PolicyEvent:
        if not isinstance(data, Mapping):
            raise ValueError(f"PolicyEvent: expected object, got {type(data).__name__}")
        unknown = sorted(set(data) - _ENVELOPE_FIELDS)
        if unknown:
            raise ValueError(f"PolicyEvent: unexpected fields: {unknown}")
        missing = sorted(_ENVELOPE_FIELDS - {"correlation_id"} - set(data))
        if missing:
            raise ValueError(f"PolicyEvent: missing required fields: {missing}")
        return cls(**data)  # type: ignore[arg-type]


def redact_sensitive(event: PolicyEvent) -> PolicyEvent:
    """Copy ``event`` with secret-keyed payload entries masked at any depth."""

    return replace(event, payload=redact(event.payload))  # type: ignore[arg-type]


def _event_type(value: object) -> EventType:
    if isinstance(value, EventType):
        return value
    try:
        return EventType(value)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in EventType)
        raise ValueError(
            f"PolicyEvent.event_type: unsupported {value!r}; allowed: {allowed}"
        ) from exc


def _utc_timestamp(value: object) -> datetime:
    if isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            value = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValueError(f"PolicyEvent.timestamp: invalid ISO-8601 value {value!r}") from exc
    if not isinstance(value, datetime):
        raise ValueError(f"PolicyEvent.timestamp: expected datetime, got {type(value).__name__}")
    if value.utcoffset() is None:
        raise ValueError("PolicyEvent.timestamp: datetime must be timezone-aware")
    return value.astimezone(UTC)


def _correlation(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ValueError("PolicyEvent.correlation_id: expected a non-empty string")
    return value.strip()


def _payload(value: object) -> dict[str, JSONValue]:
    if not isinstance(value, Mapping):
        raise ValueError(f"PolicyEvent.payload: expected object, got {type(value).__name__}")
    return _to_json(value, "PolicyEvent.payload", 0)  # type: ignore[return-value]


def _to_json(value: object, path: str, depth: int) -> JSONValue:
    if depth > _MAX_PAYLOAD_DEPTH:
        raise ValueError(f"{path}: JSON nesting too deep")
    if isinstance(value, Enum):
        value = value.value
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if math.isfinite(value):
            return value
        raise ValueError(f"{path}: float value must be finite")
    if isinstance(value, Mapping):
        if not all(isinstance(key, str) for key in value):
            raise ValueError(f"{path}: object keys must be strings")
        return {key: _to_json(item, f"{path}.{key}", depth + 1) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json(item, f"{path}[{i}]", depth + 1) for i, item in enumerate(value)]
    if isinstance(value, (set, frozenset)):
        items = [_to_json(item, f"{path}[]", depth + 1) for item in value]
        return sorted(items)  # type: ignore[type-var]
    raise ValueError(f"{path}: value is not JSON-serializable ({type(value).__name__})")


__all__ = ["EventType", "JSONValue", "PolicyEvent", "redact_sensitive"]
