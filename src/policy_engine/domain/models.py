"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Final, NoReturn, TypeVar

from policy_engine.constants import REQUIRED_PLAN_SECTIONS, RESILIENCE_DECISION_FIELDS
from policy_engine.domain import ids as domain_ids
from policy_engine.domain.errors import InvalidRequest, ValidationIncomplete

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=StrEnum)

_MAX_TEXT: Final[int] = 8192
_MAX_TAG: Final[int] = 256


class ChangeFlag(StrEnum):
    MULTI_FILE = "multi_file"
    SCHEMA_CHANGE = "schema_change"
    AUTH_RELATED = "auth_related"
    COMPLEX_REFACTOR = "complex_refactor"
    NONTRIVIAL_BUGFIX = "nontrivial_bugfix"


class OperationKind(StrEnum):
    FILESYSTEM = "filesystem"
    VCS = "vcs"
    DATABASE = "database"
    DEPENDENCY = "dependency"
    NETWORK_SYSTEM = "network_system"
    GENERIC = "generic"


class DangerCategory(StrEnum):
    """Fixed set of dangerous-operation categories; there is no open registry."""

    DESTRUCTIVE_FILESYSTEM = "destructive_filesystem"
    VCS_HISTORY_MUTATION = "vcs_history_mutation"
    DESTRUCTIVE_DATABASE = "destructive_database"
    DEPENDENCY_LOCKFILE = "dependency_lockfile"
    SYSTEM_SECURITY_NETWORK = "system_security_network"


DANGER_CATEGORY_BY_KIND: Final[Mapping[OperationKind, DangerCategory]] = {
    OperationKind.FILESYSTEM: DangerCategory.DESTRUCTIVE_FILESYSTEM,
    OperationKind.VCS: DangerCategory.VCS_HISTORY_MUTATION,
    OperationKind.DATABASE: DangerCategory.DESTRUCTIVE_DATABASE,
    OperationKind.DEPENDENCY: DangerCategory.DEPENDENCY_LOCKFILE,
    OperationKind.NETWORK_SYSTEM: DangerCategory.SYSTEM_SECURITY_NETWORK,
}

_KIND_ALIASES: Final[Mapping[str, OperationKind]] = {
    "network/system": OperationKind.NETWORK_SYSTEM,
    "network": OperationKind.NETWORK_SYSTEM,
    "system": OperationKind.NETWORK_SYSTEM,
}


class ConfirmationDecision(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class WorkflowState(StrEnum):
    IDLE = "idle"
    PLAN = "plan"
    BUILD = "build"
    VERIFY = "verify"
    DONE = "done"
    BLOCKED = "blocked"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowState.DONE, WorkflowState.BLOCKED)


class OperationStatus(StrEnum):
    QUEUED = "queued"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_OPERATION_STATUSES


_TERMINAL_OPERATION_STATUSES: Final[frozenset[OperationStatus]] = frozenset(
    {
        OperationStatus.SUCCEEDED,
        OperationStatus.FAILED,
        OperationStatus.REJECTED,
        OperationStatus.CANCELLED,
    }
)


class AttemptOutcome(StrEnum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    TRANSIENT_ERROR = "transient_error"
    ERROR = "error"
    CANCELLED = "cancelled"


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            item.name: _serialize_value(getattr(self, item.name))
            for item in fields(self)  # type: ignore[arg-type]
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        _fail(cls.__name__, "from_dict is not implemented for this model type")


def parse_operation_kind(value: object, path: str = "Operation.kind") -> OperationKind:
    """Parse an operation kind, accepting ``network/system`` style aliases."""

    if isinstance(value, OperationKind):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        alias = _KIND_ALIASES.get(normalized)
        if alias is not None:
            return alias
    return _as_enum(OperationKind, value, path)


@dataclass(frozen=True, slots=True)
class ChangeRequest(CanonicalModel):
    """Unit of work submitted by the caller; immutable once created."""

    id: str
    description: str
    affected_modules: frozenset[str] = frozenset()
    flags: frozenset[ChangeFlag] = frozenset()

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", _as_str(self.id, "ChangeRequest.id", max_len=_MAX_TAG))
        object.__setattr__(
            self, "description", _as_str(self.description, "ChangeRequest.description")
        )
        object.__setattr__(
            self,
            "affected_modules",
            _as_str_set(self.affected_modules, "ChangeRequest.affected_modules"),
        )
        if isinstance(self.flags, (str, bytes)) or not _is_iterable(self.flags):
            _fail("ChangeRequest.flags", f"expected a set, got {type(self.flags).__name__}")
        object.__setattr__(
            self,
            "flags",
            frozenset(
                _as_enum(ChangeFlag, item, f"ChangeRequest.flags[{index}]")
                for index, item in enumerate(self.flags)
            ),
        )

    @property
    def module_count(self) -> int:
        return len(self.affected_modules)

    def has_flag(self, flag: ChangeFlag) -> bool:
        return flag in self.flags

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ChangeRequest:
        parsed = _expect_object(
            data,
            "ChangeRequest",
            required={"id", "description"},
            optional={"affected_modules", "flags"},
        )
        flags = parsed.get("flags", ())
        if isinstance(flags, Mapping):
            # ``{multi_file: true, schema_change: false}`` form.
            flags = [name for name, enabled in flags.items() if enabled is True]
        return cls(
            id=parsed["id"],  # type: ignore[arg-type]
            description=parsed["description"],  # type: ignore[arg-type]
            affected_modules=parsed.get("affected_modules", ()),  # type: ignore[arg-type]
            flags=flags,  # type: ignore[arg-type]
        )


@dataclass(frozen=True, slots=True)
class TriggerDecision(CanonicalModel):
    """Whether formal planning is mandatory, with the matched rule names in order."""

    required: bool
    rationale: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ResilienceDecision(CanonicalModel):
    """Plan-level statement of the timeout/retry/idempotency choice for one kind."""

    timeout: str = ""
    retry: str = ""
    idempotency: str = ""

    def __post_init__(self) -> None:
        for name in RESILIENCE_DECISION_FIELDS:
            object.__setattr__(self, name, _as_text(getattr(self, name)))

    def missing_choices(self) -> tuple[str, ...]:
        return tuple(name for name in RESILIENCE_DECISION_FIELDS if not getattr(self, name))


@dataclass(frozen=True, slots=True)
class PlanArtifact(CanonicalModel):
    """Caller-owned plan; the engine only derives a completeness view from it."""

    sections: Mapping[str, str] = field(default_factory=dict)
    operation_kinds: frozenset[OperationKind] = frozenset()
    resilience_decisions: Mapping[OperationKind, ResilienceDecision] = field(
        default_factory=dict
    )

    def __post_init__(self) -> None:
        if not isinstance(self.sections, Mapping):
            _fail("PlanArtifact.sections", "expected a mapping of section name to content")
        sections: dict[str, str] = {}
        for key, value in self.sections.items():
            name = _as_str(key, "PlanArtifact.sections key", max_len=_MAX_TAG)
            sections[name] = _as_text(value)
        object.__setattr__(self, "sections", sections)

        if isinstance(self.operation_kinds, (str, bytes)) or not _is_iterable(
            self.operation_kinds
        ):
            _fail("PlanArtifact.operation_kinds", "expected a set of operation kinds")
        object.__setattr__(
            self,
            "operation_kinds",
            frozenset(
                parse_operation_kind(item, f"PlanArtifact.operation_kinds[{index}]")
                for index, item in enumerate(self.operation_kinds)
            ),
        )

        if not isinstance(self.resilience_decisions, Mapping):
            _fail("PlanArtifact.resilience_decisions", "expected a mapping keyed by kind")
        decisions: dict[OperationKind, ResilienceDecision] = {}
        for key, value in self.resilience_decisions.items():
            kind = parse_operation_kind(key, "PlanArtifact.resilience_decisions key")
            decisions[kind] = _as_resilience_decision(
                value, f"PlanArtifact.resilience_decisions.{kind.value}"
            )
        object.__setattr__(self, "resilience_decisions", decisions)

    def section_text(self, name: str) -> str:
        return self.sections.get(name, "")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> PlanArtifact:
        parsed = _expect_object(
            data,
            "PlanArtifact",
            required=set(),
            optional={*REQUIRED_PLAN_SECTIONS, "sections", "operation_kinds"},
        )
        sections: dict[str, object] = {}
        nested = parsed.get("sections")
        if nested is not None:
            if not isinstance(nested, Mapping):
                _fail("PlanArtifact.sections", "expected an object")
            sections.update(nested)
        for name in REQUIRED_PLAN_SECTIONS:
            if name in parsed and name != "resilience_decisions":
                sections[name] = parsed[name]

        decisions = parsed.get("resilience_decisions", {})
        if decisions is None:
            decisions = {}
        if isinstance(decisions, str):
            # Free text cannot enumerate per-kind choices; keep it as a section only.
            sections["resilience_decisions"] = decisions
            decisions = {}
        if not isinstance(decisions, Mapping):
            _fail("PlanArtifact.resilience_decisions", "expected an object keyed by kind")

        kinds = parsed.get("operation_kinds", ())
        return cls(
            sections={key: value for key, value in sections.items()},  # type: ignore[misc]
            operation_kinds=kinds,  # type: ignore[arg-type]
            resilience_decisions=decisions,  # type: ignore[arg-type]
        )


@dataclass(frozen=True, slots=True)
class ValidationResult(CanonicalModel):
    valid: bool
    missing: frozenset[str] = frozenset()
    issues: tuple[str, ...] = ()

    def raise_if_incomplete(self) -> None:
        if not self.valid:
            raise ValidationIncomplete(sorted(self.missing))


@dataclass(frozen=True, slots=True)
class PlanCompleteness(CanonicalModel):
    """Structured metadata kept after a plan validates; no section content."""

    present_sections: frozenset[str]
    operation_kinds: frozenset[OperationKind]
    validated_at: datetime


@dataclass(frozen=True, slots=True)
class Operation(CanonicalModel):
    """One action attempted during Build/Verify; consumed exactly once."""

    kind: OperationKind
    dangerous: bool = False
    reversible: bool = True
    idempotency_key: str | None = None
    description: str = ""
    id: str = field(default_factory=domain_ids.generate_operation_id)

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", parse_operation_kind(self.kind))
        object.__setattr__(self, "dangerous", _as_bool(self.dangerous, "Operation.dangerous"))
        object.__setattr__(self, "reversible", _as_bool(self.reversible, "Operation.reversible"))
        object.__setattr__(self, "id", _as_str(self.id, "Operation.id", max_len=_MAX_TAG))
        if self.idempotency_key is not None:
            object.__setattr__(
                self,
                "idempotency_key",
                _as_str(self.idempotency_key, "Operation.idempotency_key", max_len=_MAX_TAG),
            )
        object.__setattr__(self, "description", _as_text(self.description))
        if self.dangerous and self.kind not in DANGER_CATEGORY_BY_KIND:
            _fail(
                "Operation.kind",
                f"{self.kind.value!r} has no danger category and cannot be dangerous",
            )

    @property
    def is_idempotent(self) -> bool:
        return self.idempotency_key is not None

    @property
    def danger_category(self) -> DangerCategory | None:
        if not self.dangerous:
            return None
        return DANGER_CATEGORY_BY_KIND[self.kind]

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Operation:
        parsed = _expect_object(
            data,
            "Operation",
            required={"kind"},
            optional={"id", "dangerous", "reversible", "idempotency_key", "description"},
        )
        extra: dict[str, object] = {}
        if "id" in parsed:
            extra["id"] = parsed["id"]
        return cls(
            kind=parse_operation_kind(parsed["kind"]),
            dangerous=parsed.get("dangerous", False),  # type: ignore[arg-type]
            reversible=parsed.get("reversible", True),  # type: ignore[arg-type]
            idempotency_key=parsed.get("idempotency_key"),  # type: ignore[arg-type]
            description=parsed.get("description", ""),  # type: ignore[arg-type]
            **extra,  # type: ignore[arg-type]
        )


@dataclass(frozen=True, slots=True)
class ResiliencePolicy(CanonicalModel):
    """Retry/timeout budget configured per operation kind."""

    max_attempts: int = 1
    base_delay: float = 0.1
    max_delay: float = 5.0
    jitter_ratio: float = 0.0
    timeout_seconds: float = 30.0

    def __post_init__(self) -> None:
        if isinstance(self.max_attempts, bool) or not isinstance(self.max_attempts, int):
            raise ValueError("max_attempts must be an integer")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        for name in ("base_delay", "max_delay", "timeout_seconds"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"{name} must be a number")
            if not math.isfinite(value) or value < 0:
                raise ValueError(f"{name} must be a finite number >= 0")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.base_delay > self.max_delay:
            raise ValueError("base_delay must be <= max_delay")
        if not 0.0 <= self.jitter_ratio <= 1.0:
            raise ValueError("jitter_ratio must be between 0.0 and 1.0")


@dataclass(frozen=True, slots=True)
class ConfirmationRecord(CanonicalModel):
    """Approval state for one dangerous operation; resolved exactly once."""

    id: str
    operation_id: str
    decision: ConfirmationDecision
    requested_at: datetime
    resolved_at: datetime | None = None
    decided_by: str | None = None

    @property
    def is_resolved(self) -> bool:
        return self.decision is not ConfirmationDecision.PENDING

    @property
    def is_approved(self) -> bool:
        return self.decision is ConfirmationDecision.APPROVED

    def resolve(
        self,
        decision: ConfirmationDecision,
        *,
        at: datetime,
        decided_by: str | None = None,
    ) -> ConfirmationRecord:
        return replace(self, decision=decision, resolved_at=at, decided_by=decided_by)


@dataclass(frozen=True, slots=True)
class AttemptRecord(CanonicalModel):
    """Observability record for one attempt; not part of correctness."""

    operation_id: str
    attempt: int
    delay_seconds: float
    outcome: AttemptOutcome
    error_type: str | None = None
    duration_seconds: float = 0.0


def _fail(path: str, message: str) -> NoReturn:
    raise InvalidRequest(f"{path}: {message}")


def _is_iterable(value: object) -> bool:
    try:
        iter(value)  # type: ignore[call-overload]
    except TypeError:
        return False
    return True


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item

    allowed = required | (optional or set())
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")

    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")
    return parsed


def _as_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        _fail(path, "must not be empty")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_text(value: object) -> str:
    # Section content: absent and whitespace-only both count as empty.
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (list, tuple)):
        return "\n".join(_as_text(item) for item in value if _as_text(item))
    if isinstance(value, Mapping):
        return json.dumps(value, sort_keys=True, default=str) if value else ""
    return str(value).strip()


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value.strip().lower())
    except ValueError:
        allowed = ", ".join(item.value for item in enum_type)
        _fail(path, f"unsupported value {value!r}; expected one of: {allowed}")


def _as_str_set(value: object, path: str) -> frozenset[str]:
    if isinstance(value, (str, bytes)) or not _is_iterable(value):
        _fail(path, f"expected a set of strings, got {type(value).__name__}")
    return frozenset(
        _as_str(item, f"{path}[{index}]", max_len=_MAX_TAG)
        for index, item in enumerate(value)  # type: ignore[arg-type]
    )


def _as_resilience_decision(value: object, path: str) -> ResilienceDecision:
    if isinstance(value, ResilienceDecision):
        return value
    parsed = _expect_object(value, path, required=set(), optional=set(RESILIENCE_DECISION_FIELDS))
    return ResilienceDecision(**{key: _as_text(item) for key, item in parsed.items()})


def _serialize_value(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, StrEnum):
        return value.value
    if isinstance(value, datetime):
        normalized = value.astimezone(UTC) if value.tzinfo else value.replace(tzinfo=UTC)
        return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")
    if isinstance(value, CanonicalModel):
        return value.to_dict()
    if isinstance(value, Mapping):
        return {str(_serialize_value(key)): _serialize_value(item) for key, item in value.items()}
    if isinstance(value, (set, frozenset)):
        items = [_serialize_value(item) for item in value]
        return sorted(items, key=lambda item: json.dumps(item, sort_keys=True))
    if isinstance(value, (list, tuple)):
        return [_serialize_value(item) for item in value]
    return repr(value)


__all__ = [
    "DANGER_CATEGORY_BY_KIND",
    "AttemptOutcome",
    "AttemptRecord",
    "CanonicalModel",
    "ChangeFlag",
    "ChangeRequest",
    "ConfirmationDecision",
    "ConfirmationRecord",
    "DangerCategory",
    "JSONValue",
    "Operation",
    "OperationKind",
    "OperationStatus",
    "PlanArtifact",
    "PlanCompleteness",
    "ResilienceDecision",
    "ResiliencePolicy",
    "TriggerDecision",
    "ValidationResult",
    "parse_operation_kind",
]
