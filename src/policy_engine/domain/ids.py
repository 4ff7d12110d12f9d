"""Entity identifiers: ``<prefix>-<ULID>``.

The ULID part sorts by creation time, so ids listed in lexical order are also
in creation order.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from enum import StrEnum
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
_ENTROPY_BYTES: Final[int] = 10
_TIMESTAMP_LIMIT: Final[int] = 1 << 48
_ULID_LIMIT: Final[int] = 1 << 128

RandomSource = Callable[[int], bytes]


class IdKind(StrEnum):
    """Entity kind, valued by its id prefix."""

    OPERATION = "op"
    CONFIRMATION = "cfm"
    EVENT = "evt"


OPERATION_ID_PREFIX: Final[str] = IdKind.OPERATION.value
CONFIRMATION_ID_PREFIX: Final[str] = IdKind.CONFIRMATION.value
EVENT_ID_PREFIX: Final[str] = IdKind.EVENT.value


def generate_ulid(
    *, timestamp_ms: int | None = None, randbytes: RandomSource | None = None
) -> str:
    """48-bit millisecond timestamp plus 80 random bits, Crockford base32 encoded."""

    stamp = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not isinstance(stamp, int) or not 0 <= stamp < _TIMESTAMP_LIMIT:
        raise ValueError(f"timestamp_ms out of range: expected 0..{_TIMESTAMP_LIMIT - 1}")
    entropy = bytes((randbytes or secrets.token_bytes)(_ENTROPY_BYTES))
    if len(entropy) != _ENTROPY_BYTES:
        raise ValueError(f"randbytes must return exactly {_ENTROPY_BYTES} bytes")

    number = stamp << 80 | int.from_bytes(entropy, "big")
    digits = []
    while len(digits) < ULID_LENGTH:
        number, digit = divmod(number, 32)
        digits.append(CROCKFORD_BASE32_ALPHABET[digit])
    return "".join(reversed(digits))


def validate_ulid(value: str) -> None:
    """Raise ``ValueError`` unless ``value`` decodes to a 128-bit ULID."""

    if not isinstance(value, str) or len(value) != ULID_LENGTH:
        raise ValueError(f"ulid must be a {ULID_LENGTH}-character string, got {value!r}")
    number = 0
    for position, char in enumerate(value.upper()):
        digit = CROCKFORD_BASE32_ALPHABET.find(char)
        if digit < 0:
            raise ValueError(f"invalid ULID character {char!r} at index {position}")
        number = number * 32 + digit
    if number >= _ULID_LIMIT:
        raise ValueError("ulid overflow: value exceeds 128 bits")


def new_id(
    kind: IdKind, *, timestamp_ms: int | None = None, randbytes: RandomSource | None = None
) -> str:
    return generate_prefixed_id(kind.value, timestamp_ms=timestamp_ms, randbytes=randbytes)


def generate_prefixed_id(
    prefix: str, *, timestamp_ms: int | None = None, randbytes: RandomSource | None = None
) -> str:
    if not prefix or "-" in prefix:
        raise ValueError(f"invalid id prefix {prefix!r}")
    return f"{prefix}-{generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)}"


def validate_prefixed_id(id_str: str, expected_prefix: str) -> None:
    """Check ``id_str`` is ``<expected_prefix>-<ULID>``."""

    if not isinstance(id_str, str):
        raise ValueError(f"prefixed id must be a string, got {type(id_str).__name__}")
    prefix, sep, ulid = id_str.partition("-")
    if prefix != expected_prefix or not sep:
        raise ValueError(f"expected prefix '{expected_prefix}-' in {id_str!r}")
    try:
        validate_ulid(ulid)
    except ValueError as exc:
        raise ValueError(f"{id_str!r}: {exc}") from exc


def generate_operation_id() -> str:
    return new_id(IdKind.OPERATION)


def generate_confirmation_id() -> str:
    return new_id(IdKind.CONFIRMATION)


def generate_event_id() -> str:
    return new_id(IdKind.EVENT)


def validate_confirmation_id(id_str: str) -> None:
    validate_prefixed_id(id_str, IdKind.CONFIRMATION.value)


def validate_event_id(id_str: str) -> None:
    validate_prefixed_id(id_str, IdKind.EVENT.value)


__all__ = [
    "CONFIRMATION_ID_PREFIX",
    "CROCKFORD_BASE32_ALPHABET",
    "EVENT_ID_PREFIX",
    "OPERATION_ID_PREFIX",
    "ULID_LENGTH",
    "IdKind",
    "generate_confirmation_id",
    "generate_event_id",
    "generate_operation_id",
    "generate_prefixed_id",
    "generate_ulid",
    "new_id",
    "validate_confirmation_id",
    "validate_event_id",
    "validate_prefixed_id",
    "validate_ulid",
]
