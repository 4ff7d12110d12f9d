"""Secret masking shared by config dumps, decision logs and event payloads."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Final

REDACTED: Final[str] = "***REDACTED***"

SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passwd",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
    "private_key",
)

_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_INLINE_ASSIGNMENT = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")


def is_sensitive_key(key: str) -> bool:
    """``clientSecret``, ``client-secret`` and ``CLIENT_SECRET`` all match."""

    snake = _CAMEL_BOUNDARY.sub(r"\1_\2", key.strip()).lower().replace("-", "_")
    return any(term in snake for term in SENSITIVE_KEY_TERMS)


def scrub_text(text: str, *, mask: str = REDACTED) -> str:
    """Mask ``token=...`` style assignments and bearer credentials inside free text."""

    text = _INLINE_ASSIGNMENT.sub(lambda m: f"{m.group(1)}{m.group(2)}{mask}", text)
    return _BEARER.sub(f"Bearer {mask}", text)


def redact(value: object, *, mask: str = REDACTED, scrub_strings: bool = False) -> object:
    """Deep-copy ``value`` with secret-keyed entries replaced by ``mask``.

    Mappings come back as ``dict`` and sequences as ``list``. With
    ``scrub_strings`` the remaining string leaves also pass through
    ``scrub_text``.
    """

    if isinstance(value, Mapping):
        return {
            key: mask
            if isinstance(key, str) and is_sensitive_key(key)
            else redact(item, mask=mask, scrub_strings=scrub_strings)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(item, mask=mask, scrub_strings=scrub_strings) for item in value]
    if scrub_strings and isinstance(value, str):
        return scrub_text(value, mask=mask)
    return value


__all__ = ["REDACTED", "SENSITIVE_KEY_TERMS", "is_sensitive_key", "redact", "scrub_text"]
