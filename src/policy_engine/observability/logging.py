"""Decision-log plumbing: structlog in front, a queue-backed JSON-lines sink behind.

Engine code logs through ``structlog.get_logger(__name__)``. Once a session is
set up, ``configure_structlog`` hands every structlog event to the stdlib
logger tree, where a non-blocking ``QueueHandler`` feeds a listener thread that
writes one JSON object per line to ``<log_dir>/<session_id>/policy_engine.jsonl``.

Correlation fields (``change_request_id``, ``operation_id``, ...) are bound with
``correlation_scope``, which stores them in structlog's context variables, so
structlog events and plain stdlib records both carry them.
"""

from __future__ import annotations

import atexit
import json
import logging
import logging.handlers
import math
import queue
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

import structlog

from policy_engine.constants import DEFAULT_LOGGER_NAME
from policy_engine.utils.redaction import REDACTED, redact

LogRedactor = Callable[[Any], Any]

LOG_FILENAME: Final[str] = "policy_engine.jsonl"
CORRELATION_KEYS: Final[tuple[str, ...]] = (
    "session_id",
    "change_request_id",
    "operation_id",
    "confirmation_id",
    "event_id",
)

# Attributes every ``LogRecord`` carries; anything else came in through ``extra``.
_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}

_lock = threading.Lock()
_active: StructuredLoggingHandle | None = None
_atexit_hooked = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    session_id: str
    base_log_dir: Path | str = Path("logs")
    logger_name: str = DEFAULT_LOGGER_NAME
    level: int | str = "INFO"
    queue_size: int = 4096
    log_filename: str = LOG_FILENAME
    log_to_stdout: bool = False
    redactor: LogRedactor | None = None


def default_log_redactor(value: Any) -> Any:
    """Mask secret-keyed values and inline credentials such as ``token=...``."""

    return redact(value, scrub_strings=True)


def configure_structlog() -> None:
    """Send structlog events through the stdlib ``logging`` tree."""

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    session_id: str,
    log_dir: Path | str | None = None,
) -> StructuredLoggingHandle:
    """Start a logging session from an ``[observability]`` config table.

    ``log_dir`` overrides ``observability.log_dir``. With
    ``redact_secrets = false`` records are written unmasked.
    """

    settings = dict(observability_config or {})
    base_dir = log_dir if log_dir is not None else settings.get("log_dir", "logs")
    return setup_structured_logging(
        LoggingConfig(
            session_id=session_id,
            base_log_dir=base_dir if isinstance(base_dir, (str, Path)) else "logs",
            level=str(settings.get("log_level", "INFO")),
            log_to_stdout=bool(settings.get("log_to_stdout", False)),
            redactor=None if settings.get("redact_secrets", True) else _unredacted,
        )
    )


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Replace any active session with a new one described by ``config``."""

    session_id = _non_empty(config.session_id, "session_id")
    filename = _non_empty(config.log_filename, "log_filename")
    if Path(filename).name != filename:
        raise ValueError("log_filename must not include path separators")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = _level_number(config.level)

    shutdown_logging()

    log_path = Path(config.base_log_dir) / session_id / filename
    log_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = JsonLinesFormatter(
        session_id=session_id, redactor=config.redactor or default_log_redactor
    )
    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_stdout:
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(_non_empty(config.logger_name, "logger_name"))
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    logger.setLevel(level)
    logger.propagate = False

    queue_handler = _DroppingQueueHandler(queue.Queue(maxsize=config.queue_size))
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(
        queue_handler.queue, *sinks, respect_handler_level=True
    )
    listener.start()
    logger.addHandler(queue_handler)
    configure_structlog()

    handle = StructuredLoggingHandle(
        logger=logger,
        session_id=session_id,
        log_path=log_path,
        _queue_handler=queue_handler,
        _listener=listener,
        _sinks=tuple(sinks),
    )
    _set_active(handle)
    return handle


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _lock:
        return _active


def flush_logging(
    handle: StructuredLoggingHandle | None = None, *, timeout_seconds: float = 2.0
) -> None:
    target = handle or get_active_logging_handle()
    if target is not None:
        target.flush(timeout_seconds=timeout_seconds)


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None, *, timeout_seconds: float = 2.0
) -> None:
    """Drain and close ``handle`` (default: the active session)."""

    global _active
    target = handle or get_active_logging_handle()
    if target is None:
        return
    target.shutdown(timeout_seconds=timeout_seconds)
    with _lock:
        if _active is target:
            _active = None


def get_correlation_context() -> dict[str, str]:
    """Correlation fields bound in the current context."""

    bound = structlog.contextvars.get_contextvars()
    return {key: value for key, value in bound.items() if isinstance(value, str)}


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields for every record logged inside the block.

    A ``None`` value leaves the field as it is.
    """

    bound = {key: _non_empty(value, key) for key, value in fields.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield


class JsonLinesFormatter(logging.Formatter):
    """Render a record as one canonical JSON object.

    Layout: ``timestamp``, ``level``, ``logger``, ``message``, the correlation
    keys at top level and every other ``extra`` value under ``fields``.
    """

    def __init__(self, *, session_id: str, redactor: LogRedactor) -> None:
        super().__init__()
        self._session_id = session_id
        self._redactor = redactor

    def format(self, record: logging.LogRecord) -> str:
        extras = {
            key: value
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRIBUTES and not key.startswith("_")
        }
        correlation = {"session_id": self._session_id, **extras.pop("correlation", {})}
        for key in CORRELATION_KEYS:
            value = extras.pop(key, None)
            if isinstance(value, str) and value.strip():
                correlation[key] = value.strip()

        line: dict[str, Any] = {
            "timestamp": _utc_stamp(record.created),
            "level": record.levelname,
            "logger": record.name,
            "message": self._text(record.getMessage()),
            **correlation,
        }
        if extras:
            line["fields"] = self._redactor(_jsonable(extras))
        if record.exc_info:
            line["exception"] = self._text(self.formatException(record.exc_info))
        return json.dumps(line, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def _text(self, text: str) -> str:
        masked = self._redactor(text)
        return masked if isinstance(masked, str) else json.dumps(masked, sort_keys=True)


class _DroppingQueueHandler(logging.handlers.QueueHandler):
    """Never blocks the caller: a full queue drops the record and counts it."""

    def __init__(self, log_queue: queue.Queue[Any]) -> None:
        super().__init__(log_queue)
        self._dropped = 0
        self._dropped_lock = threading.Lock()

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Context variables are not visible from the listener thread.
        context = get_correlation_context()
        if context:
            record.correlation = context
        return super().prepare(record)  # type: ignore[no-any-return]

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self._dropped += 1


@dataclass(eq=False)
class StructuredLoggingHandle:
    """One running logging session."""

    logger: logging.Logger
    session_id: str
    log_path: Path
    _queue_handler: _DroppingQueueHandler
    _listener: logging.handlers.QueueListener
    _sinks: tuple[logging.Handler, ...]
    _closed: bool = False
    _close_lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        pending: queue.Queue[Any] = self._queue_handler.queue  # type: ignore[assignment]
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while pending.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.01)
        for sink in self._sinks:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._close_lock:
            if self._closed:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            for handler in (self._queue_handler, *self._sinks):
                handler.close()
            self._closed = True


def _set_active(handle: StructuredLoggingHandle) -> None:
    global _active, _atexit_hooked
    with _lock:
        _active = handle
        if not _atexit_hooked:
            atexit.register(shutdown_logging)
            _atexit_hooked = True


def _unredacted(value: Any) -> Any:
    return value


def _non_empty(value: object, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    return value.strip()


def _level_number(level: int | str) -> int:
    if isinstance(level, int):
        return level
    number = logging.getLevelName(str(level).strip().upper())
    if not isinstance(number, int):
        raise ValueError(f"unsupported logging level {level!r}")
    return number


def _utc_stamp(epoch_seconds: float) -> str:
    moment = datetime.fromtimestamp(epoch_seconds, tz=UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _jsonable(value: object) -> Any:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else repr(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (Path, bytes)):
        return value.decode("utf-8", "replace") if isinstance(value, bytes) else str(value)
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_jsonable(item) for item in value]
        if isinstance(value, (set, frozenset)):
            items.sort(key=lambda item: json.dumps(item, sort_keys=True))
        return items
    return repr(value)


__all__ = [
    "CORRELATION_KEYS",
    "LOG_FILENAME",
    "REDACTED",
    "JsonLinesFormatter",
    "LogRedactor",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "flush_logging",
    "get_active_logging_handle",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
