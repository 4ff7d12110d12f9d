"""In-process event bus with replay and a critical-event sink.

Publishing never fails because of a listener: subscriber and sink exceptions
are recorded as ``DispatchError`` entries and returned to the publisher, which
decides whether to log them.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import threading
from collections import deque
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Final, Literal

from policy_engine.domain.events import EventType, PolicyEvent

Subscriber = Callable[[PolicyEvent], object]
CriticalSink = Callable[[PolicyEvent], object]
DispatchStage = Literal["subscriber", "critical_sink"]

CRITICAL_EVENT_TYPES: Final[frozenset[EventType]] = frozenset(
    {
        EventType.CONFIRMATION_REQUESTED,
        EventType.WORKFLOW_BLOCKED,
        EventType.POLICY_VIOLATED,
    }
)
_ERROR_HISTORY: Final[int] = 1024


@dataclass(frozen=True, slots=True)
class DispatchError:
    """A listener failure, kept for inspection instead of being raised."""

    stage: DispatchStage
    event_id: str
    target: str
    error_type: str
    message: str

    @classmethod
    def capture(
        cls, stage: DispatchStage, event: PolicyEvent, callback: object, exc: BaseException
    ) -> DispatchError:
        return cls(
            stage=stage,
            event_id=event.event_id,
            target=getattr(callback, "__name__", None) or type(callback).__name__,
            error_type=type(exc).__name__,
            message=str(exc),
        )


class EventBus:
    """Thread-safe publish/subscribe hub.

    Subscribers may be plain callables or coroutine functions. Under a running
    event loop async subscribers are scheduled as tasks and awaited by
    ``drain_async``; without one they run to completion inline. The last
    ``buffer_size`` events stay available to ``replay``.
    """

    def __init__(
        self,
        *,
        buffer_size: int = 512,
        critical_sink: CriticalSink | None = None,
        critical_event_types: Iterable[str | EventType] | None = None,
    ) -> None:
        if isinstance(buffer_size, bool) or not isinstance(buffer_size, int) or buffer_size < 1:
            raise ValueError(f"buffer_size must be a positive integer, got {buffer_size!r}")
        if critical_sink is not None and not callable(critical_sink):
            raise ValueError("critical sink must be callable")

        self._lock = threading.RLock()
        self._history: deque[PolicyEvent] = deque(maxlen=buffer_size)
        self._errors: deque[DispatchError] = deque(maxlen=_ERROR_HISTORY)
        self._subscribers: dict[int, tuple[EventType | None, Subscriber]] = {}
        self._tokens = itertools.count(1)
        self._tasks: set[asyncio.Task[None]] = set()
        self._critical_sink = critical_sink
        self._critical_types = (
            CRITICAL_EVENT_TYPES
            if critical_event_types is None
            else frozenset(_event_type(item) for item in critical_event_types)
        )

    def subscribe(self, event_type: str | EventType | None, callback: Subscriber) -> int:
        """Register ``callback`` for one event type, or for all when ``None``; returns a token."""

        if not callable(callback):
            raise ValueError("callback must be callable")
        wanted = None if event_type is None else _event_type(event_type)
        with self._lock:
            token = next(self._tokens)
            self._subscribers[token] = (wanted, callback)
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._subscribers.pop(token, None) is not None

    def publish(self, event: PolicyEvent) -> tuple[DispatchError, ...]:
        if not isinstance(event, PolicyEvent):
            raise ValueError(f"event must be PolicyEvent, got {type(event).__name__}")
        with self._lock:
            self._history.append(event)
            targets: list[tuple[DispatchStage, Callable[[PolicyEvent], object]]] = [
                ("subscriber", callback)
                for wanted, callback in self._subscribers.values()
                if wanted is None or wanted is event.event_type
            ]
        if self._critical_sink is not None and event.event_type in self._critical_types:
            targets.insert(0, ("critical_sink", self._critical_sink))

        errors = [
            error
            for stage, callback in targets
            if (error := self._deliver(stage, callback, event)) is not None
        ]
        if errors:
            with self._lock:
                self._errors.extend(errors)
        return tuple(errors)

    def emit(
        self,
        event_type: str | EventType,
        payload: Mapping[str, object],
        *,
        correlation_id: str | None = None,
    ) -> tuple[PolicyEvent, tuple[DispatchError, ...]]:
        """Build a ``PolicyEvent`` and publish it."""

        event = PolicyEvent(
            event_type=_event_type(event_type),
            correlation_id=correlation_id,
            payload=dict(payload),
        )
        return event, self.publish(event)

    async def drain_async(self) -> tuple[DispatchError, ...]:
        """Wait for scheduled async subscribers; returns every error recorded so far."""

        with self._lock:
            pending = tuple(self._tasks)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        return self.dispatch_errors()

    def replay(
        self,
        *,
        event_type: str | EventType | None = None,
        correlation_id: str | None = None,
        limit: int | None = None,
    ) -> tuple[PolicyEvent, ...]:
        """Buffered events in publish order, optionally filtered; ``limit`` keeps the newest."""

        wanted = None if event_type is None else _event_type(event_type)
        with self._lock:
            matches = [
                event
                for event in self._history
                if (wanted is None or event.event_type is wanted)
                and (correlation_id is None or event.correlation_id == correlation_id)
            ]
        if limit is None:
            return tuple(matches)
        return tuple(matches[-limit:]) if limit > 0 else ()

    def dispatch_errors(self) -> tuple[DispatchError, ...]:
        with self._lock:
            return tuple(self._errors)

    def _deliver(
        self, stage: DispatchStage, callback: Callable[[PolicyEvent], object], event: PolicyEvent
    ) -> DispatchError | None:
        try:
            outcome = callback(event)
            if inspect.isawaitable(outcome):
                self._run_async(stage, callback, event, outcome)
        except Exception as exc:
            return DispatchError.capture(stage, event, callback, exc)
        return None

    def _run_async(
        self,
        stage: DispatchStage,
        callback: object,
        event: PolicyEvent,
        outcome: Awaitable[object],
    ) -> None:
        async def _wait() -> None:
            await outcome

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(_wait())
            return

        def _finished(task: asyncio.Task[None]) -> None:
            failure = None if task.cancelled() else task.exception()
            with self._lock:
                self._tasks.discard(task)
                if isinstance(failure, Exception):
                    self._errors.append(DispatchError.capture(stage, event, callback, failure))

        task = loop.create_task(_wait())
        with self._lock:
            self._tasks.add(task)
        task.add_done_callback(_finished)


def _event_type(value: str | EventType) -> EventType:
    if isinstance(value, EventType):
        return value
    try:
        return EventType(str(value).strip())
    except ValueError as exc:
        raise ValueError(f"unknown event type {value!r}") from exc


__all__ = ["CRITICAL_EVENT_TYPES", "CriticalSink", "DispatchError", "EventBus", "Subscriber"]
