"""Cancellation tokens, bounded awaits and per-key locks."""

from __future__ import annotations

import asyncio
import inspect
import threading
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from typing import TypeVar

T = TypeVar("T")
SleepFn = Callable[[float], Awaitable[None]]


class CancellationToken:
    """Cooperative cancellation flag that also fires registered callbacks.

    Tokens form a tree: a ``child()`` is cancelled with its parent, never the
    other way round. Once set, a token stays cancelled and keeps the first
    reason it was given. ``cancel`` may be called from any thread; callbacks
    run on the cancelling thread.
    """

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._guard = threading.Lock()
        self._reason: str | None = None
        self._callbacks: list[Callable[[str], object]] = []
        self._detach_parent: Callable[[], None] | None = (
            parent.add_callback(self.cancel) if parent is not None else None
        )

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)

    @property
    def is_cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        with self._guard:
            if self._reason is not None:
                return
            self._reason = reason
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(reason)

    def add_callback(self, callback: Callable[[str], object]) -> Callable[[], None]:
        """Call ``callback(reason)`` on cancellation, immediately if already cancelled.

        Returns a function that unregisters the callback.
        """

        with self._guard:
            reason = self._reason
            if reason is None:
                self._callbacks.append(callback)
        if reason is not None:
            callback(reason)
            return lambda: None

        def remove() -> None:
            with self._guard:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return remove

    def detach(self) -> None:
        """Stop following the parent once the scoped work is over."""

        if self._detach_parent is not None:
            self._detach_parent()
            self._detach_parent = None

    def raise_if_cancelled(self) -> None:
        if self._reason is not None:
            raise asyncio.CancelledError(self._reason)


class KeyedLocks:
    """One ``threading.Lock`` per key; the registry lock only guards creation."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def lock_for(self, key: str) -> threading.Lock:
        existing = self._locks.get(key)
        if existing is not None:
            return existing
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self.lock_for(key):
            yield

    def discard(self, key: str) -> None:
        """Forget ``key`` once nothing will contend for it again."""

        with self._guard:
            self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


def call_in_loop(
    loop: asyncio.AbstractEventLoop, callback: Callable[..., object], *args: object
) -> None:
    """Run ``callback(*args)`` on ``loop``'s thread.

    Runs inline when already on that loop, otherwise hands the call over with
    ``call_soon_threadsafe`` so the loop wakes up for it. A closed loop has no
    waiters left and the call is dropped.
    """

    try:
        running = asyncio.get_running_loop()
    except RuntimeError:
        running = None
    if running is loop:
        callback(*args)
    elif not loop.is_closed():
        loop.call_soon_threadsafe(callback, *args)


async def run_with_timeout(
    coroutine: Awaitable[T],
    timeout_seconds: float | None,
    cancel_token: CancellationToken | None = None,
) -> T:
    """Await ``coroutine`` under a deadline and a cancellation token.

    Raises ``TimeoutError`` when the deadline passes and
    ``asyncio.CancelledError`` when the token fires, from whichever thread.
    Either way the work has been cancelled and has finished unwinding by the
    time the error is raised.
    """

    if timeout_seconds is not None and timeout_seconds <= 0:
        _discard(coroutine)
        raise ValueError("timeout_seconds must be > 0")
    if cancel_token is not None and cancel_token.is_cancelled:
        _discard(coroutine)
        cancel_token.raise_if_cancelled()

    loop = asyncio.get_running_loop()
    work = asyncio.ensure_future(coroutine)
    unregister = (
        cancel_token.add_callback(lambda reason: call_in_loop(loop, work.cancel, reason))
        if cancel_token is not None
        else None
    )
    try:
        async with asyncio.timeout(timeout_seconds):
            return await work
    except TimeoutError:
        raise TimeoutError(f"operation timed out after {timeout_seconds} seconds") from None
    finally:
        if unregister is not None:
            unregister()


async def cancellable_sleep(
    delay: float,
    cancel_token: CancellationToken,
    *,
    sleep: SleepFn | None = None,
) -> None:
    """Sleep ``delay`` seconds unless ``cancel_token`` fires first."""

    if delay <= 0:
        cancel_token.raise_if_cancelled()
        return
    await run_with_timeout((sleep or asyncio.sleep)(delay), None, cancel_token)


def _discard(awaitable: Awaitable[object]) -> None:
    # An unscheduled coroutine warns "never awaited" when collected.
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "CancellationToken",
    "KeyedLocks",
    "SleepFn",
    "call_in_loop",
    "cancellable_sleep",
    "run_with_timeout",
]
