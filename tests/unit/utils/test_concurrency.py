"""Regression tests for cancellation tokens and cancellable waits."""

from __future__ import annotations

import asyncio
import gc
import threading
import warnings

import pytest

from policy_engine.utils.concurrency import (
    CancellationToken,
    KeyedLocks,
    call_in_loop,
    cancellable_sleep,
    run_with_timeout,
)


async def _value(result: int = 1) -> int:
    await asyncio.sleep(0)
    return result


async def _forever() -> None:
    await asyncio.Event().wait()


def test_child_token_follows_parent_but_not_siblings() -> None:
    root = CancellationToken()
    first = root.child()
    second = root.child()

    first.cancel("first only")
    assert first.is_cancelled
    assert not root.is_cancelled and not second.is_cancelled

    root.cancel("shutdown")
    assert second.is_cancelled
    assert second.reason == "shutdown"
    assert first.reason == "first only"


def test_child_of_cancelled_parent_starts_cancelled() -> None:
    root = CancellationToken()
    root.cancel("gone")

    child = root.child()

    assert child.is_cancelled
    assert child.reason == "gone"


def test_detached_child_is_not_cancelled_by_parent() -> None:
    root = CancellationToken()
    child = root.child()
    child.detach()

    root.cancel()

    assert not child.is_cancelled


async def test_run_with_timeout_returns_value() -> None:
    assert await run_with_timeout(_value(7), 1.0) == 7


async def test_run_with_timeout_raises_timeout_error() -> None:
    with pytest.raises(TimeoutError):
        await run_with_timeout(_forever(), 0.01)


async def test_run_with_timeout_honours_token_fired_mid_flight() -> None:
    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.01, token.cancel, "stop")

    with pytest.raises(asyncio.CancelledError):
        await run_with_timeout(_forever(), None, token)


async def test_precancelled_token_closes_coroutine_without_warning() -> None:
    token = CancellationToken()
    token.cancel()

    with warnings.catch_warnings():
        warnings.simplefilter("error", RuntimeWarning)
        with pytest.raises(asyncio.CancelledError):
            await run_with_timeout(_value(), 1.0, token)
        gc.collect()


async def test_run_with_timeout_rejects_non_positive_timeout() -> None:
    with pytest.raises(ValueError):
        await run_with_timeout(_value(), 0)


async def test_cancellable_sleep_uses_injected_sleeper() -> None:
    slept: list[float] = []

    async def fake_sleep(delay: float) -> None:
        slept.append(delay)

    await cancellable_sleep(0.5, CancellationToken(), sleep=fake_sleep)
    await cancellable_sleep(0.0, CancellationToken(), sleep=fake_sleep)

    assert slept == [0.5]


async def test_cancellable_sleep_stops_on_cancel() -> None:
    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.01, token.cancel)

    with pytest.raises(asyncio.CancelledError):
        await cancellable_sleep(30.0, token)


def test_keyed_locks_returns_one_lock_per_key() -> None:
    locks = KeyedLocks()

    assert locks.lock_for("a") is locks.lock_for("a")
    assert locks.lock_for("a") is not locks.lock_for("b")
    with locks.hold("a"):
        assert locks.lock_for("a").locked()
    locks.discard("a")
    assert len(locks) == 1


async def test_token_cancelled_from_another_thread_wakes_the_loop() -> None:
    token = CancellationToken()
    timer = threading.Timer(0.05, token.cancel, args=("stop from worker",))
    timer.start()
    try:
        with pytest.raises(asyncio.CancelledError):
            await asyncio.wait_for(run_with_timeout(_forever(), None, token), timeout=2.0)
    finally:
        timer.join()

    assert token.reason == "stop from worker"


async def test_call_in_loop_runs_inline_on_the_loop_thread() -> None:
    calls: list[str] = []

    call_in_loop(asyncio.get_running_loop(), calls.append, "inline")

    assert calls == ["inline"]


def test_call_in_loop_drops_calls_for_a_closed_loop() -> None:
    loop = asyncio.new_event_loop()
    loop.close()
    calls: list[str] = []

    call_in_loop(loop, calls.append, "late")

    assert calls == []
