"""Tests for wrappers module — timeout, retry, sequencing and debounce."""

import asyncio
import functools
import logging

import pytest

from bluetooth_device.exc import OperationTimeoutError
from bluetooth_device.wrappers import (
    Debouncer,
    with_precondition,
    with_retry,
    with_rollback,
    with_timeout,
)


class Flaky:
    """Coroutine callable that fails a fixed number of times, then succeeds."""

    def __init__(self, failures, exc_type=RuntimeError, result="ok"):
        self.failures = failures
        self.exc_type = exc_type
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc_type(f"failure {self.calls}")
        return self.result


# ── with_timeout ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_timeout_passes_result_through():
    async def quick(value):
        return value * 2

    wrapped = with_timeout(quick, 1.0, "Quick timeout.")
    assert await wrapped(21) == 42


@pytest.mark.asyncio
async def test_timeout_raises_reason_and_cleans_up():
    cleaned_up = []

    async def slow():
        try:
            await asyncio.sleep(10)
        finally:
            cleaned_up.append(True)

    wrapped = with_timeout(slow, 0.05, "Slow timeout.")
    with pytest.raises(OperationTimeoutError) as exc_info:
        await wrapped()

    assert str(exc_info.value) == "Slow timeout."
    assert exc_info.value.reason == "Slow timeout."
    assert isinstance(exc_info.value, asyncio.TimeoutError)
    assert cleaned_up == [True]


@pytest.mark.asyncio
async def test_timeout_callable_evaluated_per_call():
    durations = [0.02, 1.0]

    async def medium():
        await asyncio.sleep(0.1)
        return "done"

    wrapped = with_timeout(medium, lambda: durations.pop(0), "Medium timeout.")
    with pytest.raises(OperationTimeoutError):
        await wrapped()
    assert await wrapped() == "done"


@pytest.mark.asyncio
async def test_timeout_propagates_inner_error():
    async def broken():
        raise ValueError("inner")

    with pytest.raises(ValueError, match="inner"):
        await with_timeout(broken, 1.0, "Broken timeout.")()


@pytest.mark.asyncio
async def test_timeout_outer_cancel_cancels_inner():
    cleaned_up = asyncio.Event()

    async def slow():
        try:
            await asyncio.sleep(10)
        finally:
            cleaned_up.set()

    task = asyncio.ensure_future(with_timeout(slow, 5.0, "Slow timeout.")())
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert cleaned_up.is_set()


# ── with_retry ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_retry_succeeds_after_failures():
    flaky = Flaky(failures=2)
    assert await with_retry(flaky, 2)() == "ok"
    assert flaky.calls == 3


@pytest.mark.asyncio
async def test_retry_raises_last_error_when_exhausted():
    flaky = Flaky(failures=5)
    with pytest.raises(RuntimeError, match="failure 3"):
        await with_retry(flaky, 2)()
    assert flaky.calls == 3


@pytest.mark.asyncio
async def test_retry_zero_means_single_attempt():
    flaky = Flaky(failures=1)
    with pytest.raises(RuntimeError):
        await with_retry(flaky, 0)()
    assert flaky.calls == 1


@pytest.mark.asyncio
async def test_retry_give_up_on():
    flaky = Flaky(failures=5, exc_type=KeyError)
    with pytest.raises(KeyError):
        await with_retry(flaky, 3, give_up_on=(KeyError,))()
    assert flaky.calls == 1


@pytest.mark.asyncio
async def test_retry_callable_count():
    retries = {"value": 0}
    flaky = Flaky(failures=1)
    wrapped = with_retry(flaky, lambda: retries["value"])

    with pytest.raises(RuntimeError):
        await wrapped()
    retries["value"] = 1
    flaky.calls = 0
    assert await wrapped() == "ok"
    assert flaky.calls == 2


@pytest.mark.asyncio
async def test_retry_does_not_retry_cancellation():
    calls = []

    async def cancelled():
        calls.append(1)
        raise asyncio.CancelledError

    with pytest.raises(asyncio.CancelledError):
        await with_retry(cancelled, 3)()
    assert calls == [1]


@pytest.mark.asyncio
async def test_retry_logs_partial_and_callable_objects(caplog):
    async def scaled(factor, flaky):
        return await flaky() * factor

    flaky = Flaky(failures=1, result=2)
    caplog.set_level(logging.DEBUG, logger="bluetooth_device.wrappers")

    assert await with_retry(functools.partial(scaled, 3, flaky), 1)() == 6
    assert await with_retry(Flaky(failures=1), 1)() == "ok"
    assert len([r for r in caplog.records if "attempt 1/2 failed" in r.message]) == 2


# ── with_precondition / with_rollback ─────────────────────────────


@pytest.mark.asyncio
async def test_precondition_runs_first():
    order = []

    async def action():
        order.append("precondition")

    async def func(value):
        order.append("func")
        return value

    assert await with_precondition(func, action)("x") == "x"
    assert order == ["precondition", "func"]


@pytest.mark.asyncio
async def test_precondition_failure_skips_func():
    called = []

    async def action():
        raise RuntimeError("not ready")

    async def func():
        called.append(True)

    with pytest.raises(RuntimeError, match="not ready"):
        await with_precondition(func, action)()
    assert called == []


@pytest.mark.asyncio
async def test_rollback_runs_on_failure_and_reraises():
    rolled_back = []

    async def action():
        rolled_back.append(True)

    async def func():
        raise ValueError("primary")

    with pytest.raises(ValueError, match="primary"):
        await with_rollback(func, action)()
    assert rolled_back == [True]


@pytest.mark.asyncio
async def test_rollback_failure_with_callable_object_is_dropped():
    async def action():
        raise RuntimeError("rollback")

    with pytest.raises(ValueError, match="failure 1"):
        await with_rollback(Flaky(failures=1, exc_type=ValueError), action)()


@pytest.mark.asyncio
async def test_rollback_failure_keeps_original_error():
    async def action():
        raise RuntimeError("rollback")

    async def func():
        raise ValueError("primary")

    with pytest.raises(ValueError, match="primary"):
        await with_rollback(func, action)()


@pytest.mark.asyncio
async def test_rollback_skipped_on_success_and_cancel():
    rolled_back = []

    async def action():
        rolled_back.append(True)

    async def ok():
        return 1

    async def cancelled():
        raise asyncio.CancelledError

    assert await with_rollback(ok, action)() == 1
    with pytest.raises(asyncio.CancelledError):
        await with_rollback(cancelled, action)()
    assert rolled_back == []


# ── Debouncer ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_debouncer_coalesces_calls():
    flaky = Flaky(failures=0)
    debouncer = Debouncer(flaky, 0.05)

    first = debouncer()
    await asyncio.sleep(0.02)
    second = debouncer()
    assert first is second
    assert debouncer.pending

    assert await first == "ok"
    assert flaky.calls == 1
    assert not debouncer.pending
    assert not debouncer.running


@pytest.mark.asyncio
async def test_debouncer_resets_timer():
    flaky = Flaky(failures=0)
    debouncer = Debouncer(flaky, 0.1)

    debouncer()
    await asyncio.sleep(0.07)
    debouncer()
    await asyncio.sleep(0.07)
    assert flaky.calls == 0
    await asyncio.sleep(0.1)
    assert flaky.calls == 1


@pytest.mark.asyncio
async def test_debouncer_flush_runs_now():
    flaky = Flaky(failures=0)
    debouncer = Debouncer(flaky, 10.0)

    waiter = debouncer()
    assert await debouncer.flush() == "ok"
    assert waiter.done()
    assert flaky.calls == 1
    assert await debouncer.flush() is None


@pytest.mark.asyncio
async def test_debouncer_failure_reaches_waiter():
    flaky = Flaky(failures=1)
    debouncer = Debouncer(flaky, 0.01)

    with pytest.raises(RuntimeError, match="failure 1"):
        await debouncer()


@pytest.mark.asyncio
async def test_debouncer_cancel_drops_pending():
    flaky = Flaky(failures=0)
    debouncer = Debouncer(flaky, 0.02)

    waiter = debouncer()
    debouncer.cancel()
    await asyncio.sleep(0.05)

    assert waiter.cancelled()
    assert flaky.calls == 0
    assert not debouncer.pending


@pytest.mark.asyncio
async def test_debouncer_callable_delay():
    flaky = Flaky(failures=0)
    delay = {"value": 10.0}
    debouncer = Debouncer(flaky, lambda: delay["value"])

    debouncer()
    delay["value"] = 0.01
    waiter = debouncer()
    assert await asyncio.wait_for(waiter, 1.0) == "ok"
