"""Composable wrappers that add timeout, retry, sequencing and debounce.

Each public device operation is built by layering these around a core
coroutine function, e.g.::

    read = with_retry(
        with_precondition(
            with_timeout(read_once, options_timeout, "Read timeout."),
            connect,
        ),
        retries,
    )

Durations and retry counts may be given as plain numbers or as
zero-argument callables; callables are evaluated on every call so the
current device configuration always applies.

Cancellation (:class:`asyncio.CancelledError`) passes through every
wrapper unchanged: it is never retried, never converted to a timeout,
and never triggers a rollback.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Generic, TypeVar, Union

from .exc import OperationTimeoutError
from .operation import CancelableOperation, start

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

Seconds = Union[float, Callable[[], float]]
Count = Union[int, Callable[[], int]]


def _resolve(value: Any) -> Any:
    """Return *value*, calling it first if it is callable."""
    return value() if callable(value) else value


def _describe(func: Callable[..., Any]) -> str:
    return getattr(func, "__qualname__", None) or repr(func)


def with_timeout(
    func: Callable[..., Awaitable[T]],
    timeout: Seconds,
    reason: str,
) -> Callable[..., Awaitable[T]]:
    """Race *func* against a deadline.

    If the deadline passes first, the inner call is cancelled, its
    cleanup is awaited, and :class:`OperationTimeoutError` is raised with
    *reason*.
    """

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        duration = _resolve(timeout)
        task = asyncio.ensure_future(func(*args, **kwargs))
        try:
            await asyncio.wait({task}, timeout=duration)
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.wait({task})
            raise

        if not task.done():
            task.cancel()
            await asyncio.wait({task})
            if task.cancelled():
                _LOGGER.debug("%s after %.1f s", reason.rstrip("."), duration)
                raise OperationTimeoutError(reason)

        return task.result()

    return wrapper


def with_retry(
    func: Callable[..., Awaitable[T]],
    retries: Count,
    *,
    give_up_on: tuple[type[BaseException], ...] = (),
) -> Callable[..., Awaitable[T]]:
    """Re-invoke *func* on failure, up to *retries* extra times.

    Retries happen immediately.  Exceptions listed in *give_up_on* are
    raised without retrying.  After the last attempt the last failure is
    raised unmodified.
    """

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        max_attempts = _resolve(retries) + 1
        attempt = 1
        while True:
            try:
                return await func(*args, **kwargs)
            except Exception as exc:
                if isinstance(exc, give_up_on) or attempt >= max_attempts:
                    raise
                _LOGGER.debug(
                    "%s: attempt %d/%d failed: %s",
                    _describe(func),
                    attempt,
                    max_attempts,
                    exc,
                )
                attempt += 1

    return wrapper


def with_precondition(
    func: Callable[..., Awaitable[T]],
    action: Callable[[], Awaitable[Any]],
) -> Callable[..., Awaitable[T]]:
    """Await *action* before every call to *func*."""

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        await action()
        return await func(*args, **kwargs)

    return wrapper


def with_rollback(
    func: Callable[..., Awaitable[T]],
    action: Callable[[], Awaitable[Any]],
) -> Callable[..., Awaitable[T]]:
    """Await *action* when *func* fails, then re-raise the original error.

    Failures of *action* itself are logged and dropped.
    """

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return await func(*args, **kwargs)
        except Exception:
            try:
                await action()
            except Exception:
                _LOGGER.debug(
                    "%s: rollback failed", _describe(func), exc_info=True
                )
            raise

    return wrapper


class Debouncer(Generic[T]):
    """Delay a coroutine until calls to it have been quiet for a while.

    Every call cancels the pending execution and schedules a new one
    *delay* seconds later.  All calls coalesced into one execution share
    the future it returns.  Executions nobody awaits still have their
    failures logged.

    Parameters
    ----------
    func:
        Zero-argument coroutine function to run.
    delay:
        Quiet period in seconds, or a callable returning it.
    name:
        Label for log messages.
    """

    def __init__(
        self,
        func: Callable[[], Awaitable[T]],
        delay: Seconds,
        *,
        name: str = "debounced call",
    ) -> None:
        self._func = func
        self._delay = delay
        self._name = name
        self._handle: asyncio.TimerHandle | None = None
        self._waiter: asyncio.Future[T] | None = None
        self._running: CancelableOperation[T] | None = None

    @property
    def pending(self) -> bool:
        """Return whether an execution is scheduled but not yet started."""
        return self._handle is not None

    @property
    def running(self) -> bool:
        """Return whether an execution is in progress."""
        return self._running is not None

    def __call__(self) -> asyncio.Future[T]:
        loop = asyncio.get_running_loop()
        if self._handle is not None:
            self._handle.cancel()
        if self._waiter is None:
            self._waiter = loop.create_future()
            self._waiter.add_done_callback(self._log_failure)
        self._handle = loop.call_later(_resolve(self._delay), self._fire)
        return self._waiter

    async def flush(self) -> T | None:
        """Run the pending execution now and wait for it.

        Returns ``None`` when nothing was scheduled.
        """
        if self._handle is None:
            return None
        self._handle.cancel()
        waiter = self._waiter
        self._fire()
        return await asyncio.shield(waiter)

    def cancel(self) -> None:
        """Drop the pending execution and cancel a running one."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._waiter is not None:
            self._waiter.cancel()
            self._waiter = None
        if self._running is not None:
            self._running.cancel()

    def _fire(self) -> None:
        waiter, self._waiter, self._handle = self._waiter, None, None
        operation = start(self._func)
        self._running = operation
        operation.task.add_done_callback(
            functools.partial(self._settle, waiter, operation)
        )

    def _settle(
        self,
        waiter: asyncio.Future[T],
        operation: CancelableOperation[T],
        task: asyncio.Future[T],
    ) -> None:
        if self._running is operation:
            self._running = None
        if waiter.done():
            return
        if task.cancelled():
            waiter.cancel()
        elif task.exception() is not None:
            waiter.set_exception(task.exception())
        else:
            waiter.set_result(task.result())

    def _log_failure(self, future: asyncio.Future[T]) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            _LOGGER.warning("%s failed: %s", self._name, exc)
