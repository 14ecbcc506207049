"""Cancelable units of asynchronous work.

A :class:`CancelableOperation` pairs a running task with an optional
cleanup callback.  Cancelling it runs the callback synchronously and then
cancels the task, so the task's own ``finally`` blocks unwind before the
awaiting side sees :class:`asyncio.CancelledError`.

Usage::

    operation = start(lambda: device.read(0x0021))
    ...
    operation.cancel()

    try:
        await operation
    except asyncio.CancelledError:
        ...
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Generator
from typing import Any, Generic, TypeVar

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class CancelableOperation(Generic[T]):
    """A started operation that its caller may cancel.

    Awaiting the operation awaits its task.  :meth:`cancel` is idempotent
    and does nothing once the task has finished.
    """

    __slots__ = ("_task", "_on_cancel", "_cancelled")

    def __init__(
        self,
        task: asyncio.Future[T],
        on_cancel: Callable[[], None] | None = None,
    ) -> None:
        self._task = task
        self._on_cancel = on_cancel
        self._cancelled = False

    @property
    def task(self) -> asyncio.Future[T]:
        """Return the future that settles with the operation's result."""
        return self._task

    def done(self) -> bool:
        """Return whether the operation has settled."""
        return self._task.done()

    def cancel(self) -> bool:
        """Cancel the operation.

        Returns ``True`` if this call cancelled it, ``False`` if it was
        already cancelled or had already finished.
        """
        if self._cancelled or self._task.done():
            return False
        self._cancelled = True
        if self._on_cancel is not None:
            try:
                self._on_cancel()
            except Exception:
                _LOGGER.exception("Cancel callback failed")
        self._task.cancel()
        return True

    def __await__(self) -> Generator[Any, None, T]:
        return self._task.__await__()


def start(
    work: Callable[[], Awaitable[T]],
    on_cancel: Callable[[], None] | None = None,
) -> CancelableOperation[T]:
    """Start *work* as a task and return a handle that can cancel it.

    Must be called with a running event loop.
    """
    task = asyncio.ensure_future(work())
    return CancelableOperation(task, on_cancel)
