"""Correlation table mapping handle events to the callers awaiting them.

Read, write and notify requests register a :class:`PendingRequest`
keyed by ``(event kind, handle)``.  The table keeps exactly one adapter
listener per event kind while it has pending entries of that kind, and
removes it together with the last entry, so the adapter's listener count
always returns to where it started once requests finish or are
cancelled.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from .adapter import Adapter, AdapterEvent, Peripheral, normalize_address
from .exc import AdapterError, HandleBusyError


@dataclass
class PendingRequest:
    """A caller waiting for one event on one handle."""

    kind: AdapterEvent
    handle: int
    future: asyncio.Future[Any]


class PendingRequests:
    """Pending handle requests for a single peripheral address."""

    def __init__(self, adapter: Adapter, address: str) -> None:
        self._adapter = adapter
        self._address = normalize_address(address)
        self._pending: dict[tuple[AdapterEvent, int], PendingRequest] = {}
        self._listeners: dict[AdapterEvent, Callable[..., None]] = {
            AdapterEvent.HANDLE_READ: self._on_handle_read,
            AdapterEvent.HANDLE_WRITTEN: self._on_handle_written,
            AdapterEvent.HANDLE_NOTIFIED: self._on_handle_notified,
        }
        self._subscribed: set[AdapterEvent] = set()

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, key: tuple[AdapterEvent, int]) -> bool:
        return key in self._pending

    @contextmanager
    def track(self, kind: AdapterEvent, handle: int) -> Iterator[asyncio.Future[Any]]:
        """Register a request and yield the future its event will settle.

        The entry and, if it was the last of its kind, the adapter
        listener are removed when the block exits for any reason.

        Raises
        ------
        HandleBusyError
            If a request for the same kind and handle is already pending.
        """
        key = (kind, handle)
        if key in self._pending:
            raise HandleBusyError(kind.value, handle)

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[key] = PendingRequest(kind, handle, future)
        if kind not in self._subscribed:
            self._adapter.on(kind, self._listeners[kind])
            self._subscribed.add(kind)
        try:
            yield future
        finally:
            del self._pending[key]
            if not any(pending_kind is kind for pending_kind, _ in self._pending):
                self._adapter.remove_listener(kind, self._listeners[kind])
                self._subscribed.discard(kind)
            if not future.done():
                future.cancel()

    def fail_all(self, exc: BaseException) -> None:
        """Fail every pending request with *exc*."""
        for request in self._pending.values():
            if not request.future.done():
                request.future.set_exception(exc)

    def _matches(self, peripheral: Peripheral) -> bool:
        return normalize_address(peripheral.address) == self._address

    def _settle(
        self,
        kind: AdapterEvent,
        peripheral: Peripheral,
        handle: int,
        data: bytes | None = None,
        error: str | None = None,
    ) -> None:
        if not self._matches(peripheral):
            return
        request = self._pending.get((kind, handle))
        if request is None or request.future.done():
            return
        if error:
            request.future.set_exception(AdapterError(error))
        else:
            request.future.set_result(data)

    def _on_handle_read(
        self,
        peripheral: Peripheral,
        handle: int,
        error: str | None,
        data: bytes | None,
    ) -> None:
        self._settle(AdapterEvent.HANDLE_READ, peripheral, handle, data, error)

    def _on_handle_written(self, peripheral: Peripheral, handle: int) -> None:
        self._settle(AdapterEvent.HANDLE_WRITTEN, peripheral, handle)

    def _on_handle_notified(
        self, peripheral: Peripheral, handle: int, data: bytes
    ) -> None:
        self._settle(AdapterEvent.HANDLE_NOTIFIED, peripheral, handle, data)
