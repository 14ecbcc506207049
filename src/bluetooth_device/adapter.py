"""Event-driven interface onto the local Bluetooth stack.

An :class:`Adapter` is the session handle the orchestration layer talks
to.  Its commands only *issue* work and return immediately; completion
is reported later through events.  This mirrors how BLE stacks behave
and keeps every wait in the orchestration layer cancelable.

Commands::

    start_scan()                          stop_scan()
    connect(peripheral)                   disconnect(peripheral)
    read_handle(peripheral, handle)       write_handle(peripheral, handle, data)
    subscribe_handle(peripheral, handle)  (optional, no-op by default)

Events and their listener arguments::

    DISCOVERED        (peripheral)
    STATE_CHANGED     (state)
    CONNECTED         (peripheral, error)        error is None on success
    DISCONNECTED      (peripheral)
    HANDLE_NOTIFIED   (peripheral, handle, data)
    HANDLE_READ       (peripheral, handle, error, data)
    HANDLE_WRITTEN    (peripheral, handle)

The session is opened lazily with :meth:`Adapter.open` on first use and
lives until :meth:`Adapter.close` or the end of the process.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from enum import Enum
from typing import Any, Protocol

_LOGGER = logging.getLogger(__name__)


class AdapterEvent(str, Enum):
    """Events emitted by an adapter."""

    DISCOVERED = "discovered"
    STATE_CHANGED = "adapter_state_changed"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    HANDLE_NOTIFIED = "handle_notified"
    HANDLE_READ = "handle_read"
    HANDLE_WRITTEN = "handle_written"


class AdapterState(str, Enum):
    """Power state of the local radio."""

    UNKNOWN = "unknown"
    POWERED_OFF = "powered_off"
    POWERED_ON = "powered_on"


class Peripheral(Protocol):
    """What the orchestration layer needs from a discovered peripheral."""

    @property
    def address(self) -> str: ...


def normalize_address(address: str) -> str:
    """Return *address* in the canonical upper-case form used for comparisons."""
    return address.upper()


class Adapter:
    """Base class for Bluetooth stack adapters.

    Provides listener bookkeeping and power-state tracking.  Subclasses
    implement the command methods and call :meth:`emit` when the stack
    reports progress.
    """

    def __init__(self) -> None:
        self._listeners: defaultdict[AdapterEvent, list[Callable[..., Any]]] = (
            defaultdict(list)
        )
        self._state = AdapterState.UNKNOWN

    @property
    def state(self) -> AdapterState:
        """Return the current radio power state."""
        return self._state

    def on(self, event: AdapterEvent, callback: Callable[..., Any]) -> None:
        """Register *callback* for *event*."""
        self._listeners[event].append(callback)

    def remove_listener(
        self, event: AdapterEvent, callback: Callable[..., Any]
    ) -> None:
        """Unregister *callback* from *event*.  Unknown callbacks are ignored."""
        listeners = self._listeners.get(event)
        if not listeners:
            return
        try:
            listeners.remove(callback)
        except ValueError:
            return
        if not listeners:
            del self._listeners[event]

    def listener_count(self, event: AdapterEvent | None = None) -> int:
        """Return the number of listeners for *event*, or for all events."""
        if event is not None:
            return len(self._listeners.get(event, ()))
        return sum(len(listeners) for listeners in self._listeners.values())

    def emit(self, event: AdapterEvent, *args: Any) -> None:
        """Call every listener of *event* with *args*.

        A failing listener is logged and does not stop the others.
        """
        for callback in list(self._listeners.get(event, ())):
            try:
                callback(*args)
            except Exception:
                _LOGGER.exception("Listener for %s failed", event.value)

    def _set_state(self, state: AdapterState) -> None:
        if state is self._state:
            return
        _LOGGER.debug("Adapter state %s -> %s", self._state.value, state.value)
        self._state = state
        self.emit(AdapterEvent.STATE_CHANGED, state)

    async def open(self) -> None:
        """Initialise the adapter session.  Safe to call repeatedly."""

    async def close(self) -> None:
        """Release the adapter session."""

    def start_scan(self) -> None:
        """Start scanning; matches arrive as ``DISCOVERED``."""
        raise NotImplementedError

    def stop_scan(self) -> None:
        """Stop scanning.  Safe to call when not scanning."""
        raise NotImplementedError

    def connect(self, peripheral: Peripheral) -> None:
        """Connect *peripheral*; the outcome arrives as ``CONNECTED``."""
        raise NotImplementedError

    def disconnect(self, peripheral: Peripheral) -> None:
        """Disconnect *peripheral*; completion arrives as ``DISCONNECTED``."""
        raise NotImplementedError

    def read_handle(self, peripheral: Peripheral, handle: int) -> None:
        """Read *handle*; the value or error arrives as ``HANDLE_READ``."""
        raise NotImplementedError

    def write_handle(self, peripheral: Peripheral, handle: int, data: bytes) -> None:
        """Write *data* to *handle*; success arrives as ``HANDLE_WRITTEN``."""
        raise NotImplementedError

    def subscribe_handle(self, peripheral: Peripheral, handle: int) -> None:
        """Ask the stack to deliver notifications for *handle*.

        Stacks that forward every notification unconditionally need not
        override this.
        """
