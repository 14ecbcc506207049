"""Connection state machine for a single peripheral.

The state machine is the only writer of the connection state.  It
listens to the adapter's ``CONNECTED`` and ``DISCONNECTED`` events for
its whole lifetime and settles the in-flight connect and disconnect
attempts from them.  Callers wait on those attempts through
:func:`asyncio.shield`, so a caller that is cancelled (or times out)
only detaches itself; the radio operation and any other waiters are
unaffected.

Transitions::

    disconnected  -> connecting     connect() issued
    connecting    -> connected      CONNECTED event
    connecting    -> disconnected   CONNECTED event with error, or DISCONNECTED
    connecting    -> disconnecting  disconnect() issued mid-connect
    connected     -> disconnecting  disconnect() issued
    connected     -> disconnected   link lost
    disconnecting -> disconnected   DISCONNECTED event
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from enum import Enum

from .adapter import Adapter, AdapterEvent, Peripheral, normalize_address
from .exc import AdapterError

_LOGGER = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """Connection state of a peripheral."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


def _retrieve(future: asyncio.Future[None]) -> None:
    """Mark a failed attempt as observed even if every waiter detached."""
    if not future.cancelled():
        future.exception()


class ConnectionStateMachine:
    """Track and drive the connection state of one peripheral.

    Parameters
    ----------
    adapter:
        The adapter session the peripheral belongs to.
    address:
        Hardware address of the peripheral.
    on_change:
        Optional callback invoked with the new state after every
        transition.
    """

    def __init__(
        self,
        adapter: Adapter,
        address: str,
        on_change: Callable[[ConnectionState], None] | None = None,
    ) -> None:
        self._adapter = adapter
        self._address = normalize_address(address)
        self._on_change = on_change
        self._state = ConnectionState.DISCONNECTED
        self._peripheral: Peripheral | None = None
        self._connecting: asyncio.Future[None] | None = None
        self._disconnecting: asyncio.Future[None] | None = None
        self._reissue_disconnect = False
        self._attached = False
        self.attach()

    @property
    def state(self) -> ConnectionState:
        """Return the current connection state."""
        return self._state

    @property
    def peripheral(self) -> Peripheral | None:
        """Return the bound peripheral, if discovery has found one."""
        return self._peripheral

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def attach(self) -> None:
        """Subscribe to the adapter's connection events.  Idempotent."""
        if self._attached:
            return
        self._adapter.on(AdapterEvent.CONNECTED, self._on_connected)
        self._adapter.on(AdapterEvent.DISCONNECTED, self._on_disconnected)
        self._attached = True

    def detach(self) -> None:
        """Unsubscribe from the adapter's connection events.  Idempotent."""
        if not self._attached:
            return
        self._adapter.remove_listener(AdapterEvent.CONNECTED, self._on_connected)
        self._adapter.remove_listener(
            AdapterEvent.DISCONNECTED, self._on_disconnected
        )
        self._attached = False

    def bind(self, peripheral: Peripheral) -> None:
        """Bind the discovered peripheral.

        The first binding sticks; later calls are ignored so the device
        never switches to a different physical peripheral.
        """
        if self._peripheral is not None:
            return
        if normalize_address(peripheral.address) != self._address:
            raise ValueError(
                f"Peripheral {peripheral.address} does not match {self._address}"
            )
        self._peripheral = peripheral

    async def connect(self) -> None:
        """Connect the peripheral, joining an attempt already in flight."""
        peripheral = self._require_peripheral()
        while True:
            if self._state is ConnectionState.CONNECTED:
                return
            if self._state is ConnectionState.CONNECTING:
                await asyncio.shield(self._connecting)
                return
            if self._state is ConnectionState.DISCONNECTING:
                _LOGGER.debug(
                    "%s: Waiting for disconnect before connecting", self._address
                )
                await asyncio.shield(self._disconnecting)
                continue
            break

        future = self._new_future()
        self._connecting = future
        self._transition(ConnectionState.CONNECTING)
        try:
            self._adapter.connect(peripheral)
        except Exception:
            self._connecting = None
            self._transition(ConnectionState.DISCONNECTED)
            raise
        await asyncio.shield(future)

    async def disconnect(self) -> None:
        """Disconnect the peripheral, joining a disconnect already in flight.

        If the caller that issued the in-flight disconnect gave up on it,
        the next caller issues the radio disconnect again.
        """
        peripheral = self._peripheral
        if peripheral is None or self._state is ConnectionState.DISCONNECTED:
            return
        if (
            self._state is ConnectionState.DISCONNECTING
            and not self._reissue_disconnect
        ):
            await asyncio.shield(self._disconnecting)
            return

        if self._state is not ConnectionState.DISCONNECTING:
            self._disconnecting = self._new_future()
            self._transition(ConnectionState.DISCONNECTING)
        future = self._disconnecting
        self._reissue_disconnect = False
        try:
            self._adapter.disconnect(peripheral)
        except Exception:
            self._reissue_disconnect = True
            raise

        try:
            await asyncio.shield(future)
        except asyncio.CancelledError:
            if not future.done():
                self._reissue_disconnect = True
            raise

    def _require_peripheral(self) -> Peripheral:
        if self._peripheral is None:
            raise AdapterError(f"{self._address}: Peripheral has not been discovered")
        return self._peripheral

    def _new_future(self) -> asyncio.Future[None]:
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        future.add_done_callback(_retrieve)
        return future

    def _matches(self, peripheral: Peripheral) -> bool:
        return normalize_address(peripheral.address) == self._address

    def _transition(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        _LOGGER.debug(
            "%s: State transition %s -> %s",
            self._address,
            self._state.value,
            state.value,
        )
        self._state = state
        if self._on_change is not None:
            self._on_change(state)

    def _on_connected(self, peripheral: Peripheral, error: str | None = None) -> None:
        if not self._matches(peripheral):
            return
        future = self._connecting

        if error:
            _LOGGER.debug("%s: Connect failed: %s", self._address, error)
            self._connecting = None
            if self._state is ConnectionState.CONNECTING:
                self._transition(ConnectionState.DISCONNECTED)
            if future is not None and not future.done():
                future.set_exception(AdapterError(error))
            return

        if self._state is ConnectionState.DISCONNECTING:
            # The disconnect issued meanwhile wins; its DISCONNECTED event
            # settles the pending connect.
            _LOGGER.debug(
                "%s: Connect completed while disconnecting", self._address
            )
            return

        self._connecting = None
        self._transition(ConnectionState.CONNECTED)
        if future is not None and not future.done():
            future.set_result(None)

    def _on_disconnected(self, peripheral: Peripheral) -> None:
        if not self._matches(peripheral):
            return
        if self._state is ConnectionState.CONNECTED:
            _LOGGER.info("%s: Connection lost", self._address)

        connecting, self._connecting = self._connecting, None
        disconnecting, self._disconnecting = self._disconnecting, None
        self._reissue_disconnect = False
        self._transition(ConnectionState.DISCONNECTED)

        if connecting is not None and not connecting.done():
            connecting.set_exception(
                AdapterError("Peripheral disconnected before the connection completed")
            )
        if disconnecting is not None and not disconnecting.done():
            disconnecting.set_result(None)
