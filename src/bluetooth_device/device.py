"""Bluetooth Low-Energy peripheral device with a managed connection lifecycle.

:class:`BluetoothDevice` builds each public operation by composing the
wrappers in :mod:`bluetooth_device.wrappers` around a core step:

==============  =========================================================
``discover``    single-flight scan (:mod:`~bluetooth_device.discovery`)
                bounded by ``discovery_timeout``
``connect``     ``discover`` first, then one timed connect; on failure a
                single compensating disconnect before the error surfaces
``disconnect``  debounced by ``idle_timeout``; each execution is a timed
                disconnect retried ``retries`` times
``read``        retried ``connect`` + timed handle read
``write``       retried ``connect`` + timed handle write
``notify``      retried ``connect`` + timed wait for the next notification
==============  =========================================================

Every operation touches the idle debouncer once its connect step returns,
and successful ``read``, ``write`` and ``notify`` calls touch it again, so
the connection is destroyed ``idle_timeout`` seconds after the last
operation started or completed, whichever is later.  A connection opened
by an operation that then fails is still destroyed.

Example::

    device = BluetoothDevice("AA:BB:CC:DD:EE:FF", DeviceOptions(retries=2))
    data = await device.read(0x0021)
    await device.write(0x0024, b"\\x01")
    value = await device.notify(0x0027)
    await device.close()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .adapter import Adapter, AdapterEvent, Peripheral, normalize_address
from .const import (
    CONNECT_TIMEOUT_REASON,
    DISCONNECT_TIMEOUT_REASON,
    NOTIFY_TIMEOUT_REASON,
    READ_TIMEOUT_REASON,
    WRITE_TIMEOUT_REASON,
    DeviceOptions,
)
from .correlation import PendingRequests
from .discovery import get_discovery_gate
from .exc import AdapterError, HandleBusyError
from .state import ConnectionState, ConnectionStateMachine
from .wrappers import (
    Debouncer,
    with_precondition,
    with_retry,
    with_rollback,
    with_timeout,
)

_LOGGER = logging.getLogger(__name__)


def _check_handle(handle: int) -> None:
    if isinstance(handle, bool) or not isinstance(handle, int) or handle < 0:
        raise ValueError(f"Handle must be a non-negative integer, got {handle!r}")


class BluetoothDevice:
    """A single BLE peripheral identified by its hardware address.

    Parameters
    ----------
    address:
        Bluetooth address, compared case-insensitively.
    options:
        Timing and retry configuration.  Defaults to :class:`DeviceOptions`.
    adapter:
        The adapter session to use.  Defaults to the process-wide
        :class:`~bluetooth_device.bleak_adapter.BleakAdapter`.
    """

    def __init__(
        self,
        address: str,
        options: DeviceOptions | None = None,
        *,
        adapter: Adapter | None = None,
    ) -> None:
        if adapter is None:
            from .bleak_adapter import get_default_adapter

            adapter = get_default_adapter()

        self._address = address
        self.options = options or DeviceOptions()
        self._adapter = adapter
        self._gate = get_discovery_gate(adapter, address)
        self._requests = PendingRequests(adapter, address)
        self._state_machine = ConnectionStateMachine(
            adapter, address, on_change=self._on_state_change
        )

        self._connect = with_precondition(
            with_rollback(
                with_timeout(
                    self._state_machine.connect,
                    self._timeout,
                    CONNECT_TIMEOUT_REASON,
                ),
                with_timeout(
                    self._state_machine.disconnect,
                    self._timeout,
                    DISCONNECT_TIMEOUT_REASON,
                ),
            ),
            self.discover,
        )

        self._disconnect = with_retry(
            with_timeout(
                self._state_machine.disconnect,
                self._timeout,
                DISCONNECT_TIMEOUT_REASON,
            ),
            self._retries,
        )
        self._idle = Debouncer(
            self._idle_disconnect,
            self._idle_timeout,
            name=f"{normalize_address(address)}: Idle disconnect",
        )

        self._read = self._handle_operation(self._read_once, READ_TIMEOUT_REASON)
        self._write = self._handle_operation(self._write_once, WRITE_TIMEOUT_REASON)
        self._notify = self._handle_operation(
            self._notify_once, NOTIFY_TIMEOUT_REASON
        )

    def __repr__(self) -> str:
        return f"<BluetoothDevice {self._address} {self.state.value}>"

    @property
    def address(self) -> str:
        """Return the Bluetooth address the device was created with."""
        return self._address

    @property
    def adapter(self) -> Adapter:
        return self._adapter

    @property
    def state(self) -> ConnectionState:
        """Return the current connection state."""
        return self._state_machine.state

    @property
    def peripheral(self) -> Peripheral | None:
        """Return the discovered peripheral, if any."""
        return self._state_machine.peripheral

    async def discover(self) -> None:
        """Discover the peripheral by address.

        Returns immediately if it was discovered before.
        """
        if self._state_machine.peripheral is not None:
            return
        peripheral = await self._gate.discover(self._discovery_timeout)
        self._state_machine.bind(peripheral)

    async def connect(self) -> None:
        """Connect to the device, discovering it first if needed."""
        await self._ensure_connected()

    async def disconnect(self) -> None:
        """Destroy the connection once the device has been idle for ``idle_timeout``.

        Returns after the debounced disconnect this call was coalesced
        into has run.
        """
        await asyncio.shield(self._idle())

    async def read(self, handle: int) -> bytes:
        """Read the value of *handle*, connecting first if needed."""
        _check_handle(handle)
        data = await self._read(handle)
        self._touch()
        return data

    async def write(self, handle: int, data: bytes) -> None:
        """Write *data* to *handle*, connecting first if needed."""
        _check_handle(handle)
        await self._write(handle, bytes(data))
        self._touch()

    async def notify(self, handle: int) -> bytes:
        """Wait for the next notification on *handle*, connecting first if needed."""
        _check_handle(handle)
        data = await self._notify(handle)
        self._touch()
        return data

    async def close(self) -> None:
        """Disconnect now and stop listening to the adapter."""
        _LOGGER.debug("%s: Closing", normalize_address(self._address))
        try:
            if self._idle.pending:
                await self._idle.flush()
            else:
                await self._disconnect()
        finally:
            self._idle.cancel()
            self._state_machine.detach()

    def _timeout(self) -> float:
        return self.options.timeout

    def _discovery_timeout(self) -> float:
        return self.options.discovery_timeout

    def _idle_timeout(self) -> float:
        return self.options.idle_timeout

    def _retries(self) -> int:
        return self.options.retries

    def _touch(self) -> None:
        self._idle()

    async def _ensure_connected(self) -> None:
        # The idle timer restarts when an operation starts and again when it ends.
        await self._connect()
        self._touch()

    async def _idle_disconnect(self) -> None:
        if self._state_machine.state is not ConnectionState.DISCONNECTED:
            _LOGGER.info(
                "%s: Disconnecting idle device", normalize_address(self._address)
            )
        await self._disconnect()

    def _handle_operation(
        self, func: Callable[..., Awaitable[Any]], reason: str
    ) -> Callable[..., Awaitable[Any]]:
        return with_retry(
            with_precondition(
                with_timeout(func, self._timeout, reason), self._ensure_connected
            ),
            self._retries,
            give_up_on=(HandleBusyError,),
        )

    def _on_state_change(self, state: ConnectionState) -> None:
        if state is ConnectionState.DISCONNECTED and len(self._requests):
            _LOGGER.debug(
                "%s: Failing %d pending requests after disconnect",
                normalize_address(self._address),
                len(self._requests),
            )
            self._requests.fail_all(AdapterError("Peripheral disconnected."))

    async def _read_once(self, handle: int) -> bytes:
        with self._requests.track(AdapterEvent.HANDLE_READ, handle) as result:
            self._adapter.read_handle(self._state_machine.peripheral, handle)
            return await result

    async def _write_once(self, handle: int, data: bytes) -> None:
        with self._requests.track(AdapterEvent.HANDLE_WRITTEN, handle) as result:
            self._adapter.write_handle(self._state_machine.peripheral, handle, data)
            await result

    async def _notify_once(self, handle: int) -> bytes:
        with self._requests.track(AdapterEvent.HANDLE_NOTIFIED, handle) as result:
            self._adapter.subscribe_handle(self._state_machine.peripheral, handle)
            return await result
