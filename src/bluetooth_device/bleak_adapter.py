"""Adapter implementation on top of bleak.

Turns bleak's awaitable API into the fire-and-forget command / event
model of :class:`~bluetooth_device.adapter.Adapter`:

- **Scanning** — a single ``BleakScanner`` whose detection callback
  emits ``DISCOVERED``.  Start and stop requests are reconciled under a
  lock, so rapid start/stop sequences settle on the last request.
- **Connecting** — one ``bleak_retry_connector.establish_connection``
  attempt (``max_attempts=1``; retries belong to the caller).  Failures
  are reported as the error string of ``CONNECTED``.
- **Disconnecting** — ``BleakClient.disconnect()``; ``DISCONNECTED`` is
  emitted exactly once per link, whether bleak's disconnected callback
  or the explicit disconnect gets there first.
- **Handles** — ``read_gatt_char``, ``write_gatt_char(response=True)``
  and ``start_notify`` addressed by integer handle.
- **Power state** — on Linux, BlueZ ``Adapter1.Powered`` via
  :mod:`bluetooth_device.bluez`; elsewhere the radio is assumed on.

Commands run as background tasks.  Cancelling a caller that waits for
an event never cancels the radio operation itself.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from functools import partial
from typing import Any

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError
from bleak_retry_connector import BleakClientWithServiceCache, establish_connection

from .adapter import Adapter, AdapterEvent, AdapterState, normalize_address
from .bluez import (
    close_bus,
    default_adapter,
    get_adapter_powered,
    watch_adapter_powered,
)
from .const import IS_LINUX

_LOGGER = logging.getLogger(__name__)

# Failures a single bleak operation is expected to raise
_BACKEND_ERRORS = (BleakError, asyncio.TimeoutError, EOFError, BrokenPipeError)

_NOT_CONNECTED = "Not connected"


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class BleakAdapter(Adapter):
    """Bluetooth adapter backed by bleak.

    Parameters
    ----------
    adapter:
        Local adapter name (e.g. ``"hci0"``).  ``None`` picks the first
        adapter on Linux and the platform default elsewhere.
    """

    def __init__(self, adapter: str | None = None) -> None:
        super().__init__()
        self._adapter_name = adapter
        self._opened = False
        self._open_lock = asyncio.Lock()
        self._unwatch: Callable[[], None] | None = None
        self._scanner: BleakScanner | None = None
        self._want_scan = False
        self._scan_lock = asyncio.Lock()
        self._clients: dict[str, BleakClient] = {}
        self._peripherals: dict[str, BLEDevice] = {}
        self._connect_tasks: dict[str, asyncio.Task[None]] = {}
        self._notifying: dict[str, set[int]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def name(self) -> str | None:
        """Return the local adapter name, once known."""
        return self._adapter_name

    @property
    def scanning(self) -> bool:
        """Return whether the scanner is running."""
        return self._scanner is not None

    def is_connected(self, address: str) -> bool:
        """Return whether a client for *address* is connected."""
        return normalize_address(address) in self._clients

    async def open(self) -> None:
        async with self._open_lock:
            if self._opened:
                return
            if not IS_LINUX:
                self._opened = True
                self._set_state(AdapterState.POWERED_ON)
                return

            if self._adapter_name is None:
                self._adapter_name = default_adapter()
            powered = await get_adapter_powered(self._adapter_name)
            try:
                self._unwatch = await watch_adapter_powered(
                    self._adapter_name, self._on_powered
                )
            except Exception:
                _LOGGER.debug(
                    "Cannot watch power state of %s",
                    self._adapter_name,
                    exc_info=True,
                )
            self._opened = True
            if powered is None:
                _LOGGER.debug(
                    "Power state of %s unknown, assuming powered on",
                    self._adapter_name,
                )
                powered = True
            self._on_powered(powered)

    async def close(self) -> None:
        if self._unwatch is not None:
            self._unwatch()
            self._unwatch = None

        self._want_scan = False
        await self._sync_scanner()

        for address, client in list(self._clients.items()):
            try:
                await client.disconnect()
            except _BACKEND_ERRORS as exc:
                _LOGGER.debug("%s: Disconnect on close failed: %s", address, exc)
            self._on_client_disconnected(self._peripherals[address], client)

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)
        if IS_LINUX:
            await close_bus()
        self._opened = False
        self._set_state(AdapterState.UNKNOWN)

    def start_scan(self) -> None:
        self._want_scan = True
        self._spawn(self._sync_scanner())

    def stop_scan(self) -> None:
        if not self._want_scan:
            return
        self._want_scan = False
        self._spawn(self._sync_scanner())

    def connect(self, peripheral: BLEDevice) -> None:
        key = normalize_address(peripheral.address)
        self._connect_tasks[key] = self._spawn(self._connect(peripheral))

    def disconnect(self, peripheral: BLEDevice) -> None:
        self._spawn(self._disconnect(peripheral))

    def read_handle(self, peripheral: BLEDevice, handle: int) -> None:
        self._spawn(self._read(peripheral, handle))

    def write_handle(self, peripheral: BLEDevice, handle: int, data: bytes) -> None:
        self._spawn(self._write(peripheral, handle, data))

    def subscribe_handle(self, peripheral: BLEDevice, handle: int) -> None:
        handles = self._notifying.get(normalize_address(peripheral.address))
        if handles is None or handle in handles:
            return
        handles.add(handle)
        self._spawn(self._start_notify(peripheral, handle, handles))

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _LOGGER.error("Adapter task failed", exc_info=exc)

    def _on_powered(self, powered: bool) -> None:
        self._set_state(
            AdapterState.POWERED_ON if powered else AdapterState.POWERED_OFF
        )

    def _on_detection(
        self, device: BLEDevice, advertisement_data: AdvertisementData
    ) -> None:
        self.emit(AdapterEvent.DISCOVERED, device)

    async def _sync_scanner(self) -> None:
        async with self._scan_lock:
            if self._want_scan and self._scanner is None:
                kwargs: dict[str, Any] = {"detection_callback": self._on_detection}
                if IS_LINUX and self._adapter_name:
                    kwargs["adapter"] = self._adapter_name
                scanner = BleakScanner(**kwargs)
                try:
                    await scanner.start()
                except _BACKEND_ERRORS as exc:
                    _LOGGER.warning(
                        "Failed to start scanning on %s: %s",
                        self._adapter_name or "default adapter",
                        _describe(exc),
                    )
                    return
                self._scanner = scanner
                _LOGGER.debug("Scanning started")
            elif not self._want_scan and self._scanner is not None:
                scanner, self._scanner = self._scanner, None
                try:
                    await scanner.stop()
                except _BACKEND_ERRORS as exc:
                    _LOGGER.debug("Failed to stop scanning: %s", _describe(exc))
                _LOGGER.debug("Scanning stopped")

    async def _connect(self, peripheral: BLEDevice) -> None:
        key = normalize_address(peripheral.address)
        try:
            client = await establish_connection(
                BleakClientWithServiceCache,
                peripheral,
                peripheral.name or peripheral.address,
                disconnected_callback=partial(self._on_client_disconnected, peripheral),
                max_attempts=1,
            )
        except _BACKEND_ERRORS as exc:
            _LOGGER.debug("%s: Connect failed: %s", key, _describe(exc))
            self.emit(AdapterEvent.CONNECTED, peripheral, _describe(exc))
            return
        finally:
            self._connect_tasks.pop(key, None)

        self._clients[key] = client
        self._peripherals[key] = peripheral
        self._notifying[key] = set()
        self.emit(AdapterEvent.CONNECTED, peripheral, None)

    async def _disconnect(self, peripheral: BLEDevice) -> None:
        key = normalize_address(peripheral.address)
        pending = self._connect_tasks.get(key)
        if pending is not None:
            await asyncio.wait({pending})

        client = self._clients.get(key)
        if client is None:
            self.emit(AdapterEvent.DISCONNECTED, peripheral)
            return
        try:
            await client.disconnect()
        except _BACKEND_ERRORS as exc:
            _LOGGER.warning("%s: Disconnect failed: %s", key, _describe(exc))
            return
        self._on_client_disconnected(peripheral, client)

    def _on_client_disconnected(self, peripheral: BLEDevice, client: BleakClient) -> None:
        key = normalize_address(peripheral.address)
        if self._clients.get(key) is not client:
            return
        del self._clients[key]
        self._peripherals.pop(key, None)
        self._notifying.pop(key, None)
        self.emit(AdapterEvent.DISCONNECTED, peripheral)

    async def _read(self, peripheral: BLEDevice, handle: int) -> None:
        client = self._clients.get(normalize_address(peripheral.address))
        if client is None:
            self.emit(AdapterEvent.HANDLE_READ, peripheral, handle, _NOT_CONNECTED, None)
            return
        try:
            data = await client.read_gatt_char(handle)
        except _BACKEND_ERRORS as exc:
            self.emit(
                AdapterEvent.HANDLE_READ, peripheral, handle, _describe(exc), None
            )
            return
        self.emit(AdapterEvent.HANDLE_READ, peripheral, handle, None, bytes(data))

    async def _write(self, peripheral: BLEDevice, handle: int, data: bytes) -> None:
        key = normalize_address(peripheral.address)
        client = self._clients.get(key)
        if client is None:
            _LOGGER.warning("%s: Write to %#06x while not connected", key, handle)
            return
        try:
            await client.write_gatt_char(handle, data, response=True)
        except _BACKEND_ERRORS as exc:
            _LOGGER.warning(
                "%s: Write to %#06x failed: %s", key, handle, _describe(exc)
            )
            return
        self.emit(AdapterEvent.HANDLE_WRITTEN, peripheral, handle)

    async def _start_notify(
        self, peripheral: BLEDevice, handle: int, handles: set[int]
    ) -> None:
        key = normalize_address(peripheral.address)
        client = self._clients.get(key)
        if client is None:
            handles.discard(handle)
            return
        try:
            await client.start_notify(
                handle, partial(self._on_notification, peripheral, handle)
            )
        except _BACKEND_ERRORS as exc:
            handles.discard(handle)
            _LOGGER.warning(
                "%s: Enabling notifications on %#06x failed: %s",
                key,
                handle,
                _describe(exc),
            )

    def _on_notification(
        self,
        peripheral: BLEDevice,
        handle: int,
        sender: BleakGATTCharacteristic,
        data: bytearray,
    ) -> None:
        self.emit(AdapterEvent.HANDLE_NOTIFIED, peripheral, handle, bytes(data))


_default_adapter: BleakAdapter | None = None


def get_default_adapter() -> BleakAdapter:
    """Return the process-wide bleak adapter, creating it on first use."""
    global _default_adapter
    if _default_adapter is None:
        _default_adapter = BleakAdapter()
    return _default_adapter
