"""Shared fixtures: a scriptable in-memory adapter."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

import pytest

from bluetooth_device.adapter import Adapter, AdapterEvent, AdapterState

ADDRESS = "AA:BB:CC:DD:EE:FF"

# read_results entry that makes read_handle stay silent
NO_RESPONSE = None


@dataclass(frozen=True)
class FakePeripheral:
    address: str
    name: str | None = None


class FakeAdapter(Adapter):
    """Adapter that records commands and answers them on the next loop turn.

    - ``peripherals`` are reported as discovered once scanning starts.
    - ``connect_errors`` is consumed one entry per connect; ``None``
      means success, a string is reported as the connect error.
    - ``read_results`` is consumed one entry per read; bytes succeed,
      a string is reported as the read error, ``NO_RESPONSE`` stays silent.
      Replies arrive ``read_delay`` seconds after the read is issued.
    """

    def __init__(
        self,
        peripherals: list[FakePeripheral] | None = None,
        state: AdapterState = AdapterState.POWERED_ON,
    ) -> None:
        super().__init__()
        self.peripherals = list(peripherals or [])
        self.initial_state = state
        self.calls: list[tuple[Any, ...]] = []
        self.scanning = False
        self.opened = 0
        self.connect_responds = True
        self.connect_errors: list[str | None] = []
        self.disconnect_responds = True
        self.read_results: list[bytes | str | None] = []
        self.read_delay = 0.0
        self.write_responds = True

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]

    def power(self, on: bool) -> None:
        self._set_state(AdapterState.POWERED_ON if on else AdapterState.POWERED_OFF)

    def notify(self, peripheral: FakePeripheral, handle: int, data: bytes) -> None:
        self.emit(AdapterEvent.HANDLE_NOTIFIED, peripheral, handle, data)

    async def open(self) -> None:
        self.opened += 1
        if self.opened == 1:
            self._set_state(self.initial_state)

    def start_scan(self) -> None:
        self.calls.append(("start_scan",))
        self.scanning = True
        loop = asyncio.get_running_loop()
        for peripheral in self.peripherals:
            loop.call_soon(self._advertise, peripheral)

    def stop_scan(self) -> None:
        self.calls.append(("stop_scan",))
        self.scanning = False

    def connect(self, peripheral: FakePeripheral) -> None:
        self.calls.append(("connect", peripheral.address))
        if not self.connect_responds:
            return
        error = self.connect_errors.pop(0) if self.connect_errors else None
        asyncio.get_running_loop().call_soon(
            self.emit, AdapterEvent.CONNECTED, peripheral, error
        )

    def disconnect(self, peripheral: FakePeripheral) -> None:
        self.calls.append(("disconnect", peripheral.address))
        if self.disconnect_responds:
            asyncio.get_running_loop().call_soon(
                self.emit, AdapterEvent.DISCONNECTED, peripheral
            )

    def read_handle(self, peripheral: FakePeripheral, handle: int) -> None:
        self.calls.append(("read_handle", peripheral.address, handle))
        result = self.read_results.pop(0) if self.read_results else b"\x00"
        if result is NO_RESPONSE:
            return
        if isinstance(result, str):
            args = (peripheral, handle, result, None)
        else:
            args = (peripheral, handle, None, result)
        asyncio.get_running_loop().call_later(
            self.read_delay, self.emit, AdapterEvent.HANDLE_READ, *args
        )

    def write_handle(self, peripheral: FakePeripheral, handle: int, data: bytes) -> None:
        self.calls.append(("write_handle", peripheral.address, handle, data))
        if self.write_responds:
            asyncio.get_running_loop().call_soon(
                self.emit, AdapterEvent.HANDLE_WRITTEN, peripheral, handle
            )

    def subscribe_handle(self, peripheral: FakePeripheral, handle: int) -> None:
        self.calls.append(("subscribe_handle", peripheral.address, handle))

    def _advertise(self, peripheral: FakePeripheral) -> None:
        if self.scanning:
            self.emit(AdapterEvent.DISCOVERED, peripheral)


@pytest.fixture
def peripheral() -> FakePeripheral:
    return FakePeripheral(ADDRESS, "Thermometer")


@pytest.fixture
def adapter(peripheral: FakePeripheral) -> FakeAdapter:
    return FakeAdapter([peripheral])
