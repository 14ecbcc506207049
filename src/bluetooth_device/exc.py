"""Exceptions raised by bluetooth-device operations.

Cancellation is not modelled here: a cancelled operation raises
:class:`asyncio.CancelledError` like any other asyncio task, and the
retry and timeout wrappers pass it through untouched.
"""

from __future__ import annotations

import asyncio


class BluetoothDeviceError(Exception):
    """Base error for bluetooth-device."""


class OperationTimeoutError(BluetoothDeviceError, asyncio.TimeoutError):
    """Raised when an operation misses its deadline.

    ``reason`` names the operation, e.g. ``"Connection timeout."``.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason

    def __str__(self) -> str:
        return self.reason


class AdapterError(BluetoothDeviceError):
    """Raised when the Bluetooth stack reports a failure."""


class HandleBusyError(BluetoothDeviceError):
    """Raised when a request for the same event and handle is already pending."""

    def __init__(self, kind: str, handle: int) -> None:
        super().__init__(f"A {kind} request for handle {handle:#06x} is already pending")
        self.kind = kind
        self.handle = handle
