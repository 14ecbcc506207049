"""bluetooth-device: BLE peripheral access with a managed connection lifecycle.

Discovers a peripheral by address, connects on demand, reads, writes and
waits for notifications with per-operation timeouts and retries, and
drops the connection after a configurable idle period.  Every operation
can be cancelled through :func:`start`.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .adapter import Adapter, AdapterEvent, AdapterState, Peripheral, normalize_address
from .bleak_adapter import BleakAdapter, get_default_adapter
from .const import (
    CONNECT_TIMEOUT_REASON,
    DEFAULT_DISCOVERY_TIMEOUT,
    DEFAULT_IDLE_TIMEOUT,
    DEFAULT_RETRIES,
    DEFAULT_TIMEOUT,
    DISCONNECT_TIMEOUT_REASON,
    DISCOVERY_TIMEOUT_REASON,
    IS_LINUX,
    NOTIFY_TIMEOUT_REASON,
    READ_TIMEOUT_REASON,
    WRITE_TIMEOUT_REASON,
    DeviceOptions,
)
from .device import BluetoothDevice
from .discovery import DiscoveryGate, get_discovery_gate
from .exc import (
    AdapterError,
    BluetoothDeviceError,
    HandleBusyError,
    OperationTimeoutError,
)
from .operation import CancelableOperation, start
from .state import ConnectionState
from .wrappers import (
    Debouncer,
    with_precondition,
    with_retry,
    with_rollback,
    with_timeout,
)

__all__ = [
    # Device
    "BluetoothDevice",
    "ConnectionState",
    "DeviceOptions",
    # Cancellation
    "CancelableOperation",
    "start",
    # Adapters
    "Adapter",
    "AdapterEvent",
    "AdapterState",
    "BleakAdapter",
    "Peripheral",
    "get_default_adapter",
    "normalize_address",
    # Discovery
    "DiscoveryGate",
    "get_discovery_gate",
    # Wrappers
    "Debouncer",
    "with_precondition",
    "with_retry",
    "with_rollback",
    "with_timeout",
    # Errors
    "AdapterError",
    "BluetoothDeviceError",
    "HandleBusyError",
    "OperationTimeoutError",
    # Constants
    "CONNECT_TIMEOUT_REASON",
    "DEFAULT_DISCOVERY_TIMEOUT",
    "DEFAULT_IDLE_TIMEOUT",
    "DEFAULT_RETRIES",
    "DEFAULT_TIMEOUT",
    "DISCONNECT_TIMEOUT_REASON",
    "DISCOVERY_TIMEOUT_REASON",
    "IS_LINUX",
    "NOTIFY_TIMEOUT_REASON",
    "READ_TIMEOUT_REASON",
    "WRITE_TIMEOUT_REASON",
]
