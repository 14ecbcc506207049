"""Constants and configuration dataclasses for bluetooth-device."""

from __future__ import annotations

import platform
from dataclasses import dataclass

IS_LINUX = platform.system() == "Linux"

# How long a scan may run before discovery gives up (seconds).
DEFAULT_DISCOVERY_TIMEOUT = 30.0

# Quiet period after the last operation before the connection is
# torn down (seconds).
DEFAULT_IDLE_TIMEOUT = 120.0

# Per-operation timeout for connect, disconnect, read, write and notify.
DEFAULT_TIMEOUT = 10.0

# Extra attempts after the first failure of a retried operation.
DEFAULT_RETRIES = 3

DISCOVERY_TIMEOUT_REASON = "Discovery timeout."
CONNECT_TIMEOUT_REASON = "Connection timeout."
DISCONNECT_TIMEOUT_REASON = "Disconnect timeout."
READ_TIMEOUT_REASON = "Read timeout."
WRITE_TIMEOUT_REASON = "Write timeout."
NOTIFY_TIMEOUT_REASON = "Notify timeout."


@dataclass
class DeviceOptions:
    """Per-device timing and retry configuration.

    Values are read each time an operation starts, so changing a field
    on a live device affects the next call, not calls already in flight.

    Parameters
    ----------
    discovery_timeout:
        Seconds to scan for the device before failing with
        ``"Discovery timeout."``.
    idle_timeout:
        Seconds without a completed operation after which the connection
        is destroyed.
    retries:
        Number of retries on failed operations (so ``retries + 1``
        attempts in total).  Applies to disconnect, read, write and
        notify.
    timeout:
        Seconds allowed for a single connect, disconnect, read, write or
        notify attempt.
    """

    discovery_timeout: float = DEFAULT_DISCOVERY_TIMEOUT
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT
    retries: int = DEFAULT_RETRIES
    timeout: float = DEFAULT_TIMEOUT

    def __post_init__(self) -> None:
        for name in ("discovery_timeout", "idle_timeout", "timeout"):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be > 0, got {value}")
        if self.retries < 0:
            raise ValueError(f"retries must be >= 0, got {self.retries}")
