"""Single-flight discovery of a peripheral by address.

Only one scan per ``(adapter, address)`` runs at a time in the process.
Callers that arrive while a scan is in flight share its result instead
of starting a second one.  When every waiting caller has been cancelled
the scan itself is cancelled, which stops scanning and removes its
adapter listeners before the cancellation reaches the last caller.

Gates are kept in a ``WeakValueDictionary`` so a gate lives exactly as
long as some device still references it.
"""

from __future__ import annotations

import asyncio
import logging
import weakref

from .adapter import Adapter, AdapterEvent, AdapterState, Peripheral, normalize_address
from .const import DISCOVERY_TIMEOUT_REASON
from .operation import CancelableOperation, start
from .wrappers import Seconds, with_timeout

_LOGGER = logging.getLogger(__name__)

_gates: weakref.WeakValueDictionary[tuple[int, str], DiscoveryGate] = (
    weakref.WeakValueDictionary()
)


def get_discovery_gate(adapter: Adapter, address: str) -> DiscoveryGate:
    """Return the process-wide discovery gate for *address* on *adapter*.

    Address lookup is case-insensitive.
    """
    key = (id(adapter), normalize_address(address))
    gate = _gates.get(key)
    if gate is None or gate.adapter is not adapter:
        gate = DiscoveryGate(adapter, address)
        _gates[key] = gate
    return gate


class DiscoveryGate:
    """Find one peripheral on one adapter, at most one scan at a time."""

    def __init__(self, adapter: Adapter, address: str) -> None:
        self.adapter = adapter
        self.address = normalize_address(address)
        self._peripheral: Peripheral | None = None
        self._scan: CancelableOperation[Peripheral] | None = None
        self._waiters = 0

    @property
    def peripheral(self) -> Peripheral | None:
        """Return the discovered peripheral, if any."""
        return self._peripheral

    @property
    def scanning(self) -> bool:
        """Return whether a scan is in flight."""
        return self._scan is not None

    async def discover(self, timeout: Seconds) -> Peripheral:
        """Return the peripheral, scanning for it if not yet found.

        Raises
        ------
        OperationTimeoutError
            ``"Discovery timeout."`` if no match arrives within *timeout*.
        """
        if self._peripheral is not None:
            return self._peripheral

        scan = self._scan
        if scan is None:
            scan = start(
                with_timeout(self._run_scan, timeout, DISCOVERY_TIMEOUT_REASON),
                on_cancel=self._forget_scan,
            )
            self._scan = scan
            scan.task.add_done_callback(lambda _: self._scan_done(scan))
        else:
            _LOGGER.debug("%s: Joining discovery in flight", self.address)

        self._waiters += 1
        try:
            peripheral = await asyncio.shield(scan.task)
        except asyncio.CancelledError:
            self._waiters -= 1
            if not self._waiters and scan.cancel():
                _LOGGER.debug("%s: Discovery cancelled", self.address)
                await asyncio.wait({scan.task})
            raise
        except Exception:
            self._waiters -= 1
            raise
        self._waiters -= 1
        return peripheral

    def _forget_scan(self) -> None:
        self._scan = None

    def _scan_done(self, scan: CancelableOperation[Peripheral]) -> None:
        if self._scan is scan:
            self._scan = None
        if not scan.task.cancelled():
            scan.task.exception()  # mark as retrieved

    async def _run_scan(self) -> Peripheral:
        adapter = self.adapter
        await adapter.open()
        found: asyncio.Future[Peripheral] = asyncio.get_running_loop().create_future()

        def on_discovered(peripheral: Peripheral) -> None:
            if found.done() or normalize_address(peripheral.address) != self.address:
                return
            found.set_result(peripheral)

        def on_state_changed(state: AdapterState) -> None:
            if state is AdapterState.POWERED_ON:
                _LOGGER.debug("%s: Adapter powered on, scanning", self.address)
                adapter.start_scan()
            else:
                adapter.stop_scan()

        adapter.on(AdapterEvent.DISCOVERED, on_discovered)
        adapter.on(AdapterEvent.STATE_CHANGED, on_state_changed)
        try:
            if adapter.state is AdapterState.POWERED_ON:
                adapter.start_scan()
            else:
                _LOGGER.debug(
                    "%s: Adapter is %s, waiting for power on",
                    self.address,
                    adapter.state.value,
                )
            peripheral = await found
        finally:
            adapter.remove_listener(AdapterEvent.DISCOVERED, on_discovered)
            adapter.remove_listener(AdapterEvent.STATE_CHANGED, on_state_changed)
            adapter.stop_scan()

        self._peripheral = peripheral
        _LOGGER.info("%s: Discovered", self.address)
        return peripheral
