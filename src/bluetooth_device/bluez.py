"""BlueZ D-Bus helpers for adapter power state.

``bleak`` does not report whether the local radio is powered, and a
scan started on a powered-off adapter simply fails.  These helpers read
and watch ``org.bluez.Adapter1.Powered`` over the system bus with
``dbus-fast`` (the same library bleak uses internally) so the discovery
gate can start and stop scanning as the radio comes and goes.

One ``MessageBus`` is opened on first use and reopened after it drops.
All calls use raw ``bus.call(Message(...))`` instead of proxy objects,
which skips the introspection round-trip.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from .const import IS_LINUX

_LOGGER = logging.getLogger(__name__)

_BLUEZ_SERVICE = "org.bluez"
_ADAPTER_INTERFACE = "org.bluez.Adapter1"
_PROPERTIES_INTERFACE = "org.freedesktop.DBus.Properties"

_bus: Any | None = None  # dbus_fast.aio.MessageBus


def adapter_path(adapter: str) -> str:
    """Return the BlueZ object path of *adapter*.

    Example::

        >>> adapter_path("hci0")
        '/org/bluez/hci0'
    """
    return f"/org/bluez/{adapter}"


def default_adapter() -> str:
    """Return the name of the first local adapter.

    Uses ``bluetooth-adapters`` when available, falls back to
    ``/sys/class/bluetooth/`` enumeration, and finally to ``"hci0"``.
    """
    if not IS_LINUX:
        return "hci0"

    try:
        from bluetooth_adapters import get_adapters_from_hci

        names = sorted(a["name"] for a in get_adapters_from_hci().values())
        if names:
            return names[0]
    except Exception:
        _LOGGER.debug(
            "bluetooth-adapters enumeration failed, trying /sys",
            exc_info=True,
        )

    try:
        import pathlib

        bt_path = pathlib.Path("/sys/class/bluetooth")
        if bt_path.exists():
            names = sorted(
                d.name for d in bt_path.iterdir() if d.name.startswith("hci")
            )
            if names:
                return names[0]
    except OSError:
        _LOGGER.debug("Failed to enumerate /sys/class/bluetooth", exc_info=True)

    return "hci0"


async def get_bus() -> Any:
    """Return the system bus used for power queries, connecting if needed.

    Raises ``RuntimeError`` on non-Linux platforms.
    """
    global _bus

    if not IS_LINUX:
        raise RuntimeError("BlueZ D-Bus is only available on Linux")

    if _bus is None or not _bus.connected:
        from dbus_fast.aio import MessageBus
        from dbus_fast.constants import BusType

        _bus = await MessageBus(bus_type=BusType.SYSTEM).connect()
        _LOGGER.debug("Connected to system D-Bus for power state")
    return _bus


async def close_bus() -> None:
    """Drop the bus connection.  Does nothing if none is open."""
    global _bus
    bus, _bus = _bus, None
    if bus is not None:
        bus.disconnect()


async def get_adapter_powered(adapter: str) -> bool | None:
    """Return whether *adapter* is powered.

    Returns ``None`` when the state cannot be determined (non-Linux,
    BlueZ not running, unknown adapter).
    """
    if not IS_LINUX:
        return None

    from dbus_fast import Message, MessageType

    try:
        bus = await get_bus()
        reply = await bus.call(
            Message(
                destination=_BLUEZ_SERVICE,
                path=adapter_path(adapter),
                interface=_PROPERTIES_INTERFACE,
                member="Get",
                signature="ss",
                body=[_ADAPTER_INTERFACE, "Powered"],
            )
        )
    except Exception:
        _LOGGER.debug("Failed to query Powered on %s", adapter, exc_info=True)
        return None

    if reply.message_type == MessageType.ERROR:
        _LOGGER.debug(
            "Powered query on %s failed: %s", adapter, reply.error_name
        )
        return None
    return bool(reply.body[0].value)


async def watch_adapter_powered(
    adapter: str,
    callback: Callable[[bool], None],
) -> Callable[[], None]:
    """Call *callback* with the new value whenever *adapter*'s ``Powered`` changes.

    Returns a function that stops watching.  On non-Linux platforms the
    returned function does nothing and *callback* is never called.
    """
    if not IS_LINUX:
        return lambda: None

    from dbus_fast import Message, MessageType

    path = adapter_path(adapter)
    bus = await get_bus()
    rule = (
        "type='signal',"
        f"sender='{_BLUEZ_SERVICE}',"
        f"interface='{_PROPERTIES_INTERFACE}',"
        "member='PropertiesChanged',"
        f"path='{path}'"
    )
    await bus.call(
        Message(
            destination="org.freedesktop.DBus",
            path="/org/freedesktop/DBus",
            interface="org.freedesktop.DBus",
            member="AddMatch",
            signature="s",
            body=[rule],
        )
    )

    def _handler(message: Any) -> None:
        if (
            message.message_type != MessageType.SIGNAL
            or message.member != "PropertiesChanged"
            or message.path != path
            or not message.body
            or message.body[0] != _ADAPTER_INTERFACE
        ):
            return
        changed = message.body[1]
        if "Powered" in changed:
            callback(bool(changed["Powered"].value))

    bus.add_message_handler(_handler)

    def _unwatch() -> None:
        try:
            bus.remove_message_handler(_handler)
        except Exception:
            _LOGGER.debug("Failed to remove Powered watch", exc_info=True)

    return _unwatch
