"""Connected-device registry.

:class:`DeviceRegistry` is the single source of truth for which panels
are connected.  It owns the serial → :class:`DeviceConnection` map and
is the only component that creates or destroys connections, whether
triggered by the hot-plug watcher, by :meth:`DeviceRegistry.rescan`
after a resume, or by a shutdown.

Mutations are serialized by an :class:`asyncio.Lock` and the matching
bus events are published while the lock is held, so the
connected/disconnected events of one serial never overtake each other.
"""

from __future__ import annotations

import asyncio
import logging

from panelsync._devices import (
    KNOWN_DEVICE_TYPES,
    DeviceConnection,
    DeviceIdentity,
    DeviceType,
    match_device_type,
)
from panelsync._errors import DeviceOpenFailure, InvalidArgument
from panelsync._events import (
    DeviceConnected,
    DeviceDisconnected,
    DeviceOpenFailed,
    EventBus,
    SettingsChanged,
)
from panelsync._hid import HidDeviceInfo, HidHandle, HidPort, HotplugWatcher
from panelsync._lighting import LightingEncoder, NullLightingEncoder
from panelsync._worker import DeviceWorker

logger = logging.getLogger(__name__)


class DeviceRegistry:
    """Tracks connected panels and mediates hot-plug, rescan and shutdown.

    Args:
        hid: Hardware access port used for enumeration and handles.
        bus: Event bus receiving connection events.
        encoder: Lighting encoder handed to every connection.
        queue_size: Bound of each device's command queue.
        scan_interval: Hot-plug poll period in seconds.
        device_types: Ordered signature table used for classification.
    """

    def __init__(
        self,
        *,
        hid: HidPort,
        bus: EventBus,
        encoder: LightingEncoder | None = None,
        queue_size: int = 64,
        scan_interval: float = 3.0,
        device_types: tuple[DeviceType, ...] = KNOWN_DEVICE_TYPES,
    ) -> None:
        self._hid = hid
        self._bus = bus
        self._encoder = encoder if encoder is not None else NullLightingEncoder()
        self._queue_size = queue_size
        self._device_types = device_types
        self._connections: dict[str, DeviceConnection] = {}
        self._lock = asyncio.Lock()
        self._watcher = HotplugWatcher(
            hid=hid,
            on_attached=self._on_attached,
            on_detached=self._on_detached,
            interval=scan_interval,
        )
        bus.subscribe(SettingsChanged, self._on_settings_changed)

    # -- Queries ------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, serial: object) -> bool:
        return serial in self._connections

    def lookup(self, serial: str) -> DeviceConnection | None:
        """Return the connection for *serial*, or ``None``."""
        return self._connections.get(serial)

    def connections(self) -> list[DeviceConnection]:
        """Snapshot of all current connections."""
        return list(self._connections.values())

    def classify(self, info: HidDeviceInfo) -> DeviceType | None:
        """Match *info* against the signature table; ``None`` if unknown."""
        return match_device_type(info, self._device_types)

    # -- Lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Start watching for hot-plug transitions."""
        logger.info("Starting HID services")
        self._watcher.start()

    async def scan_hotplug(self) -> None:
        """Run one hot-plug scan now instead of waiting for the next poll."""
        await self._watcher.scan_once()

    async def close(self) -> None:
        """Stop the watcher and release every connection.

        Runs during shutdown: failures are logged, never raised.
        """
        try:
            await self._watcher.stop()
        except Exception:
            logger.exception("Error occurred when stopping the hot-plug watcher")

        async with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()

        for connection in connections:
            try:
                await self._release(connection)
            except Exception:
                logger.exception(
                    "Error occurred when closing device %s",
                    connection.serial,
                    extra={"serial": connection.serial},
                )

    # -- Mutations ----------------------------------------------------------

    async def device_added(
        self,
        serial: str,
        handle: HidHandle,
        device_type: DeviceType,
    ) -> DeviceConnection:
        """Open *handle* and register it under *serial*.

        An already-registered serial is left untouched and its existing
        connection returned; no event is published.

        Raises:
            InvalidArgument: If *serial*, *handle* or *device_type* is missing.
            DeviceOpenFailure: If the handle cannot be opened.  The panel
                is not registered and :class:`DeviceOpenFailed` is published.
        """
        if not serial or handle is None or device_type is None:
            msg = (
                "serial, handle and device_type are required "
                f"(serial={serial!r}, handle={handle!r}, device_type={device_type!r})"
            )
            raise InvalidArgument(msg)

        async with self._lock:
            existing = self._connections.get(serial)
            if existing is not None:
                logger.debug("Device %s already connected", serial)
                return existing

            if not handle.is_open and not await asyncio.to_thread(handle.open):
                logger.error(
                    "Unable to open device %s, it won't be possible to use the panel",
                    serial,
                    extra={"serial": serial},
                )
                await self._bus.publish(
                    DeviceOpenFailed(serial, device_type, "open failed"),
                )
                raise DeviceOpenFailure(serial)

            identity = DeviceIdentity(
                serial=serial,
                vendor_id=device_type.vendor_id,
                product_id=device_type.product_id,
                device_type=device_type,
            )
            worker = DeviceWorker(serial, handle, queue_size=self._queue_size)
            connection = DeviceConnection(identity, handle, worker, self._encoder)
            worker.start()
            self._connections[serial] = connection
            logger.info(
                "Connected %s (%s)",
                serial,
                device_type.name,
                extra={"serial": serial},
            )
            await self._bus.publish(DeviceConnected(serial, device_type))
        return connection

    async def device_removed(self, serial: str, device: object) -> bool:
        """Unregister *serial* if it is connected.

        Args:
            serial: Serial number of the detached panel.
            device: The detached device (handle or enumeration entry).

        Returns:
            ``True`` if a connection existed and was removed.

        Raises:
            InvalidArgument: If *serial* or *device* is missing.
        """
        if not serial or device is None:
            msg = f"serial and device cannot be null (serial={serial!r}, device={device!r})"
            raise InvalidArgument(msg)

        async with self._lock:
            connection = self._connections.pop(serial, None)
            if connection is None:
                return False
            logger.info("Disconnected %s", serial, extra={"serial": serial})
            try:
                await self._release(connection)
            except Exception:
                logger.exception(
                    "Error releasing device %s",
                    serial,
                    extra={"serial": serial},
                )
            await self._bus.publish(DeviceDisconnected(serial))
        return True

    async def rescan(self) -> list[str]:
        """Connect every known, attached panel that is not registered yet.

        Used after resume, when hot-plug transitions may have been
        missed while the host was asleep.  A failing device is logged
        and skipped.

        Returns:
            Serial numbers that were newly registered.
        """
        logger.info("Triggering device rescan to reconnect devices")
        added: list[str] = []
        try:
            attached = await asyncio.to_thread(self._hid.enumerate)
        except Exception:
            logger.exception("Error during device rescan")
            return added

        for info in attached:
            device_type = self.classify(info)
            serial = info.serial_number
            if device_type is None or not serial or serial in self._connections:
                continue
            logger.info("Reconnecting device %s", serial, extra={"serial": serial})
            try:
                await self.device_added(serial, self._hid.handle(info), device_type)
            except Exception:
                logger.exception(
                    "Unable to handle device added",
                    extra={"serial": serial},
                )
            else:
                added.append(serial)
        return added

    # -- Internal -----------------------------------------------------------

    async def _release(self, connection: DeviceConnection) -> None:
        await connection.worker.stop()
        await asyncio.to_thread(connection.handle.close)

    async def _on_attached(self, info: HidDeviceInfo) -> None:
        device_type = self.classify(info)
        if device_type is None:
            return
        if not info.serial_number:
            logger.warning("Ignoring %s without a serial number", device_type.name)
            return
        logger.info("Found %s: %s", device_type.name, info.serial_number)
        try:
            await self.device_added(
                info.serial_number,
                self._hid.handle(info),
                device_type,
            )
        except Exception:
            logger.exception(
                "Unable to handle device added",
                extra={"serial": info.serial_number},
            )

    async def _on_detached(self, info: HidDeviceInfo) -> None:
        if self.classify(info) is None or not info.serial_number:
            return
        logger.info("Lost panel: %s", info.serial_number)
        try:
            await self.device_removed(info.serial_number, info)
        except Exception:
            logger.exception(
                "Unable to handle device disconnect",
                extra={"serial": info.serial_number},
            )

    async def _on_settings_changed(self, event: SettingsChanged) -> None:
        devices = event.settings.devices
        self._watcher.set_interval(devices.scan_interval)
        self._queue_size = devices.queue_size
