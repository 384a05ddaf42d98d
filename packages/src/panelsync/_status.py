"""Device status mirroring to MQTT.

:class:`StatusMirror` turns bus events into retained broker state so
home-automation systems can follow the panels.

Topic layout::

    {prefix}/availability                 ← app online marker (gateway)
    {prefix}/{serial}/availability        ← "online" or cleared (retained)
    {prefix}/{serial}/info                ← device info JSON (retained)
    {prefix}/{serial}/lighting            ← last applied lighting JSON (retained)
    {prefix}/{serial}/lighting/set        ← lighting commands (subscribed)
    {prefix}/error                        ← error payloads (not retained)

Device info payload schema::

    {
        "serial": "PP1234",
        "device_type": "PCPanel Pro",
        "vendor_id": 1155,
        "product_id": 41925,
        "analog_count": 9
    }

Whenever the broker connection comes up, stale per-device availability
left behind by an earlier run is cleared and every registered panel is
published again.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field

from panelsync._devices import DeviceConnection
from panelsync._errors import DeviceOpenFailure, build_error_payload
from panelsync._events import (
    BrokerStatus,
    DeviceConnected,
    DeviceDisconnected,
    DeviceOpenFailed,
    EventBus,
)
from panelsync._gateway import MessagingGateway, decode_model
from panelsync._lighting import LightingConfig
from panelsync._registry import DeviceRegistry

logger = logging.getLogger(__name__)

ONLINE = "online"


@dataclass(frozen=True, slots=True)
class DeviceInfo:
    """Immutable device description published on ``{serial}/info``."""

    serial: str
    device_type: str
    vendor_id: int
    product_id: int
    analog_count: int

    @classmethod
    def from_connection(cls, connection: DeviceConnection) -> DeviceInfo:
        identity = connection.identity
        return cls(
            serial=identity.serial,
            device_type=identity.device_type.name,
            vendor_id=identity.vendor_id,
            product_id=identity.product_id,
            analog_count=identity.device_type.analog_count,
        )

    def to_json(self) -> str:
        return json.dumps(asdict(self))


@dataclass
class StatusMirror:
    """Mirrors registry and error events onto the broker.

    Publication is fire-and-forget: the gateway logs and drops what it
    cannot send, and everything is republished on the next connect.
    """

    gateway: MessagingGateway
    registry: DeviceRegistry
    bus: EventBus

    _subscribed: set[str] = field(default_factory=set, init=False, repr=False)

    @property
    def topic_prefix(self) -> str:
        return self.gateway.connected_settings.topic_prefix

    def topic(self, serial: str, leaf: str) -> str:
        """Per-device topic, e.g. ``topic("PP1", "info")``."""
        return f"{self.topic_prefix}/{serial}/{leaf}"

    def start(self) -> None:
        """Subscribe to the bus events being mirrored."""
        self.bus.subscribe(BrokerStatus, self._on_broker_status)
        self.bus.subscribe(DeviceConnected, self._on_device_connected)
        self.bus.subscribe(DeviceDisconnected, self._on_device_disconnected)
        self.bus.subscribe(DeviceOpenFailed, self._on_device_open_failed)

    def stop(self) -> None:
        self.bus.unsubscribe(BrokerStatus, self._on_broker_status)
        self.bus.unsubscribe(DeviceConnected, self._on_device_connected)
        self.bus.unsubscribe(DeviceDisconnected, self._on_device_disconnected)
        self.bus.unsubscribe(DeviceOpenFailed, self._on_device_open_failed)

    async def publish_device(self, connection: DeviceConnection) -> None:
        """Publish availability, info and lighting for *connection*."""
        serial = connection.serial
        await self.gateway.publish(
            self.topic(serial, "availability"),
            ONLINE,
            immediate=True,
        )
        await self.gateway.publish(
            self.topic(serial, "info"),
            DeviceInfo.from_connection(connection).to_json(),
            immediate=True,
        )

    # -- Event handlers -----------------------------------------------------

    async def _on_broker_status(self, event: BrokerStatus) -> None:
        if not event.connected:
            logger.info("Broker disconnected, status mirroring paused")
            return

        prefix = self.topic_prefix
        removed = await self.gateway.remove_all_matching(f"{prefix}/+/availability")
        if removed:
            logger.debug("Cleared %d stale availability topic(s)", len(removed))

        for connection in self.registry.connections():
            await self.publish_device(connection)
            await self.gateway.publish(
                self.topic(connection.serial, "lighting"),
                connection.lighting,
                immediate=True,
            )

        if prefix not in self._subscribed:
            self._subscribed.add(prefix)
            await self.gateway.subscribe(
                f"{prefix}/+/lighting/set",
                decode_model(LightingConfig),
                self._on_lighting_set,
            )

    async def _on_device_connected(self, event: DeviceConnected) -> None:
        connection = self.registry.lookup(event.serial)
        if connection is None:
            return
        await self.publish_device(connection)

    async def _on_device_disconnected(self, event: DeviceDisconnected) -> None:
        for leaf in ("availability", "info", "lighting"):
            await self.gateway.remove(self.topic(event.serial, leaf))

    async def _on_device_open_failed(self, event: DeviceOpenFailed) -> None:
        payload = build_error_payload(
            DeviceOpenFailure(event.serial, f"Unable to open {event.device_type.name}"),
            serial=event.serial,
            details={"reason": event.reason},
        )
        await self.gateway.publish(
            f"{self.topic_prefix}/error",
            payload.to_json(),
            immediate=True,
            retain=False,
        )

    async def _on_lighting_set(self, topic: str, config: LightingConfig) -> None:
        if not topic.startswith(f"{self.topic_prefix}/"):
            return
        serial = topic.split("/")[-3]
        connection = self.registry.lookup(serial)
        if connection is None:
            logger.warning("Lighting command for unknown device %s", serial)
            return
        logger.info("Applying lighting to %s", serial, extra={"serial": serial})
        connection.apply_lighting(config)
        await self.gateway.publish(self.topic(serial, "lighting"), config)
