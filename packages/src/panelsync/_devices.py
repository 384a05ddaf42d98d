"""Device types, identities and live connections.

A :class:`DeviceConnection` bundles everything the application holds
for one attached panel: its open HID handle, its
:class:`~panelsync._worker.DeviceWorker`, and the last lighting
configuration it was asked to show.  Connections are created and
destroyed only by the :class:`~panelsync._registry.DeviceRegistry`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from panelsync._hid import HidDeviceInfo, HidHandle
from panelsync._lighting import ALL_OFF, LightingConfig, LightingEncoder
from panelsync._worker import DeviceWorker

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DeviceType:
    """A known panel model, matched by USB vendor/product id."""

    name: str
    vendor_id: int
    product_id: int
    analog_count: int

    def matches(self, info: HidDeviceInfo) -> bool:
        return info.vendor_id == self.vendor_id and info.product_id == self.product_id


PCPANEL_RGB = DeviceType("PCPanel RGB", vendor_id=0x04D8, product_id=0xEB42, analog_count=4)
PCPANEL_MINI = DeviceType("PCPanel Mini", vendor_id=0x0483, product_id=0xA3C4, analog_count=4)
PCPANEL_PRO = DeviceType("PCPanel Pro", vendor_id=0x0483, product_id=0xA3C5, analog_count=9)

KNOWN_DEVICE_TYPES: tuple[DeviceType, ...] = (PCPANEL_RGB, PCPANEL_MINI, PCPANEL_PRO)
"""Ordered signature table; the first match wins."""


def match_device_type(
    info: HidDeviceInfo,
    table: tuple[DeviceType, ...] = KNOWN_DEVICE_TYPES,
) -> DeviceType | None:
    """Return the first :class:`DeviceType` matching *info*, if any.

    The serial number plays no part in matching.
    """
    for device_type in table:
        if device_type.matches(info):
            return device_type
    return None


@dataclass(frozen=True, slots=True)
class DeviceIdentity:
    """Immutable identity of an opened panel."""

    serial: str
    vendor_id: int
    product_id: int
    device_type: DeviceType


class DeviceConnection:
    """A registered panel: handle, command worker and lighting state."""

    def __init__(
        self,
        identity: DeviceIdentity,
        handle: HidHandle,
        worker: DeviceWorker,
        encoder: LightingEncoder,
        *,
        lighting: LightingConfig = ALL_OFF,
    ) -> None:
        self.identity = identity
        self.handle = handle
        self.worker = worker
        self._encoder = encoder
        self._lighting = lighting

    def __repr__(self) -> str:
        return (
            f"DeviceConnection(serial={self.serial!r}, "
            f"type={self.device_type.name!r})"
        )

    @property
    def serial(self) -> str:
        return self.identity.serial

    @property
    def device_type(self) -> DeviceType:
        return self.identity.device_type

    @property
    def lighting(self) -> LightingConfig:
        """Last lighting configuration applied by the user."""
        return self._lighting

    def send_lighting(self, config: LightingConfig, *, immediate: bool) -> bool:
        """Queue *config* without remembering it.

        Used for transient states such as dimming before suspend.
        """
        reports = self._encoder.encode(self.device_type, config)
        return self.worker.submit(reports, immediate=immediate, label="lighting")

    def apply_lighting(self, config: LightingConfig, *, immediate: bool = False) -> bool:
        """Remember *config* as the panel's lighting and queue it."""
        self._lighting = config
        return self.send_lighting(config, immediate=immediate)
