"""HID and lighting test doubles.

:class:`FakeHidBackend` stands in for
:class:`~panelsync._hid.HidapiBackend`: tests attach and detach panels
by serial and inspect what was written to each handle.
:class:`RecordingEncoder` turns a lighting configuration into a single
JSON report so writes can be decoded back in assertions.
"""

from __future__ import annotations

from collections.abc import Sequence

from panelsync._devices import PCPANEL_PRO, DeviceType
from panelsync._hid import HidDeviceInfo, HidHandle
from panelsync._lighting import LightingConfig


class FakeHidHandle:
    """In-memory :class:`~panelsync._hid.HidHandle`."""

    def __init__(self, info: HidDeviceInfo, *, openable: bool = True) -> None:
        self.info = info
        self.openable = openable
        self.written: list[bytes] = []
        self.open_calls = 0
        self.closed = False
        self.write_failure: Exception | None = None
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> bool:
        self.open_calls += 1
        self._open = self.openable
        return self.openable

    def write(self, data: bytes) -> int:
        if not self._open:
            msg = "device not open"
            raise OSError(msg)
        if self.write_failure is not None:
            raise self.write_failure
        self.written.append(data)
        return len(data)

    def close(self) -> None:
        self._open = False
        self.closed = True

    def lighting(self) -> list[LightingConfig]:
        """Lighting configurations written so far (:class:`RecordingEncoder` format)."""
        return [LightingConfig.model_validate_json(report) for report in self.written]


class FakeHidBackend:
    """In-memory :class:`~panelsync._hid.HidPort`.

    Attributes:
        enumerate_failure: When set, ``enumerate()`` raises it.
    """

    def __init__(self) -> None:
        self._devices: dict[bytes, HidDeviceInfo] = {}
        self._unopenable: set[bytes] = set()
        self.handles: dict[bytes, FakeHidHandle] = {}
        self.enumerate_failure: Exception | None = None

    def attach(
        self,
        serial: str | None = "PP0001",
        device_type: DeviceType = PCPANEL_PRO,
        *,
        path: bytes | None = None,
        openable: bool = True,
    ) -> HidDeviceInfo:
        """Plug in a panel."""
        resolved_path = path if path is not None else f"/dev/hidraw-{serial}".encode()
        info = HidDeviceInfo(
            path=resolved_path,
            vendor_id=device_type.vendor_id,
            product_id=device_type.product_id,
            serial_number=serial,
            product_string=device_type.name,
        )
        self._devices[resolved_path] = info
        if not openable:
            self._unopenable.add(resolved_path)
        return info

    def detach(self, serial: str) -> None:
        """Unplug every panel reporting *serial*."""
        for path, info in list(self._devices.items()):
            if info.serial_number == serial:
                del self._devices[path]

    def enumerate(self) -> list[HidDeviceInfo]:
        if self.enumerate_failure is not None:
            raise self.enumerate_failure
        return list(self._devices.values())

    def handle(self, info: HidDeviceInfo) -> HidHandle:
        handle = FakeHidHandle(info, openable=info.path not in self._unopenable)
        self.handles[info.path] = handle
        return handle

    def handle_for(self, serial: str) -> FakeHidHandle:
        """Most recent handle created for *serial*."""
        for handle in reversed(list(self.handles.values())):
            if handle.info.serial_number == serial:
                return handle
        msg = f"no handle created for {serial}"
        raise KeyError(msg)


class RecordingEncoder:
    """Encoder writing each configuration as one JSON report."""

    def __init__(self) -> None:
        self.calls: list[tuple[DeviceType, LightingConfig]] = []

    def encode(self, device_type: DeviceType, config: LightingConfig) -> Sequence[bytes]:
        self.calls.append((device_type, config))
        return (config.model_dump_json().encode(),)
