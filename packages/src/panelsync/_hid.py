"""HID access port, the hidapi adapter, and the hot-plug watcher.

The registry talks to hardware only through :class:`HidPort` and
:class:`HidHandle`, so tests substitute
:class:`panelsync.testing.FakeHidBackend`.

``hid`` (the ``hidapi`` distribution) is imported lazily inside
:class:`HidapiBackend` so the fake backend works on machines without
the native library.

hidapi reports attach/detach only through enumeration, so
:class:`HotplugWatcher` polls ``enumerate()`` and diffs the result
against the previous scan.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class HidDeviceInfo:
    """One entry of a HID enumeration."""

    path: bytes
    vendor_id: int
    product_id: int
    serial_number: str | None = None
    product_string: str | None = None

    @classmethod
    def from_hidapi(cls, entry: dict[str, Any]) -> HidDeviceInfo:
        """Build from a ``hid.enumerate()`` dictionary."""
        return cls(
            path=entry["path"],
            vendor_id=entry["vendor_id"],
            product_id=entry["product_id"],
            serial_number=entry.get("serial_number") or None,
            product_string=entry.get("product_string") or None,
        )


# ---------------------------------------------------------------------------
# Ports
# ---------------------------------------------------------------------------


@runtime_checkable
class HidHandle(Protocol):
    """An openable HID device."""

    @property
    def is_open(self) -> bool: ...

    def open(self) -> bool: ...

    def write(self, data: bytes) -> int: ...

    def close(self) -> None: ...


@runtime_checkable
class HidPort(Protocol):
    """Enumerates attached HID devices and hands out handles."""

    def enumerate(self) -> list[HidDeviceInfo]: ...

    def handle(self, info: HidDeviceInfo) -> HidHandle: ...


# ---------------------------------------------------------------------------
# hidapi adapter
# ---------------------------------------------------------------------------


class HidapiHandle:
    """:class:`HidHandle` backed by ``hid.device``."""

    def __init__(self, info: HidDeviceInfo) -> None:
        self._info = info
        self._device: Any = None

    @property
    def is_open(self) -> bool:
        return self._device is not None

    def open(self) -> bool:
        """Open the device by path; ``False`` when the OS refuses."""
        import hid  # noqa: PLC0415

        device = hid.device()
        try:
            device.open_path(self._info.path)
        except OSError:
            logger.warning(
                "hidapi could not open %r",
                self._info.path,
                exc_info=True,
            )
            return False
        self._device = device
        return True

    def write(self, data: bytes) -> int:
        if self._device is None:
            msg = "HID device is not open"
            raise RuntimeError(msg)
        return self._device.write(data)

    def close(self) -> None:
        device, self._device = self._device, None
        if device is not None:
            device.close()


class HidapiBackend:
    """:class:`HidPort` backed by the ``hidapi`` package."""

    def enumerate(self) -> list[HidDeviceInfo]:
        try:
            import hid  # noqa: PLC0415
        except ModuleNotFoundError as exc:
            msg = "hidapi is required to use HidapiBackend"
            raise RuntimeError(msg) from exc
        return [HidDeviceInfo.from_hidapi(entry) for entry in hid.enumerate()]

    def handle(self, info: HidDeviceInfo) -> HidHandle:
        return HidapiHandle(info)


# ---------------------------------------------------------------------------
# Hot-plug watcher
# ---------------------------------------------------------------------------

DeviceCallback = Callable[[HidDeviceInfo], Awaitable[None]]


@dataclass
class HotplugWatcher:
    """Polls a :class:`HidPort` and reports attach/detach transitions.

    The first scan reports every present device as attached, which is
    how panels plugged in before startup get connected.  Callback and
    enumeration failures are logged and never end the loop.
    """

    hid: HidPort
    on_attached: DeviceCallback
    on_detached: DeviceCallback
    interval: float = 3.0

    _known: dict[bytes, HidDeviceInfo] = field(
        default_factory=dict,
        init=False,
        repr=False,
    )
    _task: asyncio.Task[None] | None = field(default=None, init=False, repr=False)
    _wakeup: asyncio.Event = field(
        default_factory=asyncio.Event,
        init=False,
        repr=False,
    )
    _scan_lock: asyncio.Lock = field(
        default_factory=asyncio.Lock,
        init=False,
        repr=False,
    )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start polling in a background task."""
        if self.running:
            logger.debug("HotplugWatcher.start() called while already running")
            return
        logger.info("Starting HID hot-plug watcher (every %.1fs)", self.interval)
        self._task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        """Stop polling.  Idempotent."""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    def set_interval(self, interval: float) -> None:
        """Change the poll period; takes effect immediately."""
        if interval != self.interval:
            logger.info("Hot-plug scan interval changed to %.1fs", interval)
            self.interval = interval
            self._wakeup.set()

    async def scan_once(self) -> None:
        """Enumerate once and report differences from the last scan.

        Concurrent calls run one after the other.
        """
        async with self._scan_lock:
            await self._scan()

    async def _scan(self) -> None:
        try:
            present = {
                info.path: info for info in await asyncio.to_thread(self.hid.enumerate)
            }
        except Exception as exc:
            logger.error("HID enumeration failed: %s", exc)
            return

        gone = [info for path, info in self._known.items() if path not in present]
        new = [info for path, info in present.items() if path not in self._known]
        self._known = present

        for info in gone:
            await self._safe_call(self.on_detached, info)
        for info in new:
            await self._safe_call(self.on_attached, info)

    async def _poll_loop(self) -> None:
        while True:
            await self.scan_once()
            self._wakeup.clear()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.interval)

    @staticmethod
    async def _safe_call(callback: Callable[[Any], Awaitable[None]], arg: Any) -> None:
        try:
            await callback(arg)
        except Exception:
            logger.exception("Hot-plug callback %r failed", callback)
