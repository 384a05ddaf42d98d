"""Power event reactions.

:class:`PowerEventCoordinator` is the only component that commands all
panels as a batch.  It subscribes to :class:`~panelsync._power.PowerEvent`
on the bus and maps each variant onto one of two paths:

- **suspend** (``GOING_TO_SUSPEND``, ``LOCKED``) — every registered
  panel gets an immediate all-off lighting command.
- **resume** (``RESUMED_FROM_SUSPEND``, ``UNLOCKED``) — wait for USB to
  settle, rescan the registry, wait for reconnection, then resend every
  panel's remembered lighting.

The bus handler only enqueues; the paths run one at a time on a
:class:`SerialExecutor`, so rapid suspend/resume sequences are handled
in order and never overlap.  :meth:`PowerEventCoordinator.shutdown`
runs the suspend path inline, additionally waiting for each panel's
queue to drain and closing the registry.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable

from panelsync._devices import DeviceConnection
from panelsync._events import EventBus, SettingsChanged
from panelsync._lighting import ALL_OFF
from panelsync._power import PowerEvent
from panelsync._registry import DeviceRegistry
from panelsync._settings import PowerSettings

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[None]]

SUSPEND_EVENTS = frozenset({PowerEvent.GOING_TO_SUSPEND, PowerEvent.LOCKED})
RESUME_EVENTS = frozenset({PowerEvent.RESUMED_FROM_SUSPEND, PowerEvent.UNLOCKED})


class SerialExecutor:
    """Single consumer task running submitted jobs in submission order.

    A failing job is logged; the next one still runs.
    """

    def __init__(self, name: str = "panelsync-serial-executor") -> None:
        self._name = name
        self._queue: asyncio.Queue[Job] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._consume(), name=self._name)

    def submit(self, job: Job) -> None:
        """Queue *job*; it runs after every job submitted before it."""
        self._queue.put_nowait(job)

    async def wait_idle(self) -> None:
        """Wait until every submitted job has finished."""
        await self._queue.join()

    async def stop(self) -> None:
        """Cancel the running job and discard queued ones.  Idempotent."""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

    async def _consume(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await job()
            except Exception:
                logger.exception("Serialized job %r failed", job)
            finally:
                self._queue.task_done()


class PowerEventCoordinator:
    """Dims panels before suspend and restores them after resume.

    Args:
        registry: Source of the currently registered panels.
        bus: Delivers :class:`PowerEvent` and :class:`SettingsChanged`.
        settings: Delays and drain limits.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        bus: EventBus,
        settings: PowerSettings | None = None,
    ) -> None:
        self._registry = registry
        self._bus = bus
        self._settings = settings if settings is not None else PowerSettings()
        self._executor = SerialExecutor(name="panelsync-power-coordinator")

    @property
    def settings(self) -> PowerSettings:
        return self._settings

    async def start(self) -> None:
        """Subscribe to power events and start the executor."""
        self._executor.start()
        self._bus.subscribe(PowerEvent, self._on_power_event)
        self._bus.subscribe(SettingsChanged, self._on_settings_changed)

    async def stop(self) -> None:
        """Unsubscribe and stop the executor.  Idempotent."""
        self._bus.unsubscribe(PowerEvent, self._on_power_event)
        self._bus.unsubscribe(SettingsChanged, self._on_settings_changed)
        await self._executor.stop()

    async def wait_idle(self) -> None:
        """Wait until every queued reaction has run."""
        await self._executor.wait_idle()

    # -- Paths --------------------------------------------------------------

    async def suspend(self, *, shutdown: bool = False) -> None:
        """Turn every registered panel's lights off immediately.

        With *shutdown*, also wait (bounded) for each panel's queue to
        drain and close the registry afterwards.
        """
        logger.info("Turning off lights for %d device(s)", len(self._registry))
        for connection in self._registry.connections():
            try:
                connection.send_lighting(ALL_OFF, immediate=True)
                if shutdown:
                    await self._wait_until_drained(connection)
            except Exception:
                logger.exception(
                    "Unable to turn off lights for %s",
                    connection.serial,
                    extra={"serial": connection.serial},
                )
        if shutdown:
            await self._registry.close()

    async def resume(self) -> None:
        """Rescan after the settle delay and restore remembered lighting."""
        settings = self._settings
        logger.info(
            "System resumed, waiting %.1fs for USB devices to settle",
            settings.resume_settle_delay,
        )
        await asyncio.sleep(settings.resume_settle_delay)
        await self._registry.rescan()
        await asyncio.sleep(settings.reconnect_delay)

        for connection in self._registry.connections():
            try:
                connection.send_lighting(connection.lighting, immediate=True)
            except Exception:
                logger.exception(
                    "Unable to restore lighting for %s",
                    connection.serial,
                    extra={"serial": connection.serial},
                )
            else:
                logger.info(
                    "Restored lighting for %s",
                    connection.serial,
                    extra={"serial": connection.serial},
                )

    async def shutdown(self) -> None:
        """Process-exit variant of the suspend path.

        Pending reactions are dropped first so a resume waiting on its
        settle delay cannot hold up the exit.
        """
        logger.info("Shutting down devices")
        await self._executor.stop()
        await self.suspend(shutdown=True)

    # -- Internal -----------------------------------------------------------

    async def _wait_until_drained(self, connection: DeviceConnection) -> bool:
        settings = self._settings
        for _ in range(settings.drain_max_polls):
            if connection.worker.is_empty():
                return True
            try:
                await asyncio.sleep(settings.drain_poll_interval)
            except asyncio.CancelledError:
                logger.warning(
                    "Interrupted while waiting for %s to drain",
                    connection.serial,
                    extra={"serial": connection.serial},
                )
                raise
        if connection.worker.is_empty():
            return True
        logger.warning(
            "Gave up waiting for %s to drain (%d command(s) pending)",
            connection.serial,
            connection.worker.qsize(),
            extra={"serial": connection.serial},
        )
        return False

    async def _on_power_event(self, event: PowerEvent) -> None:
        if event in SUSPEND_EVENTS:
            self._executor.submit(self.suspend)
        elif event in RESUME_EVENTS:
            self._executor.submit(self.resume)

    async def _on_settings_changed(self, event: SettingsChanged) -> None:
        self._settings = event.settings.power
