"""Application composition root.

:class:`App` wires settings, logging, the event bus and the four
long-lived components together and runs them until shutdown::

    app = App(version="1.2.0")
    app.run()

Startup order:

1. Settings and logging.
2. Event bus, messaging gateway, device registry, status mirror,
   power coordinator.
3. Broker connection (a failure is logged; the app keeps running
   without broker integration until settings change).
4. Hot-plug watcher and power event source.

Teardown runs in reverse dependency order: power source stop →
coordinator shutdown (lights off, bounded drain, registry close) →
coordinator stop → status mirror stop → gateway close.

``SIGTERM``/``SIGINT`` trigger shutdown; ``SIGHUP`` reloads settings and
publishes :class:`~panelsync._events.SettingsChanged`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections.abc import Awaitable, Callable

from panelsync._coordinator import PowerEventCoordinator
from panelsync._errors import BrokerConnectFailure
from panelsync._events import EventBus, SettingsChanged
from panelsync._gateway import AiomqttConnection, ConnectionFactory, MessagingGateway
from panelsync._hid import HidapiBackend, HidPort
from panelsync._lighting import LightingEncoder
from panelsync._logging import configure_logging
from panelsync._power import PowerEventCallback, PowerEventSource, build_power_source
from panelsync._registry import DeviceRegistry
from panelsync._settings import PowerSettings, Settings
from panelsync._status import StatusMirror

logger = logging.getLogger(__name__)

PowerSourceFactory = Callable[[PowerSettings, PowerEventCallback], PowerEventSource]


class App:
    """Owns the component graph for one process.

    Args:
        name: Service name used in logs.
        version: Version string reported in logs.
        settings_class: Settings subclass instantiated at startup and
            on reload.
    """

    def __init__(
        self,
        *,
        name: str = "panelsync",
        version: str = "0.0.0",
        settings_class: type[Settings] = Settings,
    ) -> None:
        self._name = name
        self._version = version
        self._settings_class = settings_class
        self._settings: Settings | None = None
        self._background: set[asyncio.Task[None]] = set()

        self.bus: EventBus | None = None
        self.gateway: MessagingGateway | None = None
        self.registry: DeviceRegistry | None = None
        self.status: StatusMirror | None = None
        self.coordinator: PowerEventCoordinator | None = None
        self.power_source: PowerEventSource | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def version(self) -> str:
        return self._version

    @property
    def settings(self) -> Settings | None:
        """Settings currently in effect; ``None`` before startup."""
        return self._settings

    # --- Lifecycle ---------------------------------------------------------

    def run(
        self,
        *,
        settings: Settings | None = None,
        hid: HidPort | None = None,
        connection_factory: ConnectionFactory | None = None,
        power_source_factory: PowerSourceFactory | None = None,
        encoder: LightingEncoder | None = None,
        shutdown_event: asyncio.Event | None = None,
    ) -> None:
        """Start the application (blocking).

        Wraps :meth:`_run_async` in :func:`asyncio.run`; Ctrl-C ends
        it cleanly.  All arguments are optional and exist for
        programmatic or test use.
        """
        with contextlib.suppress(KeyboardInterrupt):
            asyncio.run(
                self._run_async(
                    settings=settings,
                    hid=hid,
                    connection_factory=connection_factory,
                    power_source_factory=power_source_factory,
                    encoder=encoder,
                    shutdown_event=shutdown_event,
                ),
            )

    async def _run_async(
        self,
        *,
        settings: Settings | None = None,
        hid: HidPort | None = None,
        connection_factory: ConnectionFactory | None = None,
        power_source_factory: PowerSourceFactory | None = None,
        encoder: LightingEncoder | None = None,
        shutdown_event: asyncio.Event | None = None,
    ) -> None:
        """Start, block until *shutdown_event* is set, then tear down.

        Args:
            settings: Override settings (skip env loading).
            hid: Override the hardware port (e.g. ``FakeHidBackend``).
            connection_factory: Override the broker connection factory
                (e.g. one returning ``MockBrokerConnection``).
            power_source_factory: Override how the power event source
                is built from ``(PowerSettings, emit)``.
            encoder: Lighting encoder handed to every panel.
            shutdown_event: Override shutdown event (skip OS signal
                handlers).
        """
        await self.start(
            settings=settings,
            hid=hid,
            connection_factory=connection_factory,
            power_source_factory=power_source_factory,
            encoder=encoder,
        )
        try:
            shutdown_event = self._install_signal_handlers(shutdown_event)
            await shutdown_event.wait()
        finally:
            await self.stop()

    async def start(
        self,
        *,
        settings: Settings | None = None,
        hid: HidPort | None = None,
        connection_factory: ConnectionFactory | None = None,
        power_source_factory: PowerSourceFactory | None = None,
        encoder: LightingEncoder | None = None,
    ) -> None:
        """Build the component graph and start every component."""
        resolved = settings if settings is not None else self._settings_class()
        self._settings = resolved
        configure_logging(resolved.logging, service=self._name, version=self._version)
        logger.info("Starting %s v%s", self._name, self._version)

        bus = EventBus()
        gateway = MessagingGateway(
            bus=bus,
            connection_factory=connection_factory or AiomqttConnection,
        )
        registry = DeviceRegistry(
            hid=hid if hid is not None else HidapiBackend(),
            bus=bus,
            encoder=encoder,
            queue_size=resolved.devices.queue_size,
            scan_interval=resolved.devices.scan_interval,
        )
        status = StatusMirror(gateway=gateway, registry=registry, bus=bus)
        coordinator = PowerEventCoordinator(registry, bus, resolved.power)
        factory = power_source_factory or build_power_source
        source = factory(resolved.power, bus.publish)

        self.bus = bus
        self.gateway = gateway
        self.registry = registry
        self.status = status
        self.coordinator = coordinator
        self.power_source = source

        status.start()
        await coordinator.start()
        bus.subscribe(SettingsChanged, self._on_settings_changed)

        await self._apply_broker_settings(resolved)
        await registry.start()
        await source.start()

    async def stop(self) -> None:
        """Tear everything down; failures are logged and never mask others."""
        for task in list(self._background):
            task.cancel()
        if self.power_source is not None:
            await self._guarded("power source", self.power_source.stop)
        if self.coordinator is not None:
            await self._guarded("devices", self.coordinator.shutdown)
            await self._guarded("power coordinator", self.coordinator.stop)
        if self.status is not None:
            self.status.stop()
        if self.gateway is not None:
            await self._guarded("messaging gateway", self.gateway.close)
        logger.info("Shutdown complete")

    async def reload_settings(self, settings: Settings | None = None) -> None:
        """Load settings again and announce them as :class:`SettingsChanged`."""
        resolved = settings if settings is not None else self._settings_class()
        self._settings = resolved
        if self.bus is not None:
            await self.bus.publish(SettingsChanged(resolved))

    # --- Internal ----------------------------------------------------------

    @staticmethod
    async def _guarded(label: str, step: Callable[[], Awaitable[None]]) -> None:
        try:
            await step()
        except Exception:
            logger.exception("Error stopping %s", label)

    async def _apply_broker_settings(self, settings: Settings) -> None:
        if self.gateway is None:
            return
        try:
            await self.gateway.apply_settings(settings.broker)
        except BrokerConnectFailure as exc:
            logger.error("%s; continuing without broker integration", exc)

    async def _on_settings_changed(self, event: SettingsChanged) -> None:
        logger.info("Settings changed")
        configure_logging(
            event.settings.logging,
            service=self._name,
            version=self._version,
        )
        await self._apply_broker_settings(event.settings)

    def _install_signal_handlers(
        self,
        shutdown_event: asyncio.Event | None,
    ) -> asyncio.Event:
        """Install SIGTERM/SIGINT/SIGHUP handlers. Returns the shutdown event."""
        if shutdown_event is not None:
            return shutdown_event
        event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, event.set)
        loop.add_signal_handler(signal.SIGHUP, self._schedule_reload)
        return event

    def _schedule_reload(self) -> None:
        logger.info("SIGHUP received, reloading settings")
        task = asyncio.create_task(self._reload_logged())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _reload_logged(self) -> None:
        try:
            await self.reload_settings()
        except Exception:
            logger.exception("Settings reload failed")
