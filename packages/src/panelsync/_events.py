"""In-process event bus and the events exchanged between components.

Components never call each other for notifications; they publish an
event and whoever cares subscribes to its type::

    DeviceRegistry      → DeviceConnected / DeviceDisconnected / DeviceOpenFailed
    PowerEventSource    → PowerEvent
    MessagingGateway    → BrokerStatus
    App (settings load) → SettingsChanged

Handlers are async and run in registration order on the publisher's
task.  Events of one publisher are therefore observed in the order
they were published.  A failing handler is logged and skipped; it
never prevents the remaining handlers from running.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from panelsync._devices import DeviceType
    from panelsync._settings import Settings

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], Awaitable[None]]
"""Async callback receiving a single event."""

# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DeviceConnected:
    """A panel was opened and registered."""

    serial: str
    device_type: DeviceType


@dataclass(frozen=True, slots=True)
class DeviceDisconnected:
    """A registered panel went away."""

    serial: str


@dataclass(frozen=True, slots=True)
class DeviceOpenFailed:
    """A panel was detected but its handle could not be opened."""

    serial: str
    device_type: DeviceType
    reason: str


@dataclass(frozen=True, slots=True)
class BrokerStatus:
    """The broker connection came up (``True``) or went away (``False``)."""

    connected: bool


@dataclass(frozen=True, slots=True)
class SettingsChanged:
    """A new settings value was loaded."""

    settings: Settings


# ---------------------------------------------------------------------------
# Bus
# ---------------------------------------------------------------------------


class EventBus:
    """Typed publish/subscribe dispatcher.

    Handlers are keyed by the exact event class; enum members are
    dispatched by their enum type (e.g. ``PowerEvent``).
    """

    def __init__(self) -> None:
        self._handlers: defaultdict[type, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: type, handler: EventHandler) -> None:
        """Register *handler* for events of *event_type*."""
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: type, handler: EventHandler) -> None:
        """Remove *handler*; unknown handlers are ignored."""
        handlers = self._handlers.get(event_type)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def handlers(self, event_type: type) -> tuple[EventHandler, ...]:
        """Handlers currently registered for *event_type*."""
        return tuple(self._handlers.get(event_type, ()))

    async def publish(self, event: object) -> None:
        """Deliver *event* to every handler of its type."""
        for handler in self.handlers(type(event)):
            try:
                await handler(event)
            except Exception:
                logger.exception("Event handler %r failed for %r", handler, event)
