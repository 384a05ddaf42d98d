"""Unit tests for panelsync._events — typed event bus.

Test Techniques Used:
    - Specification-based Testing: subscribe/unsubscribe/publish contract
    - Error Isolation: a failing handler does not stop the others
    - Order Verification: registration order and enum dispatch
"""

from __future__ import annotations

import logging

import pytest

from panelsync._events import BrokerStatus, DeviceDisconnected, EventBus
from panelsync._power import PowerEvent


class TestEventBus:
    """EventBus dispatch.

    Technique: Specification-based Testing.
    """

    async def test_handlers_receive_matching_events(self, bus: EventBus) -> None:
        """Only handlers of the event's exact type are called."""
        seen: list[object] = []

        async def on_status(event: BrokerStatus) -> None:
            seen.append(event)

        bus.subscribe(BrokerStatus, on_status)
        await bus.publish(BrokerStatus(connected=True))
        await bus.publish(DeviceDisconnected("PP1"))

        assert seen == [BrokerStatus(connected=True)]

    async def test_handlers_called_in_registration_order(self, bus: EventBus) -> None:
        """Handlers run in the order they subscribed."""
        calls: list[str] = []

        async def first(_: object) -> None:
            calls.append("first")

        async def second(_: object) -> None:
            calls.append("second")

        bus.subscribe(BrokerStatus, first)
        bus.subscribe(BrokerStatus, second)
        await bus.publish(BrokerStatus(connected=False))

        assert calls == ["first", "second"]

    async def test_failing_handler_is_isolated(
        self,
        bus: EventBus,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """A raising handler is logged and later handlers still run."""
        calls: list[str] = []

        async def broken(_: object) -> None:
            raise RuntimeError("boom")

        async def healthy(_: object) -> None:
            calls.append("healthy")

        bus.subscribe(BrokerStatus, broken)
        bus.subscribe(BrokerStatus, healthy)
        with caplog.at_level(logging.ERROR, logger="panelsync._events"):
            await bus.publish(BrokerStatus(connected=True))

        assert calls == ["healthy"]
        assert "failed" in caplog.text

    async def test_unsubscribe(self, bus: EventBus) -> None:
        """Unsubscribed handlers are no longer called; unknown ones are ignored."""
        calls: list[object] = []

        async def handler(event: object) -> None:
            calls.append(event)

        bus.subscribe(BrokerStatus, handler)
        bus.unsubscribe(BrokerStatus, handler)
        bus.unsubscribe(BrokerStatus, handler)
        await bus.publish(BrokerStatus(connected=True))

        assert calls == []
        assert bus.handlers(BrokerStatus) == ()

    async def test_enum_members_dispatch_by_enum_type(self, bus: EventBus) -> None:
        """Power events are delivered to PowerEvent subscribers."""
        seen: list[PowerEvent] = []

        async def on_power(event: PowerEvent) -> None:
            seen.append(event)

        bus.subscribe(PowerEvent, on_power)
        await bus.publish(PowerEvent.GOING_TO_SUSPEND)
        await bus.publish(PowerEvent.RESUMED_FROM_SUSPEND)

        assert seen == [PowerEvent.GOING_TO_SUSPEND, PowerEvent.RESUMED_FROM_SUSPEND]

    async def test_publish_without_handlers(self, bus: EventBus) -> None:
        """Publishing an event nobody listens to is a no-op."""
        await bus.publish(DeviceDisconnected("PP1"))
