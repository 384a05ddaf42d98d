"""Unit tests for panelsync._debounce — per-key rate limiting.

Test Techniques Used:
    - Timing-based Testing: short real delays on the event loop
    - State-based Testing: pending/cancel bookkeeping
"""

from __future__ import annotations

import asyncio

import pytest

from panelsync._debounce import Action, Debouncer

DELAY = 0.02


@pytest.fixture
def debouncer() -> Debouncer:
    return Debouncer()


def _recorder(calls: list[str], value: str) -> Action:
    async def action() -> None:
        calls.append(value)

    return action


class TestDebouncer:
    """Windowed rate limiting semantics.

    Technique: Timing-based Testing.
    """

    async def test_burst_runs_last_action_once(self, debouncer: Debouncer) -> None:
        """Only the latest action of a burst runs."""
        calls: list[str] = []
        for value in ("a", "b", "c"):
            debouncer.debounce("topic", _recorder(calls, value), DELAY)

        await asyncio.sleep(DELAY * 5)

        assert calls == ["c"]
        assert not debouncer.pending("topic")

    async def test_keys_are_independent(self, debouncer: Debouncer) -> None:
        """Different keys do not supersede each other."""
        calls: list[str] = []
        debouncer.debounce("x", _recorder(calls, "x"), DELAY)
        debouncer.debounce("y", _recorder(calls, "y"), DELAY)

        await asyncio.sleep(DELAY * 5)

        assert sorted(calls) == ["x", "y"]

    async def test_continuous_updates_flush_each_window(
        self,
        debouncer: Debouncer,
    ) -> None:
        """Updates arriving faster than the window still run, newest first."""
        calls: list[str] = []
        values = [str(i) for i in range(12)]
        for value in values:
            debouncer.debounce("slider", _recorder(calls, value), DELAY)
            await asyncio.sleep(DELAY * 0.4)

        assert calls, "nothing ran during the burst"
        await asyncio.sleep(DELAY * 5)

        assert calls[-1] == values[-1]
        assert [int(c) for c in calls] == sorted({int(c) for c in calls})

    async def test_window_not_extended_by_later_calls(
        self,
        debouncer: Debouncer,
    ) -> None:
        """The window opened by the first call is kept."""
        calls: list[str] = []
        debouncer.debounce("slider", _recorder(calls, "a"), DELAY * 10)
        await asyncio.sleep(DELAY * 5)
        debouncer.debounce("slider", _recorder(calls, "b"), DELAY * 10)
        await asyncio.sleep(DELAY * 8)

        assert calls == ["b"]

    async def test_cancel(self, debouncer: Debouncer) -> None:
        """A cancelled action never runs."""
        calls: list[str] = []
        debouncer.debounce("topic", _recorder(calls, "a"), DELAY)

        assert debouncer.pending("topic")
        assert debouncer.cancel("topic") is True
        assert debouncer.cancel("topic") is False
        await asyncio.sleep(DELAY * 3)

        assert calls == []

    async def test_cancel_all(self, debouncer: Debouncer) -> None:
        """Every pending action is dropped."""
        calls: list[str] = []
        debouncer.debounce("x", _recorder(calls, "x"), DELAY)
        debouncer.debounce("y", _recorder(calls, "y"), DELAY)

        await debouncer.cancel_all()
        await asyncio.sleep(DELAY * 3)

        assert calls == []
        assert not debouncer.pending("x")

    async def test_failing_action_is_logged(
        self,
        debouncer: Debouncer,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """A raising action does not propagate."""

        async def broken() -> None:
            raise RuntimeError("boom")

        debouncer.debounce("topic", broken, 0)
        await asyncio.sleep(DELAY)

        assert "Debounced action" in caplog.text
