"""Per-key rate limiting on the asyncio event loop.

The first call to :meth:`Debouncer.debounce` for a key opens a window
of *delay* seconds; later calls within that window only replace the
action to run.  When the window closes the latest action runs once, so
a continuous stream of updates (a slider being dragged) is sent at most
once per window, always with the newest value.  No thread blocks while
waiting.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Hashable

logger = logging.getLogger(__name__)

Action = Callable[[], Awaitable[None]]


class Debouncer:
    """Collapses actions for the same key into the latest one per window."""

    def __init__(self) -> None:
        self._pending: dict[Hashable, asyncio.Task[None]] = {}
        self._latest: dict[Hashable, Action] = {}

    def debounce(self, key: Hashable, action: Action, delay: float) -> None:
        """Run the latest *action* for *key* when its window closes.

        A window of *delay* seconds is opened only when none is pending
        for *key*.
        """
        self._latest[key] = action
        if not self.pending(key):
            self._pending[key] = asyncio.create_task(self._flush_later(key, delay))

    def pending(self, key: Hashable) -> bool:
        """Whether an action is scheduled for *key*."""
        task = self._pending.get(key)
        return task is not None and not task.done()

    def cancel(self, key: Hashable) -> bool:
        """Cancel the pending action for *key*, if any."""
        self._latest.pop(key, None)
        task = self._pending.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def cancel_all(self) -> None:
        """Cancel every pending action and wait for them to unwind."""
        tasks = list(self._pending.values())
        self._pending.clear()
        self._latest.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _flush_later(self, key: Hashable, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._pending.get(key) is asyncio.current_task():
            del self._pending[key]
        action = self._latest.pop(key, None)
        if action is None:
            return
        try:
            await action()
        except Exception:
            logger.exception("Debounced action for %r failed", key)
