"""Per-device outbound command worker.

Each connected panel gets one :class:`DeviceWorker`: an asyncio task
draining a bounded priority queue of HID output reports.  Workers of
different panels are independent, so a slow or failing panel never
delays another.

Ordering: priority first (``IMMEDIATE`` before ``BATCHED``), then
submission order.  Blocking HID writes run in a thread via
:func:`asyncio.to_thread`.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from panelsync._hid import HidHandle

logger = logging.getLogger(__name__)

IMMEDIATE = 0
BATCHED = 1


@dataclass(order=True, frozen=True, slots=True)
class Command:
    """A group of HID reports written back to back."""

    priority: int
    sequence: int
    reports: tuple[bytes, ...] = field(compare=False)
    label: str = field(default="", compare=False)


class DeviceWorker:
    """Drains one panel's command queue.

    Args:
        serial: Serial number, used for logging.
        handle: Open HID handle the reports are written to.
        queue_size: Maximum number of pending commands.
    """

    def __init__(self, serial: str, handle: HidHandle, *, queue_size: int = 64) -> None:
        self._serial = serial
        self._handle = handle
        self._queue: asyncio.PriorityQueue[Command] = asyncio.PriorityQueue(
            maxsize=queue_size,
        )
        self._sequence = itertools.count()
        self._in_flight = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the draining loop."""
        if self.running:
            return
        self._task = asyncio.create_task(
            self._drain_loop(),
            name=f"panelsync-worker-{self._serial}",
        )

    async def stop(self) -> None:
        """Stop draining; pending commands are discarded.  Idempotent."""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    def submit(
        self,
        reports: Sequence[bytes],
        *,
        immediate: bool = False,
        label: str = "",
    ) -> bool:
        """Queue *reports* as one command.

        Returns:
            ``False`` when the queue is full and the command was dropped.
        """
        if not reports:
            return True
        command = Command(
            priority=IMMEDIATE if immediate else BATCHED,
            sequence=next(self._sequence),
            reports=tuple(reports),
            label=label,
        )
        try:
            self._queue.put_nowait(command)
        except asyncio.QueueFull:
            logger.warning(
                "Command queue full for %s, dropping %s",
                self._serial,
                label or "command",
                extra={"serial": self._serial},
            )
            return False
        return True

    def is_empty(self) -> bool:
        """True when nothing is queued or being written."""
        return self._queue.empty() and not self._in_flight

    def qsize(self) -> int:
        return self._queue.qsize()

    async def _drain_loop(self) -> None:
        while True:
            command = await self._queue.get()
            self._in_flight = True
            try:
                for report in command.reports:
                    await asyncio.to_thread(self._handle.write, report)
            except Exception:
                logger.exception(
                    "Failed to write %s to %s",
                    command.label or "command",
                    self._serial,
                    extra={"serial": self._serial},
                )
            finally:
                self._in_flight = False
                self._queue.task_done()
