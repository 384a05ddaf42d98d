"""Operating-system power event detection.

Suspend/resume (and optionally session lock/unlock) are observed
without any GUI event loop by following the text output of a helper
process:

- **primary** — ``dbus-monitor --system`` filtered to logind's
  ``PrepareForSleep`` signal, parsed by :class:`SleepSignalParser`.
- **fallback** — ``journalctl -f`` filtered to the suspend, hibernate
  and hybrid-sleep units, parsed by :class:`JournalLineParser`.

The fallback starts when the primary helper cannot be launched or its
output ends while the monitor is still running.  When the fallback
fails as well, detection is simply unavailable: a warning is logged
and no further events are emitted.

:func:`build_power_source` picks the :class:`PowerEventSource` variant
from ``PowerSettings.monitor``.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import re
import sys
from collections.abc import Awaitable, Callable, Sequence
from typing import Protocol, runtime_checkable

from panelsync._errors import SubprocessFailure
from panelsync._settings import PowerSettings

logger = logging.getLogger(__name__)


class PowerEvent(enum.Enum):
    """Normalized power transition."""

    GOING_TO_SUSPEND = "goingToSuspend"
    RESUMED_FROM_SUSPEND = "resumedFromSuspend"
    LOCKED = "locked"
    UNLOCKED = "unlocked"


PowerEventCallback = Callable[[PowerEvent], Awaitable[None]]

LOGIND_MANAGER_MATCH = "interface='org.freedesktop.login1.Manager',member='PrepareForSleep'"
LOGIND_SESSION_MATCH = "type='signal',interface='org.freedesktop.login1.Session'"

SLEEP_UNITS = (
    "systemd-suspend.service",
    "systemd-hybrid-sleep.service",
    "systemd-hibernate.service",
)


def dbus_monitor_command(*, detect_lock: bool = False) -> list[str]:
    """Primary helper command line."""
    command = ["dbus-monitor", "--system", LOGIND_MANAGER_MATCH]
    if detect_lock:
        command.append(LOGIND_SESSION_MATCH)
    return command


def journalctl_command() -> list[str]:
    """Fallback helper command line."""
    return [
        "journalctl",
        "-f",
        "--no-pager",
        "-n",
        "0",
        *(f"_SYSTEMD_UNIT={unit}" for unit in SLEEP_UNITS),
    ]


# ---------------------------------------------------------------------------
# Line parsers
# ---------------------------------------------------------------------------


class ParserState(enum.Enum):
    IDLE = "idle"
    ARMED = "armed"


_MEMBER = re.compile(r"\bmember=(\w+)")


class SleepSignalParser:
    """Two-phase parser for ``dbus-monitor`` output.

    ``IDLE`` → a ``signal ... member=PrepareForSleep`` line → ``ARMED``.
    While ``ARMED``, the next ``boolean`` argument line emits
    ``GOING_TO_SUSPEND`` (``true``) or ``RESUMED_FROM_SUSPEND``
    (``false``) and returns to ``IDLE``.  Other lines are ignored in
    both states.

    With *detect_lock*, ``Lock`` and ``Unlock`` session signals emit
    ``LOCKED`` / ``UNLOCKED`` directly.
    """

    def __init__(self, *, detect_lock: bool = False) -> None:
        self.detect_lock = detect_lock
        self.state = ParserState.IDLE

    def feed(self, line: str) -> PowerEvent | None:
        """Consume one output line; return the event it completes, if any."""
        stripped = line.strip()
        if stripped.startswith("signal"):
            member = _MEMBER.search(line)
            name = member.group(1) if member else None
            if name == "PrepareForSleep":
                self.state = ParserState.ARMED
                logger.debug("Detected PrepareForSleep signal")
                return None
            if self.detect_lock and name == "Lock":
                return PowerEvent.LOCKED
            if self.detect_lock and name == "Unlock":
                return PowerEvent.UNLOCKED
            return None

        if self.state is ParserState.ARMED and stripped.startswith("boolean"):
            self.state = ParserState.IDLE
            if "true" in stripped:
                return PowerEvent.GOING_TO_SUSPEND
            return PowerEvent.RESUMED_FROM_SUSPEND
        return None


_JOURNAL_SUSPEND = re.compile(r"Starting (?:System )?(?:Suspend|Hibernate|Hybrid Suspend)\.\.\.")
_JOURNAL_RESUME = re.compile(r"Finished (?:System )?(?:Suspend|Hibernate|Hybrid Suspend)\.")


class JournalLineParser:
    """Keyword parser for the sleep units' journal lines."""

    def feed(self, line: str) -> PowerEvent | None:
        if _JOURNAL_SUSPEND.search(line):
            return PowerEvent.GOING_TO_SUSPEND
        if _JOURNAL_RESUME.search(line):
            return PowerEvent.RESUMED_FROM_SUSPEND
        return None


class LineParser(Protocol):
    def feed(self, line: str) -> PowerEvent | None: ...


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


@runtime_checkable
class PowerEventSource(Protocol):
    """Something that emits :class:`PowerEvent` values until stopped."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


class NullPowerMonitor:
    """Power source for platforms without detection."""

    async def start(self) -> None:
        logger.info("Suspend/resume detection is not available on this platform")

    async def stop(self) -> None:
        pass


class LinuxPowerMonitor:
    """Follows logind signals (primary) or the journal (fallback).

    Args:
        emit: Async callback receiving every detected event.
        detect_lock: Also report session lock/unlock.
        primary_command: Helper streaming system bus signals.
        fallback_command: Helper following the sleep units' journal.
    """

    def __init__(
        self,
        emit: PowerEventCallback,
        *,
        detect_lock: bool = False,
        primary_command: Sequence[str] | None = None,
        fallback_command: Sequence[str] | None = None,
    ) -> None:
        self._emit = emit
        self._detect_lock = detect_lock
        self._primary_command = list(
            primary_command or dbus_monitor_command(detect_lock=detect_lock),
        )
        self._fallback_command = list(fallback_command or journalctl_command())
        self._process: asyncio.subprocess.Process | None = None
        self._task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start monitoring in a background task."""
        if self._task is not None and not self._task.done():
            logger.debug("LinuxPowerMonitor.start() called while already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._monitor(), name="panelsync-power-monitor")

    async def stop(self) -> None:
        """Stop monitoring and kill the live helper.  Idempotent."""
        self._running = False
        self._kill()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def wait_closed(self) -> None:
        """Wait until the monitoring task has ended on its own."""
        if self._task is not None:
            await asyncio.shield(self._task)

    # -- Internal -----------------------------------------------------------

    async def _monitor(self) -> None:
        logger.info("Starting Linux system event monitoring")
        try:
            await self._follow(
                self._primary_command,
                SleepSignalParser(detect_lock=self._detect_lock),
            )
        except SubprocessFailure as exc:
            if not self._running:
                return
            logger.error("Error monitoring system events, trying fallback method: %s", exc)
        else:
            if not self._running:
                return
            logger.warning("System bus monitor ended unexpectedly, trying fallback method")

        logger.info("Starting fallback system event monitoring using journalctl")
        try:
            await self._follow(self._fallback_command, JournalLineParser())
        except SubprocessFailure as exc:
            if self._running:
                logger.warning(
                    "Fallback monitoring also failed. System suspend/resume "
                    "events will not be detected: %s",
                    exc,
                )
            return
        if self._running:
            logger.warning(
                "Fallback monitoring ended. System suspend/resume events "
                "will not be detected",
            )

    async def _follow(self, command: Sequence[str], parser: LineParser) -> None:
        """Run *command* and feed its output to *parser* until it ends."""
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            msg = f"Unable to start {command[0]}: {exc}"
            raise SubprocessFailure(msg) from exc

        self._process = process
        stdout = process.stdout
        if stdout is None:
            msg = f"{command[0]} has no output stream"
            raise SubprocessFailure(msg)
        try:
            async for raw in stdout:
                if not self._running:
                    break
                line = raw.decode("utf-8", errors="replace").rstrip("\n")
                logger.debug("%s output: %s", command[0], line)
                event = parser.feed(line)
                if event is not None:
                    await self._publish(event)
        except ValueError as exc:
            # StreamReader raises ValueError for a line over its buffer limit
            msg = f"Unreadable output from {command[0]}: {exc}"
            raise SubprocessFailure(msg) from exc
        finally:
            self._kill()
            with contextlib.suppress(ProcessLookupError):
                await process.wait()
            self._process = None

    async def _publish(self, event: PowerEvent) -> None:
        if event in (PowerEvent.GOING_TO_SUSPEND, PowerEvent.LOCKED):
            logger.info("System is preparing to suspend (%s)", event.value)
        else:
            logger.info("System has resumed (%s)", event.value)
        try:
            await self._emit(event)
        except Exception:
            logger.exception("Error publishing system event %s", event.value)

    def _kill(self) -> None:
        process = self._process
        if process is not None and process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.kill()


def build_power_source(
    settings: PowerSettings,
    emit: PowerEventCallback,
    *,
    platform: str | None = None,
) -> PowerEventSource:
    """Select the power source variant for *settings*.

    ``"auto"`` resolves to :class:`LinuxPowerMonitor` on Linux and
    :class:`NullPowerMonitor` elsewhere.
    """
    resolved_platform = platform if platform is not None else sys.platform
    mode = settings.monitor
    if mode == "auto":
        mode = "linux" if resolved_platform.startswith("linux") else "none"
    if mode == "linux":
        return LinuxPowerMonitor(emit, detect_lock=settings.detect_lock)
    return NullPowerMonitor()
