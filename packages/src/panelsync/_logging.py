"""Log formatting and root logger configuration.

panelsync usually runs as a user service under systemd, where the
journal captures stderr.  Two formats are offered:

- ``text`` — ``asctime [LEVEL] logger: message`` lines for terminals,
  suffixed with ``[serial]`` when the record names a panel.
- ``json`` — one JSON object per line (NDJSON) for log collectors.

Records logged with ``extra={"serial": ...}`` carry the panel serial
number so a single device can be followed across hot-plug, suspend and
resume.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from panelsync._settings import LoggingSettings

_MEGABYTE = 1024 * 1024

_TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Client libraries that log every packet at INFO/DEBUG.
_CHATTY_LOGGERS = ("aiomqtt",)


def _record_serial(record: logging.LogRecord) -> str | None:
    serial = getattr(record, "serial", None)
    return None if serial is None else str(serial)


class PanelTextFormatter(logging.Formatter):
    """Plain-text lines with the panel serial appended when known."""

    def __init__(self) -> None:
        super().__init__(_TEXT_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        serial = _record_serial(record)
        if serial is None:
            return line
        head, sep, tail = line.partition("\n")
        return f"{head} [{serial}]{sep}{tail}"


class JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects.

    Fields:

    - ``timestamp`` — ISO 8601, UTC
    - ``level`` / ``logger`` / ``message``
    - ``service`` — application name
    - ``version`` — omitted when empty
    - ``serial`` — panel serial, when the record carries one
    - ``exception`` / ``stack_info`` — only when present

    Args:
        service: Application name included in every line.
        version: Application version string.
    """

    def __init__(self, *, service: str = "", version: str = "") -> None:
        super().__init__()
        self._static: dict[str, str] = {"service": service}
        if version:
            self._static["version"] = version

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **self._static,
        }
        serial = _record_serial(record)
        if serial is not None:
            entry["serial"] = serial
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            entry["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(entry, default=str)


def _build_formatter(settings: LoggingSettings, service: str, version: str) -> logging.Formatter:
    if settings.format == "json":
        return JsonFormatter(service=service, version=version)
    return PanelTextFormatter()


def _build_handlers(settings: LoggingSettings) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if settings.file is not None:
        path = Path(settings.file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                path,
                maxBytes=settings.max_file_size_mb * _MEGABYTE,
                backupCount=settings.backup_count,
                encoding="utf-8",
            ),
        )
    return handlers


def configure_logging(
    settings: LoggingSettings,
    *,
    service: str,
    version: str = "",
) -> None:
    """Configure the root logger from *settings*.

    Existing root handlers are removed (file handlers are closed so a
    reload releases the previous log file).  A stderr handler is always
    installed; a :class:`~logging.handlers.RotatingFileHandler` is
    added when ``settings.file`` is set, creating its directory.

    MQTT client chatter is limited to warnings unless the level is
    ``DEBUG``.
    """
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        if isinstance(handler, logging.FileHandler):
            handler.close()

    formatter = _build_formatter(settings, service, version)
    for handler in _build_handlers(settings):
        handler.setFormatter(formatter)
        root.addHandler(handler)

    root.setLevel(settings.level)
    chatty_level = logging.NOTSET if settings.level == "DEBUG" else logging.WARNING
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(chatty_level)
