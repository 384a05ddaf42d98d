"""Exception taxonomy and structured error payloads.

Every failure panelsync raises derives from :class:`PanelSyncError`.
Each type carries a fixed propagation policy:

- :class:`InvalidArgument` — missing identifiers; fatal to the single
  call, never to the process.
- :class:`DeviceOpenFailure` — a panel could not be opened; callers log
  it and the status mirror reports it on ``{prefix}/error``.
- :class:`SubprocessFailure` — a power-monitor helper could not run;
  triggers the fallback helper or silent degradation.
- :class:`BrokerConnectFailure` — the only failure surfaced to the
  caller of a settings change.
- :class:`SerializationFailure` — a publish payload could not be
  encoded; the publish is dropped.

Error payload schema (``{prefix}/error``, not retained)::

    {
        "error_type": "device_open_failure",
        "message": "Unable to open panel",
        "serial": "PP1234" | null,
        "timestamp": "2026-02-14T12:34:56+00:00",
        "details": {}
    }
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime


class PanelSyncError(Exception):
    """Base class for all panelsync errors."""


class InvalidArgument(PanelSyncError, ValueError):
    """A required identifier (serial number, device handle) was missing."""


class DeviceOpenFailure(PanelSyncError):
    """A panel's HID handle could not be opened."""

    def __init__(self, serial: str, message: str = "Unable to open device") -> None:
        super().__init__(f"{message} (serial={serial})")
        self.serial = serial


class SubprocessFailure(PanelSyncError):
    """A helper process used for power event detection failed."""


class BrokerConnectFailure(PanelSyncError):
    """The MQTT broker could not be reached with the given settings."""


class SerializationFailure(PanelSyncError):
    """A publish payload could not be converted to bytes."""


DEFAULT_ERROR_TYPES: dict[type[Exception], str] = {
    InvalidArgument: "invalid_argument",
    DeviceOpenFailure: "device_open_failure",
    SubprocessFailure: "subprocess_failure",
    BrokerConnectFailure: "broker_connect_failure",
    SerializationFailure: "serialization_failure",
}


@dataclass(frozen=True, slots=True)
class ErrorPayload:
    """Immutable structured error payload."""

    error_type: str
    message: str
    serial: str | None
    timestamp: str
    details: dict[str, object] = field(default_factory=dict)

    def to_json(self) -> str:
        """Serialise to a JSON string."""
        return json.dumps(asdict(self))


def build_error_payload(
    error: Exception,
    *,
    serial: str | None = None,
    details: dict[str, object] | None = None,
    error_type_map: dict[type[Exception], str] | None = None,
    clock: Callable[[], datetime] | None = None,
) -> ErrorPayload:
    """Convert an exception into an :class:`ErrorPayload`.

    Looks up the exact class of the exception; subclasses are not
    matched.  Unmapped types fall back to ``"error"``.

    Args:
        error: The exception to convert.
        serial: Serial number of the panel involved, if any.
        details: Extra context attached to the payload.
        error_type_map: Mapping from exception types to
            ``error_type`` strings.  Defaults to
            :data:`DEFAULT_ERROR_TYPES`.
        clock: Callable returning the timestamp; ``datetime.now(UTC)``
            when ``None``.
    """
    resolved_map = DEFAULT_ERROR_TYPES if error_type_map is None else error_type_map
    now = clock() if clock is not None else datetime.now(UTC)
    return ErrorPayload(
        error_type=resolved_map.get(type(error), "error"),
        message=str(error),
        serial=serial,
        timestamp=now.isoformat(),
        details=details or {},
    )
