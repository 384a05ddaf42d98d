"""Application configuration via pydantic-settings.

Configuration is loaded from environment variables and/or ``.env``
files.  All variables carry the ``PANELSYNC_`` prefix and nested models
use ``__`` as the delimiter, e.g. ``PANELSYNC_BROKER__HOST=broker.local``.

The schema covers four concerns:

* **Broker** — MQTT connection used for home-automation mirroring.
* **Devices** — hot-plug polling and per-device command queues.
* **Power** — suspend/resume detection and the timings used to
  quiesce and restore panels.
* **Logging** — level, format, optional file sink, rotation.

All durations are in **seconds**.
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

# -------------------------------------------------------------------
# Sub-models (BaseModel, NOT BaseSettings — nested via composition)
# -------------------------------------------------------------------


class BrokerSettings(BaseModel):
    """MQTT broker connection settings.

    Instances are frozen and compared by value: the messaging gateway
    only reconnects when the new value differs from the one it is
    connected with.  Every value with ``enabled=False`` is treated as
    :data:`DISABLED_BROKER`.

    Environment variables (with ``__`` nesting)::

        PANELSYNC_BROKER__ENABLED=true
        PANELSYNC_BROKER__HOST=broker.local
        PANELSYNC_BROKER__PORT=8883
        PANELSYNC_BROKER__SECURE=true
        PANELSYNC_BROKER__USERNAME=user
        PANELSYNC_BROKER__PASSWORD=secret
    """

    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(
        default=False,
        description="Whether the broker integration is active.",
    )
    host: str = Field(
        default="localhost",
        description="MQTT broker hostname or IP address.",
    )
    port: Annotated[int, Field(ge=1, le=65535)] = Field(
        default=1883,
        description="MQTT broker port.",
    )
    username: str | None = Field(
        default=None,
        description="MQTT authentication username (optional).",
    )
    password: SecretStr | None = Field(
        default=None,
        description="MQTT authentication password (optional).",
    )
    secure: bool = Field(
        default=False,
        description="Connect with TLS using the system trust store.",
    )
    topic_prefix: str = Field(
        default="panelsync",
        description="Root prefix for all published topics.",
    )
    client_id: str = Field(
        default="",
        description=(
            "MQTT client identifier. When empty, a "
            "'panelsync-{hex8}' identifier is generated per connection."
        ),
    )
    qos: Annotated[int, Field(ge=0, le=2)] = Field(
        default=1,
        description="QoS used for publishes and subscriptions.",
    )
    reconnect_interval: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description="Seconds between reconnect attempts after connection loss.",
    )

    @property
    def availability_topic(self) -> str:
        """Retained ``online`` marker topic."""
        return f"{self.topic_prefix}/availability"


DISABLED_BROKER = BrokerSettings()
"""Sentinel meaning "no broker connection"."""


class DeviceSettings(BaseModel):
    """Hot-plug scanning and per-device command queue configuration."""

    scan_interval: Annotated[float, Field(gt=0)] = Field(
        default=3.0,
        description="Seconds between hardware enumerations by the hot-plug watcher.",
    )
    queue_size: Annotated[int, Field(ge=1)] = Field(
        default=64,
        description="Maximum number of pending commands per device.",
    )


class PowerSettings(BaseModel):
    """Suspend/resume detection and lighting restore timings.

    ``monitor`` is the single switch that selects the power event
    source:

    - ``"auto"`` (default) — the Linux monitor on Linux, nothing elsewhere.
    - ``"linux"`` — always use the system-bus / journal monitor.
    - ``"none"`` — disable detection; panels are never dimmed or restored.
    """

    monitor: Literal["auto", "linux", "none"] = Field(
        default="auto",
        description="Power event source variant.",
    )
    detect_lock: bool = Field(
        default=False,
        description="Also treat session lock/unlock as a soft suspend/resume.",
    )
    resume_settle_delay: Annotated[float, Field(ge=0)] = Field(
        default=2.0,
        description="Wait after resume before rescanning the USB bus.",
    )
    reconnect_delay: Annotated[float, Field(ge=0)] = Field(
        default=1.0,
        description="Wait after the rescan before restoring lighting.",
    )
    drain_poll_interval: Annotated[float, Field(gt=0)] = Field(
        default=0.1,
        description="Poll period while waiting for a device queue to drain on exit.",
    )
    drain_max_polls: Annotated[int, Field(ge=0)] = Field(
        default=20,
        description="Maximum number of drain polls per device on exit.",
    )


class LoggingSettings(BaseModel):
    """Logging configuration.

    When ``file`` is set, logs are also written to a rotating file
    (size-based rotation, ``backup_count`` generations kept).  When
    ``None``, logs go to stderr only.

    ``format`` selects ``"json"`` (one object per line, for journald
    or container log collectors) or ``"text"`` (timestamped lines for a
    terminal).
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Root log level.",
    )
    format: Literal["json", "text"] = Field(
        default="text",
        description="Log output format.",
    )
    file: str | None = Field(
        default=None,
        description="Optional log file path. ``None`` means stderr only.",
    )
    max_file_size_mb: Annotated[int, Field(ge=1)] = Field(
        default=10,
        description="Maximum log file size in megabytes before rotation.",
    )
    backup_count: Annotated[int, Field(ge=0)] = Field(
        default=3,
        description="Number of rotated log files to keep.",
    )


# -------------------------------------------------------------------
# Root settings
# -------------------------------------------------------------------


class Settings(BaseSettings):
    """Root settings for panelsync.

    Example ``.env``::

        PANELSYNC_BROKER__ENABLED=true
        PANELSYNC_BROKER__HOST=broker.local
        PANELSYNC_POWER__MONITOR=linux
        PANELSYNC_LOGGING__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="PANELSYNC_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    broker: BrokerSettings = Field(
        default_factory=BrokerSettings,
        description="MQTT broker connection settings.",
    )
    devices: DeviceSettings = Field(
        default_factory=DeviceSettings,
        description="Hot-plug and device queue settings.",
    )
    power: PowerSettings = Field(
        default_factory=PowerSettings,
        description="Suspend/resume detection settings.",
    )
    logging: LoggingSettings = Field(
        default_factory=LoggingSettings,
        description="Logging configuration.",
    )
