"""panelsync.

Keeps USB control panels in sync across hot-plug and power transitions,
and mirrors their status to an MQTT broker.
"""

from importlib.metadata import PackageNotFoundError, version

from panelsync._app import App
from panelsync._coordinator import PowerEventCoordinator, SerialExecutor
from panelsync._debounce import Debouncer
from panelsync._devices import (
    KNOWN_DEVICE_TYPES,
    PCPANEL_MINI,
    PCPANEL_PRO,
    PCPANEL_RGB,
    DeviceConnection,
    DeviceIdentity,
    DeviceType,
    match_device_type,
)
from panelsync._errors import (
    BrokerConnectFailure,
    DeviceOpenFailure,
    ErrorPayload,
    InvalidArgument,
    PanelSyncError,
    SerializationFailure,
    SubprocessFailure,
    build_error_payload,
)
from panelsync._events import (
    BrokerStatus,
    DeviceConnected,
    DeviceDisconnected,
    DeviceOpenFailed,
    EventBus,
    SettingsChanged,
)
from panelsync._gateway import (
    AiomqttConnection,
    BrokerConnection,
    InboundMessage,
    MessagingGateway,
    decode_model,
    decode_text,
    topic_filter_regex,
)
from panelsync._hid import HidapiBackend, HidDeviceInfo, HidHandle, HidPort, HotplugWatcher
from panelsync._lighting import ALL_OFF, LightingConfig, LightingEncoder, NullLightingEncoder
from panelsync._logging import JsonFormatter, configure_logging
from panelsync._power import (
    JournalLineParser,
    LinuxPowerMonitor,
    NullPowerMonitor,
    PowerEvent,
    PowerEventSource,
    SleepSignalParser,
    build_power_source,
)
from panelsync._registry import DeviceRegistry
from panelsync._settings import (
    DISABLED_BROKER,
    BrokerSettings,
    DeviceSettings,
    LoggingSettings,
    PowerSettings,
    Settings,
)
from panelsync._status import DeviceInfo, StatusMirror
from panelsync._worker import DeviceWorker

try:
    __version__ = version("panelsync")
except PackageNotFoundError:
    # Editable checkouts without installed metadata
    __version__ = "0.0.0+unknown"

__all__ = [
    # Version
    "__version__",
    # App
    "App",
    # Devices
    "KNOWN_DEVICE_TYPES",
    "PCPANEL_MINI",
    "PCPANEL_PRO",
    "PCPANEL_RGB",
    "DeviceConnection",
    "DeviceIdentity",
    "DeviceRegistry",
    "DeviceType",
    "DeviceWorker",
    "match_device_type",
    # HID
    "HidDeviceInfo",
    "HidHandle",
    "HidPort",
    "HidapiBackend",
    "HotplugWatcher",
    # Lighting
    "ALL_OFF",
    "LightingConfig",
    "LightingEncoder",
    "NullLightingEncoder",
    # Power
    "JournalLineParser",
    "LinuxPowerMonitor",
    "NullPowerMonitor",
    "PowerEvent",
    "PowerEventCoordinator",
    "PowerEventSource",
    "SerialExecutor",
    "SleepSignalParser",
    "build_power_source",
    # Messaging
    "AiomqttConnection",
    "BrokerConnection",
    "Debouncer",
    "DeviceInfo",
    "InboundMessage",
    "MessagingGateway",
    "StatusMirror",
    "decode_model",
    "decode_text",
    "topic_filter_regex",
    # Events
    "BrokerStatus",
    "DeviceConnected",
    "DeviceDisconnected",
    "DeviceOpenFailed",
    "EventBus",
    "SettingsChanged",
    # Errors
    "BrokerConnectFailure",
    "DeviceOpenFailure",
    "ErrorPayload",
    "InvalidArgument",
    "PanelSyncError",
    "SerializationFailure",
    "SubprocessFailure",
    "build_error_payload",
    # Logging
    "JsonFormatter",
    "configure_logging",
    # Settings
    "DISABLED_BROKER",
    "BrokerSettings",
    "DeviceSettings",
    "LoggingSettings",
    "PowerSettings",
    "Settings",
]
