"""Samsung controller constants."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


@dataclass
class SessionConfig:
    """Tunables of the connection session."""

    ports: tuple[int, ...] = (8002, 8001)
    """Candidate local channel ports, secure port first."""
    client_name: str = "Samsung Controller"
    """Name shown on the TV's pairing prompt."""
    connection_timeout: float = 10.0
    """Seconds allowed for the socket open / handshake round trip."""
    authentication_timeout: float = 30.0
    """Seconds allowed for the TV to confirm the handshake."""
    heartbeat_interval: float = 10.0
    """Seconds between ping messages while authenticated."""
    reconnect_delay: float = 2.0
    """Base delay before a reconnect attempt."""
    initial_reconnect_delay: float = 5.0
    """Delay before the first reconnect attempt of a session."""
    max_reconnect_attempts: int = 3
    """Reconnect attempts before the session gives up and returns to idle."""
    command_retries: int = 1
    """Deferred retries of a local key press sent while unauthenticated."""
    command_retry_delay: float = 2.0
    """Seconds before a deferred key press retry."""
    capability_cooldown: float = 5.0
    """Minimum seconds between two input source resolutions."""
    device_connect_delay: float = 1.0
    """Seconds between a device switch and the connection attempt."""
    discovery_delay: float = 2.0
    """Seconds between start-up and the first device discovery."""


class SessionState(StrEnum):
    """State of the local channel session."""

    IDLE = "IDLE"
    CONNECTING = "CONNECTING"
    HANDSHAKE_SENT = "HANDSHAKE_SENT"
    AUTHENTICATED = "AUTHENTICATED"
    RECONNECTING = "RECONNECTING"


class TimerKind(StrEnum):
    """Named timers owned by the session."""

    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    RECONNECT = "reconnect"
    HEARTBEAT = "heartbeat"
    DISCOVERY_STATUS = "discovery_status"


class SessionEvents(StrEnum):
    """Events emitted by the session."""

    UPDATE = "update"
    AUTHENTICATED = "authenticated"
    DISCONNECTED = "disconnected"
    CONNECTION_FAILED = "connection_failed"
    APPS = "apps"


class ControllerEvents(StrEnum):
    """Events emitted by the controller."""

    UPDATE = "update"


class CredentialKeys(StrEnum):
    """Keys of the credential store."""

    CLOUD_TOKEN = "cloud_token"
    ENDPOINT = "endpoint"
    LOCAL_TOKEN = "local_token"
    LAST_DEVICE_ID = "last_device_id"


def endpoint_key(device_id: str) -> str:
    """Return the credential key holding the cached IP of a device."""
    return f"{CredentialKeys.ENDPOINT}_{device_id}"


@dataclass(frozen=True)
class Device:
    """A TV known to the cloud account."""

    id: str
    name: str = field(compare=False)
    address: str | None = field(default=None, compare=False)
    """Cached network address, if one was ever resolved."""


@dataclass(frozen=True)
class InputSource:
    """An input source of the TV."""

    id: str
    name: str


@dataclass(frozen=True)
class LogEntry:
    """A single line of the user-visible event log."""

    message: str
    timestamp: datetime


SMARTTHINGS_BASE_URL = "https://api.smartthings.com/v1"
CHANNEL_PATH = "/api/v2/channels/samsung.remote.control"

CLIENT_DEVICE_TYPE = "Python"
CLIENT_VERSION = "2.0.0"

DISPLAY_DEVICE_TYPE = "OCF"
DISPLAY_NAME_MARKERS = ("Odyssey", "TV", "OLED")

INPUT_SOURCE_CAPABILITY = "samsungvd.mediaInputSource"
REMOTE_CONTROL_CAPABILITY = "samsungvd.remoteControl"
MAIN_COMPONENT = "main"

STANDARD_INPUT_SOURCES = [
    "AM",
    "CD",
    "FM",
    "HDMI",
    "HDMI1",
    "HDMI2",
    "HDMI3",
    "HDMI4",
    "HDMI5",
    "HDMI6",
    "digitalTv",
    "USB",
    "YouTube",
    "aux",
    "bluetooth",
    "digital",
    "melon",
    "wifi",
    "network",
    "optical",
    "coaxial",
    "analog1",
    "analog2",
    "analog3",
    "phono",
]

# Keys carried by the local channel. Keys outside this set go to the cloud.
LOCAL_KEYS = frozenset(
    {
        "KEY_UP",
        "KEY_DOWN",
        "KEY_LEFT",
        "KEY_RIGHT",
        "KEY_ENTER",
        "KEY_HOME",
        "KEY_MENU",
        "KEY_RETURN",
        "KEY_VOLUP",
        "KEY_VOLDOWN",
        "KEY_MUTE",
    }
)

CLOUD_KEY_MAPPING: dict[str, tuple[str, str, list]] = {
    "KEY_POWER": ("switch", "on", []),
    "KEY_POWEROFF": ("switch", "off", []),
    "KEY_CHANNELUP": ("tvChannel", "channelUp", []),
    "KEY_CHANNELDOWN": ("tvChannel", "channelDown", []),
}
