"""Shared types: errors, protocol enums, messages, events and the connection interface."""

from __future__ import annotations

import enum
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field


class FlareError(Exception):
    """Base class for errors raised by the messaging toolkit."""


class InvalidConfigurationError(FlareError):
    """A configuration value is missing, malformed or unusable."""


class ResourceExhaustedError(FlareError):
    """A limit such as the maximum connection count has been reached."""


class Platform(enum.Enum):
    """Client platform a connection originates from."""

    ANDROID = "Android"
    IOS = "IOS"
    WEB = "Web"
    DESKTOP = "Desktop"
    UNKNOWN = "Unknown"


class ConnectionState(enum.Enum):
    """Lifecycle state of a connection."""

    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    RECONNECTING = "Reconnecting"
    FAILED = "Failed"


class TransportProtocol(enum.Enum):
    """Transport a connection runs over."""

    QUIC = "QUIC"
    WEBSOCKET = "WebSocket"


class ProtocolSelection(enum.Enum):
    """Which transports a server listens on."""

    QUIC_ONLY = "QuicOnly"
    WEBSOCKET_ONLY = "WebSocketOnly"
    BOTH = "Both"
    AUTO = "Auto"

    def __str__(self) -> str:
        return self.value


@dataclass
class ProtoMessage:
    """A message exchanged with a client."""

    id: str
    message_type: str
    payload: bytes = b""

    def __post_init__(self) -> None:
        self.payload = bytes(self.payload)

    @classmethod
    def create(cls, message_type: str, payload: bytes = b"") -> ProtoMessage:
        """Build a message with a fresh random identifier."""
        return cls(str(uuid.uuid4()), message_type, payload)


class EventKind(enum.Enum):
    """Kinds of connection events."""

    CONNECTED = "Connected"
    DISCONNECTED = "Disconnected"
    RECONNECTING = "Reconnecting"
    FAILED = "Failed"
    MESSAGE_RECEIVED = "MessageReceived"
    MESSAGE_SENT = "MessageSent"
    HEARTBEAT = "Heartbeat"
    ERROR = "Error"


_MESSAGE_KINDS = frozenset({EventKind.MESSAGE_RECEIVED, EventKind.MESSAGE_SENT})
_REASON_KINDS = frozenset({EventKind.FAILED, EventKind.ERROR})


@dataclass(frozen=True)
class ConnectionEvent:
    """An event in a connection's life, carrying a message or a reason where the kind needs one."""

    kind: EventKind
    message: ProtoMessage | None = field(default=None)
    reason: str | None = field(default=None)

    def __post_init__(self) -> None:
        if self.kind in _MESSAGE_KINDS:
            if self.message is None:
                raise ValueError(f"{self.kind.value} event requires a message")
        elif self.message is not None:
            raise ValueError(f"{self.kind.value} event does not carry a message")
        if self.kind in _REASON_KINDS:
            if self.reason is None:
                raise ValueError(f"{self.kind.value} event requires a reason")
        elif self.reason is not None:
            raise ValueError(f"{self.kind.value} event does not carry a reason")


class Connection(ABC):
    """A live client connection.

    Implementations provide ``id``, ``remote_addr``, ``platform`` and
    ``protocol`` (the transport name, e.g. ``"QUIC"`` or ``"WebSocket"``).
    """

    id: str
    remote_addr: str
    platform: Platform
    protocol: str

    @abstractmethod
    async def send(self, message: ProtoMessage) -> None:
        """Send a message over the connection."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection."""