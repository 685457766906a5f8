"""Connection manager interface, its configuration, per-connection info and statistics."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from flare_im.common import (
    Connection,
    ConnectionEvent,
    ConnectionState,
    Platform,
    ProtoMessage,
    TransportProtocol,
)

ConnectionEventCallback = Callable[[str, ConnectionEvent], None]
"""Called with a user id and the event that happened to one of the user's connections."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ServerConnectionManagerConfig:
    """Limits and timing for a connection manager, durations in milliseconds."""

    max_connections: int = 1_000_000
    connection_timeout_ms: int = 300_000
    heartbeat_interval_ms: int = 30_000
    heartbeat_timeout_ms: int = 60_000
    max_missed_heartbeats: int = 3
    cleanup_interval_ms: int = 60_000
    enable_auto_reconnect: bool = True
    max_reconnect_attempts: int = 5
    reconnect_delay_ms: int = 1_000


@dataclass
class ServerConnectionInfo:
    """Bookkeeping for one client connection."""

    id: str
    user_id: str
    session_id: str
    remote_addr: str
    platform: Platform
    protocol: TransportProtocol
    state: ConnectionState = ConnectionState.CONNECTED
    connected_at: datetime = field(default_factory=_utcnow)
    last_activity: datetime = field(default_factory=_utcnow)
    last_heartbeat: datetime = field(default_factory=_utcnow)
    heartbeat_count: int = 0
    missed_heartbeats: int = 0
    reconnect_count: int = 0
    metadata: dict[str, str] = field(default_factory=dict)

    def is_healthy(self, config: ServerConnectionManagerConfig) -> bool:
        """Return whether the last heartbeat is recent and few heartbeats were missed."""
        since_heartbeat = _utcnow() - self.last_heartbeat
        timeout = timedelta(milliseconds=config.heartbeat_timeout_ms)
        return since_heartbeat < timeout and self.missed_heartbeats < config.max_missed_heartbeats

    def update_heartbeat(self) -> None:
        """Record a heartbeat now and reset the missed counter."""
        now = _utcnow()
        self.last_heartbeat = now
        self.last_activity = now
        self.heartbeat_count += 1
        self.missed_heartbeats = 0

    def mark_heartbeat_missed(self) -> None:
        """Count one missed heartbeat."""
        self.missed_heartbeats += 1

    def update_activity(self) -> None:
        """Record activity now."""
        self.last_activity = _utcnow()


@dataclass
class ServerConnectionManagerStats:
    """Counters kept by a connection manager."""

    total_connections: int = 0
    active_connections: int = 0
    disconnected_connections: int = 0
    online_users: int = 0
    total_messages: int = 0
    total_bytes: int = 0
    last_updated: datetime = field(default_factory=_utcnow)


class ServerConnectionManager(ABC):
    """Manages client connections: lifecycle, heartbeats and message delivery."""

    @abstractmethod
    async def start(self) -> None:
        """Start background monitoring."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop background monitoring."""

    @abstractmethod
    async def add_connection(self, connection: Connection, user_id: str, session_id: str) -> None:
        """Register a connection for a user's session."""

    @abstractmethod
    async def remove_connection(self, user_id: str, session_id: str) -> None:
        """Remove a session's connection, if present."""

    @abstractmethod
    async def get_connection(self, user_id: str, session_id: str) -> Connection | None:
        """Return the session's connection, or None."""

    @abstractmethod
    async def get_user_connections(self, user_id: str) -> list[Connection]:
        """Return all of a user's connections."""

    @abstractmethod
    async def is_user_online(self, user_id: str) -> bool:
        """Return whether the user has any connection."""

    @abstractmethod
    async def get_online_user_count(self) -> int:
        """Return the number of users with a connection."""

    @abstractmethod
    async def get_connection_count(self) -> int:
        """Return the number of connections."""

    @abstractmethod
    async def send_message_to_user(self, user_id: str, message: ProtoMessage) -> int:
        """Send to every connection of a user; return how many succeeded."""

    @abstractmethod
    async def broadcast_message(self, message: ProtoMessage) -> int:
        """Send to every connection; return how many succeeded."""

    @abstractmethod
    async def update_heartbeat(self, user_id: str, session_id: str) -> None:
        """Record a heartbeat for the session."""

    @abstractmethod
    async def cleanup_expired_connections(self, timeout_secs: int) -> int:
        """Remove connections idle longer than the timeout; return how many."""

    @abstractmethod
    async def force_disconnect_user(self, user_id: str, reason: str | None) -> int:
        """Close and remove all of a user's connections; return how many closed."""

    @abstractmethod
    async def get_connection_info(
        self, user_id: str, session_id: str
    ) -> ServerConnectionInfo | None:
        """Return the session's connection info, or None."""

    @abstractmethod
    async def get_user_connection_infos(self, user_id: str) -> list[ServerConnectionInfo]:
        """Return info for all of a user's connections."""

    @abstractmethod
    async def get_stats(self) -> ServerConnectionManagerStats:
        """Return a snapshot of the counters."""

    @abstractmethod
    async def set_connection_event_callback(self, callback: ConnectionEventCallback) -> None:
        """Set the function called on connection events."""