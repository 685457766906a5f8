"""In-memory connection manager for single-node deployments."""

from __future__ import annotations

import asyncio
import contextlib
import copy
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from flare_im.common import (
    Connection,
    ConnectionEvent,
    ConnectionState,
    EventKind,
    ProtoMessage,
    ResourceExhaustedError,
    TransportProtocol,
)
from flare_im.conn_manager import (
    ConnectionEventCallback,
    ServerConnectionInfo,
    ServerConnectionManager,
    ServerConnectionManagerConfig,
    ServerConnectionManagerStats,
    _utcnow,
)

logger = logging.getLogger(__name__)

_PROTOCOLS = {
    "QUIC": TransportProtocol.QUIC,
    "WebSocket": TransportProtocol.WEBSOCKET,
}


def _connection_key(user_id: str, session_id: str) -> str:
    return f"{user_id}:{session_id}"


@dataclass
class _ConnectionRecord:
    connection: Connection
    info: ServerConnectionInfo
    last_activity: float
    clock: Callable[[], float] = field(repr=False)

    @classmethod
    def create(
        cls,
        connection: Connection,
        user_id: str,
        session_id: str,
        clock: Callable[[], float],
    ) -> _ConnectionRecord:
        info = ServerConnectionInfo(
            id=str(connection.id),
            user_id=user_id,
            session_id=session_id,
            remote_addr=str(connection.remote_addr),
            platform=connection.platform,
            protocol=_PROTOCOLS.get(connection.protocol, TransportProtocol.WEBSOCKET),
        )
        return cls(connection, info, clock(), clock)

    def update_activity(self) -> None:
        self.last_activity = self.clock()
        self.info.update_activity()

    def update_heartbeat(self) -> None:
        self.info.update_heartbeat()
        self.update_activity()

    def is_expired(self, timeout_secs: int) -> bool:
        return int(self.clock() - self.last_activity) > timeout_secs


class MemoryServerConnectionManager(ServerConnectionManager):
    """Keeps all connections in process memory, with heartbeat and cleanup loops."""

    def __init__(
        self,
        config: ServerConnectionManagerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config if config is not None else ServerConnectionManagerConfig()
        self._clock = clock
        self._connections: dict[str, _ConnectionRecord] = {}
        self._user_sessions: dict[str, set[str]] = {}
        self._stats = ServerConnectionManagerStats()
        self._event_callback: ConnectionEventCallback | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._cleanup_task: asyncio.Task[None] | None = None
        self._running = False

    @classmethod
    def new_default(cls) -> MemoryServerConnectionManager:
        """Create a manager with the default configuration."""
        return cls(ServerConnectionManagerConfig())

    @property
    def config(self) -> ServerConnectionManagerConfig:
        """The manager's configuration."""
        return self._config

    @property
    def running(self) -> bool:
        """Whether the background loops are active."""
        return self._running

    def _trigger_event(self, user_id: str, event: ConnectionEvent) -> None:
        if self._event_callback is not None:
            self._event_callback(user_id, event)

    def _update_stats(self) -> None:
        stats = self._stats
        stats.total_connections = len(self._connections)
        stats.online_users = len(self._user_sessions)
        stats.last_updated = _utcnow()
        states = [record.info.state for record in self._connections.values()]
        stats.active_connections = states.count(ConnectionState.CONNECTED)
        stats.disconnected_connections = states.count(ConnectionState.DISCONNECTED)

    def _forget_session(self, user_id: str, session_id: str) -> None:
        sessions = self._user_sessions.get(user_id)
        if sessions is not None:
            sessions.discard(session_id)
            if not sessions:
                del self._user_sessions[user_id]

    def _remove_expired(self, timeout_secs: int) -> list[str]:
        expired = [key for key, record in self._connections.items() if record.is_expired(timeout_secs)]
        for key in expired:
            record = self._connections.pop(key)
            self._forget_session(record.info.user_id, record.info.session_id)
            logger.debug("removed expired connection %s", key)
        return expired

    def _check_heartbeats(self) -> None:
        for key, record in list(self._connections.items()):
            if record.info.is_healthy(self._config):
                continue
            record.info.mark_heartbeat_missed()
            if record.info.missed_heartbeats >= self._config.max_missed_heartbeats:
                record.info.state = ConnectionState.DISCONNECTED
                self._trigger_event(record.info.user_id, ConnectionEvent(EventKind.DISCONNECTED))
                logger.debug("heartbeat timed out, marked disconnected: %s", key)

    async def _heartbeat_loop(self) -> None:
        interval = self._config.heartbeat_interval_ms / 1000
        while self._running:
            self._check_heartbeats()
            await asyncio.sleep(interval)

    async def _cleanup_loop(self) -> None:
        interval = self._config.cleanup_interval_ms / 1000
        while self._running:
            self._remove_expired(self._config.connection_timeout_ms // 1000)
            await asyncio.sleep(interval)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info("memory connection manager started")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        for task in (self._heartbeat_task, self._cleanup_task):
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._heartbeat_task = None
        self._cleanup_task = None
        logger.info("memory connection manager stopped")

    async def add_connection(self, connection: Connection, user_id: str, session_id: str) -> None:
        key = _connection_key(user_id, session_id)
        current = len(self._connections)
        limit = self._config.max_connections
        if current >= limit:
            message = f"connection limit reached: current={current}, max={limit}"
            logger.error(message)
            raise ResourceExhaustedError(message)
        self._connections[key] = _ConnectionRecord.create(
            connection, user_id, session_id, self._clock
        )
        self._user_sessions.setdefault(user_id, set()).add(session_id)
        self._update_stats()
        self._trigger_event(user_id, ConnectionEvent(EventKind.CONNECTED))
        logger.info("added connection %s", key)

    async def remove_connection(self, user_id: str, session_id: str) -> None:
        key = _connection_key(user_id, session_id)
        if self._connections.pop(key, None) is None:
            return
        self._forget_session(user_id, session_id)
        self._update_stats()
        self._trigger_event(user_id, ConnectionEvent(EventKind.DISCONNECTED))
        logger.debug("removed connection %s", key)

    async def get_connection(self, user_id: str, session_id: str) -> Connection | None:
        record = self._connections.get(_connection_key(user_id, session_id))
        if record is None:
            return None
        record.update_activity()
        return record.connection

    def _user_records(self, user_id: str) -> list[_ConnectionRecord]:
        records = (
            self._connections.get(_connection_key(user_id, session_id))
            for session_id in self._user_sessions.get(user_id, ())
        )
        return [record for record in records if record is not None]

    async def get_user_connections(self, user_id: str) -> list[Connection]:
        return [record.connection for record in self._user_records(user_id)]

    async def is_user_online(self, user_id: str) -> bool:
        return user_id in self._user_sessions

    async def get_online_user_count(self) -> int:
        return len(self._user_sessions)

    async def get_connection_count(self) -> int:
        return len(self._connections)

    async def _deliver(self, connections: list[Connection], message: ProtoMessage) -> int:
        delivered = 0
        for connection in connections:
            try:
                await connection.send(message)
            except Exception as exc:  # noqa: BLE001 - a failing peer must not stop delivery
                logger.warning("failed to send message: %s", exc)
                continue
            delivered += 1
            self._stats.total_messages += 1
            self._stats.total_bytes += len(message.payload)
        return delivered

    async def send_message_to_user(self, user_id: str, message: ProtoMessage) -> int:
        return await self._deliver(await self.get_user_connections(user_id), message)

    async def broadcast_message(self, message: ProtoMessage) -> int:
        connections = [record.connection for record in self._connections.values()]
        return await self._deliver(connections, message)

    async def update_heartbeat(self, user_id: str, session_id: str) -> None:
        key = _connection_key(user_id, session_id)
        record = self._connections.get(key)
        if record is not None:
            record.update_heartbeat()
            logger.debug("heartbeat updated: %s", key)

    async def cleanup_expired_connections(self, timeout_secs: int) -> int:
        removed = len(self._remove_expired(timeout_secs))
        self._update_stats()
        logger.info("cleaned up %d expired connections", removed)
        return removed

    async def force_disconnect_user(self, user_id: str, reason: str | None) -> int:
        closed = 0
        for connection in await self.get_user_connections(user_id):
            try:
                await connection.close()
            except Exception as exc:  # noqa: BLE001 - keep closing the others
                logger.warning("failed to close connection: %s", exc)
                continue
            closed += 1
        prefix = f"{user_id}:"
        for key in [key for key in self._connections if key.startswith(prefix)]:
            del self._connections[key]
        self._user_sessions.pop(user_id, None)
        self._update_stats()
        self._trigger_event(user_id, ConnectionEvent(EventKind.DISCONNECTED))
        logger.info("force-disconnected %d connections of user %s (%s)", closed, user_id, reason)
        return closed

    async def get_connection_info(
        self, user_id: str, session_id: str
    ) -> ServerConnectionInfo | None:
        record = self._connections.get(_connection_key(user_id, session_id))
        return copy.deepcopy(record.info) if record is not None else None

    async def get_user_connection_infos(self, user_id: str) -> list[ServerConnectionInfo]:
        return [copy.deepcopy(record.info) for record in self._user_records(user_id)]

    async def get_stats(self) -> ServerConnectionManagerStats:
        return copy.deepcopy(self._stats)

    async def set_connection_event_callback(self, callback: ConnectionEventCallback) -> None:
        self._event_callback = callback