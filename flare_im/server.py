"""The messaging server: ties the connection manager, the message center and the listeners together."""

from __future__ import annotations

import asyncio
import contextlib
import copy
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Union

from flare_im.common import (
    ConnectionEvent,
    EventKind,
    InvalidConfigurationError,
    Platform,
    ProtoMessage,
    ProtocolSelection,
    TransportProtocol,
)
from flare_im.config import (
    QuicServerConfig,
    ServerConfig,
    WebSocketServerConfig,
    _format_socket_addr,
)
from flare_im.conn_manager import ServerConnectionManagerConfig, ServerConnectionManagerStats
from flare_im.handlers import AuthHandler, EventHandler, MessageHandler
from flare_im.memory import MemoryServerConnectionManager
from flare_im.message_center import MessageProcessingCenter

logger = logging.getLogger(__name__)

ListenerFactory = Callable[
    [
        Union[WebSocketServerConfig, QuicServerConfig],
        MemoryServerConnectionManager,
        MessageProcessingCenter,
    ],
    Awaitable[None],
]
"""Creates a transport listener.

It is called when the server starts; an error raised by the call itself
means the transport could not be started. The awaitable it returns runs in
the background until the server stops.
"""


def _manager_config(config: ServerConfig) -> ServerConnectionManagerConfig:
    source = config.connection_manager
    return ServerConnectionManagerConfig(
        max_connections=source.max_connections,
        connection_timeout_ms=source.connection_timeout_ms,
        heartbeat_interval_ms=source.heartbeat_interval_ms,
        heartbeat_timeout_ms=source.heartbeat_timeout_ms,
        max_missed_heartbeats=source.max_missed_heartbeats,
        cleanup_interval_ms=source.cleanup_interval_ms,
        enable_auto_reconnect=source.enable_auto_reconnect,
        max_reconnect_attempts=source.max_reconnect_attempts,
        reconnect_delay_ms=source.reconnect_delay_ms,
    )


class FlareIMServer:
    """A server offering WebSocket and QUIC transports over one connection manager."""

    def __init__(
        self,
        config: ServerConfig | None = None,
        *,
        listeners: Mapping[TransportProtocol, ListenerFactory] | None = None,
    ) -> None:
        self._config = config if config is not None else ServerConfig()
        self._listeners: dict[TransportProtocol, ListenerFactory] = dict(listeners or {})
        self._connection_manager = MemoryServerConnectionManager(_manager_config(self._config))
        self._message_center = MessageProcessingCenter(self._connection_manager)
        self._running = False
        self._listener_tasks: list[asyncio.Task[None]] = []
        self._event_tasks: set[asyncio.Task[None]] = set()
        self._active_transports: list[TransportProtocol] = []

    @property
    def config(self) -> ServerConfig:
        """The server's configuration."""
        return self._config

    @property
    def running(self) -> bool:
        """Whether the server has been started and not stopped."""
        return self._running

    @property
    def connection_manager(self) -> MemoryServerConnectionManager:
        """The manager holding all client connections."""
        return self._connection_manager

    @property
    def message_center(self) -> MessageProcessingCenter:
        """The center that dispatches incoming messages."""
        return self._message_center

    @property
    def active_transports(self) -> tuple[TransportProtocol, ...]:
        """Transports started by the last call to :meth:`start`."""
        return tuple(self._active_transports)

    def _replace_center(
        self,
        auth_handler: AuthHandler | None,
        message_handler: MessageHandler | None,
        event_handler: EventHandler | None,
    ) -> FlareIMServer:
        self._message_center = MessageProcessingCenter(
            self._connection_manager, auth_handler, message_handler, event_handler
        )
        return self

    def with_auth_handler(self, handler: AuthHandler) -> FlareIMServer:
        """Use the given token validator; return this server."""
        center = self._message_center
        return self._replace_center(handler, center.message_handler, center.event_handler)

    def with_message_handler(self, handler: MessageHandler) -> FlareIMServer:
        """Use the given message handler; return this server."""
        center = self._message_center
        return self._replace_center(center.auth_handler, handler, center.event_handler)

    def with_event_handler(self, handler: EventHandler) -> FlareIMServer:
        """Use the given event handler; return this server."""
        center = self._message_center
        return self._replace_center(center.auth_handler, center.message_handler, handler)

    async def start(self) -> None:
        """Start the connection manager and the listeners the protocol selection asks for."""
        if self._running:
            return
        self._running = True
        self._active_transports.clear()
        await self._connection_manager.start()
        await self._setup_connection_event_callback()
        try:
            self._start_selected_transports()
        except BaseException:
            await self._shutdown()
            raise
        self._log_startup_info()

    def _start_selected_transports(self) -> None:
        protocol = self._config.protocol
        selection = protocol.selection
        if selection is ProtocolSelection.WEBSOCKET_ONLY:
            self._start_listener(TransportProtocol.WEBSOCKET)
            logger.info("server started (WebSocket only)")
        elif selection is ProtocolSelection.QUIC_ONLY:
            self._start_listener(TransportProtocol.QUIC)
            logger.info("server started (QUIC only)")
        elif selection is ProtocolSelection.BOTH:
            if protocol.websocket.enabled:
                self._start_listener(TransportProtocol.WEBSOCKET)
            if protocol.quic.enabled:
                self._start_listener(TransportProtocol.QUIC)
            logger.info("server started (WebSocket + QUIC)")
        elif protocol.quic.enabled:
            try:
                self._start_listener(TransportProtocol.QUIC)
            except Exception as exc:  # noqa: BLE001 - any failure triggers the fallback
                logger.warning("QUIC failed to start, falling back to WebSocket: %s", exc)
                if not protocol.websocket.enabled:
                    raise
                self._start_listener(TransportProtocol.WEBSOCKET)
                logger.info("server started (auto: WebSocket)")
            else:
                logger.info("server started (auto: QUIC)")
        elif protocol.websocket.enabled:
            self._start_listener(TransportProtocol.WEBSOCKET)
            logger.info("server started (auto: WebSocket)")
        else:
            raise InvalidConfigurationError("no protocol available in auto mode")

    def _start_listener(self, transport: TransportProtocol) -> None:
        if transport is TransportProtocol.WEBSOCKET:
            listener_config: Any = copy.deepcopy(self._config.protocol.websocket)
        else:
            listener_config = copy.deepcopy(self._config.protocol.quic)
        factory = self._listeners.get(transport)
        if factory is None:
            logger.warning("no %s listener registered; transport not served", transport.value)
        else:
            awaitable = factory(listener_config, self._connection_manager, self._message_center)
            task = asyncio.get_running_loop().create_task(self._run_listener(transport, awaitable))
            self._listener_tasks.append(task)
        self._active_transports.append(transport)

    @staticmethod
    async def _run_listener(transport: TransportProtocol, awaitable: Awaitable[None]) -> None:
        try:
            await awaitable
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - a failed listener is reported, not fatal
            logger.error("%s server failed: %s", transport.value, exc)

    async def _setup_connection_event_callback(self) -> None:
        center = self._message_center
        loop = asyncio.get_running_loop()

        def on_event(user_id: str, event: ConnectionEvent) -> None:
            task = loop.create_task(self._dispatch_event(center, user_id, event))
            self._event_tasks.add(task)
            task.add_done_callback(self._event_tasks.discard)

        await self._connection_manager.set_connection_event_callback(on_event)

    @staticmethod
    async def _dispatch_event(
        center: MessageProcessingCenter, user_id: str, event: ConnectionEvent
    ) -> None:
        event_handler = center.event_handler
        message_handler = center.message_handler
        if event_handler is not None:
            try:
                await event_handler.handle_connection_event(user_id, event)
            except Exception as exc:  # noqa: BLE001
                logger.error("event handling failed: %s", exc)
        if message_handler is None:
            return
        try:
            if event.kind is EventKind.CONNECTED:
                await message_handler.handle_user_connect(user_id, "session", Platform.UNKNOWN)
            elif event.kind is EventKind.DISCONNECTED:
                await message_handler.handle_user_disconnect(user_id, "session")
            elif event.kind is EventKind.HEARTBEAT:
                await message_handler.handle_heartbeat(user_id, "session")
        except Exception as exc:  # noqa: BLE001
            logger.error("%s handling failed: %s", event.kind.value, exc)

    async def _shutdown(self) -> None:
        self._running = False
        tasks, self._listener_tasks = self._listener_tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._connection_manager.stop()

    async def stop(self) -> None:
        """Cancel the listeners and stop the connection manager."""
        if not self._running:
            return
        await self._shutdown()
        logger.info("server stopped")

    async def get_stats(self) -> ServerConnectionManagerStats:
        """Return the connection manager's counters."""
        return await self._connection_manager.get_stats()

    async def handle_message(
        self, user_id: str, session_id: str, message: ProtoMessage
    ) -> ProtoMessage:
        """Process one message from a user's session and return the reply."""
        return await self._message_center.process_message(user_id, session_id, message)

    async def broadcast_message(self, message: ProtoMessage) -> int:
        """Send to every connection; return how many succeeded."""
        return await self._connection_manager.broadcast_message(message)

    async def send_message_to_user(self, user_id: str, message: ProtoMessage) -> int:
        """Send to every connection of a user; return how many succeeded."""
        return await self._connection_manager.send_message_to_user(user_id, message)

    async def force_disconnect_user(self, user_id: str, reason: str | None = None) -> int:
        """Close and remove all of a user's connections; return how many closed."""
        return await self._connection_manager.force_disconnect_user(user_id, reason)

    def _log_startup_info(self) -> None:
        protocol = self._config.protocol
        selection = protocol.selection
        logger.info("protocol selection: %s", selection)
        if selection in (ProtocolSelection.WEBSOCKET_ONLY, ProtocolSelection.BOTH):
            logger.info(
                "WebSocket: %s (enabled: %s)", protocol.websocket.bind_addr, protocol.websocket.enabled
            )
        if selection in (ProtocolSelection.QUIC_ONLY, ProtocolSelection.BOTH):
            logger.info("QUIC: %s (enabled: %s)", protocol.quic.bind_addr, protocol.quic.enabled)
        if selection is ProtocolSelection.AUTO:
            logger.info("auto mode: QUIC preferred, WebSocket fallback")


class FlareIMServerBuilder:
    """Fluent builder for :class:`FlareIMServer`."""

    def __init__(self) -> None:
        self._config = ServerConfig()
        self._auth_handler: AuthHandler | None = None
        self._message_handler: MessageHandler | None = None
        self._event_handler: EventHandler | None = None
        self._listeners: dict[TransportProtocol, ListenerFactory] = {}

    def with_config(self, config: ServerConfig) -> FlareIMServerBuilder:
        self._config = config
        return self

    def with_listener(
        self, transport: TransportProtocol, factory: ListenerFactory
    ) -> FlareIMServerBuilder:
        """Register the listener factory for a transport."""
        self._listeners[transport] = factory
        return self

    def protocol_selection(self, selection: ProtocolSelection) -> FlareIMServerBuilder:
        self._config.protocol.selection = selection
        return self

    def _select(
        self, selection: ProtocolSelection, websocket: bool, quic: bool
    ) -> FlareIMServerBuilder:
        self._config.protocol.selection = selection
        self._config.protocol.websocket.enabled = websocket
        self._config.protocol.quic.enabled = quic
        return self

    def websocket_only(self) -> FlareIMServerBuilder:
        return self._select(ProtocolSelection.WEBSOCKET_ONLY, True, False)

    def quic_only(self) -> FlareIMServerBuilder:
        return self._select(ProtocolSelection.QUIC_ONLY, False, True)

    def both_protocols(self) -> FlareIMServerBuilder:
        return self._select(ProtocolSelection.BOTH, True, True)

    def auto_protocol(self) -> FlareIMServerBuilder:
        return self._select(ProtocolSelection.AUTO, True, True)

    def with_auth_handler(self, handler: AuthHandler) -> FlareIMServerBuilder:
        self._auth_handler = handler
        return self

    def with_message_handler(self, handler: MessageHandler) -> FlareIMServerBuilder:
        self._message_handler = handler
        return self

    def with_event_handler(self, handler: EventHandler) -> FlareIMServerBuilder:
        self._event_handler = handler
        return self

    def websocket_addr(self, addr: Any) -> FlareIMServerBuilder:
        self._config.protocol.websocket.bind_addr = _format_socket_addr(addr)
        return self

    def quic_addr(self, addr: Any) -> FlareIMServerBuilder:
        self._config.protocol.quic.bind_addr = _format_socket_addr(addr)
        return self

    def enable_websocket(self, enabled: bool) -> FlareIMServerBuilder:
        self._config.protocol.websocket.enabled = enabled
        return self

    def enable_quic(self, enabled: bool) -> FlareIMServerBuilder:
        self._config.protocol.quic.enabled = enabled
        return self

    def max_connections(self, max_connections: int) -> FlareIMServerBuilder:
        """Set the connection manager's limit."""
        self._config.connection_manager.max_connections = max_connections
        return self

    def enable_auth(self, enabled: bool) -> FlareIMServerBuilder:
        self._config.auth.enabled = enabled
        return self

    def log_level(self, level: str) -> FlareIMServerBuilder:
        self._config.logging.level = level
        return self

    def websocket_tls(self, cert_path: str, key_path: str) -> FlareIMServerBuilder:
        websocket = self._config.protocol.websocket
        websocket.enable_tls = True
        websocket.cert_path = cert_path
        websocket.key_path = key_path
        return self

    def quic_tls(self, cert_path: str, key_path: str) -> FlareIMServerBuilder:
        self._config.protocol.quic.cert_path = cert_path
        self._config.protocol.quic.key_path = key_path
        return self

    def quic_alpn(self, alpn_protocols: list[bytes]) -> FlareIMServerBuilder:
        self._config.protocol.quic.alpn_protocols = [bytes(p) for p in alpn_protocols]
        return self

    def enable_quic_0rtt(self, enabled: bool) -> FlareIMServerBuilder:
        self._config.protocol.quic.enable_0rtt = enabled
        return self

    def build(self) -> FlareIMServer:
        server = FlareIMServer(self._config, listeners=self._listeners)
        if self._auth_handler is not None:
            server = server.with_auth_handler(self._auth_handler)
        if self._message_handler is not None:
            server = server.with_message_handler(self._message_handler)
        if self._event_handler is not None:
            server = server.with_event_handler(self._event_handler)
        return server