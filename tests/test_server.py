import asyncio

import pytest

from flare_im.common import (
    Connection,
    EventKind,
    InvalidConfigurationError,
    Platform,
    ProtoMessage,
    ProtocolSelection,
    TransportProtocol,
)
from flare_im.config import ServerConfig
from flare_im.handlers import DefaultEventHandler, JwtAuthHandler, MessageHandler
from flare_im.server import FlareIMServer, FlareIMServerBuilder


class FakeConnection(Connection):
    def __init__(self, conn_id, protocol="WebSocket"):
        self.id = conn_id
        self.remote_addr = "127.0.0.1:9999"
        self.platform = Platform.WEB
        self.protocol = protocol
        self.sent = []
        self.closed = False

    async def send(self, message):
        self.sent.append(message)

    async def close(self):
        self.closed = True


class RecordingMessageHandler(MessageHandler):
    def __init__(self):
        self.calls = []

    async def handle_message(self, user_id, message):
        self.calls.append(("message", user_id))
        return ProtoMessage.create("handled", message.payload)

    async def handle_user_connect(self, user_id, session_id, platform):
        self.calls.append(("connect", user_id, session_id, platform))

    async def handle_user_disconnect(self, user_id, session_id):
        self.calls.append(("disconnect", user_id, session_id))

    async def handle_heartbeat(self, user_id, session_id):
        self.calls.append(("heartbeat", user_id, session_id))


def make_listener(log, name):
    async def run(config, manager, center):
        log.append((name, config.bind_addr))
        await asyncio.Event().wait()

    def factory(config, manager, center):
        return run(config, manager, center)

    return factory


def failing_factory(config, manager, center):
    raise OSError("bind failed")


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


def test_builder_websocket_only_sets_flags():
    server = FlareIMServerBuilder().websocket_only().build()
    protocol = server.config.protocol
    assert protocol.selection is ProtocolSelection.WEBSOCKET_ONLY
    assert protocol.websocket.enabled is True
    assert protocol.quic.enabled is False


def test_builder_quic_only_and_auto():
    quic = FlareIMServerBuilder().quic_only().build().config.protocol
    assert (quic.selection, quic.websocket.enabled, quic.quic.enabled) == (
        ProtocolSelection.QUIC_ONLY,
        False,
        True,
    )
    auto = FlareIMServerBuilder().auto_protocol().build().config.protocol
    assert (auto.selection, auto.websocket.enabled, auto.quic.enabled) == (
        ProtocolSelection.AUTO,
        True,
        True,
    )


def test_builder_max_connections_reaches_manager_only():
    server = FlareIMServerBuilder().max_connections(7).build()
    assert server.connection_manager.config.max_connections == 7
    assert server.config.protocol.websocket.max_connections == ServerConfig().protocol.websocket.max_connections


def test_builder_addresses_tls_and_alpn():
    server = (
        FlareIMServerBuilder()
        .websocket_addr(("127.0.0.1", 5000))
        .quic_addr("127.0.0.1:5010")
        .websocket_tls("ws.crt", "ws.key")
        .quic_tls("q.crt", "q.key")
        .quic_alpn([b"proto"])
        .enable_quic_0rtt(False)
        .log_level("debug")
        .enable_auth(True)
        .build()
    )
    cfg = server.config
    assert cfg.protocol.websocket.bind_addr == "127.0.0.1:5000"
    assert cfg.protocol.quic.bind_addr == "127.0.0.1:5010"
    assert (cfg.protocol.websocket.enable_tls, cfg.protocol.websocket.cert_path) == (True, "ws.crt")
    assert (cfg.protocol.quic.cert_path, cfg.protocol.quic.key_path) == ("q.crt", "q.key")
    assert cfg.protocol.quic.alpn_protocols == [b"proto"]
    assert cfg.protocol.quic.enable_0rtt is False
    assert cfg.logging.level == "debug"
    assert cfg.auth.enabled is True


def test_builder_rejects_bad_address():
    with pytest.raises(ValueError):
        FlareIMServerBuilder().websocket_addr("not-an-address")


def test_builder_installs_handlers():
    auth = JwtAuthHandler("secret")
    messages = RecordingMessageHandler()
    events = DefaultEventHandler()
    server = (
        FlareIMServerBuilder()
        .with_auth_handler(auth)
        .with_message_handler(messages)
        .with_event_handler(events)
        .build()
    )
    center = server.message_center
    assert center.auth_handler is auth
    assert center.message_handler is messages
    assert center.event_handler is events
    assert center.connection_manager is server.connection_manager


def test_with_handler_keeps_others():
    messages = RecordingMessageHandler()
    auth = JwtAuthHandler("secret")
    server = FlareIMServer().with_message_handler(messages).with_auth_handler(auth)
    assert server.message_center.message_handler is messages
    assert server.message_center.auth_handler is auth


@pytest.mark.asyncio
async def test_handle_message_ping_returns_pong():
    server = FlareIMServer()
    reply = await server.handle_message("alice", "s1", ProtoMessage.create("ping", b"hi"))
    assert reply.message_type == "pong"
    assert reply.payload == b"hi"


@pytest.mark.asyncio
async def test_handle_message_auth_with_jwt_handler():
    server = FlareIMServer().with_auth_handler(JwtAuthHandler("secret"))
    ok = await server.handle_message("x", "s", ProtoMessage.create("auth", b'"jwt_bob"'))
    assert (ok.message_type, ok.payload) == ("auth_success", b"bob")
    bad = await server.handle_message("x", "s", ProtoMessage.create("auth", b"other"))
    assert bad.message_type == "auth_failed"


@pytest.mark.asyncio
async def test_start_both_runs_both_listeners_and_stop_cancels():
    log = []
    server = FlareIMServer(
        listeners={
            TransportProtocol.WEBSOCKET: make_listener(log, "ws"),
            TransportProtocol.QUIC: make_listener(log, "quic"),
        }
    )
    await server.start()
    await settle()
    assert server.running is True
    assert server.connection_manager.running is True
    assert set(server.active_transports) == {TransportProtocol.WEBSOCKET, TransportProtocol.QUIC}
    assert sorted(name for name, _ in log) == ["quic", "ws"]
    await server.stop()
    assert server.running is False
    assert server.connection_manager.running is False


@pytest.mark.asyncio
async def test_start_is_idempotent():
    log = []
    server = (
        FlareIMServerBuilder()
        .websocket_only()
        .with_listener(TransportProtocol.WEBSOCKET, make_listener(log, "ws"))
        .build()
    )
    await server.start()
    await server.start()
    await settle()
    assert log == [("ws", server.config.protocol.websocket.bind_addr)]
    await server.stop()


@pytest.mark.asyncio
async def test_auto_falls_back_to_websocket():
    log = []
    server = FlareIMServer(
        FlareIMServerBuilder().auto_protocol().build().config,
        listeners={
            TransportProtocol.QUIC: failing_factory,
            TransportProtocol.WEBSOCKET: make_listener(log, "ws"),
        },
    )
    await server.start()
    await settle()
    assert server.active_transports == (TransportProtocol.WEBSOCKET,)
    assert [name for name, _ in log] == ["ws"]
    await server.stop()


@pytest.mark.asyncio
async def test_auto_without_fallback_raises_quic_error():
    config = FlareIMServerBuilder().auto_protocol().enable_websocket(False).build().config
    server = FlareIMServer(config, listeners={TransportProtocol.QUIC: failing_factory})
    with pytest.raises(OSError):
        await server.start()
    assert server.running is False


@pytest.mark.asyncio
async def test_auto_with_nothing_enabled_is_invalid():
    server = (
        FlareIMServerBuilder()
        .auto_protocol()
        .enable_websocket(False)
        .enable_quic(False)
        .build()
    )
    with pytest.raises(InvalidConfigurationError):
        await server.start()


@pytest.mark.asyncio
async def test_connection_events_reach_message_handler():
    messages = RecordingMessageHandler()
    events = DefaultEventHandler()
    server = FlareIMServerBuilder().with_message_handler(messages).with_event_handler(events).build()
    await server.start()
    await server.connection_manager.add_connection(FakeConnection("c1"), "alice", "s1")
    await settle()
    assert ("connect", "alice", "session", Platform.UNKNOWN) in messages.calls
    await server.connection_manager.remove_connection("alice", "s1")
    await settle()
    assert ("disconnect", "alice", "session") in messages.calls
    assert events.event_count == 2
    await server.stop()


@pytest.mark.asyncio
async def test_send_broadcast_and_force_disconnect():
    server = FlareIMServer()
    await server.start()
    a1, a2, b1 = FakeConnection("a1"), FakeConnection("a2", "QUIC"), FakeConnection("b1")
    manager = server.connection_manager
    await manager.add_connection(a1, "alice", "s1")
    await manager.add_connection(a2, "alice", "s2")
    await manager.add_connection(b1, "bob", "s1")
    message = ProtoMessage.create("message", b"abc")

    assert await server.send_message_to_user("alice", message) == 2
    assert a1.sent == [message] and b1.sent == []
    assert await server.broadcast_message(message) == 3

    stats = await server.get_stats()
    assert stats.total_connections == 3
    assert stats.online_users == 2
    assert stats.total_messages == 5
    assert stats.total_bytes == 5 * len(message.payload)

    assert await server.force_disconnect_user("alice", "kicked") == 2
    assert a1.closed and a2.closed and not b1.closed
    assert await manager.is_user_online("alice") is False
    assert await manager.get_connection_count() == 1
    await server.stop()


@pytest.mark.asyncio
async def test_heartbeat_message_acknowledged_and_handled():
    messages = RecordingMessageHandler()
    server = FlareIMServer().with_message_handler(messages)
    reply = await server.handle_message("carol", "s9", ProtoMessage.create("heartbeat"))
    assert reply.message_type == "heartbeat_ack"
    assert reply.payload == b""
    assert messages.calls == [("heartbeat", "carol", "s9")]
    event_kinds = [k for k in EventKind]
    assert EventKind.HEARTBEAT in event_kinds