import json

import pytest

from flare_im.common import InvalidConfigurationError, ProtocolSelection
from flare_im.config import (
    AuthMethod,
    ServerConfig,
    ServerConfigBuilder,
)


def test_defaults_follow_source_values():
    config = ServerConfig()
    assert config.protocol.selection is ProtocolSelection.BOTH
    assert config.protocol.websocket.bind_addr == "127.0.0.1:4000"
    assert config.protocol.quic.bind_addr == "127.0.0.1:4010"
    assert config.protocol.quic.cert_path == "certs/server.crt"
    assert config.protocol.quic.alpn_protocols == [b"flare-core"]
    assert config.connection_manager.max_connections == 100000
    assert config.connection_manager.connection_timeout_ms == 300000
    assert config.auth.method is AuthMethod.ANONYMOUS
    assert config.auth.jwt_expiry_secs == 3600
    assert config.logging.level == "info"


def test_default_alpn_lists_are_independent():
    first = ServerConfig()
    second = ServerConfig()
    first.protocol.quic.alpn_protocols.append(b"other")
    assert second.protocol.quic.alpn_protocols == [b"flare-core"]


def test_to_dict_is_json_compatible_and_round_trips():
    config = (
        ServerConfigBuilder()
        .protocol_selection(ProtocolSelection.AUTO)
        .auth_method(AuthMethod.JWT)
        .websocket_tls("a.crt", "a.key")
        .quic_alpn([b"x", b"yz"])
        .build()
    )
    data = json.loads(json.dumps(config.to_dict()))
    assert data["protocol"]["selection"] == "Auto"
    assert data["auth"]["method"] == "JWT"
    assert ServerConfig.from_dict(data) == config


def test_alpn_serialised_as_byte_lists():
    data = ServerConfig().to_dict()
    assert data["protocol"]["quic"]["alpn_protocols"] == [list(b"flare-core")]


def test_optional_fields_may_be_missing():
    data = ServerConfig().to_dict()
    del data["protocol"]["websocket"]["cert_path"]
    del data["auth"]["jwt_secret"]
    restored = ServerConfig.from_dict(data)
    assert restored.protocol.websocket.cert_path is None
    assert restored.auth.jwt_secret is None


def test_missing_required_field_raises():
    data = ServerConfig().to_dict()
    del data["logging"]["level"]
    with pytest.raises(InvalidConfigurationError):
        ServerConfig.from_dict(data)


def test_unknown_enum_value_raises():
    data = ServerConfig().to_dict()
    data["auth"]["method"] = "Carrier"
    with pytest.raises(InvalidConfigurationError):
        ServerConfig.from_dict(data)


def test_builder_max_connections_sets_all_limits():
    config = ServerConfigBuilder().max_connections(42).build()
    assert config.connection_manager.max_connections == 42
    assert config.protocol.websocket.max_connections == 42
    assert config.protocol.quic.max_connections == 42


def test_builder_websocket_tls_enables_tls():
    config = ServerConfigBuilder().websocket_tls("c.pem", "k.pem").build()
    ws = config.protocol.websocket
    assert (ws.enable_tls, ws.cert_path, ws.key_path) == (True, "c.pem", "k.pem")


def test_builder_quic_settings():
    config = (
        ServerConfigBuilder()
        .quic_tls("q.crt", "q.key")
        .enable_quic_0rtt(False)
        .enable_quic(False)
        .enable_websocket(False)
        .enable_auth(True)
        .log_level("debug")
        .build()
    )
    assert config.protocol.quic.cert_path == "q.crt"
    assert config.protocol.quic.key_path == "q.key"
    assert config.protocol.quic.enable_0rtt is False
    assert config.protocol.quic.enabled is False
    assert config.protocol.websocket.enabled is False
    assert config.auth.enabled is True
    assert config.logging.level == "debug"


def test_builder_addresses():
    config = (
        ServerConfigBuilder()
        .websocket_addr(("10.0.0.1", 8080))
        .quic_addr("::1".join(["[", "]:9000"]))
        .build()
    )
    assert config.protocol.websocket.bind_addr == "10.0.0.1:8080"
    assert config.protocol.quic.bind_addr == "[::1]:9000"


@pytest.mark.parametrize("addr", [("127.0.0.1", 70000), ("not-an-ip", 80), "127.0.0.1", "::1:80"])
def test_builder_rejects_bad_addresses(addr):
    with pytest.raises(ValueError):
        ServerConfigBuilder().websocket_addr(addr)