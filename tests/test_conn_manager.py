from datetime import datetime, timedelta, timezone

import pytest

from flare_im.common import ConnectionState, Platform, TransportProtocol
from flare_im.conn_manager import (
    ServerConnectionInfo,
    ServerConnectionManager,
    ServerConnectionManagerConfig,
    ServerConnectionManagerStats,
)


def _info() -> ServerConnectionInfo:
    return ServerConnectionInfo(
        id="conn-1",
        user_id="alice",
        session_id="s1",
        remote_addr="127.0.0.1:5000",
        platform=Platform.WEB,
        protocol=TransportProtocol.WEBSOCKET,
    )


def test_config_defaults():
    config = ServerConnectionManagerConfig()
    assert config.max_connections == 1_000_000
    assert config.connection_timeout_ms == 300_000
    assert config.heartbeat_timeout_ms == 60_000
    assert config.max_missed_heartbeats == 3


def test_new_info_is_connected_and_fresh():
    info = _info()
    assert info.state is ConnectionState.CONNECTED
    assert info.heartbeat_count == 0
    assert info.missed_heartbeats == 0
    assert info.metadata == {}


def test_new_info_is_healthy():
    assert _info().is_healthy(ServerConnectionManagerConfig())


def test_stale_heartbeat_is_unhealthy():
    info = _info()
    info.last_heartbeat = datetime.now(timezone.utc) - timedelta(minutes=5)
    assert not info.is_healthy(ServerConnectionManagerConfig())


def test_missed_heartbeats_make_unhealthy():
    config = ServerConnectionManagerConfig()
    info = _info()
    for _ in range(config.max_missed_heartbeats):
        info.mark_heartbeat_missed()
    assert info.missed_heartbeats == config.max_missed_heartbeats
    assert not info.is_healthy(config)


def test_update_heartbeat_resets_missed_and_counts():
    info = _info()
    info.mark_heartbeat_missed()
    info.last_heartbeat = datetime.now(timezone.utc) - timedelta(hours=1)
    info.update_heartbeat()
    assert info.missed_heartbeats == 0
    assert info.heartbeat_count == 1
    assert info.last_activity == info.last_heartbeat
    assert info.is_healthy(ServerConnectionManagerConfig())


def test_update_activity_moves_forward():
    info = _info()
    old = datetime.now(timezone.utc) - timedelta(hours=1)
    info.last_activity = old
    info.update_activity()
    assert info.last_activity > old


def test_stats_default_zero():
    stats = ServerConnectionManagerStats()
    assert stats.total_connections == 0
    assert stats.online_users == 0
    assert stats.total_bytes == 0


def test_manager_is_abstract():
    with pytest.raises(TypeError):
        ServerConnectionManager()