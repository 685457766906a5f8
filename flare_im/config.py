"""Server configuration: per-transport settings, limits, auth and logging, plus a builder."""

from __future__ import annotations

import enum
import ipaddress
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass, field, fields
from typing import Any

from flare_im.common import InvalidConfigurationError, ProtocolSelection


class AuthMethod(enum.Enum):
    """How clients authenticate."""

    TOKEN = "Token"
    PASSWORD = "Password"
    ANONYMOUS = "Anonymous"
    OAUTH2 = "OAuth2"
    JWT = "JWT"


@dataclass
class WebSocketServerConfig:
    """WebSocket listener settings."""

    bind_addr: str = "127.0.0.1:4000"
    enabled: bool = True
    max_connections: int = 10000
    enable_tls: bool = False
    cert_path: str | None = None
    key_path: str | None = None


@dataclass
class QuicServerConfig:
    """QUIC listener settings."""

    bind_addr: str = "127.0.0.1:4010"
    enabled: bool = True
    max_connections: int = 10000
    cert_path: str = "certs/server.crt"
    key_path: str = "certs/server.key"
    alpn_protocols: list[bytes] = field(default_factory=lambda: [b"flare-core"])
    enable_0rtt: bool = True


@dataclass
class ServerProtocolConfig:
    """Which transports to run and how."""

    selection: ProtocolSelection = ProtocolSelection.BOTH
    websocket: WebSocketServerConfig = field(default_factory=WebSocketServerConfig)
    quic: QuicServerConfig = field(default_factory=QuicServerConfig)


@dataclass
class ConnectionManagerConfig:
    """Connection limits and timing, in milliseconds where a duration."""

    max_connections: int = 100000
    connection_timeout_ms: int = 300000
    heartbeat_interval_ms: int = 30000
    heartbeat_timeout_ms: int = 60000
    max_missed_heartbeats: int = 3
    cleanup_interval_ms: int = 60000
    enable_auto_reconnect: bool = True
    max_reconnect_attempts: int = 5
    reconnect_delay_ms: int = 1000


@dataclass
class AuthConfig:
    """Authentication settings."""

    enabled: bool = False
    method: AuthMethod = AuthMethod.ANONYMOUS
    timeout_secs: int = 30
    jwt_secret: str | None = None
    jwt_expiry_secs: int = 3600


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "info"
    file_path: str | None = None
    enable_console: bool = True
    enable_file: bool = False
    rotation_size_mb: int = 100
    max_files: int = 10


def _enum_converter(enum_cls: type[enum.Enum]) -> Callable[[Any], enum.Enum]:
    def convert(value: Any) -> enum.Enum:
        if isinstance(value, enum_cls):
            return value
        try:
            return enum_cls(value)
        except ValueError as exc:
            raise InvalidConfigurationError(
                f"invalid {enum_cls.__name__} value: {value!r}"
            ) from exc

    return convert


def _alpn_converter(value: Any) -> list[bytes]:
    try:
        return [bytes(protocol) for protocol in value]
    except (TypeError, ValueError) as exc:
        raise InvalidConfigurationError(f"invalid ALPN protocol list: {value!r}") from exc


def _section(
    cls: type,
    data: Any,
    optional: frozenset[str] = frozenset(),
    **converters: Callable[[Any], Any],
) -> Any:
    if not isinstance(data, Mapping):
        raise InvalidConfigurationError(f"{cls.__name__} must be a mapping")
    kwargs = {}
    for f in fields(cls):
        if f.name not in data:
            if f.name in optional:
                kwargs[f.name] = None
                continue
            raise InvalidConfigurationError(f"missing field '{f.name}' in {cls.__name__}")
        convert = converters.get(f.name)
        value = data[f.name]
        kwargs[f.name] = convert(value) if convert else value
    return cls(**kwargs)


@dataclass
class ServerConfig:
    """Complete server configuration."""

    protocol: ServerProtocolConfig = field(default_factory=ServerProtocolConfig)
    connection_manager: ConnectionManagerConfig = field(default_factory=ConnectionManagerConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def to_dict(self) -> dict[str, Any]:
        """Return a plain, JSON-compatible representation."""
        data = asdict(self)
        data["protocol"]["selection"] = self.protocol.selection.value
        data["protocol"]["quic"]["alpn_protocols"] = [
            list(protocol) for protocol in self.protocol.quic.alpn_protocols
        ]
        data["auth"]["method"] = self.auth.method.value
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ServerConfig:
        """Build a configuration from the form produced by :meth:`to_dict`."""
        if not isinstance(data, Mapping):
            raise InvalidConfigurationError("ServerConfig must be a mapping")
        for key in ("protocol", "connection_manager", "auth", "logging"):
            if key not in data:
                raise InvalidConfigurationError(f"missing field '{key}' in ServerConfig")
        protocol_data = data["protocol"]
        protocol = _section(
            ServerProtocolConfig,
            protocol_data,
            selection=_enum_converter(ProtocolSelection),
            websocket=lambda value: _section(
                WebSocketServerConfig, value, optional=frozenset({"cert_path", "key_path"})
            ),
            quic=lambda value: _section(QuicServerConfig, value, alpn_protocols=_alpn_converter),
        )
        return cls(
            protocol=protocol,
            connection_manager=_section(ConnectionManagerConfig, data["connection_manager"]),
            auth=_section(
                AuthConfig,
                data["auth"],
                optional=frozenset({"jwt_secret"}),
                method=_enum_converter(AuthMethod),
            ),
            logging=_section(LoggingConfig, data["logging"], optional=frozenset({"file_path"})),
        )


def _format_socket_addr(addr: Any) -> str:
    """Normalise an ``(ip, port)`` pair or ``"ip:port"`` string to ``ip:port`` text."""
    if isinstance(addr, str):
        host, sep, port_text = addr.rpartition(":")
        if not sep or not port_text.isdigit():
            raise ValueError(f"invalid socket address: {addr!r}")
        if host.startswith("[") and host.endswith("]"):
            host = host[1:-1]
        elif ":" in host:
            raise ValueError(f"invalid socket address: {addr!r}")
        port: Any = int(port_text)
    else:
        try:
            host, port = addr
        except (TypeError, ValueError) as exc:
            raise ValueError(f"invalid socket address: {addr!r}") from exc
    if isinstance(port, bool) or not isinstance(port, int) or not 0 <= port <= 65535:
        raise ValueError(f"invalid port: {port!r}")
    ip = ipaddress.ip_address(host)
    if ip.version == 6:
        return f"[{ip}]:{port}"
    return f"{ip}:{port}"


class ServerConfigBuilder:
    """Fluent builder for :class:`ServerConfig`."""

    def __init__(self) -> None:
        self._config = ServerConfig()

    def protocol_selection(self, selection: ProtocolSelection) -> ServerConfigBuilder:
        self._config.protocol.selection = selection
        return self

    def websocket_addr(self, addr: Any) -> ServerConfigBuilder:
        self._config.protocol.websocket.bind_addr = _format_socket_addr(addr)
        return self

    def quic_addr(self, addr: Any) -> ServerConfigBuilder:
        self._config.protocol.quic.bind_addr = _format_socket_addr(addr)
        return self

    def enable_websocket(self, enabled: bool) -> ServerConfigBuilder:
        self._config.protocol.websocket.enabled = enabled
        return self

    def enable_quic(self, enabled: bool) -> ServerConfigBuilder:
        self._config.protocol.quic.enabled = enabled
        return self

    def max_connections(self, max_connections: int) -> ServerConfigBuilder:
        """Set the connection limit for the manager and both listeners."""
        self._config.connection_manager.max_connections = max_connections
        self._config.protocol.websocket.max_connections = max_connections
        self._config.protocol.quic.max_connections = max_connections
        return self

    def enable_auth(self, enabled: bool) -> ServerConfigBuilder:
        self._config.auth.enabled = enabled
        return self

    def auth_method(self, method: AuthMethod) -> ServerConfigBuilder:
        self._config.auth.method = method
        return self

    def log_level(self, level: str) -> ServerConfigBuilder:
        self._config.logging.level = level
        return self

    def websocket_tls(self, cert_path: str, key_path: str) -> ServerConfigBuilder:
        websocket = self._config.protocol.websocket
        websocket.enable_tls = True
        websocket.cert_path = cert_path
        websocket.key_path = key_path
        return self

    def quic_tls(self, cert_path: str, key_path: str) -> ServerConfigBuilder:
        self._config.protocol.quic.cert_path = cert_path
        self._config.protocol.quic.key_path = key_path
        return self

    def quic_alpn(self, alpn_protocols: list[bytes]) -> ServerConfigBuilder:
        self._config.protocol.quic.alpn_protocols = [bytes(p) for p in alpn_protocols]
        return self

    def enable_quic_0rtt(self, enabled: bool) -> ServerConfigBuilder:
        self._config.protocol.quic.enable_0rtt = enabled
        return self

    def build(self) -> ServerConfig:
        return self._config