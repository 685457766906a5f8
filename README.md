# flare-im

The server-side core of an instant messaging toolkit, built on `asyncio`.
It provides the server configuration, an in-memory connection manager,
pluggable authentication, message and event handlers, and a message
processing center that answers incoming messages according to their type.
It has no third-party dependencies.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

- `flare_im.common`: errors (`FlareError`, `InvalidConfigurationError`,
  `ResourceExhaustedError`), the enums `Platform`, `ConnectionState`,
  `TransportProtocol`, `ProtocolSelection` and `EventKind`, the
  `ProtoMessage` and `ConnectionEvent` records, and the abstract
  `Connection` class.
- `flare_im.config`: `ServerConfig` and its sections, `AuthMethod`, and
  `ServerConfigBuilder`.
- `flare_im.conn_manager`: the abstract `ServerConnectionManager`, its
  `ServerConnectionManagerConfig`, `ServerConnectionInfo` and
  `ServerConnectionManagerStats`.
- `flare_im.memory`: `MemoryServerConnectionManager`, an in-memory
  implementation of the connection manager.
- `flare_im.handlers`: the `AuthHandler`, `MessageHandler` and
  `EventHandler` interfaces with `DefaultAuthHandler`,
  `DefaultMessageHandler`, `DefaultEventHandler` and `JwtAuthHandler`.
- `flare_im.message_center`: `MessageProcessingCenter`.
- `flare_im.server`: `FlareIMServer` and `FlareIMServerBuilder`.
- `flare_im.traits`: abstract interfaces and records for session, rate-limit,
  routing, auth and monitoring services (`SessionManager`,
  `RateLimitManager`, `RoutingManager`, `AuthManager`,
  `MonitoringManager`). No implementations of these are included.

## Building a configuration

```python
from flare_im.common import ProtocolSelection
from flare_im.config import AuthMethod, ServerConfig, ServerConfigBuilder

config = (
    ServerConfigBuilder()
    .protocol_selection(ProtocolSelection.BOTH)
    .websocket_addr("127.0.0.1:4000")
    .quic_addr(("127.0.0.1", 4010))
    .max_connections(5000)
    .enable_auth(True)
    .auth_method(AuthMethod.TOKEN)
    .log_level("debug")
    .build()
)

data = config.to_dict()          # plain, JSON-compatible dict
assert ServerConfig.from_dict(data) == config
```

Addresses may be given as `"ip:port"` text or an `(ip, port)` pair; IPv6
addresses are written as `[ip]:port`. `from_dict` raises
`InvalidConfigurationError` for missing fields or unknown enum values.

## Running a server

```python
import asyncio

from flare_im.common import ProtoMessage
from flare_im.handlers import DefaultAuthHandler, DefaultMessageHandler
from flare_im.server import FlareIMServerBuilder


async def main():
    auth = DefaultAuthHandler()
    server = (
        FlareIMServerBuilder()
        .websocket_only()
        .with_auth_handler(auth)
        .with_message_handler(DefaultMessageHandler())
        .build()
    )
    await server.start()

    token = await auth.generate_token("alice")
    reply = await server.handle_message(
        "alice", "session-1", ProtoMessage.create("auth", token.encode())
    )
    print(reply.message_type)  # auth_success

    reply = await server.handle_message(
        "alice", "session-1", ProtoMessage.create("ping", b"hi")
    )
    print(reply.message_type, reply.payload)  # pong b'hi'

    await server.stop()


asyncio.run(main())
```

The protocol selection decides which transports `start()` brings up:
`websocket_only()`, `quic_only()`, `both_protocols()` (each enabled one), or
`auto_protocol()` (QUIC first, falling back to WebSocket if the QUIC
listener fails to start; with neither enabled, `InvalidConfigurationError`
is raised). `server.active_transports` lists what was started.

## Message types

`MessageProcessingCenter.process_message` refreshes the sender's heartbeat,
emits a `MESSAGE_RECEIVED` event, answers the message, and emits a
`MESSAGE_SENT` event with the reply:

| type          | reply                                             |
|---------------|---------------------------------------------------|
| `message`     | result of the message handler, or an `echo`       |
| `heartbeat`   | `heartbeat_ack` with an empty payload             |
| `ping`        | `pong` carrying the same payload                  |
| `auth`        | `auth_success` with the user id, or `auth_failed` |
| anything else | result of the message handler, or an `echo`       |

For `auth`, the payload is the token (surrounding double quotes are
stripped). Without an auth handler every token is accepted.

## Handlers

- `DefaultAuthHandler` issues random tokens kept in memory, valid for 24
  hours unless another `token_ttl` is given.
- `JwtAuthHandler` accepts any token of the form `jwt_<user id>`; it does
  not check signatures or expiry.
- `DefaultMessageHandler` echoes payloads and counts messages
  (`message_count`).
- `DefaultEventHandler` logs events and counts them (`event_count`).

## Connections

`MemoryServerConnectionManager` keeps every connection in memory, keyed by
user and session. It enforces the configured connection limit (raising
`ResourceExhaustedError`), tracks heartbeats, expires idle connections, and
can send to one user, broadcast to everyone, or force a user offline. While
started it runs background loops that mark connections with too many missed
heartbeats as disconnected and remove idle ones. Any subclass of
`flare_im.common.Connection` (with `id`, `remote_addr`, `platform`,
`protocol`, and async `send` and `close`) can be registered with it.

## What this package does not do

The package contains no network listeners: it does not open WebSocket or
QUIC sockets, and it has no command-line program. A server with no
listener registered for a transport logs a warning and serves nothing on
it. To serve clients, supply a listener factory per transport, either
through `FlareIMServerBuilder.with_listener(transport, factory)` or the
`listeners` argument of `FlareIMServer`. The factory is called on start
with the transport's config, the connection manager and the message
center, and the awaitable it returns runs until the server stops:

```python
from flare_im.common import TransportProtocol

async def serve_websocket(config, manager, center):
    ...  # accept clients on config.bind_addr, register them with manager,
         # and pass their messages to center.process_message

builder = FlareIMServerBuilder().with_listener(
    TransportProtocol.WEBSOCKET, serve_websocket
)
```

Connections, tokens and statistics live only in process memory; nothing is
persisted.