"""Central dispatch of client messages, shared by every transport."""

from __future__ import annotations

import logging

from flare_im.common import ConnectionEvent, EventKind, ProtoMessage
from flare_im.conn_manager import ServerConnectionManager
from flare_im.handlers import AuthHandler, EventHandler, MessageHandler

logger = logging.getLogger(__name__)

_QUOTE = '"'


class MessageProcessingCenter:
    """Routes incoming messages by type, calls the handlers and raises connection events.

    Every processed message refreshes the sender's heartbeat, emits a
    ``MESSAGE_RECEIVED`` event before dispatch and a ``MESSAGE_SENT`` event
    carrying the reply afterwards. Errors raised by handlers propagate.
    """

    def __init__(
        self,
        connection_manager: ServerConnectionManager,
        auth_handler: AuthHandler | None = None,
        message_handler: MessageHandler | None = None,
        event_handler: EventHandler | None = None,
    ) -> None:
        self._connection_manager = connection_manager
        self._auth_handler = auth_handler
        self._message_handler = message_handler
        self._event_handler = event_handler

    @property
    def connection_manager(self) -> ServerConnectionManager:
        """The connection manager heartbeats are recorded with."""
        return self._connection_manager

    @property
    def auth_handler(self) -> AuthHandler | None:
        """The handler that validates tokens, if any."""
        return self._auth_handler

    @property
    def message_handler(self) -> MessageHandler | None:
        """The handler for user messages, if any."""
        return self._message_handler

    @property
    def event_handler(self) -> EventHandler | None:
        """The handler for connection events, if any."""
        return self._event_handler

    async def process_message(
        self, user_id: str, session_id: str, message: ProtoMessage
    ) -> ProtoMessage:
        """Handle one message from a user's session and return the reply."""
        logger.debug("processing message from %s type %s", user_id, message.message_type)
        await self._connection_manager.update_heartbeat(user_id, session_id)
        await self._emit(user_id, ConnectionEvent(EventKind.MESSAGE_RECEIVED, message=message))

        message_type = message.message_type
        if message_type == "message":
            response = await self._handle_user_message(user_id, message)
        elif message_type == "heartbeat":
            response = await self._handle_heartbeat(user_id, session_id)
        elif message_type == "ping":
            response = ProtoMessage.create("pong", message.payload)
        elif message_type == "auth":
            response = await self._handle_auth(user_id, message)
        else:
            logger.error("unknown message type: %s", message_type)
            response = await self._handle_user_message(user_id, message)

        await self._emit(user_id, ConnectionEvent(EventKind.MESSAGE_SENT, message=response))
        return response

    async def _handle_user_message(self, user_id: str, message: ProtoMessage) -> ProtoMessage:
        if self._message_handler is not None:
            return await self._message_handler.handle_message(user_id, message)
        return ProtoMessage.create("echo", message.payload)

    async def _handle_heartbeat(self, user_id: str, session_id: str) -> ProtoMessage:
        if self._message_handler is not None:
            await self._message_handler.handle_heartbeat(user_id, session_id)
        await self._emit(user_id, ConnectionEvent(EventKind.HEARTBEAT))
        return ProtoMessage.create("heartbeat_ack", b"")

    async def _handle_auth(self, user_id: str, message: ProtoMessage) -> ProtoMessage:
        submitted = message.payload.decode(errors="replace").strip(_QUOTE)
        if self._auth_handler is None:
            return ProtoMessage.create("auth_success", user_id.encode())
        validated = await self._auth_handler.validate_token(submitted)
        if validated is None:
            return ProtoMessage.create("auth_failed", b"Invalid token")
        return ProtoMessage.create("auth_success", validated.encode())

    async def _emit(self, user_id: str, event: ConnectionEvent) -> None:
        if self._event_handler is not None:
            await self._event_handler.handle_connection_event(user_id, event)