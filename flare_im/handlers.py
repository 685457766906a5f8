"""Authentication, message and event handler interfaces with default implementations."""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from flare_im.common import ConnectionEvent, EventKind, Platform, ProtoMessage

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthHandler(ABC):
    """Validates client tokens."""

    @abstractmethod
    async def validate_token(self, token: str) -> str | None:
        """Return the user id the token belongs to, or None if invalid."""


class MessageHandler(ABC):
    """Handles client messages and session lifecycle."""

    @abstractmethod
    async def handle_message(self, user_id: str, message: ProtoMessage) -> ProtoMessage:
        """Process a message and return the reply."""

    @abstractmethod
    async def handle_user_connect(self, user_id: str, session_id: str, platform: Platform) -> None:
        """React to a user connecting."""

    @abstractmethod
    async def handle_user_disconnect(self, user_id: str, session_id: str) -> None:
        """React to a user disconnecting."""

    @abstractmethod
    async def handle_heartbeat(self, user_id: str, session_id: str) -> None:
        """React to a heartbeat."""


class EventHandler(ABC):
    """Handles connection events and errors."""

    @abstractmethod
    async def handle_connection_event(self, user_id: str, event: ConnectionEvent) -> None:
        """React to a connection event."""

    @abstractmethod
    async def handle_error(self, error: str) -> None:
        """React to an error."""


@dataclass
class _TokenInfo:
    user_id: str
    created_at: datetime
    expires_at: datetime


class DefaultAuthHandler(AuthHandler):
    """Issues random tokens held in memory, valid for 24 hours by default."""

    def __init__(self, token_ttl: timedelta = timedelta(hours=24)) -> None:
        self._tokens: dict[str, _TokenInfo] = {}
        self._token_ttl = token_ttl

    async def generate_token(self, user_id: str) -> str:
        """Create and remember a token for the user."""
        token = str(uuid.uuid4())
        now = _utcnow()
        self._tokens[token] = _TokenInfo(user_id, now, now + self._token_ttl)
        logger.info("generated token for user %s", user_id)
        return token

    def _cleanup_expired_tokens(self) -> int:
        now = _utcnow()
        expired = [token for token, info in self._tokens.items() if info.expires_at < now]
        for token in expired:
            del self._tokens[token]
        if expired:
            logger.debug("removed %d expired tokens", len(expired))
        return len(expired)

    async def validate_token(self, token: str) -> str | None:
        self._cleanup_expired_tokens()
        info = self._tokens.get(token)
        if info is not None and info.expires_at > _utcnow():
            logger.debug("token valid for user %s", info.user_id)
            return info.user_id
        logger.debug("token rejected: %s", token)
        return None


class DefaultMessageHandler(MessageHandler):
    """Echoes message payloads back and counts messages."""

    def __init__(self) -> None:
        self._message_count = 0

    @property
    def message_count(self) -> int:
        """Number of messages handled so far."""
        return self._message_count

    async def handle_message(self, user_id: str, message: ProtoMessage) -> ProtoMessage:
        self._message_count += 1
        logger.info(
            "message from %s type %s length %d",
            user_id,
            message.message_type,
            len(message.payload),
        )
        return ProtoMessage.create("echo", message.payload)

    async def handle_user_connect(self, user_id: str, session_id: str, platform: Platform) -> None:
        logger.info("user connected: %s session %s platform %s", user_id, session_id, platform)

    async def handle_user_disconnect(self, user_id: str, session_id: str) -> None:
        logger.info("user disconnected: %s session %s", user_id, session_id)

    async def handle_heartbeat(self, user_id: str, session_id: str) -> None:
        logger.debug("heartbeat: %s session %s", user_id, session_id)


class DefaultEventHandler(EventHandler):
    """Logs connection events and counts them."""

    def __init__(self) -> None:
        self._event_count = 0

    @property
    def event_count(self) -> int:
        """Number of connection events handled so far."""
        return self._event_count

    async def handle_connection_event(self, user_id: str, event: ConnectionEvent) -> None:
        self._event_count += 1
        kind = event.kind
        if kind is EventKind.CONNECTED:
            logger.info("user %s connected", user_id)
        elif kind is EventKind.DISCONNECTED:
            logger.info("user %s disconnected", user_id)
        elif kind is EventKind.RECONNECTING:
            logger.debug("user %s reconnecting", user_id)
        elif kind is EventKind.FAILED:
            logger.error("user %s connection failed: %s", user_id, event.reason)
        elif kind in (EventKind.MESSAGE_RECEIVED, EventKind.MESSAGE_SENT):
            direction = "received" if kind is EventKind.MESSAGE_RECEIVED else "sent"
            logger.debug(
                "user %s %s message type %s", user_id, direction, event.message.message_type
            )
        elif kind is EventKind.HEARTBEAT:
            logger.debug("user %s heartbeat", user_id)
        elif kind is EventKind.ERROR:
            logger.error("user %s error: %s", user_id, event.reason)

    async def handle_error(self, error: str) -> None:
        logger.error("event handler error: %s", error)


class JwtAuthHandler(AuthHandler):
    """Accepts tokens of the form ``jwt_<user id>``."""

    _PREFIX = "jwt_"

    def __init__(self, secret: str, expiry_secs: int = 3600) -> None:
        self.secret = secret
        self.expiry_secs = expiry_secs

    def with_expiry(self, expiry_secs: int) -> JwtAuthHandler:
        """Set the token lifetime and return this handler."""
        self.expiry_secs = expiry_secs
        return self

    async def validate_token(self, token: str) -> str | None:
        if token.startswith(self._PREFIX):
            user_id = token
            while user_id.startswith(self._PREFIX):
                user_id = user_id[len(self._PREFIX):]
            if user_id:
                logger.debug("JWT token valid for user %s", user_id)
                return user_id
        logger.debug("JWT token rejected: %s", token)
        return None