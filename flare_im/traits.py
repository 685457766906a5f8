"""Interfaces for session, auth, rate-limit, routing and monitoring services, with their records."""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone

from flare_im.common import ProtoMessage, TransportProtocol


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(enum.Enum):
    """State of a server-side session."""

    ACTIVE = "Active"
    IDLE = "Idle"
    SUSPENDED = "Suspended"
    TERMINATED = "Terminated"


@dataclass
class SessionInfo:
    """Details about one session."""

    session_id: str
    user_id: str
    protocol: TransportProtocol
    status: SessionStatus
    created_at: datetime = field(default_factory=_utcnow)
    last_activity: datetime = field(default_factory=_utcnow)
    metadata: dict[str, str] = field(default_factory=dict)


class SessionManager(ABC):
    """Manages server-side session state."""

    @abstractmethod
    async def create_session(self, user_id: str, protocol: TransportProtocol) -> str:
        """Create a session and return its identifier."""

    @abstractmethod
    async def validate_session(self, session_id: str) -> bool:
        """Return whether the session is valid."""

    @abstractmethod
    async def get_session_info(self, session_id: str) -> SessionInfo | None:
        """Return the session's details, or None if unknown."""

    @abstractmethod
    async def update_session_status(self, session_id: str, status: SessionStatus) -> None:
        """Change a session's status."""

    @abstractmethod
    async def cleanup_expired_sessions(self, timeout_secs: int) -> int:
        """Remove sessions idle longer than the timeout; return how many."""

    @abstractmethod
    async def get_active_session_count(self) -> int:
        """Return the number of active sessions."""


@dataclass
class RoutingStats:
    """Aggregate routing counters."""

    total_routed_messages: int
    successful_routes: int
    failed_routes: int
    avg_routing_time_ms: int
    unreachable_users: int


class AuthManager(ABC):
    """Validates access tokens."""

    @abstractmethod
    async def validate_access_token(self, token: str) -> str | None:
        """Return the user id the token belongs to, or None if invalid."""


class RateLimitType(enum.Enum):
    """What a rate limit applies to."""

    MESSAGE_RATE = "MessageRate"
    CONNECTION_RATE = "ConnectionRate"
    AUTH_RATE = "AuthRate"
    CUSTOM = "Custom"


@dataclass
class RateLimitStatus:
    """A user's rate-limit state; ``custom_label`` names a CUSTOM limit."""

    is_limited: bool
    remaining_requests: int
    reset_time: datetime
    limit_type: RateLimitType
    custom_label: str | None = None

    def __post_init__(self) -> None:
        if self.limit_type is RateLimitType.CUSTOM:
            if self.custom_label is None:
                raise ValueError("a custom rate limit needs a label")
        elif self.custom_label is not None:
            raise ValueError("only custom rate limits carry a label")


class RateLimitManager(ABC):
    """Controls message and connection rates."""

    @abstractmethod
    async def is_rate_limited(self, user_id: str) -> bool:
        """Return whether the user is currently limited."""

    @abstractmethod
    async def record_activity(self, user_id: str) -> None:
        """Record one unit of activity for the user."""

    @abstractmethod
    async def get_rate_limit_status(self, user_id: str) -> RateLimitStatus:
        """Return the user's rate-limit state."""

    @abstractmethod
    async def reset_rate_limit(self, user_id: str) -> None:
        """Clear the user's rate-limit state."""


@dataclass
class RoutingResult:
    """Outcome of routing one message."""

    success: bool
    delivered_to: list[str] = field(default_factory=list)
    failed_users: list[str] = field(default_factory=list)
    routing_time_ms: int = 0


@dataclass
class BroadcastResult:
    """Outcome of a broadcast."""

    total_users: int
    successful_deliveries: int
    failed_deliveries: int
    avg_routing_time_ms: int


class RoutingManager(ABC):
    """Routes and distributes messages."""

    @abstractmethod
    async def route_message(self, user_id: str, message: ProtoMessage) -> RoutingResult:
        """Route a message to one user."""

    @abstractmethod
    async def broadcast_message(
        self, user_ids: list[str], message: ProtoMessage
    ) -> BroadcastResult:
        """Send a message to several users."""

    @abstractmethod
    async def get_routing_stats(self) -> RoutingStats:
        """Return routing counters."""

    @abstractmethod
    async def is_user_reachable(self, user_id: str) -> bool:
        """Return whether the user can currently be reached."""


@dataclass
class SystemStatus:
    """Overall system state."""

    uptime_secs: int
    memory_usage_mb: int
    cpu_usage_percent: float
    active_connections: int
    total_requests: int
    error_rate: float


@dataclass
class PerformanceMetrics:
    """Latency and throughput figures."""

    avg_response_time_ms: int
    requests_per_second: float
    throughput_mbps: float
    connection_latency_ms: int
    message_processing_time_ms: int


@dataclass
class ConnectionStats:
    """Connection counts by transport."""

    total_connections: int
    active_connections: int
    quic_connections: int
    websocket_connections: int
    avg_heartbeat_interval_ms: int


@dataclass
class ErrorStats:
    """Error counts by category."""

    total_errors: int
    auth_errors: int
    network_errors: int
    protocol_errors: int
    business_errors: int
    error_rate: float


class MonitoringManager(ABC):
    """Collects system metrics."""

    @abstractmethod
    async def get_system_status(self) -> SystemStatus:
        """Return the system status."""

    @abstractmethod
    async def get_performance_metrics(self) -> PerformanceMetrics:
        """Return performance metrics."""

    @abstractmethod
    async def get_connection_stats(self) -> ConnectionStats:
        """Return connection statistics."""

    @abstractmethod
    async def get_error_stats(self) -> ErrorStats:
        """Return error statistics."""