"""Configuration for notification delivery."""

from dataclasses import dataclass, field
from enum import Enum

from src.resilience.config import (
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_HALF_OPEN_ATTEMPTS,
    DEFAULT_MAX_REQUESTS,
    DEFAULT_RECOVERY_TIMEOUT,
    DEFAULT_WINDOW_SECONDS,
    CircuitBreakerConfig,
    RateLimiterConfig,
    RetryConfig,
)


class NotificationType(str, Enum):
    """Kinds of outbound notification the app sends."""
    SESSION_INVITE = "session_invite"
    SESSION_STARTING = "session_starting"
    ROUND_COMPLETE = "round_complete"
    CLUB_INVITE = "club_invite"
    CLUB_ANNOUNCEMENT = "club_announcement"
    MATCH_REMINDER = "match_reminder"
    LEADERBOARD_UPDATE = "leaderboard_update"


class Platform(str, Enum):
    """Mobile platforms."""
    IOS = "ios"
    ANDROID = "android"
    WEB = "web"


class AppState(str, Enum):
    """App lifecycle states."""
    ACTIVE = "active"
    BACKGROUND = "background"
    INACTIVE = "inactive"


TOKEN_PATTERN = r"^ExponentPushToken\[[a-zA-Z0-9_-]+\]$"


@dataclass
class NotificationConfig:
    """Notification delivery configuration."""

    # Offline queue
    max_queue_size: int = 100
    max_retry_attempts: int = 3
    settle_delay_seconds: float = 1.0

    # Tokens
    token_expiry_days: int = 90

    # Admission control
    rate_limit_max_requests: int = DEFAULT_MAX_REQUESTS
    rate_limit_window_seconds: float = DEFAULT_WINDOW_SECONDS
    breaker_failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    breaker_recovery_timeout: float = DEFAULT_RECOVERY_TIMEOUT
    breaker_half_open_attempts: int = DEFAULT_HALF_OPEN_ATTEMPTS

    # Retry
    send_retry: RetryConfig = field(default_factory=RetryConfig)
    storage_retry: RetryConfig = field(
        default_factory=lambda: RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0)
    )

    # Push registration
    project_id: str = ""

    def __post_init__(self):
        if self.max_queue_size < 1:
            raise ValueError("max_queue_size must be >= 1")
        if self.max_retry_attempts < 1:
            raise ValueError("max_retry_attempts must be >= 1")
        if self.settle_delay_seconds < 0:
            raise ValueError("settle_delay_seconds must be >= 0")

    def breaker_config(self, name: str) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.breaker_failure_threshold,
            recovery_timeout=self.breaker_recovery_timeout,
            half_open_attempts=self.breaker_half_open_attempts,
            name=name,
        )

    def rate_limiter_config(self, name: str = "push") -> RateLimiterConfig:
        return RateLimiterConfig(
            max_requests=self.rate_limit_max_requests,
            window_seconds=self.rate_limit_window_seconds,
            name=name,
        )


DEFAULT_NOTIFICATION_CONFIG = NotificationConfig()
