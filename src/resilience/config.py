"""Configuration for resilience patterns."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


# ── Default Constants ────────────────────────────────────────────────

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0  # seconds
DEFAULT_MAX_DELAY = 30.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0
JITTER_RATIO = 0.1  # up to 10% of the computed delay

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_RECOVERY_TIMEOUT = 60.0  # seconds
DEFAULT_HALF_OPEN_ATTEMPTS = 3

DEFAULT_MAX_REQUESTS = 20
DEFAULT_WINDOW_SECONDS = 60.0

DEFAULT_ERROR_LOG_SIZE = 100
HEALTH_SAMPLE_SIZE = 10
HEALTH_ERROR_THRESHOLD = 5


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry with exponential backoff.

    Passed by value; a policy never mutates it.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    timeout: Optional[float] = None  # per-attempt bound, seconds
    retryable_exceptions: tuple[type[BaseException], ...] = (Exception,)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_multiplier <= 1:
            raise ValueError("backoff_multiplier must be > 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be positive")


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    recovery_timeout: float = DEFAULT_RECOVERY_TIMEOUT
    half_open_attempts: int = DEFAULT_HALF_OPEN_ATTEMPTS  # successes in HALF_OPEN to close
    name: str = "default"


@dataclass
class RateLimiterConfig:
    """Configuration for sliding-window rate limiter."""

    max_requests: int = DEFAULT_MAX_REQUESTS
    window_seconds: float = DEFAULT_WINDOW_SECONDS
    name: str = "default"


DEFAULT_RETRY_CONFIG = RetryConfig()
