"""Delivery resilience patterns.

Error taxonomy, retry with backoff, circuit breaker, sliding-window rate
limiter, and health monitor used by the notification delivery pipeline.
"""

from .config import (
    CircuitState,
    CircuitBreakerConfig,
    RetryConfig,
    RateLimiterConfig,
    DEFAULT_RETRY_CONFIG,
)
from .errors import (
    DeliveryError,
    ErrorKind,
    ErrorLog,
)
from .retry import (
    RetryPolicy,
    compute_delay,
)
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerOpen,
)
from .rate_limiter import (
    RateLimiter,
    RateLimitExceeded,
)
from .health import (
    HealthMonitor,
    HealthStatus,
)

__all__ = [
    # Config / Enums
    "CircuitState",
    "CircuitBreakerConfig",
    "RetryConfig",
    "RateLimiterConfig",
    "DEFAULT_RETRY_CONFIG",
    # Errors
    "DeliveryError",
    "ErrorKind",
    "ErrorLog",
    # Retry
    "RetryPolicy",
    "compute_delay",
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerOpen",
    # Rate Limiter
    "RateLimiter",
    "RateLimitExceeded",
    # Health
    "HealthMonitor",
    "HealthStatus",
]
