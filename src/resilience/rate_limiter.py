"""Sliding-window rate limiter.

Admission control for outbound calls: bounds how many calls may start
within a time window. Over-limit calls are rejected immediately; the
limiter never delays anything itself.
"""

import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .config import RateLimiterConfig
from .errors import DeliveryError, ErrorKind

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RateLimitExceeded(DeliveryError):
    """Raised when the rate limit has been exceeded."""

    def __init__(self, max_requests: int, window_seconds: float, wait_time: float):
        self.retry_after = wait_time
        super().__init__(
            ErrorKind.RATE_LIMIT_EXCEEDED,
            f"Rate limit exceeded. Try again in {wait_time:.1f}s.",
            retryable=True,
            context={
                "max_requests": max_requests,
                "window_ms": int(window_seconds * 1000),
                "wait_time_ms": max(1, int(round(wait_time * 1000))),
            },
        )


class RateLimiter:
    """Allows at most ``max_requests`` calls per sliding window."""

    def __init__(
        self,
        config: Optional[RateLimiterConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config or RateLimiterConfig()
        self._clock = clock
        self._requests: deque[float] = deque()
        self._total_allowed = 0
        self._total_rejected = 0

    @property
    def total_allowed(self) -> int:
        return self._total_allowed

    @property
    def total_rejected(self) -> int:
        return self._total_rejected

    @property
    def remaining(self) -> int:
        """Calls still admissible in the current window."""
        self._prune(self._clock())
        return max(0, self._config.max_requests - len(self._requests))

    def _prune(self, now: float) -> None:
        cutoff = now - self._config.window_seconds
        while self._requests and self._requests[0] <= cutoff:
            self._requests.popleft()

    def acquire(self) -> None:
        """Record one admission or raise if the window is full."""
        now = self._clock()
        self._prune(now)

        if len(self._requests) >= self._config.max_requests:
            self._total_rejected += 1
            wait_time = self._requests[0] + self._config.window_seconds - now
            logger.warning(
                "Rate limiter '%s' rejected call, retry after %.1fs",
                self._config.name,
                wait_time,
            )
            raise RateLimitExceeded(
                self._config.max_requests, self._config.window_seconds, wait_time
            )

        self._requests.append(now)
        self._total_allowed += 1

    async def throttle(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Admit and run ``operation``, propagating its result or error."""
        self.acquire()
        return await operation()

    def reset(self) -> None:
        self._requests.clear()
        self._total_allowed = 0
        self._total_rejected = 0

    def get_metrics(self) -> dict[str, Any]:
        """Return current rate limiter metrics."""
        return {
            "name": self._config.name,
            "max_requests": self._config.max_requests,
            "window_seconds": self._config.window_seconds,
            "remaining": self.remaining,
            "total_allowed": self._total_allowed,
            "total_rejected": self._total_rejected,
        }
