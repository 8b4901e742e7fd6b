"""Circuit breaker pattern implementation.

Provides fault isolation by monitoring failures and temporarily
disabling calls to a chronically failing dependency.

States:
  CLOSED    -> normal operation, calls pass through
  OPEN      -> failures reached threshold, calls rejected until cooldown ends
  HALF_OPEN -> recovery probing, a bounded number of calls allowed

The cooldown is a time comparison, not a live timer. The breaker never
retries; it only decides whether an attempt is allowed at all.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .config import CircuitBreakerConfig, CircuitState
from .errors import DeliveryError, ErrorKind

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitBreakerOpen(DeliveryError):
    """Raised when the circuit breaker rejects a call without running it."""

    def __init__(self, name: str, next_attempt_time: float, remaining: float = 0.0):
        self.name = name
        self.remaining = remaining
        super().__init__(
            ErrorKind.RATE_LIMIT_EXCEEDED,
            f"Circuit breaker '{name}' is OPEN - too many recent failures. "
            f"Recovery in {remaining:.1f}s.",
            retryable=False,
            context={
                "breaker": name,
                "next_attempt_time": datetime.fromtimestamp(
                    next_attempt_time, tz=timezone.utc
                ).isoformat(),
                "retry_after_seconds": round(remaining, 3),
            },
        )


class CircuitBreaker:
    """Three-state circuit breaker for one protected dependency.

    All state changes happen synchronously inside a single event-loop
    turn, so no locking is needed.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: float = 0.0
        self._next_attempt_time: float = 0.0
        self._half_open_in_flight = 0
        self._total_calls = 0
        self._rejected_calls = 0

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def success_count(self) -> int:
        return self._success_count

    @property
    def total_calls(self) -> int:
        return self._total_calls

    @property
    def rejected_calls(self) -> int:
        return self._rejected_calls

    @property
    def last_failure_time(self) -> float:
        return self._last_failure_time

    @property
    def next_attempt_time(self) -> Optional[float]:
        """Earliest time a call is allowed; only meaningful while OPEN."""
        if self._state != CircuitState.OPEN:
            return None
        return self._next_attempt_time

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state

        if new_state == CircuitState.HALF_OPEN:
            self._success_count = 0
            self._half_open_in_flight = 0

        if new_state == CircuitState.CLOSED:
            self._failure_count = 0
            self._success_count = 0
            self._half_open_in_flight = 0

        logger.info(
            "Circuit breaker '%s': %s -> %s",
            self._config.name,
            old_state.value,
            new_state.value,
        )

    def _reject(self, now: float) -> CircuitBreakerOpen:
        self._rejected_calls += 1
        remaining = max(0.0, self._next_attempt_time - now)
        return CircuitBreakerOpen(self._config.name, self._next_attempt_time, remaining)

    def _admit(self) -> None:
        """Decide whether a call may run; raise if not."""
        now = self._clock()

        if self._state == CircuitState.OPEN:
            if now < self._next_attempt_time:
                raise self._reject(now)
            self._transition_to(CircuitState.HALF_OPEN)

        if self._state == CircuitState.HALF_OPEN:
            if self._half_open_in_flight >= self._config.half_open_attempts:
                raise self._reject(now)
            self._half_open_in_flight += 1

    def _on_success(self, trial: bool) -> None:
        self._total_calls += 1
        self._failure_count = 0

        if trial:
            self._half_open_in_flight = max(0, self._half_open_in_flight - 1)

        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self._config.half_open_attempts:
                self._transition_to(CircuitState.CLOSED)

    def _on_failure(self, trial: bool) -> None:
        now = self._clock()
        self._total_calls += 1
        self._failure_count += 1
        self._last_failure_time = now

        if trial:
            self._half_open_in_flight = max(0, self._half_open_in_flight - 1)

        if self._state == CircuitState.HALF_OPEN:
            self._next_attempt_time = now + self._config.recovery_timeout
            self._transition_to(CircuitState.OPEN)
        elif (
            self._state == CircuitState.CLOSED
            and self._failure_count >= self._config.failure_threshold
        ):
            self._next_attempt_time = now + self._config.recovery_timeout
            self._transition_to(CircuitState.OPEN)

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` if the breaker allows it.

        Raises:
            CircuitBreakerOpen: if the breaker is open (no call is made).
            Exception: whatever ``operation`` raised, unchanged.
        """
        self._admit()
        trial = self._state == CircuitState.HALF_OPEN

        try:
            result = await operation()
        except Exception:
            self._on_failure(trial)
            raise
        except BaseException:
            # Cancelled: free the half-open slot without counting a failure.
            if trial:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
            raise
        else:
            self._on_success(trial)
            return result

    def reset(self) -> None:
        """Manually reset the circuit breaker to CLOSED."""
        self._transition_to(CircuitState.CLOSED)
        self._last_failure_time = 0.0
        self._next_attempt_time = 0.0
        self._rejected_calls = 0

    def get_metrics(self) -> dict[str, Any]:
        """Return current metrics."""
        return {
            "name": self._config.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "total_calls": self._total_calls,
            "rejected_calls": self._rejected_calls,
            "last_failure_time": self._last_failure_time,
            "next_attempt_time": self.next_attempt_time,
            "failure_threshold": self._config.failure_threshold,
            "recovery_timeout": self._config.recovery_timeout,
        }
