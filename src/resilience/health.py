"""Point-in-time health verdict for the delivery subsystem."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .circuit_breaker import CircuitBreaker
from .config import HEALTH_ERROR_THRESHOLD, HEALTH_SAMPLE_SIZE, CircuitState
from .errors import ErrorLog


@dataclass
class HealthStatus:
    """Result of a health check."""

    healthy: bool = True
    last_check: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    errors: int = 0
    circuit_state: CircuitState = CircuitState.CLOSED
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "healthy": self.healthy,
            "last_check": self.last_check.isoformat(),
            "errors": self.errors,
            "circuit_state": self.circuit_state.value,
            "details": self.details,
        }


class HealthMonitor:
    """Aggregates recent errors and breaker state into a verdict.

    Side-effect free apart from caching the last verdict, so it can be
    called on any cadence (e.g. when the app returns to the foreground).
    """

    def __init__(self, error_log: ErrorLog):
        self._error_log = error_log
        self._last = HealthStatus()

    def check_health(self, breaker: CircuitBreaker, **details: Any) -> HealthStatus:
        errors = len(self._error_log.recent(HEALTH_SAMPLE_SIZE))
        state = breaker.state

        self._last = HealthStatus(
            healthy=errors < HEALTH_ERROR_THRESHOLD and state != CircuitState.OPEN,
            errors=errors,
            circuit_state=state,
            details=dict(details),
        )
        return self._last

    @property
    def last_health_check(self) -> HealthStatus:
        return self._last
