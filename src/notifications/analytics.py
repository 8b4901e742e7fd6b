"""Notification analytics and performance monitoring.

Tracks sent/delivered/opened/failed events in a bounded in-memory log
and derives delivery and engagement rates from it. ``PerformanceMonitor``
keeps the most recent latency samples per operation.
"""

import logging
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Iterator, Optional

from src.notifications.config import NotificationType
from src.notifications.models import (
    EventKind,
    NotificationEvent,
    NotificationMetrics,
    _now,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_EVENTS = 1000
DEFAULT_RETENTION_DAYS = 30
CLEANUP_EVERY = 100  # events

DEFAULT_MAX_SAMPLES = 100
SLOW_THRESHOLD_MS = 1000.0


def _metrics_for(events: list[NotificationEvent]) -> NotificationMetrics:
    metrics = NotificationMetrics()
    for event in events:
        if event.kind == EventKind.SENT:
            metrics.sent += 1
        elif event.kind == EventKind.DELIVERED:
            metrics.delivered += 1
        elif event.kind == EventKind.OPENED:
            metrics.opened += 1
        elif event.kind == EventKind.FAILED:
            metrics.failed += 1
    return metrics


class NotificationAnalytics:
    """Bounded event log with per-type, per-user and overall metrics."""

    def __init__(
        self,
        max_events: int = DEFAULT_MAX_EVENTS,
        retention_days: int = DEFAULT_RETENTION_DAYS,
    ):
        self.max_events = max_events
        self.retention_days = retention_days
        self._events: list[NotificationEvent] = []

    def __len__(self) -> int:
        return len(self._events)

    # --- Tracking ---

    def track_sent(
        self, type: NotificationType, user_id: str, metadata: Optional[dict] = None
    ) -> NotificationEvent:
        return self._add(EventKind.SENT, type, user_id, metadata)

    def track_delivered(
        self, type: NotificationType, user_id: str, metadata: Optional[dict] = None
    ) -> NotificationEvent:
        return self._add(EventKind.DELIVERED, type, user_id, metadata)

    def track_opened(
        self, type: NotificationType, user_id: str, metadata: Optional[dict] = None
    ) -> NotificationEvent:
        return self._add(EventKind.OPENED, type, user_id, metadata)

    def track_failed(
        self,
        type: NotificationType,
        user_id: str,
        error: str,
        metadata: Optional[dict] = None,
    ) -> NotificationEvent:
        return self._add(EventKind.FAILED, type, user_id, {**(metadata or {}), "error": error})

    def _add(
        self,
        kind: EventKind,
        type: NotificationType,
        user_id: str,
        metadata: Optional[dict],
    ) -> NotificationEvent:
        event = NotificationEvent(kind=kind, type=type, user_id=user_id, metadata=dict(metadata or {}))
        self._events.append(event)

        if len(self._events) > self.max_events:
            self._events = self._events[-self.max_events:]

        if len(self._events) % CLEANUP_EVERY == 0:
            self.clear_old_events()

        return event

    # --- Queries ---

    def get_events(self) -> list[NotificationEvent]:
        return list(self._events)

    def get_metrics_by_type(self, type: NotificationType) -> NotificationMetrics:
        return _metrics_for([e for e in self._events if e.type == type])

    def get_user_metrics(self, user_id: str) -> NotificationMetrics:
        return _metrics_for([e for e in self._events if e.user_id == user_id])

    def get_overall_metrics(self) -> NotificationMetrics:
        return _metrics_for(self._events)

    def get_events_by_time_range(self, start: datetime, end: datetime) -> list[NotificationEvent]:
        """Events with start <= timestamp <= end."""
        return [e for e in self._events if start <= e.timestamp <= end]

    def get_most_engaged_types(self) -> list[tuple[NotificationType, float]]:
        """All notification types ordered by open rate, highest first."""
        rates = [(t, self.get_metrics_by_type(t).open_rate) for t in NotificationType]
        return sorted(rates, key=lambda item: item[1], reverse=True)

    def get_summary(self) -> dict[str, Any]:
        """Dashboard summary: overall metrics, top 3 types, last 24 hours by type."""
        now = _now()
        last_day = self.get_events_by_time_range(now - timedelta(hours=24), now)
        by_type: dict[str, int] = defaultdict(int)
        for event in last_day:
            by_type[event.type.value] += 1

        return {
            "overall": self.get_overall_metrics().to_dict(),
            "most_engaged": [
                {"type": t.value, "open_rate": round(rate, 2)}
                for t, rate in self.get_most_engaged_types()[:3]
            ],
            "last_24_hours": {
                "total": len(last_day),
                "by_type": dict(by_type),
            },
        }

    # --- Maintenance ---

    def clear_old_events(self, days_to_keep: Optional[int] = None) -> int:
        """Drop events older than the retention window. Returns count removed."""
        days = self.retention_days if days_to_keep is None else days_to_keep
        cutoff = _now() - timedelta(days=days)
        before = len(self._events)
        self._events = [e for e in self._events if e.timestamp >= cutoff]
        removed = before - len(self._events)
        if removed:
            logger.debug("Cleared %d analytics events older than %d days", removed, days)
        return removed

    def reset(self) -> None:
        self._events = []


class PerformanceMonitor:
    """Latency samples per named operation, most recent ``max_samples`` kept."""

    def __init__(self, max_samples: int = DEFAULT_MAX_SAMPLES, slow_threshold_ms: float = SLOW_THRESHOLD_MS):
        self.max_samples = max_samples
        self.slow_threshold_ms = slow_threshold_ms
        self._samples: dict[str, deque] = {}

    @contextmanager
    def measure(self, operation: str) -> Iterator[None]:
        """Time the enclosed block and record it, even when it raises."""
        start = time.perf_counter()
        try:
            yield
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            self.record(operation, duration_ms)
            if duration_ms >= self.slow_threshold_ms:
                logger.warning(
                    "Slow operation: %s took %.1fms", operation, duration_ms,
                    extra={"duration_ms": round(duration_ms, 2)},
                )

    def record(self, operation: str, duration_ms: float) -> None:
        if operation not in self._samples:
            self._samples[operation] = deque(maxlen=self.max_samples)
        self._samples[operation].append(duration_ms)

    def get_stats(self, operation: str) -> Optional[dict[str, float]]:
        """count/min/max/mean/median/p95/p99, or None with no samples."""
        samples = self._samples.get(operation)
        if not samples:
            return None

        ordered = sorted(samples)
        n = len(ordered)
        return {
            "count": n,
            "min": ordered[0],
            "max": ordered[-1],
            "mean": sum(ordered) / n,
            "median": ordered[n // 2],
            "p95": ordered[int(n * 0.95)],
            "p99": ordered[int(n * 0.99)],
        }

    def get_all_stats(self) -> dict[str, Optional[dict[str, float]]]:
        return {op: self.get_stats(op) for op in self._samples}

    def reset(self) -> None:
        self._samples.clear()
