"""Offline delivery queue.

Holds outbound notification jobs that could not be sent immediately and
replays them when the network is available. The queue is bounded (the
oldest job is evicted when full), persisted as a whole to the key-value
store, and drained newest-first with a bounded number of attempts per
job. A boolean ``processing`` flag is the only concurrency control: a
drain requested while another is in flight is a no-op.
"""

import asyncio
import json
import logging
from collections import defaultdict
from datetime import timedelta
from typing import Any, Optional, Protocol

from src.cache.keys import NOTIFICATION_QUEUE, NOTIFICATION_QUEUE_VERSION
from src.cache.store import KeyValueStore
from src.logging_config.context import LogContext
from src.notifications.analytics import NotificationAnalytics, PerformanceMonitor
from src.notifications.config import NotificationConfig, NotificationType
from src.notifications.models import DrainResult, QueuedNotification, QueueStatus, _now
from src.resilience import (
    CircuitBreaker,
    CircuitBreakerOpen,
    DeliveryError,
    ErrorKind,
    ErrorLog,
    RateLimiter,
    RateLimitExceeded,
    RetryPolicy,
)

logger = logging.getLogger(__name__)

RECENT_WINDOW = timedelta(hours=1)
SEND_OPERATION = "notification.send"


class Transport(Protocol):
    """Outbound push transport. Must tolerate repeated sends of one job."""

    async def send(self, job: QueuedNotification) -> Any: ...


class OfflineDeliveryQueue:
    """Durable, bounded queue of notification jobs awaiting delivery."""

    def __init__(
        self,
        store: KeyValueStore,
        transport: Transport,
        retry_policy: RetryPolicy,
        error_log: ErrorLog,
        config: NotificationConfig,
        breaker: Optional[CircuitBreaker] = None,
        rate_limiter: Optional[RateLimiter] = None,
        analytics: Optional[NotificationAnalytics] = None,
        performance: Optional[PerformanceMonitor] = None,
        network_available: bool = True,
    ):
        self._store = store
        self._transport = transport
        self._retry = retry_policy
        self._error_log = error_log
        self.config = config
        self._breaker = breaker
        self._rate_limiter = rate_limiter
        self._analytics = analytics
        self._performance = performance
        self._network_available = network_available

        self._queue: list[QueuedNotification] = []
        self._processing = False
        self._background: set[asyncio.Task] = set()
        self._drain_passes = 0
        self._evicted = 0
        self._dead_lettered = 0

    # --- State ---

    @property
    def processing(self) -> bool:
        return self._processing

    @property
    def network_available(self) -> bool:
        return self._network_available

    def set_network_available(self, available: bool) -> None:
        """Record connectivity. Draining on reconnect is the sync coordinator's job."""
        if available != self._network_available:
            logger.info("Queue network status: %s", "online" if available else "offline")
        self._network_available = available

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    def __len__(self) -> int:
        return len(self._queue)

    # --- Persistence ---

    async def load(self) -> int:
        """Restore the queue from storage. Returns the number of jobs loaded."""
        try:
            raw = await self._store.get(NOTIFICATION_QUEUE)
            payload = json.loads(raw) if raw else None
        except Exception as e:
            self._error_log.log(
                DeliveryError(
                    ErrorKind.STORAGE_ERROR,
                    f"Failed to load notification queue: {e}",
                    context={"key": NOTIFICATION_QUEUE},
                    caused_by=e,
                )
            )
            self._queue = []
            return 0

        records = self._unwrap(payload)
        jobs: list[QueuedNotification] = []
        for record in records:
            try:
                jobs.append(QueuedNotification.from_dict(record))
            except (KeyError, ValueError, TypeError, AttributeError) as e:
                logger.warning("Skipping unreadable queued notification: %s", e)

        if len(jobs) > self.config.max_queue_size:
            jobs = jobs[-self.config.max_queue_size:]

        self._queue = jobs
        logger.info("Loaded %d queued notifications", len(jobs))
        return len(jobs)

    @staticmethod
    def _unwrap(payload: Any) -> list:
        """Accept the versioned envelope or a bare legacy list."""
        if payload is None:
            return []
        if isinstance(payload, list):
            return payload
        if isinstance(payload, dict):
            version = payload.get("version")
            if version != NOTIFICATION_QUEUE_VERSION:
                logger.warning(
                    "Queue blob version %s differs from %s, reading best effort",
                    version,
                    NOTIFICATION_QUEUE_VERSION,
                )
            items = payload.get("items", [])
            return items if isinstance(items, list) else []
        logger.warning("Ignoring queue blob of type %s", type(payload).__name__)
        return []

    async def _persist(self) -> bool:
        blob = json.dumps(
            {
                "version": NOTIFICATION_QUEUE_VERSION,
                "items": [job.to_dict() for job in self._queue],
            },
            default=str,
        )
        try:
            await self._store.set(NOTIFICATION_QUEUE, blob)
            return True
        except Exception as e:
            self._error_log.log(
                DeliveryError(
                    ErrorKind.STORAGE_ERROR,
                    f"Failed to persist notification queue: {e}",
                    context={"key": NOTIFICATION_QUEUE, "size": len(self._queue)},
                    caused_by=e,
                )
            )
            return False

    # --- Mutations ---

    async def enqueue(
        self,
        type: NotificationType,
        user_id: str,
        title: str,
        body: str,
        data: Optional[dict] = None,
    ) -> QueuedNotification:
        """Add a job, evicting the oldest one when full, and persist.

        When online a background drain is started immediately.
        """
        if len(self._queue) >= self.config.max_queue_size:
            evicted = self._queue.pop(0)
            self._evicted += 1
            logger.warning(
                "Notification queue full (%d), evicted oldest %s",
                self.config.max_queue_size,
                evicted.id,
            )

        job = QueuedNotification(
            type=type,
            user_id=user_id,
            title=title,
            body=body,
            data=dict(data or {}),
        )
        self._queue.append(job)
        await self._persist()
        logger.info("Queued notification %s (%s) for user %s", job.id, type.value, user_id)

        if self._network_available:
            self._schedule_drain()

        return job

    async def remove(self, notification_id: str) -> bool:
        for index, job in enumerate(self._queue):
            if job.id == notification_id:
                del self._queue[index]
                await self._persist()
                return True
        return False

    async def clear_queue(self) -> None:
        self._queue = []
        await self._persist()
        logger.info("Notification queue cleared")

    async def retry_failed(self) -> int:
        """Reset attempts on resident jobs at the retry cap and drain.

        Jobs already dead-lettered by a drain pass are gone from the queue
        and are not brought back.
        """
        count = 0
        for job in self._queue:
            if job.attempts >= self.config.max_retry_attempts:
                job.reset_attempts()
                count += 1

        await self._persist()
        self._schedule_drain()
        return count

    # --- Draining ---

    def _schedule_drain(self) -> None:
        task = asyncio.ensure_future(self.process_queue())
        self._background.add(task)
        task.add_done_callback(self._drain_done)

    def _drain_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background queue drain failed: %s", exc, exc_info=exc)

    async def process_queue(self) -> DrainResult:
        """Run one drain pass over the queue, newest job first.

        A no-op (``skipped=True``) while another pass is running, while
        offline, or when the queue is empty. A rate-limit or open-breaker
        rejection ends the pass early; remaining jobs are not charged an
        attempt. The queue is persisted once, after the pass.
        """
        if self._processing or not self._network_available or not self._queue:
            return DrainResult(skipped=True)

        self._processing = True
        self._drain_passes += 1
        result = DrainResult()
        logger.info("Processing %d queued notifications", len(self._queue))

        try:
            for job in reversed(list(self._queue)):
                if not self._is_resident(job):
                    continue
                if not self._network_available:
                    logger.info("Network lost during drain, stopping pass")
                    break

                with LogContext(notification_id=job.id, user_id=job.user_id):
                    try:
                        await self._deliver(job)
                    except (CircuitBreakerOpen, RateLimitExceeded) as e:
                        logger.warning("Drain halted by admission control: %s", e.message)
                        break
                    except DeliveryError as e:
                        if self._record_failure(job, e):
                            result.failed += 1
                        else:
                            result.retrying += 1
                        continue

                    self._discard(job)
                    result.sent += 1
                    if self._analytics:
                        self._analytics.track_sent(job.type, job.user_id, {"notification_id": job.id})

            await self._persist()
        finally:
            self._processing = False

        logger.info(
            "Queue drain complete: sent=%d failed=%d retrying=%d",
            result.sent,
            result.failed,
            result.retrying,
        )
        return result

    def _is_resident(self, job: QueuedNotification) -> bool:
        return any(j is job for j in self._queue)

    def _discard(self, job: QueuedNotification) -> None:
        # Jobs can be evicted or removed by other callers while a send is in flight.
        self._queue = [j for j in self._queue if j is not job]

    async def _deliver(self, job: QueuedNotification) -> None:
        async def send() -> Any:
            return await self._retry.execute(
                lambda: self._transport.send(job),
                ErrorKind.SEND_FAILED,
                context={"notification_id": job.id, "type": job.type.value},
                config=self.config.send_retry,
            )

        async def guarded() -> Any:
            if self._breaker is not None:
                return await self._breaker.execute(send)
            return await send()

        async def admitted() -> Any:
            if self._rate_limiter is not None:
                return await self._rate_limiter.throttle(guarded)
            return await guarded()

        if self._performance is not None:
            with self._performance.measure(SEND_OPERATION):
                await admitted()
        else:
            await admitted()

    def _record_failure(self, job: QueuedNotification, error: DeliveryError) -> bool:
        """Charge one attempt; dead-letter the job at the cap. True if dead-lettered."""
        cause = error.caused_by or error
        job.record_failure(str(cause))

        if job.attempts < self.config.max_retry_attempts:
            logger.warning(
                "Notification %s failed (attempt %d/%d): %s",
                job.id,
                job.attempts,
                self.config.max_retry_attempts,
                job.error,
            )
            return False

        self._discard(job)
        self._dead_lettered += 1
        self._error_log.log(
            DeliveryError(
                ErrorKind.SEND_FAILED,
                f"Notification {job.id} dropped after {job.attempts} attempts",
                retryable=False,
                context={
                    "notification_id": job.id,
                    "type": job.type.value,
                    "user_id": job.user_id,
                    "attempts": job.attempts,
                    "error": job.error,
                },
                caused_by=error,
            )
        )
        logger.error("Notification %s permanently failed after %d attempts", job.id, job.attempts)
        if self._analytics:
            self._analytics.track_failed(job.type, job.user_id, job.error or "", {"notification_id": job.id})
        return True

    # --- Queries ---

    def get_all_queued(self) -> list[QueuedNotification]:
        return list(self._queue)

    def get_failed_notifications(self) -> list[QueuedNotification]:
        """Resident jobs already at the retry cap."""
        return [j for j in self._queue if j.attempts >= self.config.max_retry_attempts]

    def get_queue_status(self) -> QueueStatus:
        cutoff = _now() - RECENT_WINDOW
        by_type: dict[str, int] = defaultdict(int)
        for job in self._queue:
            by_type[job.type.value] += 1

        return QueueStatus(
            total=len(self._queue),
            processing=self._processing,
            network_available=self._network_available,
            recent=sum(1 for j in self._queue if j.created_at >= cutoff),
            failed=len(self.get_failed_notifications()),
            by_type=dict(by_type),
        )

    def get_metrics(self) -> dict[str, Any]:
        return {
            "queue_size": len(self._queue),
            "max_queue_size": self.config.max_queue_size,
            "drain_passes": self._drain_passes,
            "evicted": self._evicted,
            "dead_lettered": self._dead_lettered,
            "pending_drains": len(self._background),
        }

    # --- Lifecycle ---

    async def wait_idle(self) -> None:
        """Wait for background drains started by this queue to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        """Cancel pending background drains."""
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()
