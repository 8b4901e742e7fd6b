"""Notification sender.

Composition root for notification delivery: builds one instance of each
resilience component and wires registration and send through them.

    send:      rate limiter -> send breaker -> retry policy -> transport
    register:  registration breaker -> retry policy -> push client

Sends that cannot go out now (offline, rate limited, breaker open, or a
transient failure) land in the offline queue.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Any, Optional, Protocol

from src.cache.store import KeyValueStore
from src.logging_config.context import LogContext
from src.notifications.analytics import NotificationAnalytics, PerformanceMonitor
from src.notifications.config import NotificationConfig, NotificationType
from src.notifications.models import DeviceInfo, QueuedNotification, SendOutcome
from src.notifications.queue import SEND_OPERATION, OfflineDeliveryQueue, Transport
from src.notifications.sync import AppLifecycle, NetworkStatus, OfflineSyncCoordinator
from src.notifications.token_store import TokenStore
from src.notifications.tokens import TokenManager
from src.resilience import (
    CircuitBreaker,
    CircuitBreakerOpen,
    DeliveryError,
    ErrorKind,
    ErrorLog,
    HealthMonitor,
    HealthStatus,
    RateLimiter,
    RateLimitExceeded,
    RetryPolicy,
)
from src.settings import Settings, get_settings

logger = logging.getLogger(__name__)

# Plain exceptions that mean "try again later" rather than "this send is broken".
TRANSIENT_EXCEPTIONS = (ConnectionError, TimeoutError, asyncio.TimeoutError, OSError)


class PushClient(Protocol):
    """Device-side push registration (OS permission prompt and token issue)."""

    def is_device_supported(self) -> bool: ...

    async def request_permissions(self) -> bool: ...

    async def get_push_token(self) -> str: ...


def _is_transient(error: DeliveryError) -> bool:
    cause = error.caused_by
    if isinstance(cause, DeliveryError):
        return cause.retryable
    return isinstance(cause, TRANSIENT_EXCEPTIONS)


class NotificationSender:
    """Registers devices for push and sends notifications."""

    def __init__(
        self,
        queue: OfflineDeliveryQueue,
        tokens: TokenManager,
        transport: Transport,
        push_client: PushClient,
        retry_policy: RetryPolicy,
        error_log: ErrorLog,
        health: HealthMonitor,
        send_breaker: CircuitBreaker,
        registration_breaker: CircuitBreaker,
        rate_limiter: RateLimiter,
        sync: OfflineSyncCoordinator,
        config: NotificationConfig,
        analytics: Optional[NotificationAnalytics] = None,
        performance: Optional[PerformanceMonitor] = None,
    ):
        self.queue = queue
        self.tokens = tokens
        self.sync = sync
        self.error_log = error_log
        self.health = health
        self.send_breaker = send_breaker
        self.registration_breaker = registration_breaker
        self.rate_limiter = rate_limiter
        self.analytics = analytics
        self.performance = performance
        self.config = config
        self._transport = transport
        self._push_client = push_client
        self._retry = retry_policy

    @classmethod
    def create(
        cls,
        transport: Transport,
        push_client: PushClient,
        store: KeyValueStore,
        token_store: TokenStore,
        config: Optional[NotificationConfig] = None,
        settings: Optional[Settings] = None,
        network: Optional[NetworkStatus] = None,
        lifecycle: Optional[AppLifecycle] = None,
    ) -> "NotificationSender":
        """Build a sender and every component it depends on."""
        settings = settings or get_settings()
        config = config or NotificationConfig()
        if not config.project_id and settings.push_project_id:
            config = replace(config, project_id=settings.push_project_id)

        network = network or NetworkStatus()
        error_log = ErrorLog(debug=settings.is_development)
        retry_policy = RetryPolicy(error_log, config.send_retry)
        send_breaker = CircuitBreaker(config.breaker_config("push_send"))
        registration_breaker = CircuitBreaker(config.breaker_config("push_registration"))
        rate_limiter = RateLimiter(config.rate_limiter_config("push_send"))
        analytics = NotificationAnalytics()
        performance = PerformanceMonitor()

        queue = OfflineDeliveryQueue(
            store,
            transport,
            retry_policy,
            error_log,
            config,
            breaker=send_breaker,
            rate_limiter=rate_limiter,
            analytics=analytics,
            performance=performance,
            network_available=network.is_online,
        )
        tokens = TokenManager(token_store, retry_policy, error_log, config)
        sync = OfflineSyncCoordinator(
            queue, network, lifecycle, settle_delay=config.settle_delay_seconds
        )

        return cls(
            queue=queue,
            tokens=tokens,
            transport=transport,
            push_client=push_client,
            retry_policy=retry_policy,
            error_log=error_log,
            health=HealthMonitor(error_log),
            send_breaker=send_breaker,
            registration_breaker=registration_breaker,
            rate_limiter=rate_limiter,
            sync=sync,
            config=config,
            analytics=analytics,
            performance=performance,
        )

    # --- Lifecycle ---

    async def start(self) -> None:
        """Restore the persisted queue and begin listening for sync triggers."""
        await self.queue.load()
        self.sync.start()

    async def close(self) -> None:
        self.sync.stop()
        await self.queue.close()

    # --- Registration ---

    async def register_for_push(self, user_id: str, device_info: DeviceInfo) -> Optional[str]:
        """Obtain and store this device's push token.

        Returns the token, or None after logging why registration failed.
        """
        context = {"user_id": user_id, "platform": device_info.platform.value}

        if not self.config.project_id:
            self.error_log.log(
                DeliveryError(ErrorKind.CONFIG_MISSING, "Push project id is not configured", context=context)
            )
            return None

        if not self._push_client.is_device_supported():
            self.error_log.log(
                DeliveryError(
                    ErrorKind.DEVICE_UNSUPPORTED,
                    "Push notifications require a physical device",
                    context=context,
                )
            )
            return None

        try:
            granted = await self._push_client.request_permissions()
        except Exception as e:
            self.error_log.log(
                DeliveryError(
                    ErrorKind.PERMISSION_DENIED,
                    f"Permission request failed: {e}",
                    context=context,
                    caused_by=e,
                )
            )
            return None

        if not granted:
            self.error_log.log(
                DeliveryError(ErrorKind.PERMISSION_DENIED, "Push permission not granted", context=context)
            )
            return None

        try:
            token = await self.registration_breaker.execute(
                lambda: self._retry.execute(
                    self._push_client.get_push_token,
                    ErrorKind.TOKEN_REGISTRATION_FAILED,
                    context=context,
                )
            )
        except DeliveryError as e:
            self.error_log.log(e)
            return None

        if not await self.tokens.save_token(user_id, token, device_info):
            return None

        logger.info("Registered push token for user %s", user_id)
        return token

    # --- Sending ---

    async def send(
        self,
        type: NotificationType,
        user_id: str,
        title: str,
        body: str,
        data: Optional[dict] = None,
    ) -> SendOutcome:
        """Send now when possible, otherwise queue for later."""
        if not self.queue.network_available:
            await self.queue.enqueue(type, user_id, title, body, data)
            return SendOutcome.QUEUED

        job = QueuedNotification(type=type, user_id=user_id, title=title, body=body, data=dict(data or {}))

        with LogContext(notification_id=job.id, user_id=user_id):
            try:
                if self.performance is not None:
                    with self.performance.measure(SEND_OPERATION):
                        await self._send_now(job)
                else:
                    await self._send_now(job)
            except (RateLimitExceeded, CircuitBreakerOpen) as e:
                logger.warning("Send deferred to offline queue: %s", e.message)
                await self.queue.enqueue(type, user_id, title, body, data)
                return SendOutcome.QUEUED
            except DeliveryError as e:
                if _is_transient(e):
                    logger.warning("Send failed transiently, queueing: %s", e.message)
                    await self.queue.enqueue(type, user_id, title, body, data)
                    return SendOutcome.QUEUED

                self.error_log.log(e)
                if self.analytics:
                    self.analytics.track_failed(type, user_id, e.message, {"notification_id": job.id})
                return SendOutcome.FAILED

        if self.analytics:
            self.analytics.track_sent(type, user_id, {"notification_id": job.id})
        return SendOutcome.SENT

    async def _send_now(self, job: QueuedNotification) -> Any:
        async def attempt() -> Any:
            return await self._retry.execute(
                lambda: self._transport.send(job),
                ErrorKind.SEND_FAILED,
                context={"notification_id": job.id, "type": job.type.value},
                config=self.config.send_retry,
            )

        return await self.rate_limiter.throttle(lambda: self.send_breaker.execute(attempt))

    # --- Health ---

    def get_health_status(self) -> HealthStatus:
        return self.health.check_health(
            self.send_breaker,
            queue_size=len(self.queue),
            network_available=self.queue.network_available,
            rate_limit_remaining=self.rate_limiter.remaining,
            registration_breaker=self.registration_breaker.state.value,
        )
