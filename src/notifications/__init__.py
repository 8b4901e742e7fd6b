"""Notification delivery.

Offline-capable delivery of outbound notifications:
- Durable offline queue with bounded retries and dead-lettering
- Push token lifecycle (validation, storage, cleanup)
- Sync triggers (reconnect, foreground, manual)
- Delivery analytics
"""

from src.notifications.config import (
    AppState,
    NotificationType,
    Platform,
    NotificationConfig,
    DEFAULT_NOTIFICATION_CONFIG,
)
from src.notifications.models import (
    DeviceInfo,
    DrainResult,
    NotificationMetrics,
    PushToken,
    QueuedNotification,
    QueueStatus,
    SendOutcome,
    TokenStats,
)
from src.notifications.analytics import NotificationAnalytics, PerformanceMonitor
from src.notifications.queue import OfflineDeliveryQueue, Transport
from src.notifications.token_store import SqlTokenStore, TokenStore
from src.notifications.tokens import TokenManager
from src.notifications.sync import AppLifecycle, NetworkStatus, OfflineSyncCoordinator
from src.notifications.sender import NotificationSender, PushClient

__all__ = [
    # Config
    "AppState",
    "NotificationType",
    "Platform",
    "NotificationConfig",
    "DEFAULT_NOTIFICATION_CONFIG",
    # Models
    "DeviceInfo",
    "DrainResult",
    "NotificationMetrics",
    "PushToken",
    "QueuedNotification",
    "QueueStatus",
    "SendOutcome",
    "TokenStats",
    # Components
    "NotificationAnalytics",
    "PerformanceMonitor",
    "OfflineDeliveryQueue",
    "Transport",
    "SqlTokenStore",
    "TokenStore",
    "TokenManager",
    "AppLifecycle",
    "NetworkStatus",
    "OfflineSyncCoordinator",
    "NotificationSender",
    "PushClient",
]
