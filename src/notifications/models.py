"""Data models for notification delivery."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
import uuid

from src.notifications.config import NotificationType, Platform


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    if value is None:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class SendOutcome(str, Enum):
    """What happened to a send request."""
    SENT = "sent"
    QUEUED = "queued"
    FAILED = "failed"


@dataclass
class DeviceInfo:
    """Device a push token was issued to."""

    platform: Platform
    model: Optional[str] = None
    os_version: Optional[str] = None
    app_version: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "platform": self.platform.value,
            "model": self.model,
            "os_version": self.os_version,
            "app_version": self.app_version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DeviceInfo":
        return cls(
            platform=Platform(data["platform"]),
            model=data.get("model"),
            os_version=data.get("os_version"),
            app_version=data.get("app_version"),
        )


@dataclass
class QueuedNotification:
    """An outbound notification job waiting in the offline queue.

    Only the queue's drain pass mutates ``attempts``, ``last_attempt``
    and ``error``.
    """

    type: NotificationType
    user_id: str
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)
    attempts: int = 0
    last_attempt: Optional[datetime] = None
    error: Optional[str] = None

    def record_failure(self, error: str) -> None:
        self.attempts += 1
        self.last_attempt = _now()
        self.error = error

    def reset_attempts(self) -> None:
        self.attempts = 0
        self.last_attempt = None
        self.error = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "user_id": self.user_id,
            "title": self.title,
            "body": self.body,
            "data": self.data,
            "created_at": self.created_at.isoformat(),
            "attempts": self.attempts,
            "last_attempt": _iso(self.last_attempt),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "QueuedNotification":
        """Rebuild a job from its persisted form.

        Raises KeyError/ValueError/TypeError for malformed records.
        """
        return cls(
            id=data["id"],
            type=NotificationType(data["type"]),
            user_id=data["user_id"],
            title=data["title"],
            body=data["body"],
            data=dict(data.get("data") or {}),
            created_at=_parse_dt(data["created_at"]),
            attempts=int(data.get("attempts", 0)),
            last_attempt=_parse_dt(data.get("last_attempt")),
            error=data.get("error"),
        )


@dataclass
class PushToken:
    """A push destination registered for a user."""

    user_id: str
    token: str
    device_info: Optional[DeviceInfo] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    last_used: datetime = field(default_factory=_now)
    is_valid: bool = True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "token": self.token,
            "device_info": self.device_info.to_dict() if self.device_info else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "last_used": self.last_used.isoformat(),
            "is_valid": self.is_valid,
        }


@dataclass
class TokenStats:
    """Token counts for one user or the whole store."""

    total: int = 0
    valid: int = 0
    invalid: int = 0
    stale: int = 0

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "valid": self.valid,
            "invalid": self.invalid,
            "stale": self.stale,
        }


@dataclass
class DrainResult:
    """Summary of one pass over the offline queue."""

    sent: int = 0
    failed: int = 0
    retrying: int = 0
    skipped: bool = False

    def to_dict(self) -> dict:
        return {
            "sent": self.sent,
            "failed": self.failed,
            "retrying": self.retrying,
            "skipped": self.skipped,
        }


@dataclass
class QueueStatus:
    """Read-only snapshot of the offline queue."""

    total: int
    processing: bool
    network_available: bool
    recent: int
    failed: int
    by_type: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "processing": self.processing,
            "network_available": self.network_available,
            "recent": self.recent,
            "failed": self.failed,
            "by_type": dict(self.by_type),
        }


class EventKind(str, Enum):
    """Lifecycle events tracked for analytics."""
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    FAILED = "failed"


@dataclass
class NotificationEvent:
    """A single tracked notification lifecycle event."""

    kind: EventKind
    type: NotificationType
    user_id: str
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_new_id)
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "type": self.type.value,
            "user_id": self.user_id,
            "id": self.id,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class NotificationMetrics:
    """Aggregated delivery metrics."""

    sent: int = 0
    delivered: int = 0
    opened: int = 0
    failed: int = 0

    @property
    def delivery_rate(self) -> float:
        """Delivered as a percentage of sent."""
        return (self.delivered / self.sent * 100) if self.sent else 0.0

    @property
    def open_rate(self) -> float:
        """Opened as a percentage of delivered."""
        return (self.opened / self.delivered * 100) if self.delivered else 0.0

    def to_dict(self) -> dict:
        return {
            "sent": self.sent,
            "delivered": self.delivered,
            "opened": self.opened,
            "failed": self.failed,
            "delivery_rate": round(self.delivery_rate, 2),
            "open_rate": round(self.open_rate, 2),
        }
