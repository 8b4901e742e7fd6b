"""Delivery error taxonomy and bounded error log.

Every failure in the delivery subsystem is classified as a
``DeliveryError`` with a kind, a retryability flag and free-form context.
The ``ErrorLog`` keeps the most recent ones for health checks and
diagnostics.
"""

import logging
from collections import Counter, deque
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Optional

from .config import DEFAULT_ERROR_LOG_SIZE

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Closed set of delivery failure kinds."""
    PERMISSION_DENIED = "permission_denied"
    TOKEN_REGISTRATION_FAILED = "token_registration_failed"
    TOKEN_SAVE_FAILED = "token_save_failed"
    SEND_FAILED = "send_failed"
    INVALID_TOKEN = "invalid_token"
    NETWORK_ERROR = "network_error"
    STORAGE_ERROR = "storage_error"
    DEVICE_UNSUPPORTED = "device_unsupported"
    CONFIG_MISSING = "config_missing"
    CHANNEL_SETUP_FAILED = "channel_setup_failed"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"

    @property
    def default_retryable(self) -> bool:
        return self in _RETRYABLE_KINDS

    @property
    def is_fatal(self) -> bool:
        """Terminal for the whole process, no retry can fix it."""
        return self in (ErrorKind.DEVICE_UNSUPPORTED, ErrorKind.CONFIG_MISSING)


_RETRYABLE_KINDS = frozenset({
    ErrorKind.NETWORK_ERROR,
    ErrorKind.SEND_FAILED,
    ErrorKind.RATE_LIMIT_EXCEEDED,
    ErrorKind.TOKEN_REGISTRATION_FAILED,
    ErrorKind.TOKEN_SAVE_FAILED,
    ErrorKind.STORAGE_ERROR,
})


class DeliveryError(Exception):
    """Classified delivery failure.

    Read-only once constructed. Construction never raises and never
    performs I/O, so it is safe at any failure site.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        retryable: Optional[bool] = None,
        context: Optional[Mapping[str, Any]] = None,
        caused_by: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self._kind = kind
        self._message = message
        self._retryable = kind.default_retryable if retryable is None else bool(retryable)
        self._context = MappingProxyType(dict(context or {}))
        self._timestamp = datetime.now(timezone.utc)
        self._caused_by = caused_by

    @property
    def kind(self) -> ErrorKind:
        return self._kind

    @property
    def message(self) -> str:
        return self._message

    @property
    def retryable(self) -> bool:
        return self._retryable

    @property
    def context(self) -> Mapping[str, Any]:
        return self._context

    @property
    def timestamp(self) -> datetime:
        return self._timestamp

    @property
    def caused_by(self) -> Optional[BaseException]:
        return self._caused_by

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(kind={self._kind.value!r}, "
            f"message={self._message!r}, retryable={self._retryable})"
        )

    def to_dict(self) -> dict:
        return {
            "name": type(self).__name__,
            "kind": self._kind.value,
            "message": self._message,
            "timestamp": self._timestamp.isoformat(),
            "retryable": self._retryable,
            "context": dict(self._context),
            "caused_by": {
                "type": type(self._caused_by).__name__,
                "message": str(self._caused_by),
            } if self._caused_by is not None else None,
        }


Reporter = Callable[[DeliveryError], None]


class ErrorLog:
    """Bounded ring of recent delivery errors, oldest evicted first.

    Logging is fire-and-forget: ``log`` never raises, so callers can
    keep going regardless of what happens to the record.
    """

    def __init__(
        self,
        max_errors: int = DEFAULT_ERROR_LOG_SIZE,
        debug: bool = False,
        reporters: Optional[Iterable[Reporter]] = None,
    ):
        self._errors: deque[DeliveryError] = deque(maxlen=max_errors)
        self._debug = debug
        self._reporters: list[Reporter] = list(reporters or [])

    @property
    def max_errors(self) -> int:
        return self._errors.maxlen or 0

    def add_reporter(self, reporter: Reporter) -> None:
        """Attach a monitoring hook that receives every logged error."""
        self._reporters.append(reporter)

    def log(self, error: DeliveryError) -> None:
        self._errors.append(error)

        if self._debug:
            logger.error(
                "[Notification Error] %s: %s (retryable=%s)",
                error.kind.value,
                error.message,
                error.retryable,
                extra={"extra_data": error.to_dict()},
            )

        for reporter in self._reporters:
            try:
                reporter(error)
            except Exception as exc:
                logger.debug("Error reporter %r failed: %s", reporter, exc)

    def recent(self, limit: int = 10) -> list[DeliveryError]:
        """Return up to ``limit`` most recent errors, oldest first."""
        if limit <= 0:
            return []
        return list(self._errors)[-limit:]

    def by_kind(self, kind: ErrorKind) -> list[DeliveryError]:
        return [e for e in self._errors if e.kind == kind]

    def stats(self) -> dict[str, int]:
        """Count logged errors by kind."""
        return dict(Counter(e.kind.value for e in self._errors))

    def clear(self) -> None:
        self._errors.clear()

    def __len__(self) -> int:
        return len(self._errors)
