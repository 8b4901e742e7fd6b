"""Delivery Log Context.

Task-local logging context using contextvars, for binding the job being
delivered (notification id, user id, correlation id) to every log entry
emitted while it is in flight.
"""

import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any


_correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
_notification_id_var: ContextVar[str] = ContextVar("notification_id", default="")
_user_id_var: ContextVar[str] = ContextVar("user_id", default="")
_extra_context_var: ContextVar[dict] = ContextVar("extra_context", default={})


def generate_correlation_id() -> str:
    """Generate a unique correlation ID using UUID4."""
    return str(uuid.uuid4())


def get_correlation_id() -> str:
    return _correlation_id_var.get()


def get_notification_id() -> str:
    return _notification_id_var.get()


def get_user_id() -> str:
    return _user_id_var.get()


def get_context_dict() -> dict[str, Any]:
    """Get all bound context values as a dictionary for log records."""
    ctx = {}
    corr_id = _correlation_id_var.get()
    if corr_id:
        ctx["correlation_id"] = corr_id
    notification_id = _notification_id_var.get()
    if notification_id:
        ctx["notification_id"] = notification_id
    user_id = _user_id_var.get()
    if user_id:
        ctx["user_id"] = user_id
    extra = _extra_context_var.get()
    if extra:
        ctx.update(extra)
    return ctx


@dataclass
class LogContext:
    """Context manager binding delivery identifiers to log entries.

    Values are restored to what they were on entry, so contexts nest.

    Example:
        with LogContext(notification_id=job.id, user_id=job.user_id):
            logger.info("delivering")  # carries notification_id, user_id
    """

    notification_id: str = ""
    user_id: str = ""
    correlation_id: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    _tokens: list = field(default_factory=list, repr=False)

    def __post_init__(self):
        if not self.correlation_id:
            self.correlation_id = generate_correlation_id()

    def __enter__(self) -> "LogContext":
        self._tokens = [
            (_correlation_id_var, _correlation_id_var.set(self.correlation_id)),
            (_notification_id_var, _notification_id_var.set(self.notification_id)),
            (_user_id_var, _user_id_var.set(self.user_id)),
            (_extra_context_var, _extra_context_var.set(self.extra.copy())),
        ]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()

    def bind(self, **kwargs: Any) -> None:
        """Add extra key-value pairs to the active context."""
        current = _extra_context_var.get()
        _extra_context_var.set({**current, **kwargs})
        self.extra.update(kwargs)
