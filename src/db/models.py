"""SQLAlchemy ORM models for Courtside delivery.

Tables:
- push_tokens: Device push tokens, one row per (user, token)
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    String,
    UniqueConstraint,
)

from src.db.base import Base


class PushTokenRecord(Base):
    """Push destination registered by a user's device."""

    __tablename__ = "push_tokens"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), nullable=False, index=True)
    token = Column(String(255), nullable=False)
    device_info = Column(JSON, nullable=True)  # platform, model, os_version, app_version
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    last_used = Column(DateTime(timezone=True), nullable=False)
    is_valid = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("user_id", "token", name="uq_push_tokens_user_token"),
        Index("ix_push_tokens_token", "token"),
        Index("ix_push_tokens_valid_last_used", "is_valid", "last_used"),
    )
