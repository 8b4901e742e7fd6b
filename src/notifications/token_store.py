"""Relational push token store over SQLAlchemy's async ORM.

One row per (user_id, token). Every call opens its own session and
commits before returning; failures propagate to the caller, which
decides whether to retry or degrade.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Protocol

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.db.models import PushTokenRecord
from src.notifications.models import DeviceInfo, PushToken

logger = logging.getLogger(__name__)


class TokenStore(Protocol):
    """Storage contract used by the token manager."""

    async def upsert(self, token: PushToken) -> PushToken: ...

    async def fetch_valid(self, user_id: str) -> list[PushToken]: ...

    async def mark_invalid(self, token: str, now: datetime) -> int: ...

    async def invalidate_stale(self, cutoff: datetime, now: datetime, user_id: Optional[str] = None) -> int: ...

    async def count(
        self,
        user_id: Optional[str] = None,
        is_valid: Optional[bool] = None,
        used_before: Optional[datetime] = None,
    ) -> int: ...

    async def delete_for_user(self, user_id: str) -> int: ...

    async def touch(self, token: str, now: datetime) -> int: ...


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_model(row: PushTokenRecord) -> PushToken:
    return PushToken(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        device_info=DeviceInfo.from_dict(row.device_info) if row.device_info else None,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        last_used=_aware(row.last_used),
        is_valid=bool(row.is_valid),
    )


class SqlTokenStore:
    """Push token persistence keyed by (user_id, token)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def upsert(self, token: PushToken) -> PushToken:
        """Insert the token or refresh the existing (user_id, token) row."""
        device_info = token.device_info.to_dict() if token.device_info else None

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(PushTokenRecord).where(
                        PushTokenRecord.user_id == token.user_id,
                        PushTokenRecord.token == token.token,
                    )
                )
                row = result.scalar_one_or_none()

                if row is None:
                    row = PushTokenRecord(
                        id=token.id,
                        user_id=token.user_id,
                        token=token.token,
                        device_info=device_info,
                        created_at=token.created_at,
                        updated_at=token.updated_at,
                        last_used=token.last_used,
                        is_valid=True,
                    )
                    session.add(row)
                else:
                    if device_info is not None:
                        row.device_info = device_info
                    row.updated_at = token.updated_at
                    row.last_used = token.last_used
                    row.is_valid = True

            return _to_model(row)

    async def fetch_valid(self, user_id: str) -> list[PushToken]:
        """Valid tokens for a user, most recently updated first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(PushTokenRecord)
                .where(PushTokenRecord.user_id == user_id, PushTokenRecord.is_valid.is_(True))
                .order_by(PushTokenRecord.updated_at.desc())
            )
            return [_to_model(row) for row in result.scalars().all()]

    async def mark_invalid(self, token: str, now: datetime) -> int:
        return await self._update(
            update(PushTokenRecord)
            .where(PushTokenRecord.token == token)
            .values(is_valid=False, updated_at=now)
        )

    async def invalidate_stale(self, cutoff: datetime, now: datetime, user_id: Optional[str] = None) -> int:
        """Flip valid tokens last used before ``cutoff``. Returns rows changed."""
        stmt = (
            update(PushTokenRecord)
            .where(PushTokenRecord.is_valid.is_(True), PushTokenRecord.last_used < cutoff)
            .values(is_valid=False, updated_at=now)
        )
        if user_id is not None:
            stmt = stmt.where(PushTokenRecord.user_id == user_id)
        return await self._update(stmt)

    async def count(
        self,
        user_id: Optional[str] = None,
        is_valid: Optional[bool] = None,
        used_before: Optional[datetime] = None,
    ) -> int:
        stmt = select(func.count()).select_from(PushTokenRecord)
        if user_id is not None:
            stmt = stmt.where(PushTokenRecord.user_id == user_id)
        if is_valid is not None:
            stmt = stmt.where(PushTokenRecord.is_valid.is_(is_valid))
        if used_before is not None:
            stmt = stmt.where(PushTokenRecord.last_used < used_before)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def delete_for_user(self, user_id: str) -> int:
        return await self._update(delete(PushTokenRecord).where(PushTokenRecord.user_id == user_id))

    async def touch(self, token: str, now: datetime) -> int:
        return await self._update(
            update(PushTokenRecord)
            .where(PushTokenRecord.token == token)
            .values(last_used=now, updated_at=now)
        )

    async def _update(self, stmt) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    stmt.execution_options(synchronize_session=False)
                )
            count = result.rowcount or 0
        logger.debug("Token store statement affected %d rows", count)
        return count
