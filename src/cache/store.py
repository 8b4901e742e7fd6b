"""Key-value storage for Courtside delivery.

The offline queue persists itself as a single serialized blob under one
key. ``RedisStore`` is the durable backend; ``MemoryStore`` keeps the
same contract in process for tests and local runs.
"""

import logging
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Minimal durable key-value contract. Failures propagate to the caller."""

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...


class RedisStore:
    """Redis-backed key-value store.

    The client is created lazily on first use and pinged once; a failed
    connection is logged, dropped and re-raised so the next call retries.
    """

    def __init__(self, url: Optional[str] = None):
        self._url = url
        self._client = None

    async def get_client(self):
        """Get or create the async Redis client."""
        if self._client is None:
            try:
                import redis.asyncio as aioredis
                url = self._url
                if url is None:
                    from src.settings import get_settings
                    url = get_settings().redis_url
                self._client = aioredis.from_url(url, decode_responses=True)
                await self._client.ping()
            except Exception as e:
                logger.warning("Redis connection failed: %s", e)
                self._client = None
                raise
        return self._client

    async def get(self, key: str) -> Optional[str]:
        client = await self.get_client()
        return await client.get(key)

    async def set(self, key: str, value: str) -> None:
        client = await self.get_client()
        await client.set(key, value)

    async def delete(self, key: str) -> None:
        client = await self.get_client()
        await client.delete(key)

    async def close(self) -> None:
        """Close the connection."""
        if self._client:
            await self._client.aclose()
            self._client = None


class MemoryStore:
    """In-process key-value store with the same contract as RedisStore."""

    def __init__(self):
        self._data: dict[str, str] = {}
        self.writes = 0

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value
        self.writes += 1

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._data
