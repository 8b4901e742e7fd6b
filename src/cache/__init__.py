"""Key-value storage package for Courtside delivery."""

from src.cache import keys
from src.cache.store import KeyValueStore, MemoryStore, RedisStore

__all__ = ["KeyValueStore", "MemoryStore", "RedisStore", "keys"]
