"""Database package for Courtside delivery."""

from src.db.base import Base
from src.db.engine import AsyncSessionLocal, create_tables, dispose_engine, get_async_engine
from src.db.models import PushTokenRecord

__all__ = [
    "Base",
    "get_async_engine",
    "AsyncSessionLocal",
    "create_tables",
    "dispose_engine",
    "PushTokenRecord",
]
