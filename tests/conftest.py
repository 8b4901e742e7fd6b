"""Pytest configuration and shared fixtures."""

import asyncio
import sys
from pathlib import Path

import pytest
import pytest_asyncio

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.cache.store import MemoryStore  # noqa: E402
from src.notifications.config import NotificationConfig  # noqa: E402
from src.resilience import ErrorLog, RetryConfig, RetryPolicy  # noqa: E402


class FakeClock:
    """Manually advanced time source for breakers and limiters."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Stands in for asyncio.sleep; records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeTransport:
    """Push transport double.

    Fails every send while ``fail`` is set (raising ``exc``), fails
    selected job ids via ``fail_ids``, and blocks on ``gate`` when given.
    """

    def __init__(self, fail: bool = False, exc: Exception = None, gate: asyncio.Event = None):
        self.fail = fail
        self.fail_ids: set[str] = set()
        self.exc = exc or ConnectionError("push service unreachable")
        self.gate = gate
        self.calls: list[str] = []
        self.delivered: list[str] = []

    async def send(self, job) -> str:
        self.calls.append(job.id)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail or job.id in self.fail_ids:
            raise self.exc
        self.delivered.append(job.id)
        return f"ticket-{job.id}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recorded_sleep():
    return RecordingSleep()


@pytest.fixture
def error_log():
    return ErrorLog()


@pytest.fixture
def retry_policy(error_log, recorded_sleep):
    return RetryPolicy(error_log, RetryConfig(), sleep=recorded_sleep, rand=lambda: 0.0)


@pytest.fixture
def single_try_config():
    """Queue config where each drain makes exactly one send attempt per job."""
    return NotificationConfig(send_retry=RetryConfig(max_attempts=1))


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest_asyncio.fixture
async def session_factory():
    """In-memory SQLite session factory with the schema created."""
    from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
    from sqlalchemy.pool import StaticPool

    from src.db.engine import create_tables

    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_tables(engine)
    yield async_sessionmaker(bind=engine, expire_on_commit=False)
    await engine.dispose()
