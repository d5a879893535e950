"""Shared test fixtures - async SQLite for the remote store, fakeredis for the local cache."""

from datetime import datetime, timedelta, timezone

import pytest
from fakeredis import aioredis
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from streakkeeper.api.deps import get_streak_engine
from streakkeeper.core import calculator
from streakkeeper.core.errors import RemoteUnavailableError
from streakkeeper.core.retry import RetryPolicy
from streakkeeper.db.database import Base
from streakkeeper.domain import RelationshipStreak, StreakStatus, UserStreak
from streakkeeper.services.collaborators import ManualConnectivity, StaticDirectory
from streakkeeper.services.offline_queue import OfflineEventQueue
from streakkeeper.services.streak_engine import StreakEngine
from streakkeeper.storage.local_cache import LocalCache
from streakkeeper.storage.remote import RemoteStore

# In-memory SQLite for tests (no Docker needed)
TEST_DATABASE_URL = "sqlite+aiosqlite:///file::memory:?cache=shared&uri=true"

test_engine = create_async_engine(TEST_DATABASE_URL, echo=False)
test_session_factory = async_sessionmaker(
    test_engine, class_=AsyncSession, expire_on_commit=False
)

# Tuesday, 10 March 2026, noon UTC
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def days_ago(n: float) -> datetime:
    return NOW - timedelta(days=n)


class FlakyRemote(RemoteStore):
    """Remote store that can be switched off to simulate an unreachable backend."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.down = False
        self.calls = 0

    async def _attempt(self, work):
        self.calls += 1
        if self.down:
            raise RemoteUnavailableError("remote store is down")
        return await super()._attempt(work)


class RecordingDelivery:
    def __init__(self):
        self.scheduled = []
        self.cancelled = []

    async def schedule(self, request):
        self.scheduled.append(request)
        return f"handle-{len(self.scheduled)}"

    async def cancel(self, handle):
        self.cancelled.append(handle)


class Seeder:
    """Writes streak rows straight into the remote store."""

    def __init__(self, remote: RemoteStore):
        self.remote = remote

    async def user(self, user_id: str, **fields) -> UserStreak:
        streak = UserStreak(user_id=user_id, **fields)
        return await self.remote.transaction(lambda tx: tx.save_user_streak(streak))

    async def relationship(
        self,
        user_id: str,
        relationship_id: str,
        last_contact: datetime,
        *,
        current: int = 1,
        longest: int | None = None,
        frequency: int = 7,
        status: StreakStatus = StreakStatus.ACTIVE,
    ) -> RelationshipStreak:
        streak = calculator.schedule_from(
            RelationshipStreak(
                user_id=user_id,
                relationship_id=relationship_id,
                contact_frequency_days=frequency,
                current_streak=current,
                longest_streak=longest if longest is not None else current,
                status=status,
            ),
            last_contact,
        )
        return await self.remote.transaction(lambda tx: tx.save_relationship_streak(streak))


def fast_policy(attempts: int = 3) -> RetryPolicy:
    async def no_sleep(_delay):
        return None

    return RetryPolicy(max_attempts=attempts, base_delay=0, jitter=0, sleep=no_sleep)


@pytest.fixture(autouse=True)
async def setup_db():
    """Create all tables before each test, drop after."""
    # Import all models so Base.metadata knows about them
    import streakkeeper.models  # noqa: F401

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def redis_client():
    client = aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def cache(redis_client):
    return LocalCache(redis_client, prefix="test", device_id="device-1")


@pytest.fixture
def remote():
    return FlakyRemote(test_session_factory, retry_policy=fast_policy(2))


@pytest.fixture
def seed(remote):
    return Seeder(remote)


@pytest.fixture
def connectivity():
    return ManualConnectivity(online=True)


@pytest.fixture
def delivery():
    return RecordingDelivery()


@pytest.fixture
def engine(remote, cache, connectivity, delivery):
    clock = lambda: NOW  # noqa: E731
    return StreakEngine(
        remote,
        cache,
        connectivity=connectivity,
        directory=StaticDirectory({"rel-1": "Alex", "rel-2": "Sam"}),
        delivery=delivery,
        queue=OfflineEventQueue(cache, connectivity, policy=fast_policy(3), clock=clock),
        clock=clock,
    )


@pytest.fixture
async def client(engine):
    """Async HTTP test client wired to the test engine."""
    from streakkeeper.main import app

    app.dependency_overrides[get_streak_engine] = lambda: engine
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
