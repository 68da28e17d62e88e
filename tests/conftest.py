import asyncio
import time

import pytest
import pytest_asyncio

from tracker.cache.layer import CacheCoherencyManager
from tracker.core.backoff import BackoffPolicy
from tracker.core.config import Settings
from tracker.core.errors import BackendError
from tracker.database import create_db_and_tables, create_engine, create_session_factory
from tracker.kv.memory import InMemoryBackend
from tracker.locks.coordinator import LockCoordinator
from tracker.services.mutation_pipeline import MutationPipeline
from tracker.services.record_service import RecordService
from tracker.store.durable import SqlDurableStore


class FakeClock:
    """Manually advanced clock for TTL and lease expiry."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FlakyBackend(InMemoryBackend):
    """InMemoryBackend whose operations can be switched to fail or stall."""

    def __init__(self, clock=time.monotonic):
        super().__init__(clock)
        self.failing: set[str] = set()
        self.stall: dict[str, float] = {}

    async def _check(self, op: str):
        if op in self.stall:
            await asyncio.sleep(self.stall[op])
        if op in self.failing:
            raise BackendError(f"{op} unavailable")

    async def get(self, key):
        await self._check("get")
        return await super().get(key)

    async def set_if_absent(self, key, value, ttl):
        await self._check("set_if_absent")
        return await super().set_if_absent(key, value, ttl)

    async def delete(self, *keys):
        await self._check("delete")
        return await super().delete(*keys)

    async def incr(self, key, ttl=None):
        await self._check("incr")
        return await super().incr(key, ttl)

    async def set_if_unchanged(self, key, value, ttl, guard_key, expected_guard):
        await self._check("set_if_unchanged")
        return await super().set_if_unchanged(key, value, ttl, guard_key, expected_guard)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend(clock):
    return InMemoryBackend(clock=clock)


@pytest.fixture
def policy():
    # deterministic and generous enough for lock waiters to outlast a SQLite write
    return BackoffPolicy(max_attempts=60, base_delay=0.005, max_delay=0.02, jitter=False)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'tracker.db'}",
        create_tables=True,
        kv_backend="memory",
    )


@pytest_asyncio.fixture
async def engine(settings):
    engine = create_engine(settings)
    await create_db_and_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(engine):
    return SqlDurableStore(create_session_factory(engine))


@pytest.fixture
def locks(backend, policy, clock):
    return LockCoordinator(backend, policy=policy, clock=clock)


@pytest.fixture
def cache(backend):
    return CacheCoherencyManager(backend)


@pytest.fixture
def pipeline(store, locks, cache, policy):
    return MutationPipeline(store, locks, cache, policy=policy)


@pytest.fixture
def records(store, cache, pipeline):
    return RecordService(store, cache, pipeline)


@pytest.fixture
def task_data():
    return {"title": "Write report", "project_id": "p-1"}


@pytest.fixture
def flaky(clock):
    return FlakyBackend(clock=clock)
