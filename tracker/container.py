import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from tracker.cache.layer import CacheCoherencyManager
from tracker.core.backoff import BackoffPolicy
from tracker.core.config import Settings
from tracker.database import create_db_and_tables, create_engine, create_session_factory
from tracker.kv.base import KeyValueBackend
from tracker.kv.memory import InMemoryBackend
from tracker.kv.redis_backend import RedisBackend
from tracker.locks.coordinator import LockCoordinator
from tracker.services.mutation_pipeline import MutationPipeline
from tracker.services.record_service import RecordService
from tracker.store.durable import SqlDurableStore

logger = logging.getLogger(__name__)


@dataclass
class Container:
    """Explicitly wired collaborators; built and closed by the process entry point."""

    settings: Settings
    engine: AsyncEngine
    backend: KeyValueBackend
    store: SqlDurableStore
    locks: LockCoordinator
    cache: CacheCoherencyManager
    pipeline: MutationPipeline
    records: RecordService

    @classmethod
    async def build(cls, settings: Settings, backend: KeyValueBackend | None = None) -> "Container":
        engine = create_engine(settings)
        if settings.create_tables:
            await create_db_and_tables(engine)

        if backend is None:
            if settings.kv_backend == "memory":
                backend = InMemoryBackend()
            else:
                backend = RedisBackend.from_url(settings.redis_dsn, settings.redis_pool_size)
                await backend.connect()

        store = SqlDurableStore(create_session_factory(engine), timeout=settings.store_timeout)
        policy = BackoffPolicy.from_settings(settings)
        locks = LockCoordinator(
            backend,
            policy=policy,
            default_ttl=settings.lock_ttl_seconds,
            op_timeout=settings.lock_op_timeout,
        )
        cache = CacheCoherencyManager.from_settings(backend, settings)
        pipeline = MutationPipeline(
            store,
            locks,
            cache,
            policy=policy,
            lock_ttl=settings.lock_ttl_seconds,
            audit_timeout=settings.audit_timeout,
            invalidation_retry_attempts=settings.invalidation_retry_attempts,
        )
        logger.info(f"Mutation core ready (kv backend: {settings.kv_backend})")
        return cls(
            settings=settings,
            engine=engine,
            backend=backend,
            store=store,
            locks=locks,
            cache=cache,
            pipeline=pipeline,
            records=RecordService(store, cache, pipeline),
        )

    async def close(self):
        await self.pipeline.drain()
        await self.backend.close()
        await self.engine.dispose()
        logger.info("Mutation core closed")
