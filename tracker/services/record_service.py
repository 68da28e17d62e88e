from typing import Any

from sqlmodel import SQLModel

from tracker.cache.layer import CacheCoherencyManager, list_prefix, point_key
from tracker.core.results import MutationResult
from tracker.models import EntityType, TaskStatus, snapshot
from tracker.services.mutation_pipeline import MutationPipeline
from tracker.store.durable import DurableStore


class RecordService:
    """Cached reads plus the three mutation operations, per entity type."""

    def __init__(
        self,
        store: DurableStore,
        cache: CacheCoherencyManager,
        pipeline: MutationPipeline,
    ):
        self._store = store
        self._cache = cache
        self._pipeline = pipeline

    async def get(self, entity_type: EntityType, record_id: str) -> dict | None:
        async def loader():
            return snapshot(await self._store.read(entity_type, record_id))

        return await self._cache.get_or_load(point_key(entity_type, record_id), loader)

    async def list(
        self,
        entity_type: EntityType,
        filters: dict[str, Any] | None = None,
        skip: int = 0,
        limit: int = 100,
    ) -> list[dict]:
        filters = {k: v for k, v in (filters or {}).items() if v is not None}
        params = {"filters": filters, "skip": skip, "limit": limit}

        async def loader():
            records = await self._store.list(entity_type, filters, skip, limit)
            return [snapshot(record) for record in records]

        return await self._cache.get_or_load_list(list_prefix(entity_type), params, loader)

    async def create(
        self, entity_type: EntityType, data: dict[str, Any] | SQLModel, actor: str
    ) -> MutationResult:
        return await self._pipeline.create(entity_type, data, actor)

    async def update(
        self,
        entity_type: EntityType,
        record_id: str,
        version: int,
        patch: dict[str, Any] | SQLModel,
        actor: str,
    ) -> MutationResult:
        return await self._pipeline.update(entity_type, record_id, version, patch, actor)

    async def delete(
        self, entity_type: EntityType, record_id: str, version: int, actor: str
    ) -> MutationResult:
        return await self._pipeline.delete(entity_type, record_id, version, actor)

    async def complete_task(self, task_id: str, version: int, actor: str) -> MutationResult:
        return await self._pipeline.update(
            EntityType.TASK, task_id, version, {"status": TaskStatus.DONE}, actor
        )
