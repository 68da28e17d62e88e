"""
Durable store for versioned records.

The store is the only component allowed to persist a VersionedRecord or
advance its `version`. Every mutation is a single conditional UPDATE so the
version compare and the write cannot be split by another writer.
"""

import logging
from typing import Any, Protocol

from sqlalchemy import text, update
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import SQLModel, select
from sqlmodel.ext.asyncio.session import AsyncSession

from tracker.core.errors import StoreTimeout, with_deadline
from tracker.core.results import Conflict, NotFound, Success, WriteResult
from tracker.models import (
    BOOKKEEPING_FIELDS,
    AuditEntry,
    EntitySpec,
    EntityType,
    VersionedRecord,
    entity_spec,
    get_utc_now,
)

logger = logging.getLogger(__name__)


def prepare_patch(spec: EntitySpec, patch: dict[str, Any] | SQLModel) -> dict[str, Any]:
    """
    Validate a partial update against the entity's update schema.

    Raises ValueError (pydantic's ValidationError included) on unknown or
    bookkeeping fields, and on explicit nulls for required columns.
    """
    if isinstance(patch, SQLModel):
        patch = patch.model_dump(exclude_unset=True)
    protected = BOOKKEEPING_FIELDS.intersection(patch)
    if protected:
        raise ValueError(f"fields cannot be patched: {sorted(protected)}")
    unknown = set(patch) - set(spec.update_schema.model_fields)
    if unknown:
        raise ValueError(f"unknown fields: {sorted(unknown)}")
    validated = spec.update_schema.model_validate(patch)
    return validated.model_dump(exclude_unset=True)


def prepare_initial(
    spec: EntitySpec, initial: dict[str, Any] | SQLModel, actor: str
) -> VersionedRecord:
    if isinstance(initial, SQLModel):
        initial = initial.model_dump(exclude_unset=True)
    data = spec.create_schema.model_validate(initial)
    return spec.model.model_validate(
        data, update={"created_by": actor, "updated_by": actor, "version": 1}
    )


class DurableStore(Protocol):
    async def read(
        self, entity_type: EntityType, record_id: str
    ) -> VersionedRecord | None: ...

    async def create(
        self, entity_type: EntityType, initial: dict[str, Any] | SQLModel, actor: str
    ) -> Success: ...

    async def update_if(
        self,
        entity_type: EntityType,
        record_id: str,
        expected_version: int,
        patch: dict[str, Any],
        actor: str,
    ) -> WriteResult: ...

    async def soft_delete(
        self, entity_type: EntityType, record_id: str, expected_version: int, actor: str
    ) -> WriteResult: ...

    async def append_audit(
        self,
        entity_type: EntityType,
        entity_id: str,
        action: str,
        before: dict | None,
        after: dict | None,
        actor: str,
    ) -> None: ...

    async def list(
        self,
        entity_type: EntityType,
        filters: dict[str, Any] | None = None,
        skip: int = 0,
        limit: int = 100,
    ) -> list[VersionedRecord]: ...


class SqlDurableStore:
    """
    DurableStore on SQLModel / SQLAlchemy asyncio.

    Works on any backend with per-row atomic UPDATE (PostgreSQL in
    production, SQLite in tests).
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], timeout: float = 5.0):
        self._session_factory = session_factory
        self._timeout = timeout

    async def _deadline(self, coro, what: str):
        return await with_deadline(coro, self._timeout, StoreTimeout, f"store.{what}")

    async def read(self, entity_type: EntityType, record_id: str) -> VersionedRecord | None:
        return await self._deadline(self._read(entity_type, record_id), "read")

    async def _read(self, entity_type: EntityType, record_id: str):
        model = entity_spec(entity_type).model
        async with self._session_factory() as session:
            record = await session.get(model, record_id)
        if record is None or record.deleted_at is not None:
            return None
        return record

    async def create(
        self, entity_type: EntityType, initial: dict[str, Any] | SQLModel, actor: str
    ) -> Success:
        record = prepare_initial(entity_spec(entity_type), initial, actor)
        return await self._deadline(self._create(record), "create")

    async def _create(self, record: VersionedRecord) -> Success:
        async with self._session_factory() as session:
            session.add(record)
            await session.commit()
            await session.refresh(record)
        return Success(record)

    async def update_if(
        self,
        entity_type: EntityType,
        record_id: str,
        expected_version: int,
        patch: dict[str, Any],
        actor: str,
    ) -> WriteResult:
        """
        Apply `patch` only if the record is live and still at `expected_version`.

        The resulting version is always expected_version + 1.
        """
        return await self._deadline(
            self._conditional_write(entity_type, record_id, expected_version, dict(patch), actor),
            "update_if",
        )

    async def soft_delete(
        self, entity_type: EntityType, record_id: str, expected_version: int, actor: str
    ) -> WriteResult:
        values = {"deleted_at": get_utc_now(), "deleted_by": actor}
        return await self._deadline(
            self._conditional_write(entity_type, record_id, expected_version, values, actor),
            "soft_delete",
        )

    async def _conditional_write(
        self,
        entity_type: EntityType,
        record_id: str,
        expected_version: int,
        values: dict[str, Any],
        actor: str,
    ) -> WriteResult:
        entity_type = EntityType(entity_type)
        model = entity_spec(entity_type).model
        values.update(
            version=model.version + 1,
            updated_by=actor,
            updated_at=get_utc_now(),
        )
        stmt = (
            update(model)
            .where(
                model.id == record_id,
                model.version == expected_version,
                model.deleted_at.is_(None),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        async with self._session_factory() as session:
            result = await session.exec(stmt)
            if result.rowcount == 1:
                record = await session.get(model, record_id, populate_existing=True)
                await session.commit()
                return Success(record)

            # nothing was written; classify why for the caller
            current = await session.get(model, record_id)
            live = current is not None and current.deleted_at is None
            current_version = current.version if live else None
            await session.rollback()

        if current_version is None:
            return NotFound()
        logger.info(
            f"Version conflict on {entity_type.value}:{record_id}: "
            f"expected {expected_version}, current {current_version}"
        )
        return Conflict(current_version=current_version)

    async def append_audit(
        self,
        entity_type: EntityType,
        entity_id: str,
        action: str,
        before: dict | None,
        after: dict | None,
        actor: str,
    ) -> None:
        entry = AuditEntry(
            entity_type=EntityType(entity_type).value,
            entity_id=entity_id,
            action=action,
            before=before,
            after=after,
            actor=actor,
        )
        await self._deadline(self._add(entry), "append_audit")

    async def _add(self, entry: AuditEntry):
        async with self._session_factory() as session:
            session.add(entry)
            await session.commit()

    async def audit_trail(self, entity_type: EntityType, entity_id: str) -> list[AuditEntry]:
        query = (
            select(AuditEntry)
            .where(
                AuditEntry.entity_type == EntityType(entity_type).value,
                AuditEntry.entity_id == entity_id,
            )
            .order_by(AuditEntry.id)
        )
        return await self._deadline(self._all(query), "audit_trail")

    async def list(
        self,
        entity_type: EntityType,
        filters: dict[str, Any] | None = None,
        skip: int = 0,
        limit: int = 100,
    ) -> list[VersionedRecord]:
        entity_type = EntityType(entity_type)
        spec = entity_spec(entity_type)
        model = spec.model
        query = select(model).where(model.deleted_at.is_(None))
        for name, value in (filters or {}).items():
            if name not in spec.filters:
                raise ValueError(f"cannot filter {entity_type.value} by {name!r}")
            if value is not None:
                query = query.where(getattr(model, name) == value)
        query = query.order_by(model.created_at.desc(), model.id).offset(skip).limit(limit)
        return await self._deadline(self._all(query), "list")

    async def _all(self, query):
        async with self._session_factory() as session:
            result = await session.exec(query)
            return list(result.all())

    async def ping(self) -> bool:
        try:
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False
