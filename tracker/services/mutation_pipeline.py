"""
Single-entity read-modify-write pipeline.

    acquire lease -> re-read -> compare version -> conditional write
    -> invalidate cache -> append audit -> release lease

The version compare inside the durable store is what keeps updates from
being lost; the lease only keeps concurrent editors of one record from
wasting writes on each other. Cache invalidation and audit failures are
logged and never undo a committed write.
"""

import asyncio
import dataclasses
import logging
from enum import Enum
from typing import Any, Awaitable, Callable
from uuid import uuid4

from sqlmodel import SQLModel

from tracker.cache.layer import CacheCoherencyManager, list_prefix, point_key
from tracker.core.backoff import BackoffPolicy
from tracker.core.errors import (
    BackendError,
    CacheTimeout,
    LockTimeout,
    StoreTimeout,
    with_deadline,
)
from tracker.core.results import (
    Busy,
    Conflict,
    InternalError,
    MutationResult,
    NotFound,
    Success,
    WriteResult,
)
from tracker.locks.coordinator import LockCoordinator, resource_key
from tracker.models import EntityType, entity_spec, snapshot
from tracker.store.durable import DurableStore, prepare_patch

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    LOCK_ACQUIRING = "lock_acquiring"
    LOCK_HELD = "lock_held"
    WRITING = "writing"
    INVALIDATING = "invalidating"
    AUDITING = "auditing"
    DONE = "done"
    FAILED = "failed"


TransitionHook = Callable[[str, PipelineState], None]


class _Run:
    """State tracking for one pipeline call."""

    def __init__(self, action: str, entity_type: EntityType, record_id: str | None, hook):
        self.action = action
        self.entity_type = entity_type
        self.record_id = record_id
        self.state = PipelineState.IDLE
        self._hook = hook

    @property
    def label(self) -> str:
        return f"{self.action} {self.entity_type.value}:{self.record_id or '<new>'}"

    def enter(self, state: PipelineState):
        self.state = state
        logger.debug(f"{self.label} -> {state.value}")
        if self._hook is not None:
            self._hook(self.label, state)

    def fail(self, result: MutationResult) -> MutationResult:
        failed_in = self.state
        self.enter(PipelineState.FAILED)
        if isinstance(result, InternalError):
            logger.error(f"{self.label} failed in {failed_in.value}: {result.detail}")
        else:
            logger.info(f"{self.label} failed in {failed_in.value}: {type(result).__name__}")
        return result


class MutationPipeline:
    """
    Orchestrates create / update / delete for one record at a time.

    The pipeline is the only writer of `version` (through the store) and the
    only invalidator of cache entries. It is safe to call concurrently;
    calls on different records share nothing but the backends.
    """

    def __init__(
        self,
        store: DurableStore,
        locks: LockCoordinator,
        cache: CacheCoherencyManager,
        policy: BackoffPolicy | None = None,
        lock_ttl: float = 15.0,
        audit_timeout: float = 2.0,
        invalidation_retry_attempts: int = 3,
        on_transition: TransitionHook | None = None,
    ):
        self._store = store
        self._locks = locks
        self._cache = cache
        self._policy = policy or locks.policy
        self._lock_ttl = lock_ttl
        self._audit_timeout = audit_timeout
        self._retry_policy = dataclasses.replace(
            self._policy, max_attempts=max(invalidation_retry_attempts, 0) + 1
        )
        self._on_transition = on_transition
        self._pending: set[asyncio.Task] = set()

    # Public operations

    async def create(
        self, entity_type: EntityType | str, initial: dict[str, Any] | SQLModel, actor: str
    ) -> MutationResult:
        run = _Run("create", EntityType(entity_type), None, self._on_transition)
        try:
            run.enter(PipelineState.WRITING)
            try:
                result = await self._store.create(run.entity_type, initial, actor)
            except ValueError as e:
                return run.fail(InternalError(f"invalid {run.entity_type.value}: {e}"))
            run.record_id = result.record.id
            await self._after_write(run, None, result.record, actor)
            run.enter(PipelineState.DONE)
            return result
        except StoreTimeout as e:
            return run.fail(InternalError(str(e), retryable=True))
        except Exception as e:
            logger.exception(f"Unexpected error during {run.label}")
            return run.fail(InternalError(f"unexpected error during {run.label}; see server logs"))

    async def update(
        self,
        entity_type: EntityType | str,
        record_id: str,
        expected_version: int,
        patch: dict[str, Any] | SQLModel,
        actor: str,
    ) -> MutationResult:
        run = _Run("update", EntityType(entity_type), record_id, self._on_transition)
        try:
            changes = prepare_patch(entity_spec(run.entity_type), patch)
        except ValueError as e:
            return run.fail(InternalError(f"invalid patch: {e}"))

        return await self._locked(
            run,
            expected_version,
            actor,
            lambda: self._store.update_if(
                run.entity_type, record_id, expected_version, changes, actor
            ),
        )

    async def delete(
        self,
        entity_type: EntityType | str,
        record_id: str,
        expected_version: int,
        actor: str,
    ) -> MutationResult:
        run = _Run("delete", EntityType(entity_type), record_id, self._on_transition)
        return await self._locked(
            run,
            expected_version,
            actor,
            lambda: self._store.soft_delete(
                run.entity_type, record_id, expected_version, actor
            ),
        )

    # Pipeline stages

    async def _locked(
        self,
        run: _Run,
        expected_version: int,
        actor: str,
        write: Callable[[], Awaitable[WriteResult]],
    ) -> MutationResult:
        key = resource_key(run.entity_type, run.record_id)
        holder_id = uuid4().hex
        try:
            run.enter(PipelineState.LOCK_ACQUIRING)
            async with self._locks.hold(key, holder_id, self._lock_ttl, self._policy) as lease:
                if lease is None:
                    return run.fail(Busy())
                run.enter(PipelineState.LOCK_HELD)

                before = await self._store.read(run.entity_type, run.record_id)
                if before is None:
                    return run.fail(NotFound())
                if before.version != expected_version:
                    return run.fail(Conflict(current_version=before.version))

                run.enter(PipelineState.WRITING)
                result = await write()
                if not isinstance(result, Success):
                    return run.fail(result)

                await self._after_write(run, before, result.record, actor)
                run.enter(PipelineState.DONE)
                return result
        except LockTimeout as e:
            logger.warning(f"{run.label}: {e}")
            return run.fail(Busy())
        except (StoreTimeout, BackendError) as e:
            return run.fail(InternalError(str(e), retryable=True))
        except Exception as e:
            logger.exception(f"Unexpected error during {run.label}")
            return run.fail(InternalError(f"unexpected error during {run.label}; see server logs"))

    async def _after_write(self, run: _Run, before, after, actor: str):
        run.enter(PipelineState.INVALIDATING)
        await self._invalidate(run)

        run.enter(PipelineState.AUDITING)
        await self._audit(run, snapshot(before), snapshot(after), actor)

    def _keys_for(self, run: _Run) -> tuple[str | None, str]:
        point = point_key(run.entity_type, run.record_id) if run.action != "create" else None
        return point, list_prefix(run.entity_type)

    async def _invalidate_keys(self, point: str | None, prefix: str):
        if point is not None:
            await self._cache.invalidate(point)
        await self._cache.invalidate_pattern(prefix)

    async def _invalidate(self, run: _Run):
        point, prefix = self._keys_for(run)
        try:
            await self._invalidate_keys(point, prefix)
        except (BackendError, CacheTimeout) as e:
            logger.warning(
                f"Cache invalidation failed after {run.label}, retrying in background: {e}"
            )
            task = asyncio.ensure_future(self._retry_invalidation(run.label, point, prefix))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _retry_invalidation(self, label: str, point: str | None, prefix: str):
        for attempt, delay in enumerate(self._retry_policy.delays(), start=1):
            await asyncio.sleep(delay)
            try:
                await self._invalidate_keys(point, prefix)
            except (BackendError, CacheTimeout) as e:
                logger.warning(f"Invalidation retry {attempt} for {label} failed: {e}")
                continue
            logger.info(f"Invalidation for {label} succeeded on retry {attempt}")
            return True
        logger.error(f"Giving up invalidation for {label}; entries expire via TTL")
        return False

    async def _audit(self, run: _Run, before: dict | None, after: dict | None, actor: str):
        try:
            await with_deadline(
                self._store.append_audit(
                    run.entity_type, run.record_id, run.action, before, after, actor
                ),
                self._audit_timeout,
                StoreTimeout,
                "audit append",
            )
        except Exception as e:
            # the write is committed; a missing audit row is reported, not reverted
            logger.error(f"Audit append failed for {run.label} by {actor}: {e}")

    async def drain(self):
        """Wait for background invalidation retries (called on shutdown)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
