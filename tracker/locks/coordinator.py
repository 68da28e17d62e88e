"""
Distributed per-entity leases on the key-value backend.

The lease only serializes editors of one record so they stop burning
conditional writes on each other. It does not make writes correct: a lease
can expire under a paused holder and be granted to someone else, so the
durable store's version check runs regardless.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable

from tracker.core.backoff import BackoffPolicy
from tracker.core.errors import LockTimeout, with_deadline
from tracker.kv.base import KeyValueBackend
from tracker.models import EntityType

logger = logging.getLogger(__name__)


def resource_key(entity_type: EntityType | str, record_id: str) -> str:
    """Lock key for one record, namespaced by entity type."""
    return f"lock:{EntityType(entity_type).value}:{record_id}"


@dataclass(frozen=True)
class LockLease:
    resource_key: str
    holder_id: str
    expires_at: float  # wall clock, seconds since epoch


class LockCoordinator:
    def __init__(
        self,
        backend: KeyValueBackend,
        policy: BackoffPolicy | None = None,
        default_ttl: float = 15.0,
        op_timeout: float = 2.0,
        clock: Callable[[], float] = time.time,
    ):
        self._backend = backend
        self.policy = policy or BackoffPolicy()
        self.default_ttl = default_ttl
        self._op_timeout = op_timeout
        self._clock = clock

    def _check_ttl(self, ttl: float | None) -> float:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("lock ttl must be positive")
        return ttl

    async def _call(self, awaitable, what: str):
        return await with_deadline(awaitable, self._op_timeout, LockTimeout, f"lock.{what}")

    async def acquire(
        self, key: str, holder_id: str, ttl: float | None = None
    ) -> LockLease | None:
        """Grant a lease if no live lease exists for `key`; None means already held."""
        ttl = self._check_ttl(ttl)
        granted = await self._call(
            self._backend.set_if_absent(key, holder_id, ttl), "acquire"
        )
        if not granted:
            return None
        logger.debug(f"Lock granted: {key} -> {holder_id}")
        return LockLease(key, holder_id, self._clock() + ttl)

    async def release(self, key: str, holder_id: str) -> bool:
        """Release `key` if `holder_id` holds it; False means not held (no-op)."""
        released = await self._call(
            self._backend.delete_if_equals(key, holder_id), "release"
        )
        if not released:
            logger.warning(f"Release of {key} by {holder_id} ignored: not the holder")
        return released

    async def renew(
        self, key: str, holder_id: str, ttl: float | None = None
    ) -> LockLease | None:
        ttl = self._check_ttl(ttl)
        renewed = await self._call(
            self._backend.expire_if_equals(key, holder_id, ttl), "renew"
        )
        if not renewed:
            return None
        return LockLease(key, holder_id, self._clock() + ttl)

    async def acquire_with_retry(
        self,
        key: str,
        holder_id: str,
        ttl: float | None = None,
        policy: BackoffPolicy | None = None,
    ) -> LockLease | None:
        """
        Try `acquire` up to policy.max_attempts times with backoff in between.

        Returns None when every attempt found the lease held.
        """
        policy = policy or self.policy
        lease = await self.acquire(key, holder_id, ttl)
        if lease is not None:
            return lease
        for attempt, delay in enumerate(policy.delays(), start=2):
            await asyncio.sleep(delay)
            lease = await self.acquire(key, holder_id, ttl)
            if lease is not None:
                logger.debug(f"Lock {key} granted on attempt {attempt}")
                return lease
        logger.info(f"Lock {key} still held after {policy.max_attempts} attempts")
        return None

    @asynccontextmanager
    async def hold(
        self,
        key: str,
        holder_id: str,
        ttl: float | None = None,
        policy: BackoffPolicy | None = None,
    ) -> AsyncIterator[LockLease | None]:
        """
        Scoped lease: yields the lease (or None when busy) and always releases
        a granted lease on exit, whatever the exit path.
        """
        lease = await self.acquire_with_retry(key, holder_id, ttl, policy)
        try:
            yield lease
        finally:
            if lease is not None:
                try:
                    await self.release(key, holder_id)
                except Exception as e:
                    # the ttl reclaims the lease
                    logger.error(f"Failed to release lock {key}: {e}")
