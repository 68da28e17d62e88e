import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from cachetools import TTLCache

from tracker.core.config import Settings
from tracker.core.errors import BackendError, CacheTimeout, with_deadline
from tracker.kv.base import KeyValueBackend
from tracker.models import EntityType

logger = logging.getLogger(__name__)

Loader = Callable[[], Awaitable[Any]]


def point_key(entity_type: EntityType | str, record_id: str) -> str:
    return f"{EntityType(entity_type).value}:{record_id}"


def list_prefix(entity_type: EntityType | str) -> str:
    return f"list:{EntityType(entity_type).value}"


def fingerprint(params: dict[str, Any]) -> str:
    """Stable short hash of list-query parameters."""
    raw = json.dumps(params, sort_keys=True, default=str)
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: Any
    stored_version: int | None


class CacheCoherencyManager:
    """
    Read-through cache kept coherent with the durable store.

    L1: optional process-local TTLCache (fast, not shared between workers)
    L2: shared key-value backend (Redis)

    Features:
    - Single-flight loads: concurrent misses on one key share one loader call
    - Generation guards: a load that raced with an invalidation is returned
      to its caller but never written back, so superseded values are not
      resurrected
    - List entries live under a per-prefix generation; bumping it retires
      every list for that prefix without scanning keys
    - Read path degrades to the loader when the backend is unavailable
    - Every entry carries a TTL so lost invalidations self-heal
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        namespace: str = "tms:",
        l2_ttl: float = 300,
        list_ttl: float = 60,
        op_timeout: float = 1.0,
        l1: TTLCache | None = None,
    ):
        self._backend = backend
        self._namespace = namespace
        self.l2_ttl = l2_ttl
        self.list_ttl = list_ttl
        self._op_timeout = op_timeout
        self.l1 = l1
        self._inflight: dict[str, asyncio.Task] = {}
        # bumped by every local invalidation; L1 writes from older reads are dropped
        self._l1_epoch = 0

        # Stats tracking
        self.stats = {
            "l1_hits": 0,
            "l2_hits": 0,
            "misses": 0,
            "loads": 0,
            "errors": 0,
            "skipped_stores": 0,
        }

    @classmethod
    def from_settings(cls, backend: KeyValueBackend, settings: Settings) -> "CacheCoherencyManager":
        l1 = None
        if settings.l1_enabled:
            l1 = TTLCache(maxsize=settings.l1_maxsize, ttl=settings.l1_ttl_seconds)
        return cls(
            backend,
            namespace=settings.cache_namespace,
            l2_ttl=settings.l2_ttl_seconds,
            list_ttl=settings.list_ttl_seconds,
            op_timeout=settings.cache_timeout,
            l1=l1,
        )

    def _l2_key(self, key: str) -> str:
        """Build namespaced L2 cache key."""
        return f"{self._namespace}{key}"

    def _gen_key(self, key: str) -> str:
        return f"{self._namespace}gen:{key}"

    def _serialize(self, value: Any) -> str:
        """Serialize value for storage."""
        version = value.get("version") if isinstance(value, dict) else None
        return json.dumps({"version": version, "value": value}, default=str)

    def _deserialize(self, raw: str) -> dict:
        return json.loads(raw)

    async def _call(self, awaitable, what: str):
        return await with_deadline(awaitable, self._op_timeout, CacheTimeout, f"cache.{what}")

    def _note_error(self, what: str, key: str, error: Exception):
        self.stats["errors"] += 1
        logger.warning(f"Cache {what} failed for {key}: {error}")

    async def _read_l2(self, key: str) -> dict | None:
        try:
            raw = await self._call(self._backend.get(self._l2_key(key)), "get")
        except (BackendError, CacheTimeout) as e:
            self._note_error("GET", key, e)
            return None
        return self._deserialize(raw) if raw is not None else None

    def _remember(self, key: str, value: Any, epoch: int):
        if self.l1 is not None and epoch == self._l1_epoch:
            self.l1[key] = value

    def _forget(self, match: Callable[[str], bool]):
        self._l1_epoch += 1
        if self.l1 is not None:
            for key in [k for k in self.l1 if match(k)]:
                self.l1.pop(key, None)
        # later callers must not join a load that started before the write;
        # the detached load still finishes and its store is fenced
        for key in [k for k in self._inflight if match(k)]:
            self._inflight.pop(key, None)

    async def _lookup(self, key: str, epoch: int) -> tuple[bool, Any]:
        # 1) Check L1 (fast path)
        if self.l1 is not None and key in self.l1:
            self.stats["l1_hits"] += 1
            return True, self.l1[key]

        # 2) Check L2
        entry = await self._read_l2(key)
        if entry is not None:
            self.stats["l2_hits"] += 1
            self._remember(key, entry["value"], epoch)
            return True, entry["value"]
        return False, None

    async def get_or_load(self, key: str, loader: Loader, ttl: Optional[float] = None):
        """
        Return the cached value for a point key, loading it on miss.

        The loader result is stored only if the key's generation did not
        move while it ran. `None` results are returned but never cached.
        """
        epoch = self._l1_epoch
        hit, value = await self._lookup(key, epoch)
        if hit:
            return value

        async def load():
            guard_key = self._gen_key(key)
            try:
                guard = await self._call(self._backend.get(guard_key), "get")
            except (BackendError, CacheTimeout) as e:
                self._note_error("generation read", key, e)
                self.stats["loads"] += 1
                return await loader()
            return await self._load_and_store(
                key, loader, ttl or self.l2_ttl, guard_key, guard, epoch
            )

        return await self._single_flight(key, load)

    async def get_or_load_list(
        self, prefix: str, params: dict[str, Any], loader: Loader, ttl: Optional[float] = None
    ):
        """
        Read-through for list/query results under `prefix`.

        Entries are keyed by the prefix generation, so invalidate_pattern()
        retires all of them at once.
        """
        epoch = self._l1_epoch
        guard_key = self._gen_key(prefix)
        try:
            generation = await self._call(self._backend.get(guard_key), "get")
        except (BackendError, CacheTimeout) as e:
            self._note_error("generation read", prefix, e)
            self.stats["loads"] += 1
            return await loader()

        key = f"{prefix}:g{generation or 0}:{fingerprint(params)}"
        hit, value = await self._lookup(key, epoch)
        if hit:
            return value

        return await self._single_flight(
            key,
            lambda: self._load_and_store(
                key, loader, ttl or self.list_ttl, guard_key, generation, epoch
            ),
        )

    async def _single_flight(self, key: str, load: Callable[[], Awaitable[Any]]):
        """Collapse concurrent misses: at most one load per key is in flight."""
        task = self._inflight.get(key)
        if task is None:
            self.stats["misses"] += 1
            task = asyncio.ensure_future(load())
            self._inflight[key] = task

            def _done(finished: asyncio.Task):
                if self._inflight.get(key) is finished:
                    del self._inflight[key]
                if not finished.cancelled():
                    # mark the error retrieved even when every waiter went away
                    finished.exception()

            task.add_done_callback(_done)
        else:
            logger.debug(f"Joining in-flight load for {key}")
        # shield: one cancelled waiter must not cancel the load for the others
        return await asyncio.shield(task)

    async def _load_and_store(
        self,
        key: str,
        loader: Loader,
        ttl: float,
        guard_key: str,
        guard: str | None,
        epoch: int,
    ):
        self.stats["loads"] += 1
        value = await loader()
        if value is None:
            return None

        try:
            stored = await self._call(
                self._backend.set_if_unchanged(
                    self._l2_key(key), self._serialize(value), ttl, guard_key, guard
                ),
                "set",
            )
        except (BackendError, CacheTimeout) as e:
            self._note_error("SET", key, e)
            return value

        if stored:
            self._remember(key, value, epoch)
        else:
            self.stats["skipped_stores"] += 1
            logger.debug(f"Invalidated while loading, not caching {key}")
        return value

    async def invalidate(self, key: str):
        """
        Drop a point entry and fence off loads that started before this call.

        Idempotent. Raises CacheTimeout / BackendError when the backend
        cannot be reached; the entry then expires through its TTL.
        """
        self._forget(lambda k: k == key)
        try:
            await self._call(
                self._backend.incr(self._gen_key(key), ttl=self.l2_ttl), "invalidate"
            )
            await self._call(self._backend.delete(self._l2_key(key)), "invalidate")
        finally:
            self._forget(lambda k: k == key)
        logger.debug(f"Invalidated {key}")

    async def invalidate_pattern(self, prefix: str):
        """Retire every list entry under `prefix` by bumping its generation."""
        self._forget(lambda k: k.startswith(prefix))
        try:
            # no ttl: the generation must never fall back to a value old entries used
            generation = await self._call(
                self._backend.incr(self._gen_key(prefix)), "invalidate_pattern"
            )
        finally:
            self._forget(lambda k: k.startswith(prefix))
        logger.debug(f"List generation for {prefix} is now {generation}")

    async def peek(self, key: str) -> CacheEntry | None:
        """Current L2 entry for a key, without loading."""
        raw = await self._call(self._backend.get(self._l2_key(key)), "get")
        if raw is None:
            return None
        entry = self._deserialize(raw)
        return CacheEntry(key=key, value=entry["value"], stored_version=entry["version"])

    def get_stats(self) -> dict:
        """Get cache statistics."""
        total = self.stats["l1_hits"] + self.stats["l2_hits"] + self.stats["misses"]
        return {
            **self.stats,
            "l1_size": len(self.l1) if self.l1 is not None else 0,
            "l1_maxsize": self.l1.maxsize if self.l1 is not None else 0,
            "inflight": len(self._inflight),
            "hit_rate": (
                (self.stats["l1_hits"] + self.stats["l2_hits"]) / total if total > 0 else 0
            ),
        }
