import logging
from typing import Callable

from redis.asyncio import Redis
from redis.asyncio.client import Pipeline
from redis.exceptions import RedisError, WatchError

from tracker.core.errors import BackendError

logger = logging.getLogger(__name__)


def _ms(ttl: float) -> int:
    return max(int(ttl * 1000), 1)


class RedisBackend:
    """
    KeyValueBackend on redis.asyncio.

    Compare-and-* operations use WATCH/MULTI optimistic transactions, so
    they stay correct on any Redis without server-side scripting.
    """

    def __init__(self, redis: Redis):
        self._redis = redis

    @classmethod
    def from_url(cls, dsn: str, pool_size: int = 5) -> "RedisBackend":
        redis = Redis.from_url(
            dsn,
            encoding="utf-8",
            decode_responses=True,
            max_connections=pool_size,
            socket_connect_timeout=5,
            socket_keepalive=True,
            health_check_interval=30,
        )
        return cls(redis)

    async def connect(self):
        try:
            await self._redis.ping()
        except RedisError as e:
            raise BackendError(f"Redis connection failed: {e}") from e
        logger.info("Redis connection established")

    async def get(self, key: str) -> str | None:
        try:
            return await self._redis.get(key)
        except RedisError as e:
            raise BackendError(f"Redis GET error: {e}") from e

    async def set(self, key: str, value: str, ttl: float | None = None) -> None:
        try:
            await self._redis.set(key, value, px=_ms(ttl) if ttl is not None else None)
        except RedisError as e:
            raise BackendError(f"Redis SET error: {e}") from e

    async def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        try:
            return bool(await self._redis.set(key, value, nx=True, px=_ms(ttl)))
        except RedisError as e:
            raise BackendError(f"Redis SET NX error: {e}") from e

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return await self._redis.delete(*keys)
        except RedisError as e:
            raise BackendError(f"Redis DELETE error: {e}") from e

    async def _compare_and(
        self, key: str, expected: str | None, apply: Callable[[Pipeline], None], retry: bool
    ) -> bool:
        """
        Run `apply` in a MULTI block only if `key` still holds `expected`.

        A concurrent change to `key` aborts the transaction; with `retry`
        the compare is repeated, otherwise the write is abandoned.
        """
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        current = await pipe.get(key)
                        if current != expected:
                            await pipe.unwatch()
                            return False
                        pipe.multi()
                        apply(pipe)
                        await pipe.execute()
                        return True
                    except WatchError:
                        if not retry:
                            return False
                        continue
        except RedisError as e:
            raise BackendError(f"Redis transaction error on {key}: {e}") from e

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        return await self._compare_and(
            key, expected, lambda pipe: pipe.delete(key), retry=True
        )

    async def expire_if_equals(self, key: str, expected: str, ttl: float) -> bool:
        return await self._compare_and(
            key, expected, lambda pipe: pipe.pexpire(key, _ms(ttl)), retry=True
        )

    async def incr(self, key: str, ttl: float | None = None) -> int:
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                if ttl is not None:
                    pipe.pexpire(key, _ms(ttl))
                results = await pipe.execute()
            return int(results[0])
        except RedisError as e:
            raise BackendError(f"Redis INCR error: {e}") from e

    async def set_if_unchanged(
        self,
        key: str,
        value: str,
        ttl: float | None,
        guard_key: str,
        expected_guard: str | None,
    ) -> bool:
        def apply(pipe: Pipeline):
            pipe.set(key, value, px=_ms(ttl) if ttl is not None else None)

        # a guard that moved means an invalidation happened; drop the write
        return await self._compare_and(guard_key, expected_guard, apply, retry=False)

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError as e:
            logger.error(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        try:
            await self._redis.aclose()
            logger.info("Redis connection closed")
        except RedisError as e:
            logger.error(f"Error closing Redis: {e}")
