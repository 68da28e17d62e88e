"""
In-memory key-value backend.

Same semantics as RedisBackend, including TTL expiry, for unit tests and
local development without Redis. All data is lost on process exit and
nothing is shared between processes.

Each operation runs without awaiting, so it is atomic with respect to other
coroutines on the event loop.
"""

import time
from typing import Callable

from tracker.core.errors import BackendError


class InMemoryBackend:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}
        self._closed = False

    def _expires_at(self, ttl: float | None) -> float | None:
        return None if ttl is None else self._clock() + ttl

    def _live(self, key: str) -> str | None:
        if self._closed:
            raise BackendError("backend is closed")
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def set(self, key: str, value: str, ttl: float | None = None) -> None:
        self._live(key)
        self._data[key] = (value, self._expires_at(ttl))

    async def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        if self._live(key) is not None:
            return False
        self._data[key] = (value, self._expires_at(ttl))
        return True

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self._live(key) is not None:
                del self._data[key]
                deleted += 1
        return deleted

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        if self._live(key) != expected:
            return False
        del self._data[key]
        return True

    async def expire_if_equals(self, key: str, expected: str, ttl: float) -> bool:
        if self._live(key) != expected:
            return False
        self._data[key] = (expected, self._expires_at(ttl))
        return True

    async def incr(self, key: str, ttl: float | None = None) -> int:
        current = self._live(key)
        value = int(current or 0) + 1
        self._data[key] = (str(value), self._expires_at(ttl))
        return value

    async def set_if_unchanged(
        self,
        key: str,
        value: str,
        ttl: float | None,
        guard_key: str,
        expected_guard: str | None,
    ) -> bool:
        if self._live(guard_key) != expected_guard:
            return False
        self._data[key] = (value, self._expires_at(ttl))
        return True

    async def ping(self) -> bool:
        return not self._closed

    async def close(self) -> None:
        self._closed = True
        self._data.clear()

    def keys(self) -> list[str]:
        """Live keys, for tests and debugging."""
        return [key for key in list(self._data) if self._live(key) is not None]
