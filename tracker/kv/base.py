"""
Key-value backend shared by the lock coordinator and the cache.

Invariants:
    - set_if_absent is atomic: at most one caller wins a missing key
    - compare-and-* operations never touch a key whose value differs
    - every write may carry a TTL; expired keys behave as absent

Implementations: RedisBackend (production) and InMemoryBackend (tests and
single-process runs).
"""

from typing import Protocol, runtime_checkable


@runtime_checkable
class KeyValueBackend(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl: float | None = None) -> None: ...

    async def set_if_absent(self, key: str, value: str, ttl: float) -> bool: ...

    async def delete(self, *keys: str) -> int: ...

    async def delete_if_equals(self, key: str, expected: str) -> bool: ...

    async def expire_if_equals(self, key: str, expected: str, ttl: float) -> bool: ...

    async def incr(self, key: str, ttl: float | None = None) -> int: ...

    async def set_if_unchanged(
        self,
        key: str,
        value: str,
        ttl: float | None,
        guard_key: str,
        expected_guard: str | None,
    ) -> bool:
        """Set `key` only while `guard_key` still holds `expected_guard`."""
        ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...
