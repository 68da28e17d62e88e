import asyncio
from typing import Awaitable, TypeVar

T = TypeVar("T")


class TrackerError(Exception):
    """Base class for infrastructure failures inside the mutation core."""


class BackendError(TrackerError):
    """Key-value backend (lock / cache store) failed or is unreachable."""


class StoreTimeout(TrackerError):
    pass


class CacheTimeout(TrackerError):
    pass


class LockTimeout(TrackerError):
    pass


async def with_deadline(
    awaitable: Awaitable[T], timeout: float, error: type[TrackerError], what: str
) -> T:
    """
    Await `awaitable` for at most `timeout` seconds.

    Raises `error` (a TrackerError subclass) instead of asyncio.TimeoutError so
    callers can branch on which collaborator was slow.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise error(f"{what} exceeded {timeout}s") from e
