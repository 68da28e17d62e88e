import asyncio

import pytest

from tracker.core.backoff import BackoffPolicy
from tracker.core.errors import LockTimeout
from tracker.locks.coordinator import LockCoordinator, resource_key
from tracker.models import EntityType


class TestResourceKey:
    def test_namespaced_by_entity_type(self):
        assert resource_key(EntityType.TASK, "42") == "lock:task:42"
        assert resource_key("project", "42") == "lock:project:42"

    def test_unknown_entity_type_rejected(self):
        with pytest.raises(ValueError):
            resource_key("invoice", "42")


class TestAcquireRelease:
    @pytest.mark.asyncio
    async def test_lease_expires_without_renewal(self, locks, clock):
        key = resource_key(EntityType.TASK, "42")

        lease = await locks.acquire(key, "holderA", ttl=10)
        assert lease is not None
        assert lease.holder_id == "holderA"
        assert lease.expires_at == clock() + 10

        assert await locks.acquire(key, "holderB", ttl=10) is None

        clock.advance(10)
        lease = await locks.acquire(key, "holderB", ttl=10)
        assert lease is not None
        assert lease.holder_id == "holderB"

    @pytest.mark.asyncio
    async def test_release_only_by_holder(self, locks, backend):
        await locks.acquire("lock:task:1", "holderA")

        assert not await locks.release("lock:task:1", "holderB")
        assert await backend.get("lock:task:1") == "holderA"

        assert await locks.release("lock:task:1", "holderA")
        assert await backend.get("lock:task:1") is None

    @pytest.mark.asyncio
    async def test_release_after_expiry_does_not_drop_new_holder(self, locks, clock):
        await locks.acquire("lock:task:1", "holderA", ttl=5)
        clock.advance(6)
        await locks.acquire("lock:task:1", "holderB", ttl=5)

        assert not await locks.release("lock:task:1", "holderA")
        assert await locks.acquire("lock:task:1", "holderC") is None

    @pytest.mark.asyncio
    async def test_renew_extends_lease(self, locks, clock):
        await locks.acquire("lock:task:1", "holderA", ttl=5)
        clock.advance(4)
        lease = await locks.renew("lock:task:1", "holderA", ttl=5)
        assert lease is not None
        assert lease.expires_at == clock() + 5

        clock.advance(4)
        assert await locks.acquire("lock:task:1", "holderB") is None

    @pytest.mark.asyncio
    async def test_renew_fails_for_other_holder_or_expired_lease(self, locks, clock):
        await locks.acquire("lock:task:1", "holderA", ttl=5)
        assert await locks.renew("lock:task:1", "holderB") is None

        clock.advance(5)
        assert await locks.renew("lock:task:1", "holderA") is None

    @pytest.mark.asyncio
    async def test_rejects_non_positive_ttl(self, locks):
        with pytest.raises(ValueError):
            await locks.acquire("lock:task:1", "holderA", ttl=0)

    @pytest.mark.asyncio
    async def test_mutual_exclusion_under_concurrency(self, locks):
        leases = await asyncio.gather(
            *(locks.acquire("lock:task:1", f"holder-{i}") for i in range(20))
        )
        granted = [lease for lease in leases if lease is not None]
        assert len(granted) == 1


class TestRetryAndScope:
    @pytest.mark.asyncio
    async def test_acquire_with_retry_waits_for_release(self, locks):
        await locks.acquire("lock:task:1", "holderA")

        async def release_soon():
            await asyncio.sleep(0.02)
            await locks.release("lock:task:1", "holderA")

        releaser = asyncio.create_task(release_soon())
        lease = await locks.acquire_with_retry("lock:task:1", "holderB")
        await releaser

        assert lease is not None
        assert lease.holder_id == "holderB"

    @pytest.mark.asyncio
    async def test_acquire_with_retry_gives_up(self, locks):
        await locks.acquire("lock:task:1", "holderA")
        policy = BackoffPolicy(max_attempts=3, base_delay=0.001, max_delay=0.001, jitter=False)

        assert await locks.acquire_with_retry("lock:task:1", "holderB", policy=policy) is None

    @pytest.mark.asyncio
    async def test_hold_releases_on_error(self, locks, backend):
        with pytest.raises(RuntimeError):
            async with locks.hold("lock:task:1", "holderA") as lease:
                assert lease is not None
                raise RuntimeError("boom")

        assert await backend.get("lock:task:1") is None

    @pytest.mark.asyncio
    async def test_hold_yields_none_when_busy(self, locks, backend):
        await locks.acquire("lock:task:1", "holderA")
        policy = BackoffPolicy(max_attempts=2, base_delay=0.001, max_delay=0.001, jitter=False)

        async with locks.hold("lock:task:1", "holderB", policy=policy) as lease:
            assert lease is None

        # the other holder's lease is untouched
        assert await backend.get("lock:task:1") == "holderA"

    @pytest.mark.asyncio
    async def test_stalled_backend_raises_lock_timeout(self, flaky):
        flaky.stall["set_if_absent"] = 0.5
        locks = LockCoordinator(flaky, op_timeout=0.05)

        with pytest.raises(LockTimeout):
            await locks.acquire("lock:task:1", "holderA")
