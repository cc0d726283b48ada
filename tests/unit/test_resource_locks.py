"""
Unit tests for ledger/locks.py - Resource Lock Store.

Tests coverage:
- acquire(): create, conflict, takeover of a lapsed hold, same-holder refresh
- release(): fencing (only the holder releases)
- mark_confirmed(): held -> confirmed, never expires
- is_held(): active lock lookup
"""

from datetime import timedelta

import pytest

from ledger.errors import ResourceUnavailable
from ledger.locks import ResourceLockStore
from ledger.models import LockStatus, ResourceLock

KEY = "biz_1:table:table_5:2024-06-01T19:00"
TTL = timedelta(minutes=10)


@pytest.fixture
def locks(store):
    return ResourceLockStore(store)


async def acquire(store, locks, transaction_id, now, ttl=TTL):
    async def work(stx):
        return await locks.acquire(stx, "biz_1", KEY, transaction_id, ttl, now)

    return await store.run_transaction(work)


class TestAcquire:
    """Tests for ResourceLockStore.acquire()."""

    @pytest.mark.asyncio
    async def test_acquire_free_key(self, store, locks, clock):
        lock = await acquire(store, locks, "tx_a", clock())

        assert isinstance(lock, ResourceLock)
        assert lock.status == LockStatus.HELD
        assert lock.expires_at == clock() + TTL

        stored = await store.get_lock("biz_1", KEY)
        assert stored.transaction_id == "tx_a"

    @pytest.mark.asyncio
    async def test_second_holder_gets_resource_unavailable(self, store, locks, clock):
        await acquire(store, locks, "tx_a", clock())

        result = await acquire(store, locks, "tx_b", clock())

        assert isinstance(result, ResourceUnavailable)
        assert result.lock_key == KEY
        stored = await store.get_lock("biz_1", KEY)
        assert stored.transaction_id == "tx_a"

    @pytest.mark.asyncio
    async def test_lapsed_hold_can_be_taken_over(self, store, locks, clock):
        await acquire(store, locks, "tx_a", clock())
        clock.advance(minutes=11)

        lock = await acquire(store, locks, "tx_b", clock())

        assert isinstance(lock, ResourceLock)
        stored = await store.get_lock("biz_1", KEY)
        assert stored.transaction_id == "tx_b"
        assert stored.version == 2

    @pytest.mark.asyncio
    async def test_hold_expiring_exactly_now_is_reclaimable(self, store, locks, clock):
        await acquire(store, locks, "tx_a", clock())
        clock.advance(minutes=10)

        assert isinstance(await acquire(store, locks, "tx_b", clock()), ResourceLock)

    @pytest.mark.asyncio
    async def test_same_holder_refreshes_expiry(self, store, locks, clock):
        await acquire(store, locks, "tx_a", clock())
        clock.advance(minutes=5)

        lock = await acquire(store, locks, "tx_a", clock())

        assert lock.expires_at == clock() + TTL

    @pytest.mark.asyncio
    async def test_confirmed_lock_never_taken_over(self, store, locks, clock):
        await acquire(store, locks, "tx_a", clock())

        async def confirm(stx):
            return await locks.mark_confirmed(stx, "biz_1", KEY, "tx_a", clock())

        assert await store.run_transaction(confirm) is True
        clock.advance(days=30)

        result = await acquire(store, locks, "tx_b", clock())

        assert isinstance(result, ResourceUnavailable)


class TestRelease:
    """Tests for ResourceLockStore.release()."""

    @pytest.mark.asyncio
    async def test_holder_releases(self, store, locks, clock):
        await acquire(store, locks, "tx_a", clock())

        async def work(stx):
            return await locks.release(stx, "biz_1", KEY, "tx_a")

        assert await store.run_transaction(work) is True
        assert await store.get_lock("biz_1", KEY) is None

    @pytest.mark.asyncio
    async def test_non_holder_cannot_release(self, store, locks, clock):
        await acquire(store, locks, "tx_a", clock())

        async def work(stx):
            return await locks.release(stx, "biz_1", KEY, "tx_b")

        assert await store.run_transaction(work) is False
        stored = await store.get_lock("biz_1", KEY)
        assert stored.transaction_id == "tx_a"

    @pytest.mark.asyncio
    async def test_release_of_missing_lock(self, store, locks):
        async def work(stx):
            return await locks.release(stx, "biz_1", KEY, "tx_a")

        assert await store.run_transaction(work) is False


class TestMarkConfirmed:
    """Tests for ResourceLockStore.mark_confirmed() and is_held()."""

    @pytest.mark.asyncio
    async def test_mark_confirmed_clears_expiry(self, store, locks, clock):
        await acquire(store, locks, "tx_a", clock())

        async def work(stx):
            return await locks.mark_confirmed(stx, "biz_1", KEY, "tx_a", clock())

        await store.run_transaction(work)

        stored = await store.get_lock("biz_1", KEY)
        assert stored.status == LockStatus.CONFIRMED
        assert stored.expires_at is None

    @pytest.mark.asyncio
    async def test_mark_confirmed_by_non_holder_fails(self, store, locks, clock):
        await acquire(store, locks, "tx_a", clock())

        async def work(stx):
            return await locks.mark_confirmed(stx, "biz_1", KEY, "tx_b", clock())

        assert await store.run_transaction(work) is False

    @pytest.mark.asyncio
    async def test_is_held_ignores_lapsed_holds(self, store, locks, clock):
        await acquire(store, locks, "tx_a", clock())

        assert (await locks.is_held("biz_1", KEY, clock())).transaction_id == "tx_a"

        clock.advance(minutes=15)

        assert await locks.is_held("biz_1", KEY, clock()) is None
