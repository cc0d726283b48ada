"""
Unit tests for ledger/store - StoreTransaction and InMemoryAtomicStore.

Tests coverage:
- Read-your-writes inside a store transaction
- Atomic commit of documents and events; nothing written when work raises
- Optimistic version checks (conflicting writers, insert races)
- Retry on ConcurrencyConflict and PersistenceFailure on exhaustion
- Listing and purge queries used by the workers
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from ledger.errors import ConcurrencyConflict, PersistenceFailure
from ledger.models import (
    DraftCreatedEvent,
    IdempotencyRecord,
    IdempotencyStatus,
    LockStatus,
    ResourceLock,
    Transaction,
    TransactionState,
)
from ledger.store.memory import InMemoryAtomicStore

NOW = datetime(2024, 6, 1, 18, 0, tzinfo=UTC)


def make_tx(transaction_id="tx_1", **overrides) -> Transaction:
    data = {
        "transaction_id": transaction_id,
        "business_id": "biz_1",
        "created_at": NOW,
        "updated_at": NOW,
    }
    data.update(overrides)
    return Transaction(**data)


async def seed(store: InMemoryAtomicStore, *docs) -> None:
    async def work(stx):
        for doc in docs:
            if isinstance(doc, Transaction):
                stx.put_transaction(doc)
            elif isinstance(doc, ResourceLock):
                stx.put_lock(doc)
            else:
                stx.put_idempotency(doc)

    await store.run_transaction(work)


# ============================================================================
# StoreTransaction semantics
# ============================================================================


class TestStoreTransaction:
    """Tests for staging behaviour inside run_transaction."""

    @pytest.mark.asyncio
    async def test_read_your_writes(self, store):
        async def work(stx):
            stx.put_transaction(make_tx())
            return await stx.get_transaction("biz_1", "tx_1")

        seen = await store.run_transaction(work)

        assert seen.transaction_id == "tx_1"

    @pytest.mark.asyncio
    async def test_new_documents_get_version_one(self, store):
        await seed(store, make_tx())

        stored = await store.get_transaction("biz_1", "tx_1")
        assert stored.version == 1

    @pytest.mark.asyncio
    async def test_update_bumps_version(self, store):
        await seed(store, make_tx())

        async def work(stx):
            tx = await stx.get_transaction("biz_1", "tx_1")
            stx.put_transaction(tx.model_copy(update={"state": TransactionState.HOLD}))

        await store.run_transaction(work)

        stored = await store.get_transaction("biz_1", "tx_1")
        assert stored.version == 2
        assert stored.state == TransactionState.HOLD

    @pytest.mark.asyncio
    async def test_returned_documents_are_copies(self, store):
        await seed(store, make_tx())

        tx = await store.get_transaction("biz_1", "tx_1")
        tx.state = TransactionState.FAILED

        stored = await store.get_transaction("biz_1", "tx_1")
        assert stored.state == TransactionState.DRAFT

    @pytest.mark.asyncio
    async def test_delete_removes_document(self, store):
        lock = ResourceLock(business_id="biz_1", lock_key="k1", transaction_id="tx_1")
        await seed(store, lock)

        async def work(stx):
            await stx.get_lock("biz_1", "k1")
            stx.delete_lock("biz_1", "k1")
            return await stx.get_lock("biz_1", "k1")

        assert await store.run_transaction(work) is None
        assert await store.get_lock("biz_1", "k1") is None

    @pytest.mark.asyncio
    async def test_exception_in_work_writes_nothing(self, store):
        async def work(stx):
            stx.put_transaction(make_tx())
            stx.append_event(
                DraftCreatedEvent(transaction_id="tx_1", business_id="biz_1", sequence=1)
            )
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await store.run_transaction(work)

        assert await store.get_transaction("biz_1", "tx_1") is None
        assert await store.list_events("biz_1", "tx_1") == []

    @pytest.mark.asyncio
    async def test_events_ordered_by_sequence(self, store):
        async def work(stx):
            for sequence in (2, 1):
                stx.append_event(
                    DraftCreatedEvent(
                        transaction_id="tx_1", business_id="biz_1", sequence=sequence
                    )
                )

        await store.run_transaction(work)

        events = await store.list_events("biz_1", "tx_1")
        assert [event.sequence for event in events] == [1, 2]


# ============================================================================
# Optimistic concurrency
# ============================================================================


class TestOptimisticConcurrency:
    """Tests for version-checked commits and retries."""

    @pytest.mark.asyncio
    async def test_concurrent_inserts_of_same_key_one_wins(self, store):
        async def claim(owner):
            async def work(stx):
                existing = await stx.get_lock("biz_1", "k1")
                if existing is not None:
                    return existing.transaction_id
                stx.put_lock(
                    ResourceLock(business_id="biz_1", lock_key="k1", transaction_id=owner)
                )
                return owner

            return await store.run_transaction(work)

        results = await asyncio.gather(claim("tx_a"), claim("tx_b"))

        stored = await store.get_lock("biz_1", "k1")
        assert results[0] == results[1] == stored.transaction_id
        assert stored.version == 1

    @pytest.mark.asyncio
    async def test_concurrent_counters_do_not_lose_updates(self, store):
        await seed(store, make_tx(event_count=0))

        async def bump():
            async def work(stx):
                tx = await stx.get_transaction("biz_1", "tx_1")
                stx.put_transaction(tx.model_copy(update={"event_count": tx.event_count + 1}))

            await store.run_transaction(work)

        await asyncio.gather(*(bump() for _ in range(3)))

        stored = await store.get_transaction("biz_1", "tx_1")
        assert stored.event_count == 3

    @pytest.mark.asyncio
    async def test_duplicate_event_sequence_conflicts(self):
        store = InMemoryAtomicStore(max_attempts=1)

        async def work(stx):
            stx.append_event(
                DraftCreatedEvent(transaction_id="tx_1", business_id="biz_1", sequence=1)
            )

        await store.run_transaction(work)

        with pytest.raises(PersistenceFailure) as exc_info:
            await store.run_transaction(work)

        assert isinstance(exc_info.value.original_error, ConcurrencyConflict)

    @pytest.mark.asyncio
    async def test_conflict_is_retried(self, store):
        calls = 0

        async def work(stx):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise ConcurrencyConflict("simulated")
            return "done"

        assert await store.run_transaction(work) == "done"
        assert calls == 2

    @pytest.mark.asyncio
    async def test_retry_exhaustion_raises_persistence_failure(self):
        store = InMemoryAtomicStore(max_attempts=3)
        calls = 0

        async def work(stx):
            nonlocal calls
            calls += 1
            raise ConcurrencyConflict("always")

        with pytest.raises(PersistenceFailure) as exc_info:
            await store.run_transaction(work)

        assert calls == 3
        assert exc_info.value.attempts == 3

    @pytest.mark.asyncio
    async def test_other_exceptions_are_not_retried(self, store):
        calls = 0

        async def work(stx):
            nonlocal calls
            calls += 1
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            await store.run_transaction(work)

        assert calls == 1


# ============================================================================
# Queries
# ============================================================================


class TestQueries:
    """Tests for the listing and purge queries."""

    @pytest.mark.asyncio
    async def test_list_transactions_filters_expired_holds(self, store):
        await seed(
            store,
            make_tx("tx_old", state=TransactionState.HOLD,
                    hold_expires_at=NOW - timedelta(minutes=5)),
            make_tx("tx_older", state=TransactionState.HOLD,
                    hold_expires_at=NOW - timedelta(minutes=9)),
            make_tx("tx_live", state=TransactionState.HOLD,
                    hold_expires_at=NOW + timedelta(minutes=5)),
            make_tx("tx_draft"),
        )

        expired = await store.list_transactions(state=TransactionState.HOLD, expires_before=NOW)

        assert [tx.transaction_id for tx in expired] == ["tx_older", "tx_old"]

    @pytest.mark.asyncio
    async def test_list_transactions_respects_limit(self, store):
        await seed(store, *(make_tx(f"tx_{i}") for i in range(5)))

        assert len(await store.list_transactions(limit=2)) == 2

    @pytest.mark.asyncio
    async def test_list_locks_by_status(self, store):
        await seed(
            store,
            ResourceLock(business_id="biz_1", lock_key="k1", transaction_id="tx_1"),
            ResourceLock(
                business_id="biz_1", lock_key="k2", transaction_id="tx_2",
                status=LockStatus.CONFIRMED,
            ),
        )

        confirmed = await store.list_locks(status=LockStatus.CONFIRMED)

        assert [lock.lock_key for lock in confirmed] == ["k2"]
        assert len(await store.list_locks()) == 2

    @pytest.mark.asyncio
    async def test_purge_removes_only_expired_completed_records(self, store):
        await seed(
            store,
            IdempotencyRecord(
                business_id="biz_1", scope="confirm", key="old",
                status=IdempotencyStatus.COMPLETED, expires_at=NOW - timedelta(seconds=1),
            ),
            IdempotencyRecord(
                business_id="biz_1", scope="confirm", key="fresh",
                status=IdempotencyStatus.COMPLETED, expires_at=NOW + timedelta(hours=1),
            ),
            IdempotencyRecord(
                business_id="biz_1", scope="create_hold", key="running",
                status=IdempotencyStatus.IN_PROGRESS, expires_at=NOW - timedelta(seconds=1),
            ),
        )

        purged = await store.purge_idempotency(NOW)

        assert purged == 1
        assert await store.get_idempotency("biz_1", "confirm", "old") is None
        assert await store.get_idempotency("biz_1", "confirm", "fresh") is not None
        assert await store.get_idempotency("biz_1", "create_hold", "running") is not None
