"""
In-memory AtomicStore.

Used by the unit tests and by single-process deployments (LEDGER_BACKEND=memory).
Documents are stored as pydantic copies; callers never receive a reference to
stored state. Reads yield to the event loop like real I/O would, so concurrent
callers interleave and the optimistic version check is exercised.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TypeVar

from pydantic import BaseModel

from ledger.errors import ConcurrencyConflict
from ledger.models import (
    IdempotencyRecord,
    IdempotencyStatus,
    LockStatus,
    ResourceLock,
    Transaction,
    TransactionState,
    TxEvent,
)
from ledger.store.base import (
    IDEMPOTENCY,
    LOCKS,
    TRANSACTIONS,
    AtomicStore,
    DocRef,
    StoreTransaction,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InMemoryAtomicStore(AtomicStore):
    """Copy-on-write document store with version-checked commits."""

    def __init__(self, max_attempts: int = 5):
        super().__init__(max_attempts=max_attempts)
        self._docs: dict[str, dict[tuple[str, ...], BaseModel]] = {
            TRANSACTIONS: {},
            LOCKS: {},
            IDEMPOTENCY: {},
        }
        self._events: dict[tuple[str, str], list[TxEvent]] = {}
        self._commit_lock = asyncio.Lock()

    async def _load(self, kind: str, key: tuple[str, ...]) -> BaseModel | None:
        await asyncio.sleep(0)
        doc = self._docs[kind].get(key)
        return doc.model_copy(deep=True) if doc is not None else None

    def _current_version(self, ref: DocRef) -> int | None:
        kind, key = ref
        doc = self._docs[kind].get(key)
        return doc.version if doc is not None else None

    async def _run_once(self, work: Callable[[StoreTransaction], Awaitable[T]]) -> T:
        stx = StoreTransaction(self._load)
        result = await work(stx)

        async with self._commit_lock:
            self._validate(stx)
            self._apply(stx)

        return result

    def _validate(self, stx: StoreTransaction) -> None:
        for ref, seen_version in stx.reads.items():
            if self._current_version(ref) != seen_version:
                raise ConcurrencyConflict(f"{ref[0]} {ref[1]} changed since it was read")

        for ref, expected, _ in stx.staged_writes():
            if self._current_version(ref) != expected:
                raise ConcurrencyConflict(f"{ref[0]} {ref[1]} already exists")

        for event in stx.events:
            log = self._events.get((event.business_id, event.transaction_id), [])
            if any(existing.sequence == event.sequence for existing in log):
                raise ConcurrencyConflict(
                    f"Event sequence {event.sequence} already recorded for {event.transaction_id}"
                )

    def _apply(self, stx: StoreTransaction) -> None:
        for ref, expected, doc in stx.staged_writes():
            kind, key = ref
            self._docs[kind][key] = doc.model_copy(
                deep=True, update={"version": (expected or 0) + 1}
            )

        for ref, _ in stx.staged_deletes():
            kind, key = ref
            self._docs[kind].pop(key, None)

        for event in stx.events:
            log = self._events.setdefault((event.business_id, event.transaction_id), [])
            log.append(event.model_copy(deep=True))
            log.sort(key=lambda e: e.sequence)

    # ------------------------------------------------------------------
    # Consistent reads
    # ------------------------------------------------------------------

    async def get_transaction(self, business_id: str, transaction_id: str) -> Transaction | None:
        return await self._load(TRANSACTIONS, (business_id, transaction_id))

    async def get_lock(self, business_id: str, lock_key: str) -> ResourceLock | None:
        return await self._load(LOCKS, (business_id, lock_key))

    async def get_idempotency(
        self, business_id: str, scope: str, key: str
    ) -> IdempotencyRecord | None:
        return await self._load(IDEMPOTENCY, (business_id, scope, key))

    async def list_events(self, business_id: str, transaction_id: str) -> list[TxEvent]:
        return [
            event.model_copy(deep=True)
            for event in self._events.get((business_id, transaction_id), [])
        ]

    async def list_transactions(
        self,
        state: TransactionState | None = None,
        expires_before: datetime | None = None,
        created_before: datetime | None = None,
        limit: int | None = None,
    ) -> list[Transaction]:
        matches = []
        for tx in self._docs[TRANSACTIONS].values():
            if state is not None and tx.state != state:
                continue
            if expires_before is not None and (
                tx.hold_expires_at is None or tx.hold_expires_at >= expires_before
            ):
                continue
            if created_before is not None and tx.created_at >= created_before:
                continue
            matches.append(tx)

        matches.sort(key=lambda tx: (tx.hold_expires_at or tx.created_at, tx.created_at))
        if limit is not None:
            matches = matches[:limit]
        return [tx.model_copy(deep=True) for tx in matches]

    async def list_locks(self, status: LockStatus | None = None) -> list[ResourceLock]:
        return [
            lock.model_copy(deep=True)
            for lock in self._docs[LOCKS].values()
            if status is None or lock.status == status
        ]

    async def list_idempotency_records(
        self, status: IdempotencyStatus | None = None
    ) -> list[IdempotencyRecord]:
        return [
            record.model_copy(deep=True)
            for record in self._docs[IDEMPOTENCY].values()
            if status is None or record.status == status
        ]

    async def purge_idempotency(self, expired_before: datetime) -> int:
        async with self._commit_lock:
            stale = [
                key
                for key, record in self._docs[IDEMPOTENCY].items()
                if record.status == IdempotencyStatus.COMPLETED
                and record.expires_at <= expired_before
            ]
            for key in stale:
                del self._docs[IDEMPOTENCY][key]

        if stale:
            logger.info(f"Purged {len(stale)} expired idempotency records")
        return len(stale)
