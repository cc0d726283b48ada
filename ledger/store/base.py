"""
AtomicStore port.

Every write the ledger makes goes through ``AtomicStore.run_transaction``:
the ``work`` callback reads documents through a StoreTransaction, stages
writes, deletes and event appends, and returns a value. The backend then
commits all staged changes atomically, or raises ConcurrencyConflict if any
document read by ``work`` was changed in the meantime (optimistic version
check). Conflicts are retried with tenacity; after STORE_MAX_ATTEMPTS the
failure surfaces as PersistenceFailure.

``work`` may run more than once, so it must not have side effects outside
the StoreTransaction it is given.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterator
from datetime import datetime
from typing import TypeVar

from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from ledger.errors import ConcurrencyConflict, PersistenceFailure
from ledger.models import (
    IdempotencyRecord,
    IdempotencyStatus,
    LockStatus,
    ResourceLock,
    Transaction,
    TransactionState,
    TxEvent,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Document kinds
TRANSACTIONS = "transactions"
LOCKS = "locks"
IDEMPOTENCY = "idempotency"

DocRef = tuple[str, tuple[str, ...]]
Loader = Callable[[str, tuple[str, ...]], Awaitable[BaseModel | None]]


def transaction_ref(business_id: str, transaction_id: str) -> DocRef:
    return (TRANSACTIONS, (business_id, transaction_id))


def lock_ref(business_id: str, lock_key: str) -> DocRef:
    return (LOCKS, (business_id, lock_key))


def idempotency_ref(business_id: str, scope: str, key: str) -> DocRef:
    return (IDEMPOTENCY, (business_id, scope, key))


class StoreTransaction:
    """
    Read-your-writes view handed to ``AtomicStore.run_transaction`` callbacks.

    Reads go to the backend loader once per document and record the version
    that was seen (None if absent). Writes and deletes are staged and only
    applied by the backend on commit.
    """

    def __init__(self, loader: Loader):
        self._loader = loader
        self.reads: dict[DocRef, int | None] = {}
        self.writes: dict[DocRef, BaseModel] = {}
        self.deletes: set[DocRef] = set()
        self.events: list[TxEvent] = []

    async def _get(self, ref: DocRef):
        if ref in self.deletes:
            return None
        if ref in self.writes:
            return self.writes[ref].model_copy(deep=True)

        kind, key = ref
        doc = await self._loader(kind, key)
        if ref not in self.reads:
            self.reads[ref] = doc.version if doc is not None else None
        return doc

    def _put(self, ref: DocRef, doc: BaseModel) -> None:
        self.deletes.discard(ref)
        self.writes[ref] = doc.model_copy(deep=True)

    def _delete(self, ref: DocRef) -> None:
        self.writes.pop(ref, None)
        if self.reads.get(ref) is not None:
            self.deletes.add(ref)

    # Transactions

    async def get_transaction(self, business_id: str, transaction_id: str) -> Transaction | None:
        return await self._get(transaction_ref(business_id, transaction_id))

    def put_transaction(self, tx: Transaction) -> None:
        self._put(transaction_ref(tx.business_id, tx.transaction_id), tx)

    # Locks

    async def get_lock(self, business_id: str, lock_key: str) -> ResourceLock | None:
        return await self._get(lock_ref(business_id, lock_key))

    def put_lock(self, lock: ResourceLock) -> None:
        self._put(lock_ref(lock.business_id, lock.lock_key), lock)

    def delete_lock(self, business_id: str, lock_key: str) -> None:
        self._delete(lock_ref(business_id, lock_key))

    # Idempotency records

    async def get_idempotency(
        self, business_id: str, scope: str, key: str
    ) -> IdempotencyRecord | None:
        return await self._get(idempotency_ref(business_id, scope, key))

    def put_idempotency(self, record: IdempotencyRecord) -> None:
        self._put(idempotency_ref(record.business_id, record.scope, record.key), record)

    def delete_idempotency(self, business_id: str, scope: str, key: str) -> None:
        self._delete(idempotency_ref(business_id, scope, key))

    # Event log

    def append_event(self, event: TxEvent) -> None:
        self.events.append(event)

    def staged_writes(self) -> Iterator[tuple[DocRef, int | None, BaseModel]]:
        """Yield (ref, expected_version, doc); expected None means 'must not exist'."""
        for ref, doc in self.writes.items():
            yield ref, self.reads.get(ref), doc

    def staged_deletes(self) -> Iterator[tuple[DocRef, int]]:
        for ref in self.deletes:
            yield ref, self.reads[ref]


class AtomicStore(ABC):
    """Persistence port for transactions, locks, idempotency records and events."""

    def __init__(self, max_attempts: int = 5):
        self._max_attempts = max_attempts

    async def run_transaction(self, work: Callable[[StoreTransaction], Awaitable[T]]) -> T:
        """
        Run ``work`` and commit its staged changes atomically.

        Raises:
            PersistenceFailure: store unavailable or contention not resolved
                within max_attempts
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_attempts),
                wait=wait_random_exponential(multiplier=0.01, max=0.25),
                retry=retry_if_exception_type(ConcurrencyConflict),
                before_sleep=before_sleep_log(logger, logging.WARNING),
            ):
                with attempt:
                    return await self._run_once(work)
        except RetryError as e:
            original = e.last_attempt.exception()
            logger.error(
                f"Store transaction failed after {self._max_attempts} attempts: {original}"
            )
            raise PersistenceFailure(
                "Store contention not resolved",
                original_error=original,
                attempts=self._max_attempts,
            ) from original

    @abstractmethod
    async def _run_once(self, work: Callable[[StoreTransaction], Awaitable[T]]) -> T:
        """Run ``work`` once and commit; raise ConcurrencyConflict on a version mismatch."""

    # ------------------------------------------------------------------
    # Consistent reads (outside run_transaction)
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_transaction(self, business_id: str, transaction_id: str) -> Transaction | None:
        ...

    @abstractmethod
    async def get_lock(self, business_id: str, lock_key: str) -> ResourceLock | None:
        ...

    @abstractmethod
    async def get_idempotency(
        self, business_id: str, scope: str, key: str
    ) -> IdempotencyRecord | None:
        ...

    @abstractmethod
    async def list_events(self, business_id: str, transaction_id: str) -> list[TxEvent]:
        """Events of one transaction ordered by sequence."""

    @abstractmethod
    async def list_transactions(
        self,
        state: TransactionState | None = None,
        expires_before: datetime | None = None,
        created_before: datetime | None = None,
        limit: int | None = None,
    ) -> list[Transaction]:
        """Transactions across businesses, oldest hold deadline (then creation) first."""

    @abstractmethod
    async def list_locks(self, status: LockStatus | None = None) -> list[ResourceLock]:
        ...

    @abstractmethod
    async def list_idempotency_records(
        self, status: IdempotencyStatus | None = None
    ) -> list[IdempotencyRecord]:
        ...

    @abstractmethod
    async def purge_idempotency(self, expired_before: datetime) -> int:
        """Delete completed idempotency records whose TTL ended; return how many."""
