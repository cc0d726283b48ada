"""
SQLAlchemy-backed AtomicStore (PostgreSQL via asyncpg in production).

Each ``run_transaction`` attempt opens one session and one database
transaction:
- documents are read with SELECT ... FOR UPDATE (row locks on PostgreSQL)
- updates and deletes are compare-and-set on the ``version`` column; a
  rowcount of 0 means another writer got there first (ConcurrencyConflict)
- inserts rely on the primary keys of ledger_resource_locks and
  ledger_idempotency_keys; a duplicate key is also a ConcurrencyConflict

IntegrityError and OperationalError (serialization failures, deadlocks,
"database is locked") are retried by AtomicStore.run_transaction; any other
SQLAlchemyError is raised as PersistenceFailure straight away.
"""

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from functools import partial
from typing import Any, TypeVar

from pydantic import BaseModel
from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import (
    LedgerIdempotencyKey,
    LedgerResourceLock,
    LedgerTransaction,
    LedgerTxEvent,
)
from ledger.errors import ConcurrencyConflict, PersistenceFailure
from ledger.models import (
    TX_EVENT_ADAPTER,
    IdempotencyRecord,
    IdempotencyStatus,
    LockStatus,
    ResourceLock,
    Transaction,
    TransactionState,
    TxEvent,
    event_payload,
)
from ledger.store.base import (
    IDEMPOTENCY,
    LOCKS,
    TRANSACTIONS,
    AtomicStore,
    StoreTransaction,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _row_dict(row) -> dict[str, Any]:
    data = {}
    for column in row.__table__.columns:
        value = getattr(row, column.key)
        if isinstance(value, datetime):
            value = _as_utc(value)
        data[column.key] = value
    return data


# ============================================================================
# Row <-> domain conversion
# ============================================================================


def _transaction_values(tx: Transaction) -> dict[str, Any]:
    values = tx.model_dump(mode="python", exclude={"version", "actor", "line_items", "time_window"})
    values["actor"] = tx.actor.model_dump(mode="json")
    values["line_items"] = [item.model_dump(mode="json") for item in tx.line_items]
    values["time_window"] = tx.time_window.model_dump(mode="json") if tx.time_window else None
    return values


def _lock_values(lock: ResourceLock) -> dict[str, Any]:
    return lock.model_dump(mode="python", exclude={"version"})


def _idempotency_values(record: IdempotencyRecord) -> dict[str, Any]:
    return record.model_dump(mode="python", exclude={"version"})


def _event_values(event: TxEvent) -> dict[str, Any]:
    return {
        "event_id": event.event_id,
        "transaction_id": event.transaction_id,
        "business_id": event.business_id,
        "sequence": event.sequence,
        "event_type": event.type,
        "actor_type": event.actor_type,
        "actor_id": event.actor_id,
        "idempotency_key": event.idempotency_key,
        "payload": event_payload(event),
        "created_at": event.created_at,
    }


def _event_from_row(row: LedgerTxEvent) -> TxEvent:
    data = _row_dict(row)
    payload = data.pop("payload") or {}
    data["type"] = data.pop("event_type")
    return TX_EVENT_ADAPTER.validate_python({**data, **payload})


# kind -> (ORM model, primary key columns in key order, domain model, values fn)
_TABLES: dict[str, tuple[type, tuple, type[BaseModel], Callable[[Any], dict[str, Any]]]] = {
    TRANSACTIONS: (
        LedgerTransaction,
        (LedgerTransaction.business_id, LedgerTransaction.transaction_id),
        Transaction,
        _transaction_values,
    ),
    LOCKS: (
        LedgerResourceLock,
        (LedgerResourceLock.business_id, LedgerResourceLock.lock_key),
        ResourceLock,
        _lock_values,
    ),
    IDEMPOTENCY: (
        LedgerIdempotencyKey,
        (
            LedgerIdempotencyKey.business_id,
            LedgerIdempotencyKey.scope,
            LedgerIdempotencyKey.key,
        ),
        IdempotencyRecord,
        _idempotency_values,
    ),
}

# Transactions first so event rows can reference them
_FLUSH_ORDER = (TRANSACTIONS, LOCKS, IDEMPOTENCY)


def _key_clause(kind: str, key: tuple[str, ...]) -> list:
    _, columns, _, _ = _TABLES[kind]
    return [column == value for column, value in zip(columns, key, strict=True)]


def _to_domain(kind: str, row) -> BaseModel:
    _, _, domain_model, _ = _TABLES[kind]
    return domain_model.model_validate(_row_dict(row))


class SqlAlchemyAtomicStore(AtomicStore):
    """AtomicStore on top of an async SQLAlchemy session factory."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_attempts: int = 5,
    ):
        super().__init__(max_attempts=max_attempts)
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def _run_once(self, work: Callable[[StoreTransaction], Awaitable[T]]) -> T:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    stx = StoreTransaction(partial(self._load, session))
                    result = await work(stx)
                    await self._flush(session, stx)
            return result

        except IntegrityError as e:
            logger.warning(f"Integrity conflict on commit, will retry: {e.orig}")
            raise ConcurrencyConflict(str(e.orig)) from e

        except OperationalError as e:
            logger.warning(f"Operational error on commit, will retry: {e.orig}")
            raise ConcurrencyConflict(str(e.orig)) from e

        except SQLAlchemyError as e:
            logger.error(f"Database error in store transaction: {e}", exc_info=True)
            raise PersistenceFailure("Database error", original_error=e) from e

    async def _load(
        self, session: AsyncSession, kind: str, key: tuple[str, ...]
    ) -> BaseModel | None:
        model, _, _, _ = _TABLES[kind]
        stmt = select(model).where(*_key_clause(kind, key)).with_for_update()
        row = (await session.execute(stmt)).scalar_one_or_none()
        return _to_domain(kind, row) if row is not None else None

    async def _flush(self, session: AsyncSession, stx: StoreTransaction) -> None:
        writes = list(stx.staged_writes())
        deletes = list(stx.staged_deletes())

        for kind in _FLUSH_ORDER:
            model, _, _, to_values = _TABLES[kind]

            for ref, expected in deletes:
                if ref[0] != kind:
                    continue
                stmt = (
                    delete(model)
                    .where(*_key_clause(kind, ref[1]), model.version == expected)
                    .execution_options(synchronize_session=False)
                )
                result = await session.execute(stmt)
                if result.rowcount != 1:
                    raise ConcurrencyConflict(f"{kind} {ref[1]} changed before delete")

            for ref, expected, doc in writes:
                if ref[0] != kind:
                    continue
                values = to_values(doc)
                if expected is None:
                    await session.execute(insert(model).values(**values, version=1))
                    continue

                stmt = (
                    update(model)
                    .where(*_key_clause(kind, ref[1]), model.version == expected)
                    .values(**values, version=expected + 1)
                    .execution_options(synchronize_session=False)
                )
                result = await session.execute(stmt)
                if result.rowcount != 1:
                    raise ConcurrencyConflict(f"{kind} {ref[1]} changed since it was read")

            if kind == TRANSACTIONS and stx.events:
                await session.execute(
                    insert(LedgerTxEvent), [_event_values(event) for event in stx.events]
                )

    # ------------------------------------------------------------------
    # Consistent reads
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _read_session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(f"Database error during read: {e}", exc_info=True)
            raise PersistenceFailure("Database error", original_error=e) from e

    async def _get(self, kind: str, key: tuple[str, ...]):
        model, _, _, _ = _TABLES[kind]
        async with self._read_session() as session:
            row = (
                await session.execute(select(model).where(*_key_clause(kind, key)))
            ).scalar_one_or_none()
            return _to_domain(kind, row) if row is not None else None

    async def get_transaction(self, business_id: str, transaction_id: str) -> Transaction | None:
        return await self._get(TRANSACTIONS, (business_id, transaction_id))

    async def get_lock(self, business_id: str, lock_key: str) -> ResourceLock | None:
        return await self._get(LOCKS, (business_id, lock_key))

    async def get_idempotency(
        self, business_id: str, scope: str, key: str
    ) -> IdempotencyRecord | None:
        return await self._get(IDEMPOTENCY, (business_id, scope, key))

    async def list_events(self, business_id: str, transaction_id: str) -> list[TxEvent]:
        stmt = (
            select(LedgerTxEvent)
            .where(
                LedgerTxEvent.business_id == business_id,
                LedgerTxEvent.transaction_id == transaction_id,
            )
            .order_by(LedgerTxEvent.sequence)
        )
        async with self._read_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_event_from_row(row) for row in rows]

    async def list_transactions(
        self,
        state: TransactionState | None = None,
        expires_before: datetime | None = None,
        created_before: datetime | None = None,
        limit: int | None = None,
    ) -> list[Transaction]:
        stmt = select(LedgerTransaction)
        if state is not None:
            stmt = stmt.where(LedgerTransaction.state == state)
        if expires_before is not None:
            stmt = stmt.where(
                LedgerTransaction.hold_expires_at.is_not(None),
                LedgerTransaction.hold_expires_at < expires_before,
            )
        if created_before is not None:
            stmt = stmt.where(LedgerTransaction.created_at < created_before)

        stmt = stmt.order_by(
            func.coalesce(LedgerTransaction.hold_expires_at, LedgerTransaction.created_at),
            LedgerTransaction.created_at,
        )
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self._read_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_domain(TRANSACTIONS, row) for row in rows]

    async def list_locks(self, status: LockStatus | None = None) -> list[ResourceLock]:
        stmt = select(LedgerResourceLock)
        if status is not None:
            stmt = stmt.where(LedgerResourceLock.status == status)
        async with self._read_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_domain(LOCKS, row) for row in rows]

    async def list_idempotency_records(
        self, status: IdempotencyStatus | None = None
    ) -> list[IdempotencyRecord]:
        stmt = select(LedgerIdempotencyKey)
        if status is not None:
            stmt = stmt.where(LedgerIdempotencyKey.status == status)
        async with self._read_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_domain(IDEMPOTENCY, row) for row in rows]

    async def purge_idempotency(self, expired_before: datetime) -> int:
        stmt = (
            delete(LedgerIdempotencyKey)
            .where(
                LedgerIdempotencyKey.status == IdempotencyStatus.COMPLETED,
                LedgerIdempotencyKey.expires_at <= expired_before,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._read_session() as session:
            async with session.begin():
                result = await session.execute(stmt)

        purged = result.rowcount or 0
        if purged:
            logger.info(f"Purged {purged} expired idempotency records")
        return purged
