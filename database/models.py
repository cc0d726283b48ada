"""
SQLAlchemy ORM models for the execution ledger tables.

This module defines the ledger tables:
- ledger_transactions: Canonical transaction records (state + snapshot)
- ledger_tx_events: Append-only audit log, one row per TxEvent
- ledger_resource_locks: One row per held/confirmed resource lock
- ledger_idempotency_keys: Idempotency key -> stored outcome

All models use:
- String primary keys (ids are generated by the ledger, not the database)
- TIMESTAMP WITH TIME ZONE for datetime fields
- JSONB for snapshots and payloads on PostgreSQL (plain JSON elsewhere)
- An integer ``version`` column used for optimistic compare-and-set updates
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy import (
    Enum as SQLEnum,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ledger.models import (
    ActorType,
    Channel,
    IdempotencyStatus,
    LockStatus,
    TransactionState,
    TransactionType,
)

# JSONB on PostgreSQL, JSON on SQLite (tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _enum_column(enum_cls, name: str) -> SQLEnum:
    # Stored as VARCHAR + values (e.g. "hold"), no native database type
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda x: [e.value for e in x],
    )


# ============================================================================
# Base Class
# ============================================================================


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


# ============================================================================
# Tables
# ============================================================================


class LedgerTransaction(Base):
    """
    Transaction record - one booking/order/rental attempt.

    ``state`` is written only together with a ledger_tx_events row in the same
    database transaction.
    """

    __tablename__ = "ledger_transactions"

    # Primary key (tx_<20 hex>)
    transaction_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    business_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    # Classification
    transaction_type: Mapped[TransactionType] = mapped_column(
        _enum_column(TransactionType, "ledger_tx_type"), nullable=False
    )
    channel: Mapped[Channel] = mapped_column(
        _enum_column(Channel, "ledger_tx_channel"), nullable=False
    )
    actor: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)

    # Content
    line_items: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False)
    time_window: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    fees: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    session_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # Lifecycle
    state: Mapped[TransactionState] = mapped_column(
        _enum_column(TransactionState, "ledger_tx_state"), nullable=False, index=True
    )
    lock_key: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    hold_expires_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    hold_duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Outcome
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    result_snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    confirmation_code: Mapped[str | None] = mapped_column(String(16), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    confirmed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    closed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    # Concurrency bookkeeping
    event_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint("version >= 1", name="check_ledger_tx_version_positive"),
        # Expiry reclaimer query: state = 'hold' AND hold_expires_at < now
        Index("idx_ledger_tx_state_hold_expires", "state", "hold_expires_at"),
        Index("idx_ledger_tx_business_created", "business_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<LedgerTransaction(id={self.transaction_id}, state='{self.state.value}')>"


class LedgerTxEvent(Base):
    """Append-only audit event. (transaction_id, sequence) is unique and contiguous."""

    __tablename__ = "ledger_tx_events"

    event_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    transaction_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("ledger_transactions.transaction_id", ondelete="CASCADE"),
        nullable=False,
    )
    business_id: Mapped[str] = mapped_column(String(128), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    actor_type: Mapped[ActorType] = mapped_column(
        _enum_column(ActorType, "ledger_actor_type"), nullable=False
    )
    actor_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("transaction_id", "sequence", name="uq_ledger_tx_events_sequence"),
        CheckConstraint("sequence >= 1", name="check_ledger_tx_event_sequence_positive"),
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerTxEvent(tx={self.transaction_id}, seq={self.sequence}, "
            f"type='{self.event_type}')>"
        )


class LedgerResourceLock(Base):
    """Exclusive claim on a resource; the composite primary key enforces one row per key."""

    __tablename__ = "ledger_resource_locks"

    business_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    lock_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    transaction_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[LockStatus] = mapped_column(
        _enum_column(LockStatus, "ledger_lock_status"), nullable=False, index=True
    )
    acquired_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    def __repr__(self) -> str:
        return (
            f"<LedgerResourceLock(key={self.lock_key}, tx={self.transaction_id}, "
            f"status='{self.status.value}')>"
        )


class LedgerIdempotencyKey(Base):
    """Idempotency key scoped per business and operation."""

    __tablename__ = "ledger_idempotency_keys"

    business_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    scope: Mapped[str] = mapped_column(String(64), primary_key=True)
    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    status: Mapped[IdempotencyStatus] = mapped_column(
        _enum_column(IdempotencyStatus, "ledger_idempotency_status"), nullable=False
    )
    owner_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    result: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    expires_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, index=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    def __repr__(self) -> str:
        return f"<LedgerIdempotencyKey(scope={self.scope}, key={self.key}, status='{self.status.value}')>"
