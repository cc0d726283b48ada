"""
Domain models for the execution ledger.

This module defines the records the ledger persists:
- Transaction: canonical record of one booking/order/rental attempt
- TxEvent: append-only audit log entry (tagged union keyed by ``type``)
- ResourceLock: exclusive claim on a contended resource
- IdempotencyRecord: caller key -> stored outcome
- SystemAlert: violation record produced by the invariant checker

All timestamps are timezone-aware UTC. Every persisted document carries a
``version`` used as the optimistic-concurrency token (0 = never stored).
"""

import secrets
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

# No I, O, 0, 1 for readability over the phone
CONFIRMATION_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CONFIRMATION_CODE_LENGTH = 6


def utcnow() -> datetime:
    """Default clock used across the ledger."""
    return datetime.now(UTC)


def new_transaction_id() -> str:
    return f"tx_{uuid4().hex[:20]}"


def new_event_id() -> str:
    return f"evt_{uuid4().hex[:20]}"


def generate_confirmation_code() -> str:
    return "".join(
        secrets.choice(CONFIRMATION_CODE_ALPHABET) for _ in range(CONFIRMATION_CODE_LENGTH)
    )


# ============================================================================
# Enums
# ============================================================================


class TransactionState(str, Enum):
    """Transaction lifecycle state."""

    DRAFT = "draft"            # Being built, not yet held
    HOLD = "hold"              # Resource reserved, awaiting confirmation
    CONFIRMED = "confirmed"    # Committed to the ledger
    FAILED = "failed"          # System failure
    EXPIRED = "expired"        # Hold lapsed without confirmation
    CANCELLED = "cancelled"    # Cancelled by user/business

    def __str__(self):
        return self.value


TERMINAL_STATES = frozenset(
    {
        TransactionState.CONFIRMED,
        TransactionState.FAILED,
        TransactionState.EXPIRED,
        TransactionState.CANCELLED,
    }
)


class TransactionType(str, Enum):
    BOOKING = "booking"
    ORDER = "order"
    RENTAL = "rental"


class Channel(str, Enum):
    """Where the request originated."""

    APP_CHAT = "app_chat"
    DISCOVER_CHAT = "discover_chat"
    WHATSAPP = "whatsapp"
    DASHBOARD = "dashboard"
    API = "api"


class ActorType(str, Enum):
    USER = "user"
    BUSINESS = "business"
    SYSTEM = "system"
    AGENT = "agent"


class TxEventType(str, Enum):
    """Kinds of audit events appended to a transaction's log."""

    DRAFT_CREATED = "DRAFT_CREATED"
    HOLD_CREATED = "HOLD_CREATED"
    CONFIRM_SUCCESS = "CONFIRM_SUCCESS"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    RELEASED = "RELEASED"


class LockStatus(str, Enum):
    HELD = "held"              # Time-bounded hold, reclaimable after expires_at
    CONFIRMED = "confirmed"    # Slot booked; never expires


class IdempotencyStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class AlertSeverity(str, Enum):
    CRITICAL = "CRITICAL"
    ERROR = "ERROR"
    WARNING = "WARNING"


class AlertType(str, Enum):
    INVARIANT_VIOLATION = "INVARIANT_VIOLATION"
    DATA_INCONSISTENCY = "DATA_INCONSISTENCY"
    SLA_BREACH = "SLA_BREACH"


# ============================================================================
# Transaction
# ============================================================================


class TransactionActor(BaseModel):
    """Customer the transaction is for."""

    user_id: str | None = None
    phone_e164: str | None = None
    name: str | None = None
    email: str | None = None


class LineItem(BaseModel):
    """Offering snapshot at the time of the transaction."""

    offering_id: str
    offering_name: str
    quantity: int = Field(default=1, ge=1)
    unit_price: Decimal = Field(default=Decimal("0"), ge=0)
    subtotal: Decimal | None = None

    @model_validator(mode="after")
    def fill_subtotal(self) -> "LineItem":
        if self.subtotal is None:
            self.subtotal = self.unit_price * self.quantity
        return self


class TimeWindow(BaseModel):
    start: datetime
    end: datetime
    timezone: str | None = None


class Transaction(BaseModel):
    """
    Canonical record of one booking/order/rental attempt.

    ``state`` is only ever changed by TransactionLedger transitions, and always
    together with an appended TxEvent, so the log fold reproduces it.
    """

    model_config = ConfigDict(validate_assignment=False)

    transaction_id: str = Field(default_factory=new_transaction_id)
    business_id: str

    # Classification
    transaction_type: TransactionType = TransactionType.BOOKING
    channel: Channel = Channel.API
    actor: TransactionActor = Field(default_factory=TransactionActor)

    # Content
    line_items: list[LineItem] = Field(default_factory=list)
    time_window: TimeWindow | None = None
    currency: str = "EUR"
    subtotal: Decimal = Decimal("0")
    fees: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    session_id: str | None = None

    # Lifecycle
    state: TransactionState = TransactionState.DRAFT
    lock_key: str | None = None
    hold_expires_at: datetime | None = None
    hold_duration_minutes: int | None = None

    # Outcome
    idempotency_key: str | None = None
    result_snapshot: dict[str, Any] | None = None
    confirmation_code: str | None = None

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    confirmed_at: datetime | None = None
    closed_at: datetime | None = None

    # Concurrency / audit bookkeeping
    event_count: int = 0
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def hold_is_expired(self, now: datetime) -> bool:
        """True if in hold and the hold deadline has passed."""
        return (
            self.state == TransactionState.HOLD
            and self.hold_expires_at is not None
            and self.hold_expires_at <= now
        )


# ============================================================================
# TxEvent tagged union
# ============================================================================


class _TxEventBase(BaseModel):
    event_id: str = Field(default_factory=new_event_id)
    transaction_id: str
    business_id: str
    sequence: int = Field(ge=1)
    actor_type: ActorType = ActorType.SYSTEM
    actor_id: str | None = None
    idempotency_key: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class DraftCreatedEvent(_TxEventBase):
    type: Literal["DRAFT_CREATED"] = "DRAFT_CREATED"
    channel: Channel = Channel.API


class HoldCreatedEvent(_TxEventBase):
    type: Literal["HOLD_CREATED"] = "HOLD_CREATED"
    lock_key: str
    hold_expires_at: datetime
    hold_duration_minutes: int


class ConfirmSuccessEvent(_TxEventBase):
    type: Literal["CONFIRM_SUCCESS"] = "CONFIRM_SUCCESS"
    confirmation_code: str
    lock_key: str | None = None


class CancelledEvent(_TxEventBase):
    type: Literal["CANCELLED"] = "CANCELLED"
    reason: str | None = None


class FailedEvent(_TxEventBase):
    type: Literal["FAILED"] = "FAILED"
    reason: str | None = None


class ExpiredEvent(_TxEventBase):
    type: Literal["EXPIRED"] = "EXPIRED"
    hold_expires_at: datetime | None = None


class ReleasedEvent(_TxEventBase):
    type: Literal["RELEASED"] = "RELEASED"
    lock_key: str


TxEvent = Annotated[
    Union[
        DraftCreatedEvent,
        HoldCreatedEvent,
        ConfirmSuccessEvent,
        CancelledEvent,
        FailedEvent,
        ExpiredEvent,
        ReleasedEvent,
    ],
    Field(discriminator="type"),
]

TX_EVENT_ADAPTER: TypeAdapter[TxEvent] = TypeAdapter(TxEvent)

# Fields shared by every variant; everything else is the variant payload
EVENT_COMMON_FIELDS = frozenset(_TxEventBase.model_fields) | {"type"}


def event_payload(event: _TxEventBase) -> dict[str, Any]:
    """JSON payload of an event without its common envelope fields."""
    return event.model_dump(mode="json", exclude=set(EVENT_COMMON_FIELDS))


# ============================================================================
# ResourceLock
# ============================================================================


class ResourceLock(BaseModel):
    """Exclusive claim on a contended resource, keyed by (business_id, lock_key)."""

    business_id: str
    lock_key: str
    transaction_id: str
    status: LockStatus = LockStatus.HELD
    acquired_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    def is_active(self, now: datetime) -> bool:
        """Confirmed locks never lapse; held locks are active until expires_at."""
        if self.status == LockStatus.CONFIRMED:
            return True
        return self.expires_at is not None and self.expires_at > now


# ============================================================================
# IdempotencyRecord
# ============================================================================


class IdempotencyRecord(BaseModel):
    """Maps (business_id, scope, key) to the first produced outcome."""

    business_id: str
    scope: str
    key: str
    status: IdempotencyStatus = IdempotencyStatus.IN_PROGRESS
    owner_token: str | None = None
    lease_expires_at: datetime | None = None
    result: dict[str, Any] | None = None
    transaction_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    expires_at: datetime
    version: int = 0

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def lease_lapsed(self, now: datetime) -> bool:
        return (
            self.status == IdempotencyStatus.IN_PROGRESS
            and (self.lease_expires_at is None or self.lease_expires_at <= now)
        )


# ============================================================================
# SystemAlert
# ============================================================================


class SystemAlert(BaseModel):
    """Violation record handed to the alerting sink by value."""

    alert_id: str = Field(default_factory=lambda: f"alert_{uuid4().hex[:20]}")
    alert_type: AlertType
    invariant: str
    severity: AlertSeverity
    message: str
    entity_ids: list[str] = Field(default_factory=list)
    expected: Any = None
    observed: Any = None
    details: dict[str, Any] = Field(default_factory=dict)
    detected_at: datetime = Field(default_factory=utcnow)
    acknowledged: bool = False
