"""
Typed outcomes and exceptions for the execution ledger.

Expected conditions (slot taken, illegal transition, lapsed hold) are returned
as typed outcome models with ``success=False`` and a stable ``error_code``.
Exceptions are reserved for infrastructure trouble (PersistenceFailure) and
for internal signals that never reach callers as results.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel

from ledger.models import TransactionState


# ============================================================================
# Exceptions
# ============================================================================


class LedgerError(Exception):
    """Base class for ledger exceptions."""


class PersistenceFailure(LedgerError):
    """
    Underlying store operation failed (network, contention exhaustion).

    Propagated to callers as a transient error.
    """

    def __init__(
        self,
        message: str,
        original_error: Exception | None = None,
        attempts: int | None = None,
    ):
        super().__init__(message)
        self.original_error = original_error
        self.attempts = attempts


class ConcurrencyConflict(LedgerError):
    """A document changed between read and commit; the store transaction is retried."""


class IdempotencyInProgress(LedgerError):
    """Another caller still owns the reservation for this idempotency key."""

    def __init__(self, business_id: str, scope: str, key: str):
        super().__init__(
            f"Idempotency key still in progress: business={business_id} scope={scope} key={key}"
        )
        self.business_id = business_id
        self.scope = scope
        self.key = key


class IllegalEventSequence(LedgerError):
    """An event log is not a legal path through the transaction state machine."""

    def __init__(self, message: str, sequence: int | None = None):
        super().__init__(message)
        self.sequence = sequence


# ============================================================================
# Success outcomes
# ============================================================================


class DraftCreated(BaseModel):
    success: Literal[True] = True
    transaction_id: str
    state: TransactionState = TransactionState.DRAFT
    replayed: bool = False


class HoldCreated(BaseModel):
    success: Literal[True] = True
    transaction_id: str
    state: TransactionState = TransactionState.HOLD
    lock_key: str
    hold_expires_at: datetime
    replayed: bool = False


class TransitionApplied(BaseModel):
    """A transition committed, or a duplicate call replayed its recorded result."""

    success: Literal[True] = True
    transaction_id: str
    state: TransactionState
    result_snapshot: dict[str, Any] | None = None
    replayed: bool = False


# ============================================================================
# Failure outcomes
# ============================================================================


class ResourceUnavailable(BaseModel):
    success: Literal[False] = False
    error_code: Literal["RESOURCE_UNAVAILABLE"] = "RESOURCE_UNAVAILABLE"
    error_message: str = "Resource is already held for this slot"
    lock_key: str


class InvalidTransition(BaseModel):
    success: Literal[False] = False
    error_code: Literal["INVALID_TRANSITION"] = "INVALID_TRANSITION"
    error_message: str
    transaction_id: str
    current_state: TransactionState
    attempted_state: TransactionState


class TransactionNotFound(BaseModel):
    success: Literal[False] = False
    error_code: Literal["TRANSACTION_NOT_FOUND"] = "TRANSACTION_NOT_FOUND"
    error_message: str = "Transaction not found"
    transaction_id: str


class HoldExpired(BaseModel):
    success: Literal[False] = False
    error_code: Literal["HOLD_EXPIRED"] = "HOLD_EXPIRED"
    error_message: str = "Hold expired before it was confirmed"
    transaction_id: str
    state: TransactionState = TransactionState.EXPIRED


class HoldNotExpired(BaseModel):
    success: Literal[False] = False
    error_code: Literal["HOLD_NOT_EXPIRED"] = "HOLD_NOT_EXPIRED"
    error_message: str = "Hold has not reached its expiry yet"
    transaction_id: str
    hold_expires_at: datetime | None = None


class IdempotencyKeyReused(BaseModel):
    success: Literal[False] = False
    error_code: Literal["IDEMPOTENCY_KEY_REUSED"] = "IDEMPOTENCY_KEY_REUSED"
    error_message: str = "Idempotency key already used for a different transaction"
    transaction_id: str
    idempotency_key: str
    recorded_transaction_id: str | None = None


HoldOutcome = HoldCreated | ResourceUnavailable
TransitionOutcome = (
    TransitionApplied
    | HoldExpired
    | HoldNotExpired
    | InvalidTransition
    | TransactionNotFound
    | IdempotencyKeyReused
    | ResourceUnavailable
)

_FAILURES_BY_CODE: dict[str, type[BaseModel]] = {
    "RESOURCE_UNAVAILABLE": ResourceUnavailable,
    "INVALID_TRANSITION": InvalidTransition,
    "TRANSACTION_NOT_FOUND": TransactionNotFound,
    "HOLD_EXPIRED": HoldExpired,
    "HOLD_NOT_EXPIRED": HoldNotExpired,
    "IDEMPOTENCY_KEY_REUSED": IdempotencyKeyReused,
}


def failure_from_dict(data: dict[str, Any]) -> BaseModel:
    """Rebuild a failure outcome from its ``model_dump`` form."""
    try:
        model = _FAILURES_BY_CODE[data["error_code"]]
    except KeyError as e:
        raise ValueError(f"Unknown outcome error_code: {data.get('error_code')!r}") from e
    return model.model_validate(data)
