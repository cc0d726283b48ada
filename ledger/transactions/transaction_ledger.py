"""
Transaction Ledger - guarded lifecycle of booking/order/rental transactions.

This module implements the caller API of the execution ledger:
- create_hold(): draft + resource lock + hold in one atomic store transaction
- confirm(): hold -> confirmed, lock held -> confirmed, result snapshot recorded
- cancel() / fail(): hold -> cancelled / failed, lock released
- expire(): hold -> expired once the hold deadline passed (Expiry Reclaimer path)

Every transition is a single AtomicStore.run_transaction call that reads the
transaction (and its lock), then writes the new state, the lock mutation and
the audit events together. Two racing transitions cannot both commit: the
loser is retried by the store, re-reads the winner's terminal state and
answers with it (idempotent replay or InvalidTransition).

Expected conditions are returned as typed outcomes (see ledger.errors);
only PersistenceFailure and IdempotencyInProgress are raised.
"""

import logging
import math
from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from pydantic import BaseModel

from ledger.errors import (
    DraftCreated,
    HoldCreated,
    HoldExpired,
    HoldNotExpired,
    IdempotencyKeyReused,
    InvalidTransition,
    ResourceUnavailable,
    TransactionNotFound,
    TransitionApplied,
    failure_from_dict,
)
from ledger.fsm import can_transition
from ledger.idempotency import (
    CONFIRM_SCOPE,
    CREATE_DRAFT_SCOPE,
    CREATE_HOLD_SCOPE,
    IdempotencyGuard,
    IdempotencySource,
)
from ledger.lock_keys import DEFAULT_SLOT_MINUTES, lock
from ledger.locks import ResourceLockStore
from ledger.models import (
    ActorType,
    CancelledEvent,
    Channel,
    ConfirmSuccessEvent,
    DraftCreatedEvent,
    ExpiredEvent,
    FailedEvent,
    HoldCreatedEvent,
    IdempotencyRecord,
    IdempotencyStatus,
    LineItem,
    ReleasedEvent,
    Transaction,
    TransactionActor,
    TransactionState,
    TransactionType,
    TxEvent,
    generate_confirmation_code,
    new_transaction_id,
    utcnow,
)
from ledger.store.base import AtomicStore, StoreTransaction

logger = logging.getLogger(__name__)

_CLOSING_EVENTS = {
    TransactionState.CANCELLED: CancelledEvent,
    TransactionState.FAILED: FailedEvent,
    TransactionState.EXPIRED: ExpiredEvent,
}


class TransactionLedger:
    """
    Caller API for the transaction lifecycle.

    All collaborators are injected; a ledger instance holds no global state
    and can be shared by any number of concurrent requests.
    """

    def __init__(
        self,
        store: AtomicStore,
        guard: IdempotencyGuard | None = None,
        locks: ResourceLockStore | None = None,
        clock: Callable[[], datetime] = utcnow,
        hold_ttl_minutes: int = 10,
        slot_minutes: int = DEFAULT_SLOT_MINUTES,
    ):
        self._store = store
        self._clock = clock
        self._guard = guard or IdempotencyGuard(store, clock=clock)
        self._locks = locks or ResourceLockStore(store)
        self._default_hold_ttl = timedelta(minutes=hold_ttl_minutes)
        self._slot_minutes = slot_minutes

    # ========================================================================
    # Reads
    # ========================================================================

    async def get(self, business_id: str, transaction_id: str) -> Transaction | None:
        return await self._store.get_transaction(business_id, transaction_id)

    async def get_events(self, business_id: str, transaction_id: str) -> list[TxEvent]:
        return await self._store.list_events(business_id, transaction_id)

    # ========================================================================
    # Creation
    # ========================================================================

    async def create_draft(
        self,
        business_id: str,
        idempotency_key: str | None = None,
        *,
        actor_type: ActorType = ActorType.USER,
        actor_id: str | None = None,
        **details: Any,
    ) -> DraftCreated:
        """
        Create a transaction in ``draft``.

        ``details`` are Transaction content fields: transaction_type, channel,
        actor, line_items, time_window, currency, fees, session_id.
        """
        transaction_id = new_transaction_id()

        async def work(stx: StoreTransaction) -> DraftCreated:
            now = self._clock()
            tx = self._build_draft(
                business_id, transaction_id, now, idempotency_key=idempotency_key, **details
            )
            tx = self._record(
                stx, tx, DraftCreatedEvent, now,
                actor_type=actor_type, actor_id=actor_id,
                idempotency_key=idempotency_key, channel=tx.channel,
            )
            stx.put_transaction(tx)
            return DraftCreated(transaction_id=transaction_id)

        async def operation() -> dict[str, Any]:
            outcome = await self._store.run_transaction(work)
            logger.info(
                f"[{transaction_id}] Draft created",
                extra={"transaction_id": transaction_id, "business_id": business_id},
            )
            return outcome.model_dump(mode="json")

        result, replayed = await self._run_guarded(
            business_id, CREATE_DRAFT_SCOPE, idempotency_key, operation
        )
        return DraftCreated.model_validate({**result, "replayed": replayed})

    async def create_hold(
        self,
        business_id: str,
        offering_ref: str,
        slot_ref: datetime | str,
        idempotency_key: str | None = None,
        hold_ttl: timedelta | None = None,
        *,
        actor_type: ActorType = ActorType.USER,
        actor_id: str | None = None,
        **details: Any,
    ) -> HoldCreated | ResourceUnavailable:
        """
        Reserve ``offering_ref`` at ``slot_ref`` and record a transaction in ``hold``.

        The draft, the lock and the hold are written in one store transaction,
        so a conflict leaves nothing behind. Duplicate calls with the same
        idempotency key return the first successful outcome without acquiring
        the lock again.

        Args:
            business_id: Tenant the resource belongs to
            offering_ref: Resource id (``table_*`` ids lock a table, others an offering)
            slot_ref: Slot start (datetime or ISO-8601 string)
            idempotency_key: Caller key for duplicate suppression
            hold_ttl: Hold duration (default HOLD_TTL_MINUTES)
            **details: Transaction content fields (see create_draft)

        Returns:
            HoldCreated, or ResourceUnavailable if the slot is taken
        """
        lock_key = lock(business_id, offering_ref, slot_ref, self._slot_minutes)
        ttl = hold_ttl or self._default_hold_ttl
        transaction_id = new_transaction_id()

        async def work(stx: StoreTransaction) -> HoldCreated | ResourceUnavailable:
            now = self._clock()
            await self._reclaim_lapsed_holder(stx, business_id, lock_key, transaction_id, now)

            acquired = await self._locks.acquire(
                stx, business_id, lock_key, transaction_id, ttl, now
            )
            if isinstance(acquired, ResourceUnavailable):
                return acquired

            tx = self._build_draft(
                business_id, transaction_id, now, idempotency_key=idempotency_key, **details
            )
            tx = self._record(
                stx, tx, DraftCreatedEvent, now,
                actor_type=actor_type, actor_id=actor_id,
                idempotency_key=idempotency_key, channel=tx.channel,
            )
            tx = self._enter_hold(stx, tx, lock_key, ttl, now, actor_type, actor_id)
            stx.put_transaction(tx)
            return HoldCreated(
                transaction_id=transaction_id,
                lock_key=lock_key,
                hold_expires_at=tx.hold_expires_at,
            )

        async def operation() -> dict[str, Any]:
            outcome = await self._store.run_transaction(work)
            if outcome.success:
                logger.info(
                    f"[{transaction_id}] Hold created on {lock_key} "
                    f"until {outcome.hold_expires_at.isoformat()}",
                    extra={
                        "transaction_id": transaction_id,
                        "business_id": business_id,
                        "lock_key": lock_key,
                    },
                )
            else:
                logger.info(
                    f"Hold rejected, resource unavailable: {lock_key}",
                    extra={"business_id": business_id, "lock_key": lock_key},
                )
            return outcome.model_dump(mode="json")

        result, replayed = await self._run_guarded(
            business_id, CREATE_HOLD_SCOPE, idempotency_key, operation
        )
        if result.get("success"):
            return HoldCreated.model_validate({**result, "replayed": replayed})
        return failure_from_dict(result)

    async def hold_draft(
        self,
        business_id: str,
        transaction_id: str,
        lock_key: str,
        hold_ttl: timedelta | None = None,
        *,
        actor_type: ActorType = ActorType.USER,
        actor_id: str | None = None,
    ) -> HoldCreated | ResourceUnavailable | InvalidTransition | TransactionNotFound:
        """Move an existing draft to ``hold`` on ``lock_key``."""
        ttl = hold_ttl or self._default_hold_ttl

        async def work(stx: StoreTransaction):
            now = self._clock()
            tx = await stx.get_transaction(business_id, transaction_id)
            if tx is None:
                return TransactionNotFound(transaction_id=transaction_id)
            if not can_transition(tx.state, TransactionState.HOLD):
                return self._invalid(tx, TransactionState.HOLD)

            await self._reclaim_lapsed_holder(stx, business_id, lock_key, transaction_id, now)
            acquired = await self._locks.acquire(
                stx, business_id, lock_key, transaction_id, ttl, now
            )
            if isinstance(acquired, ResourceUnavailable):
                return acquired

            tx = self._enter_hold(stx, tx, lock_key, ttl, now, actor_type, actor_id)
            stx.put_transaction(tx)
            return HoldCreated(
                transaction_id=transaction_id,
                lock_key=lock_key,
                hold_expires_at=tx.hold_expires_at,
            )

        outcome = await self._store.run_transaction(work)
        self._log_outcome("hold", transaction_id, business_id, outcome)
        return outcome

    # ========================================================================
    # Transitions out of hold
    # ========================================================================

    async def confirm(
        self,
        business_id: str,
        transaction_id: str,
        idempotency_key: str,
        *,
        actor_type: ActorType = ActorType.USER,
        actor_id: str | None = None,
        source: IdempotencySource = IdempotencySource.API,
    ):
        """
        Confirm a held transaction.

        The state change, the lock conversion (held -> confirmed), the
        CONFIRM_SUCCESS event and the idempotency record commit together.
        A repeated confirm returns the recorded result_snapshot with
        ``replayed=True``; a key already used for another transaction is
        rejected with IdempotencyKeyReused.

        Returns:
            TransitionApplied | HoldExpired | InvalidTransition |
            TransactionNotFound | IdempotencyKeyReused | ResourceUnavailable
        """
        ttl = self._guard.ttl_for(source)

        async def work(stx: StoreTransaction):
            now = self._clock()
            tx = await stx.get_transaction(business_id, transaction_id)
            if tx is None:
                return TransactionNotFound(transaction_id=transaction_id)

            record = await stx.get_idempotency(business_id, CONFIRM_SCOPE, idempotency_key)
            if (
                record is not None
                and record.status == IdempotencyStatus.COMPLETED
                and not record.is_expired(now)
            ):
                if record.transaction_id != transaction_id:
                    return IdempotencyKeyReused(
                        transaction_id=transaction_id,
                        idempotency_key=idempotency_key,
                        recorded_transaction_id=record.transaction_id,
                    )
                return TransitionApplied(
                    transaction_id=transaction_id,
                    state=TransactionState.CONFIRMED,
                    result_snapshot=record.result,
                    replayed=True,
                )

            if tx.state == TransactionState.CONFIRMED:
                return self._replay(tx)
            if tx.state == TransactionState.EXPIRED:
                return HoldExpired(transaction_id=transaction_id)
            if not can_transition(tx.state, TransactionState.CONFIRMED):
                return self._invalid(tx, TransactionState.CONFIRMED)

            if tx.hold_is_expired(now):
                await self._close_hold(stx, tx, TransactionState.EXPIRED, now, ActorType.SYSTEM)
                return HoldExpired(transaction_id=transaction_id)

            if not await self._locks.mark_confirmed(
                stx, business_id, tx.lock_key, transaction_id, now
            ):
                await self._close_hold(
                    stx, tx, TransactionState.FAILED, now, ActorType.SYSTEM, reason="lock_lost"
                )
                return ResourceUnavailable(lock_key=tx.lock_key)

            code = generate_confirmation_code()
            snapshot = {
                "transaction_id": transaction_id,
                "state": TransactionState.CONFIRMED.value,
                "confirmation_code": code,
                "confirmed_at": now.isoformat(),
                "lock_key": tx.lock_key,
                "total": str(tx.total),
                "currency": tx.currency,
            }
            tx = tx.model_copy(
                update={
                    "state": TransactionState.CONFIRMED,
                    "hold_expires_at": None,
                    "confirmed_at": now,
                    "closed_at": now,
                    "updated_at": now,
                    "confirmation_code": code,
                    "idempotency_key": idempotency_key,
                    "result_snapshot": snapshot,
                }
            )
            tx = self._record(
                stx, tx, ConfirmSuccessEvent, now,
                actor_type=actor_type, actor_id=actor_id,
                idempotency_key=idempotency_key,
                confirmation_code=code, lock_key=tx.lock_key,
            )
            stx.put_transaction(tx)
            stx.put_idempotency(
                IdempotencyRecord(
                    business_id=business_id,
                    scope=CONFIRM_SCOPE,
                    key=idempotency_key,
                    status=IdempotencyStatus.COMPLETED,
                    result=snapshot,
                    transaction_id=transaction_id,
                    created_at=now,
                    completed_at=now,
                    expires_at=now + ttl,
                    version=record.version if record is not None else 0,
                )
            )
            return TransitionApplied(
                transaction_id=transaction_id,
                state=TransactionState.CONFIRMED,
                result_snapshot=snapshot,
            )

        outcome = await self._store.run_transaction(work)
        self._log_outcome("confirm", transaction_id, business_id, outcome)
        return outcome

    async def cancel(
        self,
        business_id: str,
        transaction_id: str,
        reason: str | None = None,
        *,
        actor_type: ActorType = ActorType.USER,
        actor_id: str | None = None,
    ):
        """
        Cancel a held transaction and release its lock.

        Cancelling an already cancelled transaction replays the recorded
        result. Once the transaction is confirmed, expired or failed the call
        changes nothing and returns InvalidTransition whose ``current_state``
        is the finalized state.
        """
        return await self._terminate(
            business_id, transaction_id, TransactionState.CANCELLED, reason, actor_type, actor_id
        )

    async def fail(
        self,
        business_id: str,
        transaction_id: str,
        reason: str | None = None,
        *,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: str | None = None,
    ):
        """Mark a held transaction as failed (system failure) and release its lock."""
        return await self._terminate(
            business_id, transaction_id, TransactionState.FAILED, reason, actor_type, actor_id
        )

    async def expire(self, business_id: str, transaction_id: str):
        """
        Expire a hold whose deadline has passed.

        Returns TransitionApplied (``replayed=True`` if it was already
        expired), HoldNotExpired before the deadline, or InvalidTransition
        when another terminal state won.
        """

        async def work(stx: StoreTransaction):
            now = self._clock()
            tx = await stx.get_transaction(business_id, transaction_id)
            if tx is None:
                return TransactionNotFound(transaction_id=transaction_id)
            if tx.state == TransactionState.EXPIRED:
                return self._replay(tx)
            if not can_transition(tx.state, TransactionState.EXPIRED):
                return self._invalid(tx, TransactionState.EXPIRED)
            if not tx.hold_is_expired(now):
                return HoldNotExpired(
                    transaction_id=transaction_id, hold_expires_at=tx.hold_expires_at
                )

            tx = await self._close_hold(stx, tx, TransactionState.EXPIRED, now, ActorType.SYSTEM)
            return TransitionApplied(
                transaction_id=transaction_id,
                state=tx.state,
                result_snapshot=tx.result_snapshot,
            )

        outcome = await self._store.run_transaction(work)
        self._log_outcome("expire", transaction_id, business_id, outcome)
        return outcome

    async def _terminate(
        self,
        business_id: str,
        transaction_id: str,
        target: TransactionState,
        reason: str | None,
        actor_type: ActorType,
        actor_id: str | None,
    ):
        async def work(stx: StoreTransaction):
            now = self._clock()
            tx = await stx.get_transaction(business_id, transaction_id)
            if tx is None:
                return TransactionNotFound(transaction_id=transaction_id)
            if tx.state == target:
                return self._replay(tx)
            if not can_transition(tx.state, target):
                return self._invalid(tx, target)

            if tx.hold_is_expired(now):
                await self._close_hold(stx, tx, TransactionState.EXPIRED, now, ActorType.SYSTEM)
                return HoldExpired(transaction_id=transaction_id)

            tx = await self._close_hold(
                stx, tx, target, now, actor_type, actor_id=actor_id, reason=reason
            )
            return TransitionApplied(
                transaction_id=transaction_id,
                state=tx.state,
                result_snapshot=tx.result_snapshot,
            )

        outcome = await self._store.run_transaction(work)
        self._log_outcome(target.value, transaction_id, business_id, outcome)
        return outcome

    # ========================================================================
    # Helpers (all run inside a store transaction unless noted)
    # ========================================================================

    async def _run_guarded(
        self,
        business_id: str,
        scope: str,
        idempotency_key: str | None,
        operation,
    ) -> tuple[dict[str, Any], bool]:
        if idempotency_key is None:
            return await operation(), False
        return await self._guard.execute_once(business_id, scope, idempotency_key, operation)

    def _build_draft(
        self,
        business_id: str,
        transaction_id: str,
        now: datetime,
        *,
        idempotency_key: str | None = None,
        transaction_type: TransactionType = TransactionType.BOOKING,
        channel: Channel = Channel.API,
        actor: TransactionActor | dict | None = None,
        line_items: list[LineItem | dict] | None = None,
        time_window: Any = None,
        currency: str = "EUR",
        fees: Decimal | int | str = Decimal("0"),
        session_id: str | None = None,
    ) -> Transaction:
        items = [
            item if isinstance(item, LineItem) else LineItem.model_validate(item)
            for item in (line_items or [])
        ]
        subtotal = sum((item.subtotal for item in items), Decimal("0"))
        fees = Decimal(str(fees))

        return Transaction(
            transaction_id=transaction_id,
            business_id=business_id,
            transaction_type=transaction_type,
            channel=channel,
            actor=actor or TransactionActor(),
            line_items=items,
            time_window=time_window,
            currency=currency,
            subtotal=subtotal,
            fees=fees,
            total=subtotal + fees,
            session_id=session_id,
            state=TransactionState.DRAFT,
            idempotency_key=idempotency_key,
            created_at=now,
            updated_at=now,
        )

    def _record(
        self,
        stx: StoreTransaction,
        tx: Transaction,
        event_cls: type[BaseModel],
        now: datetime,
        *,
        actor_type: ActorType,
        actor_id: str | None = None,
        idempotency_key: str | None = None,
        **payload: Any,
    ) -> Transaction:
        """Append the next event to the log and return tx with its event count bumped."""
        sequence = tx.event_count + 1
        stx.append_event(
            event_cls(
                transaction_id=tx.transaction_id,
                business_id=tx.business_id,
                sequence=sequence,
                actor_type=actor_type,
                actor_id=actor_id,
                idempotency_key=idempotency_key,
                created_at=now,
                **payload,
            )
        )
        return tx.model_copy(update={"event_count": sequence})

    def _enter_hold(
        self,
        stx: StoreTransaction,
        tx: Transaction,
        lock_key: str,
        ttl: timedelta,
        now: datetime,
        actor_type: ActorType,
        actor_id: str | None,
    ) -> Transaction:
        hold_expires_at = now + ttl
        duration_minutes = math.ceil(ttl.total_seconds() / 60)
        tx = tx.model_copy(
            update={
                "state": TransactionState.HOLD,
                "lock_key": lock_key,
                "hold_expires_at": hold_expires_at,
                "hold_duration_minutes": duration_minutes,
                "updated_at": now,
            }
        )
        return self._record(
            stx, tx, HoldCreatedEvent, now,
            actor_type=actor_type, actor_id=actor_id,
            lock_key=lock_key,
            hold_expires_at=hold_expires_at,
            hold_duration_minutes=duration_minutes,
        )

    async def _close_hold(
        self,
        stx: StoreTransaction,
        tx: Transaction,
        target: TransactionState,
        now: datetime,
        actor_type: ActorType,
        actor_id: str | None = None,
        reason: str | None = None,
    ) -> Transaction:
        """hold -> cancelled | failed | expired, releasing the lock if tx still owns it."""
        released = False
        if tx.lock_key:
            released = await self._locks.release(
                stx, tx.business_id, tx.lock_key, tx.transaction_id
            )

        snapshot = {
            "transaction_id": tx.transaction_id,
            "state": target.value,
            "closed_at": now.isoformat(),
        }
        if reason:
            snapshot["reason"] = reason

        if target == TransactionState.EXPIRED:
            payload = {"hold_expires_at": tx.hold_expires_at}
        else:
            payload = {"reason": reason}

        tx = tx.model_copy(
            update={
                "state": target,
                "hold_expires_at": None,
                "closed_at": now,
                "updated_at": now,
                "result_snapshot": snapshot,
            }
        )
        tx = self._record(
            stx, tx, _CLOSING_EVENTS[target], now,
            actor_type=actor_type, actor_id=actor_id, **payload,
        )
        if released:
            tx = self._record(
                stx, tx, ReleasedEvent, now,
                actor_type=actor_type, actor_id=actor_id, lock_key=tx.lock_key,
            )

        stx.put_transaction(tx)
        return tx

    async def _reclaim_lapsed_holder(
        self,
        stx: StoreTransaction,
        business_id: str,
        lock_key: str,
        transaction_id: str,
        now: datetime,
    ) -> None:
        """Expire the previous holder of a lapsed lock before it is taken over."""
        existing = await stx.get_lock(business_id, lock_key)
        if (
            existing is None
            or existing.transaction_id == transaction_id
            or existing.is_active(now)
        ):
            return

        holder = await stx.get_transaction(business_id, existing.transaction_id)
        if holder is not None and holder.state == TransactionState.HOLD:
            logger.info(
                f"[{holder.transaction_id}] Expiring lapsed hold on {lock_key} before takeover",
                extra={"transaction_id": holder.transaction_id, "lock_key": lock_key},
            )
            await self._close_hold(stx, holder, TransactionState.EXPIRED, now, ActorType.SYSTEM)

    @staticmethod
    def _replay(tx: Transaction) -> TransitionApplied:
        return TransitionApplied(
            transaction_id=tx.transaction_id,
            state=tx.state,
            result_snapshot=tx.result_snapshot,
            replayed=True,
        )

    @staticmethod
    def _invalid(tx: Transaction, attempted: TransactionState) -> InvalidTransition:
        return InvalidTransition(
            error_message=f"Cannot move transaction from {tx.state.value} to {attempted.value}",
            transaction_id=tx.transaction_id,
            current_state=tx.state,
            attempted_state=attempted,
        )

    @staticmethod
    def _log_outcome(
        operation: str, transaction_id: str, business_id: str, outcome: BaseModel
    ) -> None:
        # Outside the store transaction so retried attempts do not log twice
        extra = {"transaction_id": transaction_id, "business_id": business_id}
        if outcome.success:
            extra["state"] = outcome.state.value
            replayed = " (replayed)" if outcome.replayed else ""
            logger.info(
                f"[{transaction_id}] {operation} -> {outcome.state.value}{replayed}",
                extra=extra,
            )
        else:
            logger.info(
                f"[{transaction_id}] {operation} rejected: {outcome.error_code}",
                extra=extra,
            )
