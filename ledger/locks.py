"""
Resource Lock Store.

Exclusive, time-bounded claims on contended resources, written inside the
caller's store transaction so the lock mutation and the transaction state
change commit together. Acquisition never blocks: a conflict is returned
immediately as ResourceUnavailable.

Lock lifecycle:
    (absent) --acquire--> held --mark_confirmed--> confirmed
    held --release (holder only)--> (absent)
    held, expired --acquire by another transaction--> held (new holder)
"""

import logging
from datetime import datetime, timedelta

from ledger.errors import ResourceUnavailable
from ledger.models import LockStatus, ResourceLock
from ledger.store.base import AtomicStore, StoreTransaction

logger = logging.getLogger(__name__)


class ResourceLockStore:
    """Conditional writes on ResourceLock documents."""

    def __init__(self, store: AtomicStore):
        self._store = store

    async def acquire(
        self,
        stx: StoreTransaction,
        business_id: str,
        lock_key: str,
        transaction_id: str,
        ttl: timedelta,
        now: datetime,
    ) -> ResourceLock | ResourceUnavailable:
        """
        Acquire ``lock_key`` for ``transaction_id`` within ``stx``.

        Creates the lock if absent, takes it over if the current hold has
        lapsed, and refreshes the expiry if the same transaction already
        holds it. A confirmed lock or an unexpired hold owned by another
        transaction is a conflict.
        """
        existing = await stx.get_lock(business_id, lock_key)

        if existing is not None and existing.transaction_id != transaction_id:
            if existing.is_active(now):
                logger.info(
                    f"Lock conflict: {lock_key} held by {existing.transaction_id} "
                    f"({existing.status.value})",
                    extra={"lock_key": lock_key, "business_id": business_id},
                )
                return ResourceUnavailable(lock_key=lock_key)

            logger.info(
                f"Taking over lapsed hold on {lock_key} from {existing.transaction_id}",
                extra={"lock_key": lock_key, "transaction_id": transaction_id},
            )

        if existing is not None and existing.status == LockStatus.CONFIRMED:
            # Same transaction, already booked: nothing to refresh
            return existing

        lock = ResourceLock(
            business_id=business_id,
            lock_key=lock_key,
            transaction_id=transaction_id,
            status=LockStatus.HELD,
            acquired_at=now,
            expires_at=now + ttl,
            updated_at=now,
            version=existing.version if existing is not None else 0,
        )
        stx.put_lock(lock)
        return lock

    async def release(
        self,
        stx: StoreTransaction,
        business_id: str,
        lock_key: str,
        transaction_id: str,
    ) -> bool:
        """Delete the lock only if ``transaction_id`` holds it (fencing)."""
        existing = await stx.get_lock(business_id, lock_key)

        if existing is None:
            return False

        if existing.transaction_id != transaction_id:
            logger.warning(
                f"Refusing to release {lock_key}: held by {existing.transaction_id}, "
                f"not {transaction_id}",
                extra={"lock_key": lock_key, "transaction_id": transaction_id},
            )
            return False

        stx.delete_lock(business_id, lock_key)
        return True

    async def mark_confirmed(
        self,
        stx: StoreTransaction,
        business_id: str,
        lock_key: str,
        transaction_id: str,
        now: datetime,
    ) -> bool:
        """Turn the holder's ``held`` lock into a non-expiring ``confirmed`` lock."""
        existing = await stx.get_lock(business_id, lock_key)

        if existing is None or existing.transaction_id != transaction_id:
            return False

        stx.put_lock(
            existing.model_copy(
                update={"status": LockStatus.CONFIRMED, "expires_at": None, "updated_at": now}
            )
        )
        return True

    async def is_held(
        self, business_id: str, lock_key: str, now: datetime
    ) -> ResourceLock | None:
        """Active lock (unexpired hold or confirmed) for ``lock_key``, if any."""
        existing = await self._store.get_lock(business_id, lock_key)
        if existing is not None and existing.is_active(now):
            return existing
        return None
