"""
Idempotency Guard.

execute_once() runs an operation at most once per (business_id, scope, key)
and hands every later caller the stored result.

Reservation is an atomic conditional write: the first caller stores an
``in_progress`` record carrying its owner token and a short lease, runs the
operation, then stores the result as ``completed``. Concurrent duplicates see
the in-progress record and back off (tenacity) until the result is available,
so a duplicate request never performs a second lock acquisition.

Failed outcomes (``success: False``) and raised exceptions are not stored:
the reservation is removed and the next call with the same key executes again.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from enum import Enum
from typing import Any
from uuid import uuid4

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ledger.errors import IdempotencyInProgress, LedgerError
from ledger.models import IdempotencyRecord, IdempotencyStatus, utcnow
from ledger.store.base import AtomicStore, StoreTransaction

logger = logging.getLogger(__name__)

# Scopes keep keys for different operations apart
CREATE_DRAFT_SCOPE = "create_draft"
CREATE_HOLD_SCOPE = "create_hold"
CONFIRM_SCOPE = "confirm"


class IdempotencySource(str, Enum):
    """Origin of the key; decides how long the stored result is kept."""

    API = "api"
    WEBHOOK = "webhook"


class IdempotencyGuard:
    """Durable at-most-once execution keyed by caller-provided idempotency keys."""

    def __init__(
        self,
        store: AtomicStore,
        clock: Callable[[], datetime] = utcnow,
        lease_seconds: int = 30,
        wait_attempts: int = 8,
        api_ttl_seconds: int = 3600,
        webhook_ttl_seconds: int = 86400,
    ):
        self._store = store
        self._clock = clock
        self._lease = timedelta(seconds=lease_seconds)
        self._wait_attempts = wait_attempts
        self._ttls = {
            IdempotencySource.API: timedelta(seconds=api_ttl_seconds),
            IdempotencySource.WEBHOOK: timedelta(seconds=webhook_ttl_seconds),
        }

    def ttl_for(self, source: IdempotencySource) -> timedelta:
        return self._ttls[IdempotencySource(source)]

    async def execute_once(
        self,
        business_id: str,
        scope: str,
        key: str,
        operation: Callable[[], Awaitable[dict[str, Any]]],
        ttl: timedelta | None = None,
    ) -> tuple[dict[str, Any], bool]:
        """
        Run ``operation`` once for this key and return ``(result, replayed)``.

        Args:
            business_id: Keys are scoped per business
            scope: Operation name (e.g. CREATE_HOLD_SCOPE)
            key: Caller-provided idempotency key
            operation: Coroutine factory producing a JSON-compatible dict
            ttl: How long the stored result is replayed (default: API TTL)

        Returns:
            The operation's result and whether it came from a previous call

        Raises:
            IdempotencyInProgress: Another caller still holds the reservation
                after all wait attempts
        """
        ttl = ttl or self._ttls[IdempotencySource.API]

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._wait_attempts),
            wait=wait_exponential(multiplier=0.05, max=1),
            retry=retry_if_exception_type(IdempotencyInProgress),
            reraise=True,
        ):
            with attempt:
                return await self._attempt(business_id, scope, key, operation, ttl)

    async def _attempt(
        self,
        business_id: str,
        scope: str,
        key: str,
        operation: Callable[[], Awaitable[dict[str, Any]]],
        ttl: timedelta,
    ) -> tuple[dict[str, Any], bool]:
        owner_token = uuid4().hex

        async def reserve(stx: StoreTransaction) -> IdempotencyRecord | None:
            now = self._clock()
            existing = await stx.get_idempotency(business_id, scope, key)

            if existing is not None and not (
                existing.is_expired(now) or existing.lease_lapsed(now)
            ):
                return existing

            stx.put_idempotency(
                IdempotencyRecord(
                    business_id=business_id,
                    scope=scope,
                    key=key,
                    status=IdempotencyStatus.IN_PROGRESS,
                    owner_token=owner_token,
                    lease_expires_at=now + self._lease,
                    created_at=now,
                    expires_at=now + ttl,
                    version=existing.version if existing is not None else 0,
                )
            )
            return None

        existing = await self._store.run_transaction(reserve)

        if existing is not None:
            if existing.status == IdempotencyStatus.COMPLETED:
                logger.info(
                    f"Idempotent replay for {scope}:{key}",
                    extra={"business_id": business_id, "idempotency_key": key},
                )
                return dict(existing.result or {}), True

            logger.debug(f"Idempotency key {scope}:{key} in progress, waiting")
            raise IdempotencyInProgress(business_id, scope, key)

        try:
            result = await operation()
        except Exception:
            await self._abandon(business_id, scope, key, owner_token)
            raise

        await self._complete(business_id, scope, key, owner_token, result)
        return result, False

    async def _complete(
        self,
        business_id: str,
        scope: str,
        key: str,
        owner_token: str,
        result: dict[str, Any],
    ) -> None:
        async def complete(stx: StoreTransaction) -> None:
            record = await stx.get_idempotency(business_id, scope, key)
            if record is None or record.owner_token != owner_token:
                logger.warning(
                    f"Idempotency reservation {scope}:{key} was taken over before completion",
                    extra={"business_id": business_id, "idempotency_key": key},
                )
                return

            if not result.get("success", True):
                stx.delete_idempotency(business_id, scope, key)
                return

            now = self._clock()
            stx.put_idempotency(
                record.model_copy(
                    update={
                        "status": IdempotencyStatus.COMPLETED,
                        "result": result,
                        "transaction_id": result.get("transaction_id"),
                        "completed_at": now,
                        "lease_expires_at": None,
                    }
                )
            )

        await self._store.run_transaction(complete)

    async def _abandon(self, business_id: str, scope: str, key: str, owner_token: str) -> None:
        async def abandon(stx: StoreTransaction) -> None:
            record = await stx.get_idempotency(business_id, scope, key)
            if record is not None and record.owner_token == owner_token:
                stx.delete_idempotency(business_id, scope, key)

        try:
            await self._store.run_transaction(abandon)
        except LedgerError as e:
            # The lease still lapses on its own; keep the operation's error
            logger.error(
                f"Could not remove reservation {scope}:{key}: {e}",
                extra={"business_id": business_id, "idempotency_key": key},
            )
