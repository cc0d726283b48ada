"""
Hold Expiration Worker (Expiry Reclaimer) - expires holds past their deadline.

This worker runs periodically (every 1 minute by default) to find transactions
still in ``hold`` whose ``hold_expires_at`` has passed and expire them.

Flow:
1. Query transactions with state=hold and hold_expires_at < now (batch limit)
2. For each, call TransactionLedger.expire(), the same guarded path used by
   confirm/cancel: state change, lock release and EXPIRED/RELEASED events
   commit together, so a concurrent confirm or a second sweeper cannot
   produce a second terminal state
3. Purge completed idempotency records whose TTL ended

Per-transaction failures are logged and skipped; the sweep moves on to the
next candidate.

Configuration:
- Run interval: HOLD_EXPIRATION_CHECK_INTERVAL_SECONDS (default 60)
- Batch size: EXPIRY_BATCH_LIMIT (default 100)
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

from ledger.errors import TransitionApplied
from ledger.models import TransactionState, utcnow
from ledger.store.base import AtomicStore
from ledger.transactions.transaction_ledger import TransactionLedger

logger = logging.getLogger(__name__)


class HoldExpirationWorker:
    """Expiry Reclaimer bound to one ledger and store."""

    def __init__(
        self,
        ledger: TransactionLedger,
        store: AtomicStore,
        clock: Callable[[], datetime] = utcnow,
        batch_limit: int = 100,
        interval_seconds: int = 60,
    ):
        self._ledger = ledger
        self._store = store
        self._clock = clock
        self._batch_limit = batch_limit
        self._interval_seconds = interval_seconds

    async def expire_stale_holds(self) -> int:
        """
        Expire every hold whose deadline has passed (up to the batch limit).

        Returns:
            int: Number of transactions this run moved to ``expired``
        """
        expired_count = 0
        now = self._clock()

        candidates = await self._store.list_transactions(
            state=TransactionState.HOLD,
            expires_before=now,
            limit=self._batch_limit,
        )
        logger.info(f"Found {len(candidates)} holds past expiry")

        for tx in candidates:
            try:
                outcome = await self._ledger.expire(tx.business_id, tx.transaction_id)

                if isinstance(outcome, TransitionApplied) and not outcome.replayed:
                    expired_count += 1
                else:
                    # Lost the race to confirm/cancel or another sweeper
                    logger.info(
                        f"[{tx.transaction_id}] Skipped expiry: "
                        f"{getattr(outcome, 'error_code', 'already expired')}",
                        extra={"transaction_id": tx.transaction_id},
                    )

            except Exception as e:
                logger.error(
                    f"[{tx.transaction_id}] Error expiring hold: {e}",
                    exc_info=True,
                    extra={"transaction_id": tx.transaction_id, "business_id": tx.business_id},
                )
                # Continue with next transaction

        try:
            await self._store.purge_idempotency(now)
        except Exception as e:
            logger.error(f"Error purging expired idempotency records: {e}", exc_info=True)

        logger.info(f"Expiration run completed | expired_count={expired_count}")
        return expired_count

    async def run(self) -> None:
        """
        Main worker loop - runs the sweep every interval_seconds.

        Runs until cancelled.
        """
        logger.info("Hold expiration worker starting...")
        logger.info(f"Check interval: {self._interval_seconds} seconds")

        try:
            while True:
                try:
                    expired_count = await self.expire_stale_holds()
                    logger.debug(f"Expiration check completed | expired_count={expired_count}")

                except Exception as e:
                    logger.exception(f"Error in expiration check cycle: {e}")

                await asyncio.sleep(self._interval_seconds)

        except asyncio.CancelledError:
            logger.info("Hold expiration worker shutting down...")


async def run_expiration_worker() -> None:
    """Build the ledger from settings and run the expiration loop."""
    from ledger.container import build_container

    container = await build_container()
    try:
        await container.hold_expiration_worker.run()
    finally:
        await container.aclose()


if __name__ == "__main__":
    """Run expiration worker as standalone service."""
    from shared.logging_config import configure_logging

    configure_logging()

    logger.info("Starting hold expiration worker...")

    try:
        asyncio.run(run_expiration_worker())
    except KeyboardInterrupt:
        logger.info("Hold expiration worker stopped by user")
    except Exception as e:
        logger.exception(f"Hold expiration worker crashed: {e}")
        raise
