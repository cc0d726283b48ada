"""
Composition root for the execution ledger.

Builds the store, ledger, workers and alert sink once from Settings and
injects them explicitly. The returned container exposes the two scheduler
entry points as parameterless callables:

    container = await build_container()
    await container.expire_stale_holds()
    await container.run_invariant_checks()
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ledger.alerts import AlertSink, InMemoryAlertSink, RedisStreamAlertSink
from ledger.idempotency import IdempotencyGuard
from ledger.locks import ResourceLockStore
from ledger.models import SystemAlert, utcnow
from ledger.store.base import AtomicStore
from ledger.store.memory import InMemoryAtomicStore
from ledger.transactions.transaction_ledger import TransactionLedger
from ledger.workers.hold_expiration import HoldExpirationWorker
from ledger.workers.invariant_checker import InvariantChecker
from shared.config import Settings, get_settings
from shared.redis_client import close_redis_client, create_redis_client

logger = logging.getLogger(__name__)


@dataclass
class LedgerContainer:
    settings: Settings
    store: AtomicStore
    ledger: TransactionLedger
    alert_sink: AlertSink
    hold_expiration_worker: HoldExpirationWorker
    invariant_checker: InvariantChecker
    engine: Any = None
    redis_client: Any = None

    async def expire_stale_holds(self) -> int:
        return await self.hold_expiration_worker.expire_stale_holds()

    async def run_invariant_checks(self) -> list[SystemAlert]:
        return await self.invariant_checker.run_invariant_checks()

    async def aclose(self) -> None:
        if self.redis_client is not None:
            await close_redis_client(self.redis_client)
        if self.engine is not None:
            await self.engine.dispose()
            logger.info("Database engine disposed")


async def _build_sql_store(settings: Settings) -> tuple[AtomicStore, Any]:
    # Imported here so the memory backend never loads the ORM models
    from database.connection import create_engine_from_settings, create_session_factory, init_models
    from ledger.store.sqlalchemy_store import SqlAlchemyAtomicStore

    engine = create_engine_from_settings(settings)
    await init_models(engine)
    store = SqlAlchemyAtomicStore(
        create_session_factory(engine), max_attempts=settings.STORE_MAX_ATTEMPTS
    )
    return store, engine


async def build_container(
    settings: Settings | None = None,
    *,
    store: AtomicStore | None = None,
    alert_sink: AlertSink | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> LedgerContainer:
    """
    Wire the ledger from settings.

    ``store`` and ``alert_sink`` override LEDGER_BACKEND / ALERT_SINK
    (tests pass in-memory instances and a fake clock).

    Raises:
        ValueError: Unknown LEDGER_BACKEND or ALERT_SINK value
    """
    settings = settings or get_settings()
    engine = None
    redis_client = None

    if store is None:
        if settings.LEDGER_BACKEND == "sql":
            store, engine = await _build_sql_store(settings)
        elif settings.LEDGER_BACKEND == "memory":
            store = InMemoryAtomicStore(max_attempts=settings.STORE_MAX_ATTEMPTS)
        else:
            raise ValueError(f"Unknown LEDGER_BACKEND: {settings.LEDGER_BACKEND!r}")

    if alert_sink is None:
        if settings.ALERT_SINK == "redis":
            redis_client = create_redis_client(settings.REDIS_URL)
            alert_sink = RedisStreamAlertSink(redis_client)
        elif settings.ALERT_SINK == "memory":
            alert_sink = InMemoryAlertSink()
        else:
            raise ValueError(f"Unknown ALERT_SINK: {settings.ALERT_SINK!r}")

    guard = IdempotencyGuard(
        store,
        clock=clock,
        lease_seconds=settings.IDEMPOTENCY_LEASE_SECONDS,
        wait_attempts=settings.IDEMPOTENCY_WAIT_ATTEMPTS,
        api_ttl_seconds=settings.IDEMPOTENCY_API_TTL_SECONDS,
        webhook_ttl_seconds=settings.IDEMPOTENCY_WEBHOOK_TTL_SECONDS,
    )
    ledger = TransactionLedger(
        store,
        guard=guard,
        locks=ResourceLockStore(store),
        clock=clock,
        hold_ttl_minutes=settings.HOLD_TTL_MINUTES,
        slot_minutes=settings.SLOT_GRANULARITY_MINUTES,
    )

    container = LedgerContainer(
        settings=settings,
        store=store,
        ledger=ledger,
        alert_sink=alert_sink,
        hold_expiration_worker=HoldExpirationWorker(
            ledger,
            store,
            clock=clock,
            batch_limit=settings.EXPIRY_BATCH_LIMIT,
            interval_seconds=settings.HOLD_EXPIRATION_CHECK_INTERVAL_SECONDS,
        ),
        invariant_checker=InvariantChecker(
            store,
            alert_sink,
            clock=clock,
            expiry_sla_seconds=settings.EXPIRY_SLA_SECONDS,
            draft_sla_seconds=settings.DRAFT_PROCESSING_SLA_SECONDS,
            interval_seconds=settings.INVARIANT_CHECK_INTERVAL_SECONDS,
        ),
        engine=engine,
        redis_client=redis_client,
    )
    logger.info(
        f"Ledger container built: backend={type(store).__name__}, "
        f"alert_sink={type(alert_sink).__name__}"
    )
    return container
