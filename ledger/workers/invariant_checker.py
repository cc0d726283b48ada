"""
Invariant Checker - scheduled read-only audit of the execution ledger.

Reads transactions, event logs, locks and idempotency records and reports
every violation as a SystemAlert. Nothing is ever corrected here: a
violation means a bug or an operational problem, and auto-remediation would
hide it. Alerts are handed to the configured AlertSink (Redis Stream in
production) and returned to the caller.

Checks:
1. SINGLE_HOLD_PER_LOCK (CRITICAL) - at most one hold per lock key
2. NO_ORPHAN_LOCKS (WARNING) - every lock belongs to a live owner
3. LEGAL_TRANSITIONS_ONLY (CRITICAL) - every event log is a legal path
4. EVENT_LOG_FOLD_MATCHES_STATE (ERROR) - log replay reproduces state
5. IDEMPOTENCY_REPLAY_CORRECT (ERROR) - stored results match transactions
6. HOLD_EXPIRY_SLA (WARNING) - lapsed holds are reclaimed in time
7. PROCESSING_SLA (WARNING) - no stuck drafts or idempotency reservations
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from ledger.alerts import AlertSink
from ledger.errors import IllegalEventSequence
from ledger.fsm import fold_events
from ledger.idempotency import CONFIRM_SCOPE
from ledger.models import (
    AlertSeverity,
    AlertType,
    IdempotencyRecord,
    IdempotencyStatus,
    LockStatus,
    ResourceLock,
    SystemAlert,
    Transaction,
    TransactionState,
    TxEvent,
    TxEventType,
    utcnow,
)
from ledger.store.base import AtomicStore

logger = logging.getLogger(__name__)

SINGLE_HOLD_PER_LOCK = "SINGLE_HOLD_PER_LOCK"
NO_ORPHAN_LOCKS = "NO_ORPHAN_LOCKS"
LEGAL_TRANSITIONS_ONLY = "LEGAL_TRANSITIONS_ONLY"
EVENT_LOG_FOLD_MATCHES_STATE = "EVENT_LOG_FOLD_MATCHES_STATE"
IDEMPOTENCY_REPLAY_CORRECT = "IDEMPOTENCY_REPLAY_CORRECT"
HOLD_EXPIRY_SLA = "HOLD_EXPIRY_SLA"
PROCESSING_SLA = "PROCESSING_SLA"

_LOG_LEVEL_BY_SEVERITY = {
    AlertSeverity.CRITICAL: logging.CRITICAL,
    AlertSeverity.ERROR: logging.ERROR,
    AlertSeverity.WARNING: logging.WARNING,
}


@dataclass
class LedgerSnapshot:
    """Everything one audit run looks at, read once up front."""

    taken_at: datetime
    transactions: dict[tuple[str, str], Transaction] = field(default_factory=dict)
    events: dict[tuple[str, str], list[TxEvent]] = field(default_factory=dict)
    locks: list[ResourceLock] = field(default_factory=list)
    idempotency_records: list[IdempotencyRecord] = field(default_factory=list)


def _alert_identity(alert: SystemAlert) -> tuple[str, tuple[str, ...]]:
    return alert.invariant, tuple(alert.entity_ids)


class InvariantChecker:
    """
    Audits ledger invariants and reports violations.

    Each check_* method is independent and returns a list of SystemAlerts
    (empty when the invariant holds).
    """

    def __init__(
        self,
        store: AtomicStore,
        sink: AlertSink,
        clock: Callable[[], datetime] = utcnow,
        expiry_sla_seconds: int = 120,
        draft_sla_seconds: int = 1800,
        interval_seconds: int = 600,
    ):
        self._store = store
        self._sink = sink
        self._clock = clock
        self._expiry_sla = timedelta(seconds=expiry_sla_seconds)
        self._draft_sla = timedelta(seconds=draft_sla_seconds)
        self._interval_seconds = interval_seconds

    async def take_snapshot(self) -> LedgerSnapshot:
        snapshot = LedgerSnapshot(taken_at=self._clock())

        for tx in await self._store.list_transactions():
            key = (tx.business_id, tx.transaction_id)
            snapshot.transactions[key] = tx
            snapshot.events[key] = await self._store.list_events(*key)

        snapshot.locks = await self._store.list_locks()
        snapshot.idempotency_records = await self._store.list_idempotency_records()
        return snapshot

    async def run_invariant_checks(self) -> list[SystemAlert]:
        """
        Run every check, hand the alerts to the sink and return them.

        A check that raises is logged and the remaining checks still run.
        The snapshot is not read atomically, so a transition committing
        mid-read can look like a violation. When the first pass finds
        anything the ledger is read again and only violations present in
        both passes are reported.
        """
        snapshot = await self.take_snapshot()
        alerts = self._run_checks(snapshot)

        if alerts:
            first_count = len(alerts)
            first_pass = {_alert_identity(alert) for alert in alerts}
            snapshot = await self.take_snapshot()
            recheck = self._run_checks(snapshot)
            alerts = [alert for alert in recheck if _alert_identity(alert) in first_pass]
            dropped = first_count - len(alerts)
            if dropped > 0:
                logger.info(
                    f"Dropped {dropped} alerts that did not survive a re-read",
                    extra={"dropped_alerts": dropped},
                )

        for alert in alerts:
            logger.log(
                _LOG_LEVEL_BY_SEVERITY[alert.severity],
                f"INVARIANT VIOLATION: {alert.invariant} | {alert.message}",
                extra={"invariant": alert.invariant, "severity": alert.severity.value},
            )

        if alerts:
            try:
                await self._sink.emit(alerts)
            except Exception as e:
                logger.error(f"Failed to deliver {len(alerts)} alerts: {e}", exc_info=True)

        logger.info(
            f"Invariant check completed | transactions={len(snapshot.transactions)} "
            f"alerts={len(alerts)}"
        )
        return alerts

    def _run_checks(self, snapshot: LedgerSnapshot) -> list[SystemAlert]:
        checks = (
            self.check_single_hold_per_lock,
            self.check_no_orphan_locks,
            self.check_legal_transitions_only,
            self.check_event_log_fold_matches_state,
            self.check_idempotency_replay_correct,
            self.check_hold_expiry_sla,
            self.check_processing_sla,
        )

        alerts: list[SystemAlert] = []
        for check in checks:
            try:
                alerts.extend(check(snapshot))
            except Exception as e:
                logger.error(f"Invariant check {check.__name__} failed: {e}", exc_info=True)
        return alerts

    async def run(self) -> None:
        """Main worker loop - audits every interval_seconds until cancelled."""
        logger.info("Invariant checker starting...")
        logger.info(f"Check interval: {self._interval_seconds} seconds")

        try:
            while True:
                try:
                    await self.run_invariant_checks()
                except Exception as e:
                    logger.exception(f"Error in invariant check cycle: {e}")

                await asyncio.sleep(self._interval_seconds)

        except asyncio.CancelledError:
            logger.info("Invariant checker shutting down...")

    # ================================================================
    # CHECK 1: One hold per lock key
    # ================================================================

    def check_single_hold_per_lock(self, snapshot: LedgerSnapshot) -> list[SystemAlert]:
        holders: dict[tuple[str, str], list[str]] = defaultdict(list)
        for tx in snapshot.transactions.values():
            if tx.state == TransactionState.HOLD and tx.lock_key:
                holders[(tx.business_id, tx.lock_key)].append(tx.transaction_id)

        alerts = []
        for (business_id, lock_key), transaction_ids in holders.items():
            if len(transaction_ids) > 1:
                alerts.append(
                    SystemAlert(
                        alert_type=AlertType.INVARIANT_VIOLATION,
                        invariant=SINGLE_HOLD_PER_LOCK,
                        severity=AlertSeverity.CRITICAL,
                        message=f"{len(transaction_ids)} transactions in hold on {lock_key}",
                        entity_ids=sorted(transaction_ids),
                        expected=1,
                        observed=len(transaction_ids),
                        details={"business_id": business_id, "lock_key": lock_key},
                        detected_at=snapshot.taken_at,
                    )
                )
        return alerts

    # ================================================================
    # CHECK 2: Locks reference a live owner
    # ================================================================

    def check_no_orphan_locks(self, snapshot: LedgerSnapshot) -> list[SystemAlert]:
        alerts = []
        for lock in snapshot.locks:
            owner = snapshot.transactions.get((lock.business_id, lock.transaction_id))

            if lock.status == LockStatus.HELD:
                expected_state = TransactionState.HOLD
            else:
                expected_state = TransactionState.CONFIRMED

            if owner is None:
                problem = "owner transaction does not exist"
                observed = None
            elif owner.state != expected_state or owner.lock_key != lock.lock_key:
                problem = f"owner is {owner.state.value} on {owner.lock_key}"
                observed = owner.state.value
            else:
                continue

            alerts.append(
                SystemAlert(
                    alert_type=AlertType.DATA_INCONSISTENCY,
                    invariant=NO_ORPHAN_LOCKS,
                    severity=AlertSeverity.WARNING,
                    message=f"Orphan {lock.status.value} lock {lock.lock_key}: {problem}",
                    entity_ids=[lock.lock_key, lock.transaction_id],
                    expected=expected_state.value,
                    observed=observed,
                    details={"business_id": lock.business_id, "lock_status": lock.status.value},
                    detected_at=snapshot.taken_at,
                )
            )
        return alerts

    # ================================================================
    # CHECK 3: Event logs are legal paths
    # ================================================================

    def check_legal_transitions_only(self, snapshot: LedgerSnapshot) -> list[SystemAlert]:
        alerts = []
        for key, tx in snapshot.transactions.items():
            try:
                fold_events(snapshot.events.get(key, []), check_sequence=False)
            except IllegalEventSequence as e:
                alerts.append(
                    SystemAlert(
                        alert_type=AlertType.INVARIANT_VIOLATION,
                        invariant=LEGAL_TRANSITIONS_ONLY,
                        severity=AlertSeverity.CRITICAL,
                        message=f"Illegal event log for {tx.transaction_id}: {e}",
                        entity_ids=[tx.transaction_id],
                        observed=[event.type for event in snapshot.events.get(key, [])],
                        details={"business_id": tx.business_id, "sequence": e.sequence},
                        detected_at=snapshot.taken_at,
                    )
                )
        return alerts

    # ================================================================
    # CHECK 4: Log replay reproduces stored state
    # ================================================================

    def check_event_log_fold_matches_state(self, snapshot: LedgerSnapshot) -> list[SystemAlert]:
        alerts = []
        for key, tx in snapshot.transactions.items():
            events = snapshot.events.get(key, [])
            problems = []

            sequences = [event.sequence for event in events]
            if sequences != list(range(1, len(events) + 1)):
                problems.append(f"sequences not contiguous from 1: {sequences}")

            try:
                folded = fold_events(events, check_sequence=False)
                if folded != tx.state:
                    problems.append(f"log folds to {folded.value}, stored {tx.state.value}")
            except IllegalEventSequence:
                # Reported by LEGAL_TRANSITIONS_ONLY
                folded = None

            if tx.state == TransactionState.CONFIRMED:
                confirms = sum(
                    1 for event in events if event.type == TxEventType.CONFIRM_SUCCESS
                )
                if confirms != 1:
                    problems.append(f"{confirms} CONFIRM_SUCCESS events")

            if not problems:
                continue

            alerts.append(
                SystemAlert(
                    alert_type=AlertType.DATA_INCONSISTENCY,
                    invariant=EVENT_LOG_FOLD_MATCHES_STATE,
                    severity=AlertSeverity.ERROR,
                    message=f"Event log mismatch for {tx.transaction_id}: {'; '.join(problems)}",
                    entity_ids=[tx.transaction_id],
                    expected=tx.state.value,
                    observed=folded.value if folded else None,
                    details={"business_id": tx.business_id, "problems": problems},
                    detected_at=snapshot.taken_at,
                )
            )
        return alerts

    # ================================================================
    # CHECK 5: Stored idempotent results agree with transactions
    # ================================================================

    def check_idempotency_replay_correct(self, snapshot: LedgerSnapshot) -> list[SystemAlert]:
        alerts = []
        for record in snapshot.idempotency_records:
            if record.status != IdempotencyStatus.COMPLETED or not record.transaction_id:
                continue

            tx = snapshot.transactions.get((record.business_id, record.transaction_id))
            result = record.result or {}

            if tx is None:
                problem = "referenced transaction does not exist"
                expected, observed = record.transaction_id, None
            elif record.scope == CONFIRM_SCOPE and (
                tx.state != TransactionState.CONFIRMED or tx.result_snapshot != result
            ):
                problem = "confirm result differs from the transaction's result_snapshot"
                expected, observed = tx.result_snapshot, result
            elif result.get("transaction_id") != record.transaction_id:
                problem = "stored result names a different transaction"
                expected, observed = record.transaction_id, result.get("transaction_id")
            else:
                continue

            alerts.append(
                SystemAlert(
                    alert_type=AlertType.DATA_INCONSISTENCY,
                    invariant=IDEMPOTENCY_REPLAY_CORRECT,
                    severity=AlertSeverity.ERROR,
                    message=f"Idempotency key {record.scope}:{record.key}: {problem}",
                    entity_ids=[record.key, record.transaction_id],
                    expected=expected,
                    observed=observed,
                    details={"business_id": record.business_id, "scope": record.scope},
                    detected_at=snapshot.taken_at,
                )
            )
        return alerts

    # ================================================================
    # CHECK 6: Lapsed holds are reclaimed within the SLA
    # ================================================================

    def check_hold_expiry_sla(self, snapshot: LedgerSnapshot) -> list[SystemAlert]:
        deadline = snapshot.taken_at - self._expiry_sla
        alerts = []
        reported: set[str] = set()

        for tx in snapshot.transactions.values():
            if (
                tx.state == TransactionState.HOLD
                and tx.hold_expires_at is not None
                and tx.hold_expires_at < deadline
            ):
                reported.add(tx.transaction_id)
                alerts.append(
                    self._expiry_alert(
                        snapshot, tx.transaction_id, tx.hold_expires_at,
                        {"business_id": tx.business_id, "lock_key": tx.lock_key},
                    )
                )

        for lock in snapshot.locks:
            if (
                lock.status == LockStatus.HELD
                and lock.expires_at is not None
                and lock.expires_at < deadline
                and lock.transaction_id not in reported
            ):
                alerts.append(
                    self._expiry_alert(
                        snapshot, lock.transaction_id, lock.expires_at,
                        {"business_id": lock.business_id, "lock_key": lock.lock_key},
                    )
                )
        return alerts

    def _expiry_alert(
        self, snapshot: LedgerSnapshot, transaction_id: str, expired_at: datetime, details: dict
    ) -> SystemAlert:
        overdue = int((snapshot.taken_at - expired_at).total_seconds())
        return SystemAlert(
            alert_type=AlertType.SLA_BREACH,
            invariant=HOLD_EXPIRY_SLA,
            severity=AlertSeverity.WARNING,
            message=f"Hold {transaction_id} expired {overdue}s ago and was not reclaimed",
            entity_ids=[transaction_id],
            expected=f"<= {int(self._expiry_sla.total_seconds())}s",
            observed=f"{overdue}s",
            details=details,
            detected_at=snapshot.taken_at,
        )

    # ================================================================
    # CHECK 7: Nothing stuck mid-processing
    # ================================================================

    def check_processing_sla(self, snapshot: LedgerSnapshot) -> list[SystemAlert]:
        alerts = []
        draft_deadline = snapshot.taken_at - self._draft_sla

        for tx in snapshot.transactions.values():
            if tx.state == TransactionState.DRAFT and tx.created_at < draft_deadline:
                age = int((snapshot.taken_at - tx.created_at).total_seconds())
                alerts.append(
                    SystemAlert(
                        alert_type=AlertType.SLA_BREACH,
                        invariant=PROCESSING_SLA,
                        severity=AlertSeverity.WARNING,
                        message=f"Transaction {tx.transaction_id} in draft for {age}s",
                        entity_ids=[tx.transaction_id],
                        expected=f"<= {int(self._draft_sla.total_seconds())}s",
                        observed=f"{age}s",
                        details={"business_id": tx.business_id},
                        detected_at=snapshot.taken_at,
                    )
                )

        for record in snapshot.idempotency_records:
            if record.lease_lapsed(snapshot.taken_at):
                alerts.append(
                    SystemAlert(
                        alert_type=AlertType.SLA_BREACH,
                        invariant=PROCESSING_SLA,
                        severity=AlertSeverity.WARNING,
                        message=(
                            f"Idempotency key {record.scope}:{record.key} still in progress "
                            f"after its lease"
                        ),
                        entity_ids=[record.key],
                        expected=IdempotencyStatus.COMPLETED.value,
                        observed=record.status.value,
                        details={
                            "business_id": record.business_id,
                            "scope": record.scope,
                            "lease_expires_at": (
                                record.lease_expires_at.isoformat()
                                if record.lease_expires_at
                                else None
                            ),
                        },
                        detected_at=snapshot.taken_at,
                    )
                )
        return alerts


async def run_invariant_worker() -> None:
    """Build the ledger from settings and run the audit loop."""
    from ledger.container import build_container

    container = await build_container()
    try:
        await container.invariant_checker.run()
    finally:
        await container.aclose()


if __name__ == "__main__":
    """Run invariant checker as standalone service."""
    from shared.logging_config import configure_logging

    configure_logging()

    logger.info("Starting invariant checker...")

    try:
        asyncio.run(run_invariant_worker())
    except KeyboardInterrupt:
        logger.info("Invariant checker stopped by user")
    except Exception as e:
        logger.exception(f"Invariant checker crashed: {e}")
        raise
