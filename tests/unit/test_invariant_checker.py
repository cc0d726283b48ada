"""
Unit tests for ledger/workers/invariant_checker.py - Invariant Checker.

Violations are seeded by writing documents straight into the store, the way
a bug or a manual edit would. Tests coverage:
- A ledger driven only through TransactionLedger raises no alerts
- One test per invariant
- Alerts go to the sink; sink failures are logged, not raised
- The checker never modifies ledger state
"""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from ledger.alerts import AlertSink
from ledger.errors import TransitionApplied
from ledger.models import (
    AlertSeverity,
    AlertType,
    ConfirmSuccessEvent,
    DraftCreatedEvent,
    HoldCreatedEvent,
    IdempotencyRecord,
    IdempotencyStatus,
    ResourceLock,
    Transaction,
    TransactionState,
)
from ledger.workers.invariant_checker import (
    EVENT_LOG_FOLD_MATCHES_STATE,
    HOLD_EXPIRY_SLA,
    IDEMPOTENCY_REPLAY_CORRECT,
    LEGAL_TRANSITIONS_ONLY,
    NO_ORPHAN_LOCKS,
    PROCESSING_SLA,
    SINGLE_HOLD_PER_LOCK,
    InvariantChecker,
)

BUSINESS = "biz_1"
SLOT = "2024-06-01T19:00"
LOCK_KEY = "biz_1:table:table_5:2024-06-01T19:00"


@pytest.fixture
def checker(store, alert_sink, clock):
    return InvariantChecker(
        store, alert_sink, clock=clock, expiry_sla_seconds=120, draft_sla_seconds=1800
    )


def by_invariant(alerts, invariant):
    return [alert for alert in alerts if alert.invariant == invariant]


async def write(store, *docs, events=()):
    """Write documents and events directly, bypassing the ledger."""

    async def work(stx):
        for doc in docs:
            # Read first so overwrites pass the version check
            if isinstance(doc, Transaction):
                await stx.get_transaction(doc.business_id, doc.transaction_id)
                stx.put_transaction(doc)
            elif isinstance(doc, ResourceLock):
                await stx.get_lock(doc.business_id, doc.lock_key)
                stx.put_lock(doc)
            else:
                await stx.get_idempotency(doc.business_id, doc.scope, doc.key)
                stx.put_idempotency(doc)
        for event in events:
            stx.append_event(event)

    await store.run_transaction(work)


def tx_events(transaction_id, now, *kinds):
    envelope = {"transaction_id": transaction_id, "business_id": BUSINESS, "created_at": now}
    builders = {
        "draft": lambda seq: DraftCreatedEvent(**envelope, sequence=seq),
        "hold": lambda seq: HoldCreatedEvent(
            **envelope, sequence=seq, lock_key=LOCK_KEY,
            hold_expires_at=now + timedelta(minutes=10), hold_duration_minutes=10,
        ),
        "confirm": lambda seq: ConfirmSuccessEvent(
            **envelope, sequence=seq, confirmation_code="ABC234"
        ),
    }
    return [builders[kind](seq) for seq, kind in enumerate(kinds, start=1)]


# ============================================================================
# Healthy ledger
# ============================================================================


class TestHealthyLedger:
    """A ledger only written through TransactionLedger satisfies every invariant."""

    @pytest.mark.asyncio
    async def test_no_alerts_after_normal_traffic(self, ledger, checker, alert_sink, clock):
        confirmed = await ledger.create_hold(BUSINESS, "table_1", SLOT)
        await ledger.confirm(BUSINESS, confirmed.transaction_id, "confirm-1")
        cancelled = await ledger.create_hold(BUSINESS, "table_2", SLOT, idempotency_key="h2")
        await ledger.cancel(BUSINESS, cancelled.transaction_id)
        await ledger.create_hold(BUSINESS, "table_3", SLOT, idempotency_key="h3")
        lapsed = await ledger.create_hold(BUSINESS, "table_4", SLOT)
        clock.advance(minutes=11)
        await ledger.expire(BUSINESS, lapsed.transaction_id)
        await ledger.create_hold(BUSINESS, "table_4", SLOT)

        alerts = await checker.run_invariant_checks()

        assert alerts == []
        assert alert_sink.alerts == []

    @pytest.mark.asyncio
    async def test_confirm_committing_mid_read_raises_no_alerts(
        self, ledger, store, checker, alert_sink
    ):
        hold = await ledger.create_hold(BUSINESS, "table_5", SLOT)
        real_list_events = store.list_events
        outcomes = []

        async def list_events_racing_confirm(business_id, transaction_id):
            if not outcomes:
                outcomes.append(None)
                outcomes[0] = await ledger.confirm(BUSINESS, hold.transaction_id, "confirm-1")
            return await real_list_events(business_id, transaction_id)

        with patch.object(store, "list_events", side_effect=list_events_racing_confirm):
            alerts = await checker.run_invariant_checks()

        assert isinstance(outcomes[0], TransitionApplied)
        assert alerts == []
        assert alert_sink.alerts == []

    @pytest.mark.asyncio
    async def test_persistent_violation_survives_reread(self, ledger, store, checker):
        hold = await ledger.create_hold(BUSINESS, "table_5", SLOT)
        real_list_events = store.list_events

        with patch.object(store, "list_events", side_effect=real_list_events) as list_events:
            await write(
                store,
                ResourceLock(
                    business_id=BUSINESS, lock_key="biz_1:table:table_9:2024-06-01T19:00",
                    transaction_id="tx_gone", expires_at=None,
                ),
            )
            alerts = await checker.run_invariant_checks()

        assert [alert.invariant for alert in alerts] == [NO_ORPHAN_LOCKS]
        # One read per transaction in each pass
        assert list_events.await_count == 2
        assert (await ledger.get(BUSINESS, hold.transaction_id)).state == TransactionState.HOLD

    @pytest.mark.asyncio
    async def test_checker_is_read_only(self, ledger, store, checker, clock):
        hold = await ledger.create_hold(BUSINESS, "table_5", SLOT)
        clock.advance(minutes=30)

        alerts = await checker.run_invariant_checks()

        assert by_invariant(alerts, HOLD_EXPIRY_SLA)
        tx = await ledger.get(BUSINESS, hold.transaction_id)
        assert tx.state == TransactionState.HOLD
        assert tx.version == 1
        assert await store.get_lock(BUSINESS, LOCK_KEY) is not None


# ============================================================================
# Individual invariants
# ============================================================================


class TestInvariants:
    """One seeded violation per invariant."""

    @pytest.mark.asyncio
    async def test_two_holds_on_one_lock(self, store, checker, clock):
        now = clock()
        holds = [
            Transaction(
                transaction_id=tid, business_id=BUSINESS, state=TransactionState.HOLD,
                lock_key=LOCK_KEY, hold_expires_at=now + timedelta(minutes=10),
                created_at=now, event_count=2,
            )
            for tid in ("tx_a", "tx_b")
        ]
        events = tx_events("tx_a", now, "draft", "hold") + tx_events("tx_b", now, "draft", "hold")
        await write(store, *holds, events=events)

        alerts = by_invariant(await checker.run_invariant_checks(), SINGLE_HOLD_PER_LOCK)

        assert len(alerts) == 1
        assert alerts[0].severity == AlertSeverity.CRITICAL
        assert alerts[0].entity_ids == ["tx_a", "tx_b"]
        assert alerts[0].observed == 2

    @pytest.mark.asyncio
    async def test_lock_without_owner(self, store, checker, clock):
        now = clock()
        await write(
            store,
            ResourceLock(
                business_id=BUSINESS, lock_key=LOCK_KEY, transaction_id="tx_ghost",
                acquired_at=now, expires_at=now + timedelta(minutes=10),
            ),
        )

        alerts = by_invariant(await checker.run_invariant_checks(), NO_ORPHAN_LOCKS)

        assert len(alerts) == 1
        assert alerts[0].severity == AlertSeverity.WARNING
        assert alerts[0].alert_type == AlertType.DATA_INCONSISTENCY
        assert "does not exist" in alerts[0].message

    @pytest.mark.asyncio
    async def test_lock_left_behind_by_cancelled_transaction(self, ledger, store, checker):
        hold = await ledger.create_hold(BUSINESS, "table_5", SLOT)
        lock = await store.get_lock(BUSINESS, LOCK_KEY)
        await ledger.cancel(BUSINESS, hold.transaction_id)
        # Put the lock back as if release had been skipped
        await write(store, lock.model_copy(update={"version": 0}))

        alerts = by_invariant(await checker.run_invariant_checks(), NO_ORPHAN_LOCKS)

        assert len(alerts) == 1
        assert alerts[0].observed == "cancelled"

    @pytest.mark.asyncio
    async def test_illegal_event_log(self, store, checker, clock):
        now = clock()
        tx = Transaction(
            transaction_id="tx_skip", business_id=BUSINESS,
            state=TransactionState.CONFIRMED, created_at=now, event_count=2,
        )
        await write(store, tx, events=tx_events("tx_skip", now, "draft", "confirm"))

        alerts = by_invariant(await checker.run_invariant_checks(), LEGAL_TRANSITIONS_ONLY)

        assert len(alerts) == 1
        assert alerts[0].severity == AlertSeverity.CRITICAL
        assert alerts[0].details["sequence"] == 2

    @pytest.mark.asyncio
    async def test_state_does_not_match_log(self, store, checker, clock):
        now = clock()
        tx = Transaction(
            transaction_id="tx_drift", business_id=BUSINESS,
            state=TransactionState.CONFIRMED, created_at=now, event_count=2,
        )
        await write(store, tx, events=tx_events("tx_drift", now, "draft", "hold"))

        alerts = by_invariant(
            await checker.run_invariant_checks(), EVENT_LOG_FOLD_MATCHES_STATE
        )

        assert len(alerts) == 1
        assert alerts[0].expected == "confirmed"
        assert alerts[0].observed == "hold"
        assert "0 CONFIRM_SUCCESS events" in alerts[0].message

    @pytest.mark.asyncio
    async def test_transaction_without_events(self, store, checker, clock):
        await write(store, Transaction(transaction_id="tx_bare", business_id=BUSINESS,
                                       created_at=clock()))

        alerts = await checker.run_invariant_checks()

        assert by_invariant(alerts, LEGAL_TRANSITIONS_ONLY)
        assert by_invariant(alerts, EVENT_LOG_FOLD_MATCHES_STATE) == []

    @pytest.mark.asyncio
    async def test_confirm_record_disagrees_with_transaction(self, ledger, store, checker):
        hold = await ledger.create_hold(BUSINESS, "table_5", SLOT)
        await ledger.confirm(BUSINESS, hold.transaction_id, "confirm-1")
        record = await store.get_idempotency(BUSINESS, "confirm", "confirm-1")

        tampered = dict(record.result, confirmation_code="ZZZZZZ")
        await write(store, record.model_copy(update={"result": tampered}))

        alerts = by_invariant(await checker.run_invariant_checks(), IDEMPOTENCY_REPLAY_CORRECT)

        assert len(alerts) == 1
        assert alerts[0].severity == AlertSeverity.ERROR
        assert alerts[0].observed["confirmation_code"] == "ZZZZZZ"

    @pytest.mark.asyncio
    async def test_record_for_missing_transaction(self, store, checker, clock):
        now = clock()
        await write(
            store,
            IdempotencyRecord(
                business_id=BUSINESS, scope="create_hold", key="k1",
                status=IdempotencyStatus.COMPLETED, transaction_id="tx_gone",
                result={"success": True, "transaction_id": "tx_gone"},
                created_at=now, expires_at=now + timedelta(hours=1),
            ),
        )

        alerts = by_invariant(await checker.run_invariant_checks(), IDEMPOTENCY_REPLAY_CORRECT)

        assert len(alerts) == 1
        assert "does not exist" in alerts[0].message

    @pytest.mark.asyncio
    async def test_lapsed_hold_not_reclaimed(self, ledger, checker, clock):
        hold = await ledger.create_hold(BUSINESS, "table_5", SLOT)
        clock.advance(minutes=11)

        assert by_invariant(await checker.run_invariant_checks(), HOLD_EXPIRY_SLA) == []

        clock.advance(minutes=2)
        alerts = by_invariant(await checker.run_invariant_checks(), HOLD_EXPIRY_SLA)

        assert len(alerts) == 1
        assert alerts[0].entity_ids == [hold.transaction_id]
        assert alerts[0].alert_type == AlertType.SLA_BREACH

    @pytest.mark.asyncio
    async def test_stale_draft(self, ledger, checker, clock):
        draft = await ledger.create_draft(BUSINESS)
        clock.advance(minutes=31)

        alerts = by_invariant(await checker.run_invariant_checks(), PROCESSING_SLA)

        assert len(alerts) == 1
        assert alerts[0].entity_ids == [draft.transaction_id]

    @pytest.mark.asyncio
    async def test_stuck_idempotency_reservation(self, store, checker, clock):
        now = clock()
        await write(
            store,
            IdempotencyRecord(
                business_id=BUSINESS, scope="create_hold", key="stuck",
                owner_token="crashed", lease_expires_at=now + timedelta(seconds=30),
                created_at=now, expires_at=now + timedelta(hours=1),
            ),
        )
        clock.advance(minutes=1)

        alerts = by_invariant(await checker.run_invariant_checks(), PROCESSING_SLA)

        assert len(alerts) == 1
        assert alerts[0].entity_ids == ["stuck"]
        assert alerts[0].observed == "in_progress"


# ============================================================================
# Alert delivery
# ============================================================================


class TestAlertDelivery:
    """Tests for sink hand-off."""

    @pytest.mark.asyncio
    async def test_alerts_are_emitted_to_sink(self, ledger, checker, alert_sink, clock):
        await ledger.create_draft(BUSINESS)
        clock.advance(hours=1)

        alerts = await checker.run_invariant_checks()

        assert [a.alert_id for a in alert_sink.alerts] == [a.alert_id for a in alerts]

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_raise(self, ledger, store, clock):
        sink = AsyncMock(spec=AlertSink)
        sink.emit.side_effect = ConnectionError("redis down")
        checker = InvariantChecker(store, sink, clock=clock)
        await ledger.create_draft(BUSINESS)
        clock.advance(hours=1)

        alerts = await checker.run_invariant_checks()

        assert len(alerts) == 1
        sink.emit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_sink_not_called_without_alerts(self, store, clock):
        sink = AsyncMock(spec=AlertSink)
        checker = InvariantChecker(store, sink, clock=clock)

        assert await checker.run_invariant_checks() == []
        sink.emit.assert_not_awaited()
