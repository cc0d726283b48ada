"""
Test configuration and fixtures.

This module sets up test environment and provides shared fixtures for all tests.
"""

import os
from datetime import UTC, datetime, timedelta

import pytest

# Must be set BEFORE any imports of shared.config
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = "redis://localhost:6379/0"
os.environ["LEDGER_BACKEND"] = "memory"
os.environ["ALERT_SINK"] = "memory"

from ledger.alerts import InMemoryAlertSink  # noqa: E402
from ledger.idempotency import IdempotencyGuard  # noqa: E402
from ledger.store.memory import InMemoryAtomicStore  # noqa: E402
from ledger.transactions.transaction_ledger import TransactionLedger  # noqa: E402


class FakeClock:
    """Controllable UTC clock injected wherever the ledger reads time."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 6, 1, 18, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# ============================================================================
# Shared Fixtures
# ============================================================================


@pytest.fixture
def clock():
    """Fake clock starting at 2024-06-01 18:00 UTC."""
    return FakeClock()


@pytest.fixture
def store():
    """Fresh in-memory AtomicStore."""
    return InMemoryAtomicStore()


@pytest.fixture
def guard(store, clock):
    return IdempotencyGuard(store, clock=clock)


@pytest.fixture
def ledger(store, guard, clock):
    """TransactionLedger on the in-memory store with the fake clock."""
    return TransactionLedger(store, guard=guard, clock=clock)


@pytest.fixture
def alert_sink():
    return InMemoryAlertSink()
