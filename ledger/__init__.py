"""
Transactional execution ledger.

Turns a tentative booking/order/rental request into a durably recorded,
conflict-free Transaction using resource locks, a guarded state machine,
idempotency keys and expiry reclamation.

Public exports:
    - TransactionLedger: Caller API (create_hold, confirm, cancel, ...)
    - lock / derive_lock_key: Canonical lock key derivation
    - Transaction, TransactionState: Core domain model
"""

from ledger.lock_keys import derive_lock_key, lock
from ledger.models import Transaction, TransactionState
from ledger.transactions.transaction_ledger import TransactionLedger

__all__ = [
    "TransactionLedger",
    "Transaction",
    "TransactionState",
    "derive_lock_key",
    "lock",
]
