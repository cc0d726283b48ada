"""
Transaction handlers for the execution ledger.

Every lifecycle operation runs as one atomic store transaction that writes the
new state, the lock mutation and the audit events together.
"""

from ledger.transactions.transaction_ledger import TransactionLedger

__all__ = ["TransactionLedger"]
