"""
Persistence backends for the ledger.

- AtomicStore / StoreTransaction: the port every backend implements
- InMemoryAtomicStore: process-local backend (tests, single process)
- SqlAlchemyAtomicStore: PostgreSQL backend, imported from
  ledger.store.sqlalchemy_store (kept out of this namespace so the ORM
  models are only loaded when the SQL backend is used)
"""

from ledger.store.base import AtomicStore, StoreTransaction
from ledger.store.memory import InMemoryAtomicStore

__all__ = ["AtomicStore", "StoreTransaction", "InMemoryAtomicStore"]
