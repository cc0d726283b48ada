"""
Background workers for the execution ledger.

- hold_expiration: Expiry Reclaimer, moves lapsed holds to expired
- invariant_checker: Read-only audit that emits SystemAlerts
"""
