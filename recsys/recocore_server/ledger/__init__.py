"""
Idempotency ledger for RecoCore.

Makes at-least-once delivery from the event stream effectively-once in the
graph: each event id is applied at most once per retention window.
"""

from .backends import EntryState, InMemoryLedgerBackend, LedgerBackend, MarkResult
from .ledger import IdempotencyLedger
from .sqlite import SqliteLedgerBackend

__all__ = [
    "MarkResult",
    "EntryState",
    "LedgerBackend",
    "InMemoryLedgerBackend",
    "SqliteLedgerBackend",
    "IdempotencyLedger",
]
