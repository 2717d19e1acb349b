"""
Event ingestion for RecoCore.

Turns the at-least-once event stream into effectively-once graph mutations
using the idempotency ledger, committing offsets only after effect.
"""

from .consumer import EventOutcome, IngestionConsumer, PartitionState, PartitionStats
from .dead_letter import DeadLetter, DeadLetterSink, InMemoryDeadLetterSink, StreamDeadLetterSink

__all__ = [
    "IngestionConsumer",
    "PartitionState",
    "PartitionStats",
    "EventOutcome",
    "DeadLetter",
    "DeadLetterSink",
    "InMemoryDeadLetterSink",
    "StreamDeadLetterSink",
]
