"""
Event stream abstraction for RecoCore.

This module provides a pluggable stream backend interface supporting:
- Kafka/Redpanda (production)
- In-memory (for testing)

The stream is an ordered, replayable, partitioned log of interaction events.
The graph store is derived from it and can be rebuilt by replaying it.

Invariants:
    - append() returns only after durable storage is confirmed
    - Events are totally ordered per partition key
    - Offsets are committed only by the ingestion consumer, after effect

How to change safely:
    - New backends must implement the EventStream protocol
    - Verify redelivery behaviour with the in-memory failure helpers first
"""

from .base import (
    EventStream,
    StreamConnectionError,
    StreamError,
    StreamPos,
    StreamRecord,
    StreamSerializationError,
    StreamTimeoutError,
    create_event_stream,
)
from .kafka import KafkaEventStream
from .memory import InMemoryEventStream

__all__ = [
    # Protocol and types
    "EventStream",
    "StreamRecord",
    "StreamPos",
    "StreamError",
    "StreamConnectionError",
    "StreamTimeoutError",
    "StreamSerializationError",
    # Factory
    "create_event_stream",
    # Implementations
    "KafkaEventStream",
    "InMemoryEventStream",
]
