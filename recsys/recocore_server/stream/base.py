"""
Base protocol and types for the event stream abstraction.

This module defines the EventStream protocol that all backends must implement,
along with common types for stream positions, records, and errors.

The ingestion consumer drives each partition explicitly: it fetches a batch
from one partition, applies it, commits per record, and rewinds to the last
committed offset when a batch has to be abandoned. The protocol therefore
exposes per-partition fetch/commit/seek rather than a single merged iterator.

Invariants:
    - StreamPos uniquely identifies a position in the stream
    - Records with the same key land in the same partition, in append order
    - fetch() returns records of one partition in offset order
    - commit() records "everything up to and including this record is done"
    - A partition is consumed only by the group member it is assigned to

How to change safely:
    - Protocol changes require updating all implementations
    - Never auto-commit; offsets move only through commit()
"""

from __future__ import annotations

import json
import logging
from abc import abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..errors import RecoCoreError, TransientStoreError

if TYPE_CHECKING:
    from ..config import ServerConfig

logger = logging.getLogger(__name__)


class StreamError(RecoCoreError):
    """Base exception for non-retryable stream operations."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="STREAM_ERROR")


class StreamConnectionError(TransientStoreError):
    """Connection to the stream backend failed or was lost."""

    def __init__(self, message: str) -> None:
        super().__init__(message, store="stream")


class StreamTimeoutError(TransientStoreError):
    """Stream operation timed out."""

    def __init__(self, message: str) -> None:
        super().__init__(message, store="stream")


class StreamSerializationError(StreamError):
    """Failed to decode a stream record."""


@dataclass(frozen=True)
class StreamPos:
    """Position in the event stream.

    Attributes:
        topic: Topic name
        partition: Partition number
        offset: Offset within partition
        timestamp_ms: Timestamp when the record was written (milliseconds)
    """

    topic: str
    partition: int
    offset: int
    timestamp_ms: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "topic": self.topic,
            "partition": self.partition,
            "offset": self.offset,
            "timestamp_ms": self.timestamp_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StreamPos:
        """Create from dictionary."""
        return cls(
            topic=data["topic"],
            partition=data["partition"],
            offset=data["offset"],
            timestamp_ms=data["timestamp_ms"],
        )

    def __str__(self) -> str:
        return f"{self.topic}:{self.partition}:{self.offset}"


@dataclass
class StreamRecord:
    """A record read from the event stream.

    Attributes:
        key: Partition key
        value: Event payload (bytes, JSON-encoded Event)
        position: Position in the stream
        headers: Optional headers/metadata
    """

    key: str
    value: bytes
    position: StreamPos
    headers: dict[str, bytes] = field(default_factory=dict)

    def value_json(self) -> Any:
        """Parse value as JSON.

        Raises:
            StreamSerializationError: If value is not valid JSON
        """
        try:
            return json.loads(self.value.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StreamSerializationError(f"Failed to parse record value as JSON: {e}") from e

    def __str__(self) -> str:
        return f"StreamRecord(key={self.key}, pos={self.position})"


@runtime_checkable
class EventStream(Protocol):
    """Protocol for event stream backends.

    Durability contract:
        - append() returns only after the backend acknowledged the write
        - For Kafka: acks=all, idempotent producer

    Ordering contract:
        - Events with the same key are totally ordered
        - fetch() yields records in offset order within a partition

    Example:
        >>> stream = KafkaEventStream(config)
        >>> await stream.connect()
        >>> batch = await stream.fetch("recocore-events", "ingest", 0, 100, 1000)
        >>> for record in batch:
        ...     handle(record)
        ...     await stream.commit("ingest", record)
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the stream backend.

        Raises:
            StreamConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close connections and release resources."""
        ...

    @abstractmethod
    async def append(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: dict[str, bytes] | None = None,
    ) -> StreamPos:
        """Append a record and wait for the durable acknowledgment.

        Raises:
            StreamConnectionError: If not connected
            StreamTimeoutError: If the write times out
        """
        ...

    @abstractmethod
    async def partitions(self, topic: str) -> list[int]:
        """List partition numbers of a topic in ascending order."""
        ...

    @abstractmethod
    async def assigned_partitions(self, topic: str, group_id: str) -> list[int]:
        """Partitions of the topic this instance currently owns for the group.

        Ownership is handed out by the backend and changes as instances join
        or leave the group. Only the owner of a partition fetches it.
        """
        ...

    @abstractmethod
    async def fetch(
        self,
        topic: str,
        group_id: str,
        partition: int,
        max_records: int,
        timeout_ms: int,
    ) -> list[StreamRecord]:
        """Fetch the next records of one partition for a consumer group.

        Waits up to timeout_ms when nothing is available and returns an
        empty list on timeout.
        """
        ...

    @abstractmethod
    async def commit(self, group_id: str, record: StreamRecord) -> None:
        """Commit a processed record; the group resumes after it on restart."""
        ...

    @abstractmethod
    async def seek_to_committed(self, topic: str, group_id: str, partition: int) -> None:
        """Rewind the group's fetch position to its last committed offset."""
        ...

    @abstractmethod
    async def get_positions(self, topic: str, group_id: str) -> dict[int, StreamPos]:
        """Get the committed position (next offset to read) per partition."""
        ...

    @abstractmethod
    async def end_offsets(self, topic: str, group_id: str) -> dict[int, int]:
        """Get the next offset to be written per partition (for lag)."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the backend."""
        ...


def create_event_stream(config: ServerConfig) -> EventStream:
    """Factory function to create an event stream from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StreamBackend
    from .kafka import KafkaEventStream
    from .memory import InMemoryEventStream

    if config.stream_backend == StreamBackend.KAFKA:
        return KafkaEventStream(config.kafka)
    elif config.stream_backend == StreamBackend.MEMORY:
        return InMemoryEventStream()
    else:
        raise ValueError(f"Unsupported stream backend: {config.stream_backend}")
