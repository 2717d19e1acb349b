"""
In-memory event stream implementation for testing.

This module provides an in-memory stream backend for:
- Unit tests
- Integration tests
- Local development without external dependencies

Besides the EventStream protocol it offers helpers to simulate the failure
modes the ingestion consumer must survive: redelivery of already fetched
records, consumer restarts, group rebalances (assign()), and failures
injected into append/fetch/commit.

Invariants:
    - All data is lost on process exit
    - Same ordering guarantees as production backends (per-partition order)
    - Fetch cursors and committed offsets are tracked per (group, topic)

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with EventStream protocol
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field

from .base import StreamConnectionError, StreamPos, StreamRecord

logger = logging.getLogger(__name__)


@dataclass
class InMemoryPartition:
    """In-memory partition storage."""

    records: list[StreamRecord] = field(default_factory=list)
    next_offset: int = 0


class InMemoryEventStream:
    """In-memory implementation of EventStream for testing.

    Example:
        >>> stream = InMemoryEventStream(num_partitions=2)
        >>> await stream.connect()
        >>> await stream.append("events", "u42", b"{}")
        >>> await stream.fetch("events", "ingest", 0, 10, 0)
    """

    def __init__(self, num_partitions: int = 4) -> None:
        """Initialize in-memory event stream.

        Args:
            num_partitions: Number of partitions per topic
        """
        self.num_partitions = num_partitions
        self._topics: dict[str, dict[int, InMemoryPartition]] = defaultdict(
            lambda: {i: InMemoryPartition() for i in range(self.num_partitions)}
        )
        # (group_id, topic) -> partition -> offset
        self._committed: dict[tuple[str, str], dict[int, int]] = defaultdict(dict)
        self._cursors: dict[tuple[str, str], dict[int, int]] = defaultdict(dict)
        self._connected = False
        self._lock = asyncio.Lock()
        self._new_record_events: dict[str, asyncio.Event] = defaultdict(asyncio.Event)
        self._failures: dict[str, list[Exception]] = defaultdict(list)
        # (group_id, topic) -> partitions owned by this instance; all when absent
        self._assignments: dict[tuple[str, str], list[int]] = {}

    @property
    def is_connected(self) -> bool:
        """Whether connected (always true after connect())."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryEventStream connected")

    async def close(self) -> None:
        """Disconnect. Data is kept so a reconnect can resume."""
        self._connected = False
        logger.debug("InMemoryEventStream closed")

    def _check_connected(self) -> None:
        if not self._connected:
            raise StreamConnectionError("Not connected")

    def _raise_injected(self, operation: str) -> None:
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _partition_for_key(self, key: str) -> int:
        """Get partition number for a key using consistent hashing."""
        hash_bytes = hashlib.md5(key.encode("utf-8")).digest()
        hash_int = int.from_bytes(hash_bytes[:4], "big")
        return hash_int % self.num_partitions

    async def append(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: dict[str, bytes] | None = None,
    ) -> StreamPos:
        self._check_connected()
        self._raise_injected("append")

        partition = self._partition_for_key(key)

        async with self._lock:
            part = self._topics[topic][partition]
            pos = StreamPos(
                topic=topic,
                partition=partition,
                offset=part.next_offset,
                timestamp_ms=int(time.time() * 1000),
            )
            part.records.append(StreamRecord(key=key, value=value, position=pos, headers=headers or {}))
            part.next_offset += 1
            self._new_record_events[topic].set()

        logger.debug(
            "Event appended to in-memory stream",
            extra={"topic": topic, "key": key, "partition": partition, "offset": pos.offset},
        )
        return pos

    async def partitions(self, topic: str) -> list[int]:
        self._check_connected()
        return sorted(self._topics[topic].keys())

    async def assigned_partitions(self, topic: str, group_id: str) -> list[int]:
        self._check_connected()
        assigned = self._assignments.get((group_id, topic))
        if assigned is None:
            return sorted(self._topics[topic].keys())
        return sorted(assigned)

    def _cursor(self, group_id: str, topic: str, partition: int) -> int:
        cursors = self._cursors[(group_id, topic)]
        if partition not in cursors:
            cursors[partition] = self._committed[(group_id, topic)].get(partition, 0)
        return cursors[partition]

    async def fetch(
        self,
        topic: str,
        group_id: str,
        partition: int,
        max_records: int,
        timeout_ms: int,
    ) -> list[StreamRecord]:
        self._check_connected()
        self._raise_injected("fetch")

        deadline = time.monotonic() + timeout_ms / 1000.0
        while True:
            async with self._lock:
                part = self._topics[topic][partition]
                start = self._cursor(group_id, topic, partition)
                batch = part.records[start : start + max_records]
                if batch:
                    self._cursors[(group_id, topic)][partition] = start + len(batch)
                    return list(batch)
                event = self._new_record_events[topic]
                event.clear()

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return []
            try:
                await asyncio.wait_for(event.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                return []

    async def commit(self, group_id: str, record: StreamRecord) -> None:
        self._check_connected()
        self._raise_injected("commit")
        pos = record.position
        self._committed[(group_id, pos.topic)][pos.partition] = pos.offset + 1

    async def seek_to_committed(self, topic: str, group_id: str, partition: int) -> None:
        self._check_connected()
        self._cursors[(group_id, topic)][partition] = self._committed[(group_id, topic)].get(partition, 0)

    async def get_positions(self, topic: str, group_id: str) -> dict[int, StreamPos]:
        now = int(time.time() * 1000)
        return {
            partition: StreamPos(topic=topic, partition=partition, offset=offset, timestamp_ms=now)
            for partition, offset in self._committed[(group_id, topic)].items()
        }

    async def end_offsets(self, topic: str, group_id: str) -> dict[int, int]:
        """Next offset to be written per partition."""
        return {p: part.next_offset for p, part in self._topics[topic].items()}

    # Testing helpers

    def inject_failure(self, operation: str, exception: Exception, times: int = 1) -> None:
        """Make the next `times` calls of an operation raise `exception`.

        Args:
            operation: One of "append", "fetch", "commit"
            exception: Exception to raise
            times: Number of consecutive calls to fail
        """
        self._failures[operation].extend([exception] * times)

    def assign(self, topic: str, group_id: str, partitions: list[int]) -> None:
        """Hand this instance a new set of partitions, as a group rebalance would."""
        self._assignments[(group_id, topic)] = list(partitions)

    def simulate_restart(self, group_id: str) -> None:
        """Forget fetch cursors of a group, as if its consumer process restarted.

        The next fetch resumes from the committed offsets, redelivering
        everything fetched but not committed.
        """
        for (group, _topic), cursors in self._cursors.items():
            if group == group_id:
                cursors.clear()

    def partition_for_key(self, key: str) -> int:
        """Partition a key is routed to (testing helper)."""
        return self._partition_for_key(key)

    def get_all_records(self, topic: str) -> list[StreamRecord]:
        """Get all records for a topic across partitions (testing helper)."""
        records = []
        if topic in self._topics:
            for partition in sorted(self._topics[topic].keys()):
                records.extend(self._topics[topic][partition].records)
        return records

    def get_record_count(self, topic: str) -> int:
        """Get total record count for a topic (testing helper)."""
        if topic not in self._topics:
            return 0
        return sum(len(part.records) for part in self._topics[topic].values())

    def committed_offset(self, topic: str, group_id: str, partition: int) -> int:
        """Committed offset of one partition, 0 if never committed (testing helper)."""
        return self._committed[(group_id, topic)].get(partition, 0)
