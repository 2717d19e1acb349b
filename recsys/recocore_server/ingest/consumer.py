"""
Event ingestion consumer.

Reads the ordered event stream partition by partition and applies each
event to the graph store exactly once in effect. Each partition this
instance owns runs its own state machine in its own task:

    IDLE -> FETCHING -> APPLYING -> COMMITTED -> IDLE

Per event, in partition order:
    1. Decode and validate. A poison event goes to the dead-letter sink
       and its offset is committed.
    2. try_mark(event_id) on the idempotency ledger.
    3. FRESH: apply the mutation, complete() the claim, commit the offset.
       DUPLICATE: commit the offset.
       IN_PROGRESS: another worker is applying it; retry, and if the claim
       stays live, abandon the batch without committing.

Partition ownership comes from the stream's consumer group. run() polls
the current assignment, starts a task for every newly owned partition and
stops the task of a revoked partition before its next record.

Invariants:
    - An offset is committed only after its mutation succeeded (or the event
      was a duplicate or dead-lettered)
    - Transient failures, stream errors and live foreign claims are retried
      with backoff; when retries run out the claim is released, the rest of
      the batch is abandoned and the partition rewinds to its last committed
      offset
    - Events of one partition are never applied concurrently or out of order
    - Only owned partitions are consumed
    - Mutations are stamped with the event's arrival time, so replays write
      the same data

How to change safely:
    - New mutation types go in apply_event() and events.MutationType
    - Never commit before complete(); a crash in between must redeliver
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..errors import ClaimInProgressError, ConflictError, EventValidationError, TransientStoreError
from ..events import Event, MutationType
from ..graph.store import GraphStore
from ..ledger.backends import MarkResult
from ..ledger.ledger import IdempotencyLedger
from ..retry import RetryPolicy, retry_async
from ..stream.base import EventStream, StreamError, StreamRecord
from .dead_letter import DeadLetterSink

logger = logging.getLogger(__name__)

RETRYABLE = (TransientStoreError, ConflictError, ClaimInProgressError)

# Failures that abandon a batch instead of crashing the partition loop
ABANDON_BATCH = RETRYABLE + (StreamError,)


class PartitionState(Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    APPLYING = "applying"
    COMMITTED = "committed"


class EventOutcome(Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    DEAD_LETTERED = "dead_lettered"


@dataclass
class PartitionStats:
    """Counters and state of one partition.

    Attributes:
        state: Current state machine state
        applied: Events applied to the graph
        duplicates: Events skipped by the ledger
        dead_lettered: Poison events routed to the dead-letter sink
        failures: Batches abandoned after exhausted retries
        committed_offset: Last committed record offset
    """

    state: PartitionState = PartitionState.IDLE
    applied: int = 0
    duplicates: int = 0
    dead_lettered: int = 0
    failures: int = 0
    committed_offset: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "applied": self.applied,
            "duplicates": self.duplicates,
            "dead_lettered": self.dead_lettered,
            "failures": self.failures,
            "committed_offset": self.committed_offset,
        }


class IngestionConsumer:
    """Applies stream events to the graph under idempotency checks.

    Example:
        >>> consumer = IngestionConsumer(stream, ledger, graph, dead_letter, topic="recocore-events")
        >>> task = asyncio.create_task(consumer.run())
        >>> ...
        >>> await consumer.stop()
    """

    def __init__(
        self,
        stream: EventStream,
        ledger: IdempotencyLedger,
        graph: GraphStore,
        dead_letter: DeadLetterSink,
        topic: str = "recocore-events",
        group_id: str = "recocore-ingest",
        batch_size: int = 100,
        fetch_timeout_ms: int = 1000,
        assignment_check_s: float = 1.0,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the consumer.

        Args:
            stream: Event stream to consume
            ledger: Idempotency ledger
            graph: Graph store receiving mutations
            dead_letter: Sink for poison events
            topic: Event topic
            group_id: Consumer group ID
            batch_size: Maximum events per fetch
            fetch_timeout_ms: How long a fetch waits for events
            assignment_check_s: How often run() checks which partitions it owns
            retry_policy: Backoff for transient failures
            sleep: Sleep function (injectable for tests)
        """
        self.stream = stream
        self.ledger = ledger
        self.graph = graph
        self.dead_letter = dead_letter
        self.topic = topic
        self.group_id = group_id
        self.batch_size = batch_size
        self.fetch_timeout_ms = fetch_timeout_ms
        self.assignment_check_s = assignment_check_s
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

        self._running = False
        self._partitions: dict[int, PartitionStats] = {}
        self._needs_rewind: set[int] = set()
        self._revoked: set[int] = set()
        self._tasks: dict[int, asyncio.Task] = {}

    def partition_stats(self, partition: int) -> PartitionStats:
        if partition not in self._partitions:
            self._partitions[partition] = PartitionStats()
        return self._partitions[partition]

    async def _retry(self, fn: Callable[[], Awaitable[Any]], description: str) -> Any:
        return await retry_async(
            fn, self.retry_policy, retry_on=RETRYABLE, description=description, sleep=self._sleep
        )

    async def apply_event(self, event: Event) -> None:
        """Apply one validated event to the graph store."""
        payload = event.payload
        ts = event.arrival_ts_ms

        if event.mutation_type == MutationType.UPSERT_ENTITY:
            await self.graph.upsert_entity(payload["type"], payload["id"], payload.get("attrs", {}), ts_ms=ts)
        elif event.mutation_type == MutationType.ADD_RELATIONSHIP:
            await self.graph.upsert_relationship(
                payload["src"],
                payload["dst"],
                payload["type"],
                payload.get("weight", 1.0),
                source_type=payload.get("srcType"),
                target_type=payload.get("dstType"),
                ts_ms=ts,
            )
        elif event.mutation_type == MutationType.TOMBSTONE_ENTITY:
            await self.graph.tombstone_entity(payload["id"], ts_ms=ts)

    async def _claim(self, event_id: str) -> MarkResult:
        mark = await self.ledger.try_mark(event_id)
        if mark == MarkResult.IN_PROGRESS:
            raise ClaimInProgressError(event_id)
        return mark

    async def process_event(self, event: Event) -> EventOutcome:
        """Check the ledger and apply a fresh event.

        Raises:
            TransientStoreError / ConflictError: When retries are exhausted;
                a claim taken by this call has been released
            ClaimInProgressError: When another worker still holds a live
                claim on the event after all retries
        """
        mark = await self._retry(lambda: self._claim(event.event_id), f"try_mark {event.event_id}")
        if mark == MarkResult.DUPLICATE:
            return EventOutcome.DUPLICATE

        try:
            await self._retry(lambda: self.apply_event(event), f"apply {event.event_id}")
        except RETRYABLE:
            try:
                await self.ledger.release(event.event_id)
            except TransientStoreError as e:
                # The claim times out on its own
                logger.warning(f"Could not release claim: {e}", extra={"event_id": event.event_id})
            raise

        await self._retry(lambda: self.ledger.complete(event.event_id), f"complete {event.event_id}")
        return EventOutcome.APPLIED

    async def handle_record(self, record: StreamRecord) -> EventOutcome:
        """Validate, process and commit one record."""
        try:
            event = Event.from_record(record)
        except EventValidationError as e:
            await self._retry(lambda: self.dead_letter.send(record, e), "dead-letter")
            outcome = EventOutcome.DEAD_LETTERED
        else:
            outcome = await self.process_event(event)

        await self._retry(lambda: self.stream.commit(self.group_id, record), "commit offset")
        return outcome

    async def poll_partition(self, partition: int) -> int:
        """Run one fetch/apply/commit pass over a partition.

        Returns:
            Number of records committed in this pass
        """
        stats = self.partition_stats(partition)

        if partition in self._needs_rewind:
            await self.stream.seek_to_committed(self.topic, self.group_id, partition)
            self._needs_rewind.discard(partition)

        stats.state = PartitionState.FETCHING
        batch = await self.stream.fetch(
            self.topic, self.group_id, partition, self.batch_size, self.fetch_timeout_ms
        )
        if not batch:
            stats.state = PartitionState.IDLE
            return 0

        stats.state = PartitionState.APPLYING
        committed = 0
        for record in batch:
            if partition in self._revoked:
                logger.info(
                    "Partition revoked mid-batch",
                    extra={"topic": self.topic, "partition": partition, "offset": record.position.offset},
                )
                self._needs_rewind.add(partition)
                stats.state = PartitionState.IDLE
                return committed

            try:
                outcome = await self.handle_record(record)
            except ABANDON_BATCH as e:
                stats.failures += 1
                logger.error(
                    f"Abandoning batch after exhausted retries: {e}",
                    extra={
                        "topic": self.topic,
                        "partition": partition,
                        "offset": record.position.offset,
                    },
                )
                await self._rewind(partition)
                stats.state = PartitionState.IDLE
                return committed

            committed += 1
            stats.committed_offset = record.position.offset
            if outcome == EventOutcome.APPLIED:
                stats.applied += 1
            elif outcome == EventOutcome.DUPLICATE:
                stats.duplicates += 1
            else:
                stats.dead_lettered += 1

        stats.state = PartitionState.COMMITTED
        logger.debug(
            "Committed batch",
            extra={"partition": partition, "records": committed, "offset": stats.committed_offset},
        )
        stats.state = PartitionState.IDLE
        return committed

    async def _rewind(self, partition: int) -> None:
        try:
            await self.stream.seek_to_committed(self.topic, self.group_id, partition)
        except (TransientStoreError, StreamError) as e:
            logger.warning(f"Rewind failed, retrying next pass: {e}", extra={"partition": partition})
            self._needs_rewind.add(partition)

    async def run_partition(self, partition: int) -> None:
        """Poll one owned partition until stopped or revoked."""
        while self._running and partition not in self._revoked:
            try:
                processed = await self.poll_partition(partition)
            except (TransientStoreError, StreamError) as e:
                logger.warning(f"Partition poll failed: {e}", extra={"partition": partition})
                self._needs_rewind.add(partition)
                processed = 0
                await self._sleep(self.retry_policy.base_delay_s)
            if not processed:
                await asyncio.sleep(0)

    async def sync_assignment(self) -> list[int]:
        """Align partition tasks with the partitions this instance owns.

        Starts a task for each newly assigned partition and flags revoked
        ones so their task stops before the next record.

        Returns:
            Partitions currently owned

        Raises:
            Exception: Re-raises the error of a partition task that crashed
        """
        for partition, task in list(self._tasks.items()):
            if task.done():
                del self._tasks[partition]
                if not task.cancelled() and task.exception() is not None:
                    raise task.exception()

        try:
            owned = set(await self.stream.assigned_partitions(self.topic, self.group_id))
        except (TransientStoreError, StreamError) as e:
            logger.warning(f"Could not read partition assignment: {e}", extra={"topic": self.topic})
            return sorted(p for p in self._tasks if p not in self._revoked)

        revoked = set(self._tasks) - owned - self._revoked
        if revoked:
            logger.info("Releasing revoked partitions", extra={"topic": self.topic, "partitions": sorted(revoked)})
        self._revoked |= revoked

        for partition in sorted(owned):
            self._revoked.discard(partition)
            if partition in self._tasks:
                continue
            self._needs_rewind.add(partition)
            self._tasks[partition] = asyncio.create_task(
                self.run_partition(partition), name=f"ingest-{self.topic}-{partition}"
            )
            logger.info("Consuming partition", extra={"topic": self.topic, "partition": partition})
        return sorted(owned)

    async def run(self) -> None:
        """Consume the partitions this instance owns until stop() is called."""
        if self._running:
            logger.warning("Ingestion consumer already running")
            return

        self._running = True
        logger.info("Starting ingestion consumer", extra={"topic": self.topic, "group_id": self.group_id})
        try:
            while self._running:
                await self.sync_assignment()
                await asyncio.sleep(self.assignment_check_s)
            await asyncio.gather(*self._tasks.values())
        except asyncio.CancelledError:
            logger.info("Ingestion consumer cancelled")
        finally:
            for task in self._tasks.values():
                task.cancel()
            self._tasks.clear()
            self._revoked.clear()
            self._running = False

    async def drain(self) -> int:
        """Poll every owned partition until none returns records. Returns records committed."""
        total = 0
        partitions = await self.stream.assigned_partitions(self.topic, self.group_id)
        while True:
            processed = 0
            for partition in partitions:
                processed += await self.poll_partition(partition)
            total += processed
            if not processed:
                return total

    async def stop(self) -> None:
        """Stop all partition loops after their current pass."""
        self._running = False
        logger.info("Stopping ingestion consumer")

    async def lag(self) -> dict[int, int]:
        """Records appended but not yet committed, per partition."""
        ends = await self.stream.end_offsets(self.topic, self.group_id)
        positions = await self.stream.get_positions(self.topic, self.group_id)
        return {
            partition: end - (positions[partition].offset if partition in positions else 0)
            for partition, end in ends.items()
        }

    @property
    def stats(self) -> dict[str, Any]:
        """Per-partition and total counters."""
        totals = {"applied": 0, "duplicates": 0, "dead_lettered": 0, "failures": 0}
        for stats in self._partitions.values():
            totals["applied"] += stats.applied
            totals["duplicates"] += stats.duplicates
            totals["dead_lettered"] += stats.dead_lettered
            totals["failures"] += stats.failures
        return {
            "running": self._running,
            "owned": sorted(p for p in self._tasks if p not in self._revoked),
            **totals,
            "partitions": {p: s.to_dict() for p, s in sorted(self._partitions.items())},
        }
