"""
Kafka/Redpanda event stream implementation.

Works with Apache Kafka, Amazon MSK, Redpanda, or any Kafka API-compatible
system.

Invariants:
    - Producer uses acks=all and the idempotent producer
    - Consumers subscribe through the group coordinator and never auto-commit;
      each partition is owned by exactly one group member at a time
    - One consumer per (topic, group); owned partitions are driven independently
    - fetch() and seek on a partition this member does not own are no-ops
    - Committed offset is record offset + 1 (next record to read)

How to change safely:
    - Test with an actual Kafka/Redpanda cluster before deploying
    - Keep enable_auto_commit=False; the ingestion consumer owns commits
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from .base import (
    StreamConnectionError,
    StreamError,
    StreamPos,
    StreamRecord,
    StreamTimeoutError,
)

logger = logging.getLogger(__name__)

# Try to import aiokafka, provide helpful message if not installed
try:
    from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, ConsumerRebalanceListener
    from aiokafka.errors import KafkaConnectionError, KafkaError, KafkaTimeoutError
    from aiokafka.structs import OffsetAndMetadata, TopicPartition

    KAFKA_AVAILABLE = True
except ImportError:
    KAFKA_AVAILABLE = False
    AIOKafkaProducer = None
    AIOKafkaConsumer = None
    ConsumerRebalanceListener = object


class PartitionOwnershipListener(ConsumerRebalanceListener):
    """Keeps the set of partitions of one topic owned by this group member.

    The group coordinator calls the listener around every rebalance: first
    with the partitions taken away, then with the new assignment.
    """

    def __init__(self, topic: str, group_id: str, owned: set[int]) -> None:
        self.topic = topic
        self.group_id = group_id
        self.owned = owned

    async def on_partitions_revoked(self, revoked: Any) -> None:
        lost = sorted(tp.partition for tp in revoked if tp.topic == self.topic)
        self.owned.difference_update(lost)
        if lost:
            logger.info(
                "Kafka partitions revoked",
                extra={"topic": self.topic, "group_id": self.group_id, "partitions": lost},
            )

    async def on_partitions_assigned(self, assigned: Any) -> None:
        gained = sorted(tp.partition for tp in assigned if tp.topic == self.topic)
        self.owned.update(gained)
        logger.info(
            "Kafka partitions assigned",
            extra={"topic": self.topic, "group_id": self.group_id, "partitions": sorted(self.owned)},
        )


class KafkaEventStream:
    """Kafka implementation of the EventStream protocol.

    Durability configuration:
        - acks='all': Wait for all in-sync replicas
        - enable_idempotence=True: Prevent duplicates on producer retry

    Example:
        >>> stream = KafkaEventStream(KafkaConfig(brokers="localhost:9092"))
        >>> await stream.connect()
        >>> pos = await stream.append("recocore-events", "u42", b'{"event_id": "e1"}')
    """

    def __init__(self, config: Any) -> None:
        """Initialize Kafka event stream.

        Args:
            config: KafkaConfig instance with connection settings

        Raises:
            ImportError: If aiokafka is not installed
        """
        if not KAFKA_AVAILABLE:
            raise ImportError(
                "aiokafka is required for Kafka backend. Install with: pip install aiokafka"
            )

        self.config = config
        self._producer: AIOKafkaProducer | None = None
        self._consumers: dict[tuple[str, str], AIOKafkaConsumer] = {}
        self._owned: dict[tuple[str, str], set[int]] = {}
        self._consumer_lock = asyncio.Lock()
        self._connected = False

    @property
    def is_connected(self) -> bool:
        """Whether connected to Kafka."""
        return self._connected and self._producer is not None

    def _security_settings(self) -> dict[str, Any]:
        settings: dict[str, Any] = {}
        if self.config.security_protocol != "PLAINTEXT":
            settings["security_protocol"] = self.config.security_protocol
        if self.config.sasl_mechanism:
            settings["sasl_mechanism"] = self.config.sasl_mechanism
            settings["sasl_plain_username"] = self.config.sasl_username
            settings["sasl_plain_password"] = self.config.sasl_password
        if self.config.ssl_cafile:
            settings["ssl_cafile"] = self.config.ssl_cafile
        return settings

    async def connect(self) -> None:
        """Connect to the Kafka cluster and start the producer.

        Raises:
            StreamConnectionError: If connection fails
        """
        if self._connected:
            return

        try:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=self.config.brokers,
                acks=self.config.acks,
                enable_idempotence=self.config.enable_idempotence,
                linger_ms=5,
                request_timeout_ms=30000,
                retry_backoff_ms=100,
                **self._security_settings(),
            )
            await self._producer.start()
            self._connected = True

            logger.info(
                "Connected to Kafka",
                extra={
                    "brokers": self.config.brokers,
                    "acks": self.config.acks,
                    "idempotent": self.config.enable_idempotence,
                },
            )

        except KafkaError as e:
            self._connected = False
            raise StreamConnectionError(f"Failed to connect to Kafka: {e}") from e

    async def close(self) -> None:
        """Stop consumers and flush the producer."""
        for key, consumer in list(self._consumers.items()):
            try:
                await consumer.stop()
            except KafkaError as e:
                logger.warning(f"Error closing consumer {key}: {e}")
        self._consumers.clear()
        self._owned.clear()

        if self._producer:
            try:
                await self._producer.stop()
            except KafkaError as e:
                logger.warning(f"Error closing producer: {e}")
            self._producer = None

        self._connected = False
        logger.info("Kafka connections closed")

    async def append(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: dict[str, bytes] | None = None,
    ) -> StreamPos:
        """Append a record and wait for the broker acknowledgment."""
        if not self._producer:
            raise StreamConnectionError("Not connected to Kafka")

        try:
            kafka_headers = list(headers.items()) if headers else None
            metadata = await self._producer.send_and_wait(
                topic,
                value=value,
                key=key.encode("utf-8"),
                headers=kafka_headers,
            )
        except KafkaTimeoutError as e:
            raise StreamTimeoutError(f"Kafka send timed out: {e}") from e
        except KafkaConnectionError as e:
            self._connected = False
            raise StreamConnectionError(f"Kafka connection lost: {e}") from e
        except KafkaError as e:
            raise StreamError(f"Kafka send failed: {e}") from e

        pos = StreamPos(
            topic=metadata.topic,
            partition=metadata.partition,
            offset=metadata.offset,
            timestamp_ms=metadata.timestamp or int(time.time() * 1000),
        )
        logger.debug(
            "Event appended to Kafka",
            extra={"topic": topic, "key": key, "partition": pos.partition, "offset": pos.offset},
        )
        return pos

    async def partitions(self, topic: str) -> list[int]:
        if not self._producer:
            raise StreamConnectionError("Not connected to Kafka")
        try:
            found = await self._producer.partitions_for(topic)
        except KafkaError as e:
            raise StreamConnectionError(f"Failed to load partitions for {topic}: {e}") from e
        return sorted(found or [])

    async def _consumer_for(self, topic: str, group_id: str) -> AIOKafkaConsumer:
        """Get or create the subscribed consumer for (topic, group)."""
        async with self._consumer_lock:
            consumer = self._consumers.get((topic, group_id))
            if consumer is not None:
                return consumer

            owned: set[int] = set()
            try:
                consumer = AIOKafkaConsumer(
                    bootstrap_servers=self.config.brokers,
                    group_id=group_id,
                    enable_auto_commit=False,
                    auto_offset_reset=self.config.auto_offset_reset,
                    **self._security_settings(),
                )
                consumer.subscribe(topics=[topic], listener=PartitionOwnershipListener(topic, group_id, owned))
                await consumer.start()
            except KafkaConnectionError as e:
                raise StreamConnectionError(f"Failed to start consumer: {e}") from e

            self._consumers[(topic, group_id)] = consumer
            self._owned[(topic, group_id)] = owned
            logger.info("Subscribed Kafka consumer", extra={"topic": topic, "group_id": group_id})
            return consumer

    async def assigned_partitions(self, topic: str, group_id: str) -> list[int]:
        await self._consumer_for(topic, group_id)
        return sorted(self._owned[(topic, group_id)])

    def _owns(self, topic: str, group_id: str, partition: int) -> bool:
        return partition in self._owned.get((topic, group_id), ())

    async def fetch(
        self,
        topic: str,
        group_id: str,
        partition: int,
        max_records: int,
        timeout_ms: int,
    ) -> list[StreamRecord]:
        consumer = await self._consumer_for(topic, group_id)
        if not self._owns(topic, group_id, partition):
            return []
        tp = TopicPartition(topic, partition)
        try:
            batches = await consumer.getmany(tp, timeout_ms=timeout_ms, max_records=max_records)
        except KafkaConnectionError as e:
            raise StreamConnectionError(f"Fetch failed: {e}") from e
        except KafkaError as e:
            raise StreamError(f"Consumer error: {e}") from e

        return [
            StreamRecord(
                key=msg.key.decode("utf-8") if msg.key else "",
                value=msg.value,
                position=StreamPos(
                    topic=msg.topic,
                    partition=msg.partition,
                    offset=msg.offset,
                    timestamp_ms=msg.timestamp or int(time.time() * 1000),
                ),
                headers=dict(msg.headers) if msg.headers else {},
            )
            for msg in batches.get(tp, [])
        ]

    async def commit(self, group_id: str, record: StreamRecord) -> None:
        consumer = await self._consumer_for(record.position.topic, group_id)
        tp = TopicPartition(record.position.topic, record.position.partition)
        try:
            await consumer.commit({tp: OffsetAndMetadata(record.position.offset + 1, "")})
        except KafkaConnectionError as e:
            raise StreamConnectionError(f"Failed to commit: {e}") from e
        except KafkaError as e:
            raise StreamError(f"Failed to commit: {e}") from e

        logger.debug(
            "Committed offset",
            extra={
                "group_id": group_id,
                "topic": record.position.topic,
                "partition": record.position.partition,
                "offset": record.position.offset,
            },
        )

    async def seek_to_committed(self, topic: str, group_id: str, partition: int) -> None:
        consumer = await self._consumer_for(topic, group_id)
        if not self._owns(topic, group_id, partition):
            # The new owner starts from the committed offset on its own
            return
        tp = TopicPartition(topic, partition)
        try:
            committed = await consumer.committed(tp)
            if committed is None:
                if self.config.auto_offset_reset == "latest":
                    await consumer.seek_to_end(tp)
                else:
                    await consumer.seek_to_beginning(tp)
            else:
                consumer.seek(tp, committed)
        except KafkaConnectionError as e:
            raise StreamConnectionError(f"Failed to rewind partition {partition}: {e}") from e
        except KafkaError as e:
            raise StreamError(f"Failed to rewind partition {partition}: {e}") from e

        logger.info(
            "Rewound partition to committed offset",
            extra={"topic": topic, "group_id": group_id, "partition": partition, "offset": committed},
        )

    async def get_positions(self, topic: str, group_id: str) -> dict[int, StreamPos]:
        consumer = await self._consumer_for(topic, group_id)
        positions = {}
        now = int(time.time() * 1000)
        for partition in await self.partitions(topic):
            try:
                committed = await consumer.committed(TopicPartition(topic, partition))
            except KafkaError as e:
                logger.warning(f"Failed to read committed offset for partition {partition}: {e}")
                continue
            if committed is not None:
                positions[partition] = StreamPos(
                    topic=topic, partition=partition, offset=committed, timestamp_ms=now
                )
        return positions

    async def end_offsets(self, topic: str, group_id: str) -> dict[int, int]:
        """Latest offsets per partition, used for lag reporting."""
        consumer = await self._consumer_for(topic, group_id)
        tps = [TopicPartition(topic, p) for p in await self.partitions(topic)]
        try:
            ends = await consumer.end_offsets(tps)
        except KafkaError as e:
            raise StreamConnectionError(f"Failed to read end offsets: {e}") from e
        return {tp.partition: offset for tp, offset in ends.items()}

    async def health_check(self) -> bool:
        """Check if the Kafka connection is healthy."""
        if not self._producer:
            return False
        try:
            metadata = await asyncio.wait_for(
                self._producer.partitions_for(self.config.topic), timeout=5.0
            )
            return metadata is not None
        except (asyncio.TimeoutError, KafkaError):
            return False
