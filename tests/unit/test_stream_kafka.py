"""
Unit tests for Kafka partition ownership tracking.

Tests cover:
- Rebalance callbacks growing and shrinking the owned partition set
- Fetches on partitions this member does not own never reach the broker
"""

import pytest
from aiokafka.structs import TopicPartition

from recsys.recocore_server.config import KafkaConfig
from recsys.recocore_server.stream.kafka import KafkaEventStream, PartitionOwnershipListener

TOPIC = "recocore-events"
GROUP = "recocore-ingest"


class UnreachableConsumer:
    async def getmany(self, *partitions, timeout_ms=0, max_records=None):
        raise AssertionError("fetched from a partition that is not owned")


class TestPartitionOwnershipListener:
    """Tests for PartitionOwnershipListener."""

    @pytest.mark.asyncio
    async def test_assignment_and_revocation(self):
        """Only this topic's partitions are tracked, and revoked ones are dropped."""
        owned = set()
        listener = PartitionOwnershipListener(TOPIC, GROUP, owned)

        await listener.on_partitions_assigned(
            {TopicPartition(TOPIC, 0), TopicPartition(TOPIC, 2), TopicPartition("other", 1)}
        )
        assert owned == {0, 2}

        await listener.on_partitions_revoked({TopicPartition(TOPIC, 2), TopicPartition("other", 1)})
        assert owned == {0}

    @pytest.mark.asyncio
    async def test_fetch_skips_unowned_partition(self):
        """A partition owned by another member yields no records."""
        stream = KafkaEventStream(KafkaConfig(brokers="localhost:9092"))
        stream._consumers[(TOPIC, GROUP)] = UnreachableConsumer()
        stream._owned[(TOPIC, GROUP)] = {0}

        assert await stream.fetch(TOPIC, GROUP, 1, max_records=10, timeout_ms=0) == []
        assert await stream.assigned_partitions(TOPIC, GROUP) == [0]
