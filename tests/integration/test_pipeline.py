"""
End-to-end tests of a wired RecoCore instance over SQLite.

Tests cover:
- Events flowing from the stream into the graph, the search index and the cache
- Cache invalidation when a user changes
- Poison events routed to the dead-letter topic
- Two instances sharing one store contend for a job lease
- Server start and graceful shutdown
"""

import asyncio
import json
import tempfile

import pytest

from recsys.recocore_server.config import (
    IngestionConfig,
    ServerConfig,
    StorageConfig,
    StoreBackend,
    StreamBackend,
)
from recsys.recocore_server.main import Server, build_components
from recsys.recocore_server.orchestrator import JobStatus
from recsys.recocore_server.recommend import RecommendationSource
from recsys.recocore_server.stream import InMemoryEventStream


def entity_event(event_id, entity_type, entity_id, attrs):
    return {
        "eventId": event_id,
        "partitionKey": entity_id,
        "mutationType": "upsertEntity",
        "payload": {"type": entity_type, "id": entity_id, "attrs": attrs},
    }


def view_event(event_id, user_id, item_id, weight=1):
    return {
        "eventId": event_id,
        "partitionKey": user_id,
        "mutationType": "addRelationship",
        "payload": {"src": user_id, "dst": item_id, "type": "viewed", "weight": weight},
    }


SEED = [
    entity_event("s1", "user", "u1", {"name": "Ada"}),
    entity_event("s2", "item", "item1", {"title": "red desk lamp"}),
    entity_event("s3", "item", "item2", {"title": "oak desk"}),
    entity_event("s4", "item", "item3", {"title": "blue chair"}),
    view_event("s5", "u1", "item1"),
    view_event("s6", "u2", "item1"),
    view_event("s7", "u2", "item2", weight=2),
]


class TestPipeline:
    """Integration tests for build_components over SQLite."""

    @pytest.fixture
    def data_dir(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    def make_config(self, data_dir, instance_id="node-a"):
        return ServerConfig(
            instance_id=instance_id,
            stream_backend=StreamBackend.MEMORY,
            storage=StorageConfig(data_dir=data_dir, wal_mode=False),
            ingestion=IngestionConfig(fetch_timeout_ms=0, retry_delay_ms=0),
        )

    @pytest.fixture
    async def components(self, data_dir):
        components = build_components(self.make_config(data_dir), stream=InMemoryEventStream())
        await components.stream.connect()
        return components

    async def ingest(self, components, events):
        for event in events:
            await components.stream.append(
                components.config.kafka.topic, event["partitionKey"], json.dumps(event).encode("utf-8")
            )
        await components.consumer.drain()
        await components.synchronizer.drain()

    @pytest.mark.asyncio
    async def test_events_reach_graph_index_and_recommendations(self, components):
        """Ingested events are searchable and drive recommendations."""
        await self.ingest(components, SEED)

        assert (await components.graph.get_entity("u1")).version == 2
        assert {hit.key for hit in components.index.search("desk")} == {"item1", "item2"}
        assert components.index.get_version("u1") == 2

        first = await components.service.recommend("u1")
        second = await components.service.recommend("u1")

        assert first.source == RecommendationSource.COMPUTED
        assert first.items == ("item2",)
        assert second.source == RecommendationSource.CACHE

    @pytest.mark.asyncio
    async def test_user_change_invalidates_cache(self, components):
        """A new interaction drops the user's cached result at once."""
        await self.ingest(components, SEED)
        await components.service.recommend("u1")

        await self.ingest(components, [view_event("n1", "u1", "item2")])

        assert await components.cache.peek("u1") is None
        result = await components.service.recommend("u1")
        assert result.source == RecommendationSource.COMPUTED
        assert result.items == ()

    @pytest.mark.asyncio
    async def test_tombstone_hides_from_search(self, components):
        """A tombstoned item disappears from search results."""
        await self.ingest(components, SEED)

        await self.ingest(
            components,
            [{"eventId": "t1", "partitionKey": "item2", "mutationType": "tombstoneEntity", "payload": {"id": "item2"}}],
        )

        assert [hit.key for hit in components.index.search("oak")] == []
        item2 = await components.graph.get_entity("item2")
        assert item2.tombstoned
        assert components.index.get_version("item2") == item2.version
        assert components.index.get("item2").tombstoned

    @pytest.mark.asyncio
    async def test_poison_event_goes_to_dead_letter_topic(self, components):
        """Invalid events land on the dead-letter topic with their errors."""
        config = components.config
        await components.stream.append(config.kafka.topic, "u1", b'{"eventId": "bad"}')
        await self.ingest(components, [view_event("ok", "u1", "item1")])

        [letter] = components.stream.get_all_records(config.kafka.dead_letter_topic)
        assert letter.value == b'{"eventId": "bad"}'
        assert "partitionKey must be a non-empty string" in json.loads(letter.headers["errors"])
        assert (await components.graph.get_entity("u1")) is not None

    @pytest.mark.asyncio
    async def test_second_instance_skips_leased_job(self, components, data_dir):
        """Two instances over one store never run the same job together."""
        other = build_components(self.make_config(data_dir, "node-b"), stream=InMemoryEventStream())
        held = await components.coordinator.acquire("reconcile-index", "node-a", 1800)
        assert held.granted

        outcome = await other.orchestrator.run_job("reconcile-index")

        assert outcome.status == JobStatus.SKIPPED
        assert outcome.message == "lease busy"

    @pytest.mark.asyncio
    async def test_state_survives_rewiring(self, components, data_dir):
        """A fresh set of components over the same files sees earlier state."""
        await self.ingest(components, SEED)

        rebuilt = build_components(self.make_config(data_dir, "node-b"), stream=InMemoryEventStream())

        assert (await rebuilt.graph.get_entity("item1")).attributes == {"title": "red desk lamp"}
        assert (await rebuilt.ledger.state("s1")) is not None
        assert rebuilt.index.get_version("item3") == 1


class TestServerLifecycle:
    """Tests for Server start and graceful shutdown."""

    @pytest.mark.asyncio
    async def test_start_ingest_and_shutdown(self):
        """A started server consumes events until shutdown is requested."""
        config = ServerConfig(
            instance_id="node-a",
            stream_backend=StreamBackend.MEMORY,
            storage=StorageConfig(backend=StoreBackend.MEMORY),
            ingestion=IngestionConfig(fetch_timeout_ms=20),
        )
        server = Server(config)
        task = asyncio.create_task(server.start())
        for _ in range(100):
            if server.components is not None and server.components.stream.is_connected:
                break
            await asyncio.sleep(0.01)

        await server.components.stream.append(config.kafka.topic, "u1", json.dumps(SEED[0]).encode("utf-8"))
        for _ in range(200):
            if await server.components.graph.get_entity("u1") is not None:
                break
            await asyncio.sleep(0.01)

        server.request_shutdown()
        await asyncio.wait_for(task, timeout=2)
        await server.stop()

        assert (await server.components.graph.get_entity("u1")).attributes == {"name": "Ada"}
        assert not server.components.stream.is_connected
