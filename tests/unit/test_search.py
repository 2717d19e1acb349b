"""
Unit tests for the search index and its synchronizer.

Tests cover:
- Version-stamped upserts that never roll back
- Out-of-order notifications
- Retry with backoff and permanent desync, recorded in the log handed in
- In-memory and SQLite FTS5 indexes
"""

import tempfile
from pathlib import Path

import pytest

from recsys.recocore_server.graph import GraphStore, InMemoryGraphBackend
from recsys.recocore_server.graph.models import ChangeKind, ChangeNotification, Entity
from recsys.recocore_server.retry import RetryPolicy
from recsys.recocore_server.search import (
    DesyncLog,
    InMemorySearchIndex,
    SearchSynchronizer,
    SqliteSearchIndex,
    SyncOutcome,
)
from recsys.recocore_server.search.index import IndexDocument, build_document
from recsys.recocore_server.search.synchronizer import _Pending
from recsys.recocore_server.storage import SqliteDatabase


def doc(key, version, body="", tombstoned=False, entity_type="item"):
    return IndexDocument(key=key, entity_type=entity_type, version=version, body=body, tombstoned=tombstoned)


def note(entity_id, version, entity_type="item", kind=ChangeKind.UPDATED):
    return ChangeNotification(entity_id, entity_type, version, kind)


class TestInMemorySearchIndex:
    """Tests for InMemorySearchIndex."""

    @pytest.fixture
    def index(self):
        return InMemorySearchIndex()

    def test_newer_version_replaces(self, index):
        """A higher version overwrites the stored document."""
        assert index.upsert(doc("x", 1, "red lamp")) is True
        assert index.upsert(doc("x", 2, "blue lamp")) is True

        assert index.get("x").body == "blue lamp"

    def test_older_version_is_ignored(self, index):
        """Version 3 then version 2: the index keeps version 3."""
        index.upsert(doc("x", 3, "v3"))

        assert index.upsert(doc("x", 2, "v2")) is False
        assert index.get_version("x") == 3
        assert index.get("x").body == "v3"

    def test_equal_version_is_ignored(self, index):
        """Re-delivering the same version changes nothing."""
        index.upsert(doc("x", 3, "first"))

        assert index.upsert(doc("x", 3, "second")) is False
        assert index.get("x").body == "first"

    def test_search_excludes_tombstoned(self, index):
        """Tombstoned documents keep their stamp but are not returned."""
        index.upsert(doc("a", 1, "red lamp"))
        index.upsert(doc("b", 1, "red chair"))
        index.upsert(doc("c", 2, "red lamp", tombstoned=True))

        hits = index.search("red lamp")

        assert [h.key for h in hits] == ["a"]
        assert len(index.search("red")) == 2

    def test_keys_in_range(self, index):
        """Keys are listed in order within (after, until]."""
        for key in ("a", "b", "c", "d"):
            index.upsert(doc(key, 1))

        assert index.keys_in_range("a", "c", 10) == [("b", 1), ("c", 1)]
        assert index.keys_in_range(None, None, 2) == [("a", 1), ("b", 1)]

    def test_build_document(self):
        """Documents carry attributes, relations and searchable text."""
        from recsys.recocore_server.graph.models import Relationship

        entity = Entity("u1", "user", {"name": "Ada"}, version=4)
        rels = [Relationship("u1", "i2", "viewed"), Relationship("u1", "i1", "viewed")]

        document = build_document(entity, rels)

        assert document.version == 4
        assert document.relations == {"viewed": ["i1", "i2"]}
        assert "Ada" in document.body


class TestSqliteSearchIndex:
    """Tests for the SQLite FTS5 index."""

    @pytest.fixture
    def index(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield SqliteSearchIndex(SqliteDatabase(Path(tmpdir) / "recocore.db", wal_mode=False))

    def test_version_stamp(self, index):
        """Writes are conditional on a higher version."""
        assert index.upsert(doc("x", 3, "v3 text")) is True
        assert index.upsert(doc("x", 2, "v2 text")) is False

        assert index.get_version("x") == 3
        assert index.get("x").body == "v3 text"

    def test_full_text_search(self, index):
        """FTS5 finds documents by every query term."""
        index.upsert(doc("a", 1, "red desk lamp"))
        index.upsert(doc("b", 1, "red chair"))
        index.upsert(doc("c", 1, "blue desk lamp"))

        assert {h.key for h in index.search("desk lamp")} == {"a", "c"}
        assert [h.key for h in index.search("chair")] == ["b"]

    def test_search_after_update_and_tombstone(self, index):
        """The FTS table follows updates; tombstoned documents are hidden."""
        index.upsert(doc("a", 1, "red lamp"))
        index.upsert(doc("a", 2, "green lamp"))
        index.upsert(doc("b", 1, "green sofa"))
        index.upsert(doc("b", 2, "green sofa", tombstoned=True))

        assert index.search("red") == []
        assert [h.key for h in index.search("green")] == ["a"]

    def test_query_syntax_is_escaped(self, index):
        """Operators in user text are treated as words."""
        index.upsert(doc("a", 1, "lamp"))

        assert index.search('lamp" OR "x') == []
        assert index.search("") == []

    def test_delete_and_bulk(self, index):
        """Bulk upsert counts applied writes; delete removes the key."""
        written = index.bulk_upsert([doc("a", 1), doc("b", 1), doc("a", 1)])

        assert written == 2
        assert index.delete("a") is True
        assert index.delete("a") is False
        assert index.keys_in_range(None, None, 10) == [("b", 1)]


class TestSearchSynchronizer:
    """Tests for SearchSynchronizer."""

    @pytest.fixture
    def graph(self):
        return GraphStore(InMemoryGraphBackend())

    @pytest.fixture
    def index(self):
        return InMemorySearchIndex()

    @pytest.fixture
    def sync(self, graph, index):
        return SearchSynchronizer(graph, index, DesyncLog(), max_retries=2, base_backoff_s=0.001)

    @pytest.mark.asyncio
    async def test_out_of_order_versions(self, graph, index, sync):
        """Notification v3 then v2 for x: index reflects v3, v2 is discarded."""
        await graph.upsert_entity("item", "x", {"title": "one"})
        await graph.upsert_entity("item", "x", {"title": "two"})
        await graph.upsert_entity("item", "x", {"title": "three"})

        assert await sync.process(_Pending(note("x", 3))) == SyncOutcome.SYNCED
        assert await sync.process(_Pending(note("x", 2))) == SyncOutcome.DISCARDED

        assert index.get_version("x") == 3
        assert index.get("x").attributes == {"title": "three"}
        assert sync.stats.discarded == 1

    @pytest.mark.asyncio
    async def test_duplicate_notification_is_noop(self, graph, index, sync):
        """The same notification twice writes once."""
        await graph.upsert_entity("item", "x")

        await sync.process(_Pending(note("x", 1)))
        attempts = index.write_attempts
        outcome = await sync.process(_Pending(note("x", 1)))

        assert outcome == SyncOutcome.DISCARDED
        assert index.write_attempts == attempts

    @pytest.mark.asyncio
    async def test_document_derived_from_graph(self, graph, index, sync):
        """A lagging notification still writes the graph's current state."""
        await graph.upsert_entity("item", "x", {"title": "old"})
        await graph.upsert_entity("item", "x", {"title": "new"})

        await sync.process(_Pending(note("x", 1)))

        assert index.get_version("x") == 2
        assert index.get("x").attributes["title"] == "new"

    @pytest.mark.asyncio
    async def test_subscription_and_drain(self, graph, index, sync):
        """Graph changes flow into the index through the change bus."""
        graph.subscribe(sync.handle, name="search")
        await graph.upsert_entity("user", "u1", {"name": "Ada"})
        await graph.upsert_relationship("u1", "item7", "viewed", 1)

        await sync.drain()

        assert index.get_version("u1") == 2
        assert index.get("u1").relations == {"viewed": ["item7"]}
        assert index.get_version("item7") == 1
        assert sync.backlog == 0

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, graph, index, sync):
        """A failed write is requeued and succeeds later."""
        graph.subscribe(sync.handle)
        index.fail_next(1)

        await graph.upsert_entity("item", "x")
        await sync.drain()

        assert index.get_version("x") == 1
        assert sync.stats.retried == 1
        assert len(sync.desync_log) == 0

    @pytest.mark.asyncio
    async def test_permanent_desync_after_retries(self, graph, index, sync):
        """When retries run out the entity is recorded as desynced."""
        graph.subscribe(sync.handle)
        index.fail_next(10)

        await graph.upsert_entity("item", "x")
        await sync.drain()

        assert index.get_version("x") is None
        assert sync.stats.desynced == 1
        [record] = sync.desync_log.pending()
        assert record.entity_id == "x"
        assert record.version == 1
        assert record.attempts == 3
        assert "unavailable" in record.error

    @pytest.mark.asyncio
    async def test_empty_shared_desync_log_is_used(self, graph, index):
        """A log handed in empty is the one that receives desync records."""
        shared = DesyncLog()
        sync = SearchSynchronizer(graph, index, shared, max_retries=0, base_backoff_s=0.001)
        graph.subscribe(sync.handle)
        index.fail_next(10)

        await graph.upsert_entity("item", "x")
        await sync.drain()

        assert sync.desync_log is shared
        assert [record.entity_id for record in shared.pending()] == ["x"]

    def test_backoff_is_capped(self, graph, index):
        """Backoff doubles per attempt up to the cap."""
        sync = SearchSynchronizer(graph, index, base_backoff_s=0.2, max_backoff_s=1.0)

        assert [sync.backoff_for(a) for a in (1, 2, 3, 4)] == [0.2, 0.4, 0.8, 1.0]
        assert sync.retry_policy == RetryPolicy(max_attempts=6, base_delay_s=0.2, max_delay_s=1.0)
