"""
Integration tests for the recurring batch jobs and the run-job tool.

Tests cover:
- reconcile-index rewriting lagging documents and dropping orphans
- reconcile-index failing stuck index calls at their deadline
- recompute-recommendations filling the cache for every user
- warm-cache computing only where the cache misses
- recocore-run-job exit codes and output
"""

import asyncio
import json
import tempfile
import threading

import pytest

from recsys.recocore_server.config import (
    SearchSyncConfig,
    ServerConfig,
    StorageConfig,
    StoreBackend,
    StreamBackend,
)
from recsys.recocore_server.graph import GraphStore, InMemoryGraphBackend
from recsys.recocore_server.main import build_components
from recsys.recocore_server.orchestrator import JobStatus, ReconcileIndexJob
from recsys.recocore_server.search import InMemorySearchIndex
from recsys.recocore_server.search.index import IndexDocument
from recsys.recocore_server.stream import InMemoryEventStream
from recsys.recocore_server.tools.run_job import main as run_job_main


def memory_config(instance_id="node-a"):
    return ServerConfig(
        instance_id=instance_id,
        stream_backend=StreamBackend.MEMORY,
        storage=StorageConfig(backend=StoreBackend.MEMORY),
        search_sync=SearchSyncConfig(max_retries=1, base_backoff_ms=1, max_backoff_ms=2),
    )


async def seed(graph):
    await graph.upsert_entity("user", "u1", {"name": "Ada"})
    await graph.upsert_entity("user", "u2", {"name": "Grace"})
    await graph.upsert_relationship("u1", "lamp", "viewed", 1, target_type="item")
    await graph.upsert_relationship("u2", "lamp", "viewed", 1, target_type="item")
    await graph.upsert_relationship("u2", "desk", "viewed", 2, target_type="item")


class StuckIndex(InMemorySearchIndex):
    """Index whose version lookups hang until released."""

    blocking = True

    def __init__(self, release: threading.Event) -> None:
        super().__init__()
        self.release = release

    def get_version(self, key):
        self.release.wait(5)
        return super().get_version(key)


class TestBatchJobs:
    """Jobs run through the orchestrator of a wired instance."""

    @pytest.fixture
    def components(self):
        return build_components(memory_config(), stream=InMemoryEventStream())

    @pytest.mark.asyncio
    async def test_reconcile_repairs_desync_and_orphans(self, components):
        """Lagging and missing documents are rewritten; orphans are dropped."""
        graph, index, sync = components.graph, components.index, components.synchronizer
        assert sync.desync_log is components.desync_log
        await seed(graph)
        await sync.drain()

        index.fail_next(2)
        await graph.upsert_entity("item", "lamp", {"title": "brass lamp"})
        await sync.drain()
        index.upsert(IndexDocument(key="ghost", entity_type="item", version=4, body="gone"))

        assert len(components.desync_log) == 1
        assert index.get_version("lamp") == 1

        outcome = await components.orchestrator.run_job("reconcile-index")

        assert outcome.status == JobStatus.SUCCESS
        assert index.get_version("lamp") == (await graph.get_entity("lamp")).version
        assert index.get("lamp").attributes == {"title": "brass lamp"}
        assert index.get_version("ghost") is None
        assert len(components.desync_log) == 0

    @pytest.mark.asyncio
    async def test_recompute_fills_cache(self, components):
        """Every live user gets a cached result stamped with its version."""
        await seed(components.graph)
        await components.graph.upsert_entity("user", "gone")
        await components.graph.tombstone_entity("gone")

        outcome = await components.orchestrator.run_job("recompute-recommendations")

        assert outcome.status == JobStatus.SUCCESS
        assert outcome.processed == 3
        entry = await components.cache.peek("u1")
        assert entry.items == ("desk",)
        assert entry.graph_version == (await components.graph.get_entity("u1")).version
        assert await components.cache.peek("gone") is None

    @pytest.mark.asyncio
    async def test_warm_cache_only_fills_misses(self, components):
        """Entries that are still valid are left alone."""
        await seed(components.graph)
        u2 = await components.graph.get_entity("u2")
        await components.cache.put("u2", ["kept"], u2.version)

        outcome = await components.orchestrator.run_job("warm-cache")

        assert outcome.status == JobStatus.SUCCESS
        assert (await components.cache.peek("u2")).items == ("kept",)
        assert (await components.cache.peek("u1")).items == ("desk",)

    @pytest.mark.asyncio
    async def test_min_hold_spaces_out_runs(self, components):
        """A pass that ends early keeps the job parked for the min-hold window."""
        await seed(components.graph)

        first = await components.orchestrator.run_job("warm-cache")
        second = await components.orchestrator.run_job("warm-cache")

        assert first.status == JobStatus.SUCCESS
        assert second.status == JobStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_reconcile_bounds_index_calls(self):
        """A stuck index lookup fails its entity at the deadline instead of stalling the sweep."""
        graph = GraphStore(InMemoryGraphBackend())
        await seed(graph)
        release = threading.Event()
        job = ReconcileIndexJob(graph, StuckIndex(release), call_timeout_s=0.05)

        try:
            result = await asyncio.wait_for(job.process_chunk(None, 100), timeout=2)
        finally:
            release.set()

        assert result.failed == 4
        assert result.processed == 0
        assert result.done


class TestRunJobTool:
    """Tests for the recocore-run-job entry point."""

    @pytest.fixture
    def data_dir(self, monkeypatch):
        monkeypatch.setenv("STREAM_BACKEND", "memory")
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    def seed_store(self, data_dir):
        config = ServerConfig(
            stream_backend=StreamBackend.MEMORY,
            storage=StorageConfig(data_dir=data_dir, wal_mode=False),
        )
        asyncio.run(seed(build_components(config, stream=InMemoryEventStream()).graph))

    def test_runs_job_and_reports_json(self, data_dir, capsys):
        """A successful cycle exits 0 and prints the outcome."""
        self.seed_store(data_dir)

        with pytest.raises(SystemExit) as exc_info:
            run_job_main(["reconcile-index", "--data-dir", data_dir, "--holder-id", "cli", "--json"])

        assert exc_info.value.code == 0
        output = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert output["status"] == "success"
        assert output["processed"] == 4

    def test_second_run_inside_min_hold_is_skipped(self, data_dir, capsys):
        """The parked lease makes an immediate rerun exit with 3."""
        self.seed_store(data_dir)
        with pytest.raises(SystemExit):
            run_job_main(["warm-cache", "--data-dir", data_dir, "--holder-id", "cli"])

        with pytest.raises(SystemExit) as exc_info:
            run_job_main(["warm-cache", "--data-dir", data_dir, "--holder-id", "other"])

        assert exc_info.value.code == 3
        assert "skipped" in capsys.readouterr().out

    def test_unknown_job_is_rejected(self, data_dir):
        """argparse refuses job names that do not exist."""
        with pytest.raises(SystemExit) as exc_info:
            run_job_main(["defrag", "--data-dir", data_dir])

        assert exc_info.value.code == 2

    def test_invalid_configuration(self, data_dir, monkeypatch, capsys):
        """Configuration errors exit 1 before any store is touched."""
        monkeypatch.setenv("LEDGER_RETENTION_SECONDS", "60")

        with pytest.raises(SystemExit) as exc_info:
            run_job_main(["warm-cache", "--data-dir", data_dir])

        assert exc_info.value.code == 1
        assert "Configuration error" in capsys.readouterr().err
