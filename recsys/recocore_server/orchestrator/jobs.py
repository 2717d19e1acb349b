"""
Recurring batch jobs.

Each job walks the graph's entities in id order, one chunk at a time. The
orchestrator passes the cursor (last entity id of the previous chunk) and
persists the returned cursor after every chunk. A failure on one entity is
counted and the chunk carries on; the pass then ends PARTIAL.

Jobs:
    recompute-recommendations: recompute and cache results for every user
    reconcile-index:           rewrite index documents that lag the graph
                               and drop documents with no graph entity
    warm-cache:                compute results only where the cache misses
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from collections.abc import Callable
from typing import Any, Protocol

from ..cache.cache import RecommendationCache
from ..errors import ConflictError, TransientStoreError
from ..graph.models import Entity
from ..graph.store import GraphStore
from ..recommend.service import RecommendationService
from ..retry import call_store, is_blocking
from ..search.desync import DesyncLog
from ..search.index import SearchIndex, build_document

logger = logging.getLogger(__name__)

ITEM_ERRORS = (TransientStoreError, ConflictError)


@dataclass(frozen=True)
class ChunkResult:
    """Outcome of one chunk.

    Attributes:
        cursor: Last entity id covered by the chunk
        processed: Entities handled successfully
        failed: Entities that failed
        done: No entities remain after this chunk
    """

    cursor: str | None
    processed: int
    failed: int
    done: bool


class BatchJob(Protocol):
    name: str

    async def process_chunk(self, cursor: str | None, chunk_size: int) -> ChunkResult: ...


class _EntityScanJob:
    """Base for jobs that handle entities one by one."""

    name = ""

    def __init__(self, graph: GraphStore, entity_type: str | None = None) -> None:
        self.graph = graph
        self.entity_type = entity_type

    async def handle(self, entity: Entity) -> None:
        raise NotImplementedError

    async def process_chunk(self, cursor: str | None, chunk_size: int) -> ChunkResult:
        entities = await self.graph.scan_entities(cursor, chunk_size, self.entity_type)
        processed = failed = 0
        for entity in entities:
            try:
                await self.handle(entity)
                processed += 1
            except ITEM_ERRORS as e:
                failed += 1
                logger.warning(
                    f"{self.name}: failed on entity: {e}",
                    extra={"job_name": self.name, "entity_id": entity.entity_id},
                )
        return ChunkResult(
            cursor=entities[-1].entity_id if entities else cursor,
            processed=processed,
            failed=failed,
            done=len(entities) < chunk_size,
        )


class RecomputeRecommendationsJob(_EntityScanJob):
    name = "recompute-recommendations"

    def __init__(self, graph: GraphStore, service: RecommendationService, entity_type: str = "user") -> None:
        super().__init__(graph, entity_type)
        self.service = service

    async def handle(self, entity: Entity) -> None:
        if entity.tombstoned:
            return
        await self.service.refresh(entity.entity_id)


class WarmCacheJob(_EntityScanJob):
    name = "warm-cache"

    def __init__(
        self,
        graph: GraphStore,
        cache: RecommendationCache,
        service: RecommendationService,
        entity_type: str = "user",
    ) -> None:
        super().__init__(graph, entity_type)
        self.cache = cache
        self.service = service

    async def handle(self, entity: Entity) -> None:
        if entity.tombstoned:
            return
        lookup = await self.cache.get(entity.entity_id)
        if not lookup.hit:
            await self.service.refresh(entity.entity_id)


class ReconcileIndexJob:
    """Reconciliation sweep between the graph and the search index."""

    name = "reconcile-index"

    def __init__(
        self,
        graph: GraphStore,
        index: SearchIndex,
        desync_log: DesyncLog | None = None,
        relation_limit: int = 500,
        call_timeout_s: float = 10.0,
    ) -> None:
        self.graph = graph
        self.index = index
        self.desync_log = desync_log
        self.relation_limit = relation_limit
        self.call_timeout_s = call_timeout_s
        self.rewritten = 0
        self.removed = 0

    async def _index(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await call_store(
            fn, *args, timeout_s=self.call_timeout_s, store="search", blocking=is_blocking(self.index)
        )

    async def process_chunk(self, cursor: str | None, chunk_size: int) -> ChunkResult:
        entities = await self.graph.scan_entities(cursor, chunk_size)
        done = len(entities) < chunk_size
        last = entities[-1].entity_id if entities else cursor

        documents = []
        processed = failed = 0
        for entity in entities:
            try:
                indexed = await self._index(self.index.get_version, entity.entity_id)
                if indexed is None or indexed < entity.version:
                    relationships = await self.graph.neighbors(entity.entity_id, limit=self.relation_limit)
                    documents.append(build_document(entity, relationships))
                processed += 1
            except ITEM_ERRORS as e:
                failed += 1
                logger.warning(
                    f"reconcile-index: failed on entity: {e}",
                    extra={"job_name": self.name, "entity_id": entity.entity_id},
                )

        if documents:
            self.rewritten += await self._index(self.index.bulk_upsert, documents)

        # Index keys inside this chunk's range with no graph entity
        known = {entity.entity_id for entity in entities}
        until = None if done else last
        after = cursor
        while True:
            keys = await self._index(self.index.keys_in_range, after, until, chunk_size)
            for key, _version in keys:
                if key not in known and await self.graph.get_entity(key) is None:
                    await self._index(self.index.delete, key)
                    self.removed += 1
            if len(keys) < chunk_size:
                break
            after = keys[-1][0]

        if self.desync_log is not None:
            for entity in entities:
                if await self._index(self.index.get_version, entity.entity_id) == entity.version:
                    self.desync_log.resolve(entity.entity_id)

        return ChunkResult(cursor=last, processed=processed, failed=failed, done=done)
