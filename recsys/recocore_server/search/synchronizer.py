"""
Search index synchronizer.

Subscribes to graph change notifications and keeps the search index in line
with the graph. For each notification it re-derives the entity's document
from the graph (never from the notification) and writes it version-stamped.

Invariants:
    - A notification already reflected by an equal or newer indexed version
      is discarded without error
    - A failed write is requeued with exponential backoff, at most
      max_retries times, then recorded as a permanent desync
    - Handling a notification twice has no further effect

How to change safely:
    - Keep handle() non-blocking; it runs inside the graph mutation path
    - Document shape changes must bump versions or run a reconcile sweep
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..errors import PermanentDesyncError
from ..graph.models import ChangeNotification
from ..graph.store import GraphStore
from ..retry import RetryPolicy, call_store, is_blocking
from .desync import DesyncLog
from .index import SearchIndex, build_document

logger = logging.getLogger(__name__)


class SyncOutcome(Enum):
    SYNCED = "synced"
    DISCARDED = "discarded"
    RETRYING = "retrying"
    DESYNCED = "desynced"


@dataclass
class _Pending:
    notification: ChangeNotification
    attempt: int = 0


@dataclass
class SyncStats:
    synced: int = 0
    discarded: int = 0
    retried: int = 0
    desynced: int = 0


class SearchSynchronizer:
    """Queue-driven index writer.

    Example:
        >>> sync = SearchSynchronizer(graph, SqliteSearchIndex(db))
        >>> graph.subscribe(sync.handle, name="search")
        >>> task = asyncio.create_task(sync.run())
    """

    def __init__(
        self,
        graph: GraphStore,
        index: SearchIndex,
        desync_log: DesyncLog | None = None,
        max_retries: int = 5,
        base_backoff_s: float = 0.2,
        max_backoff_s: float = 30.0,
        relation_limit: int = 500,
        call_timeout_s: float = 10.0,
    ) -> None:
        self.graph = graph
        self.index = index
        self.desync_log = desync_log if desync_log is not None else DesyncLog()
        self.max_retries = max_retries
        self.retry_policy = RetryPolicy(
            max_attempts=max_retries + 1, base_delay_s=base_backoff_s, max_delay_s=max_backoff_s
        )
        self.relation_limit = relation_limit
        self.call_timeout_s = call_timeout_s
        self.stats = SyncStats()

        self._queue: asyncio.Queue[_Pending] = asyncio.Queue()
        self._waiting: set[asyncio.TimerHandle] = set()
        self._running = False

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await call_store(
            fn, *args, timeout_s=self.call_timeout_s, store="search", blocking=is_blocking(self.index)
        )

    @property
    def backlog(self) -> int:
        """Notifications queued or waiting for a retry."""
        return self._queue.qsize() + len(self._waiting)

    async def handle(self, notification: ChangeNotification) -> None:
        """ChangeBus subscriber: enqueue the notification."""
        self._queue.put_nowait(_Pending(notification))

    def backoff_for(self, attempt: int) -> float:
        return self.retry_policy.delay_for(attempt)

    async def sync_entity(self, entity_id: str) -> bool:
        """Rewrite the document of one entity from the graph.

        Returns:
            True if the index changed, False if it was already current or the
            entity does not exist
        """
        entity = await self.graph.get_entity(entity_id)
        if entity is None:
            logger.warning("Notification for unknown entity", extra={"entity_id": entity_id})
            return False
        relationships = await self.graph.neighbors(entity_id, limit=self.relation_limit)
        document = build_document(entity, relationships)
        return await self._call(self.index.upsert, document)

    async def process(self, pending: _Pending) -> SyncOutcome:
        """Handle one queued notification."""
        notification = pending.notification
        try:
            indexed = await self._call(self.index.get_version, notification.entity_id)
            if indexed is not None and indexed >= notification.version:
                self.stats.discarded += 1
                logger.debug(
                    "Discarded stale notification",
                    extra={
                        "entity_id": notification.entity_id,
                        "version": notification.version,
                        "indexed_version": indexed,
                    },
                )
                return SyncOutcome.DISCARDED

            if await self.sync_entity(notification.entity_id):
                self.stats.synced += 1
                return SyncOutcome.SYNCED
            self.stats.discarded += 1
            return SyncOutcome.DISCARDED

        except Exception as e:
            pending.attempt += 1
            if pending.attempt > self.max_retries:
                error = PermanentDesyncError(
                    notification.entity_id, notification.version, pending.attempt, cause=str(e)
                )
                self.desync_log.record(error)
                self.stats.desynced += 1
                return SyncOutcome.DESYNCED

            delay = self.backoff_for(pending.attempt)
            logger.warning(
                f"Index write failed, retrying in {delay:.3f}s: {e}",
                extra={
                    "entity_id": notification.entity_id,
                    "version": notification.version,
                    "attempt": pending.attempt,
                },
            )
            self._schedule(pending, delay)
            self.stats.retried += 1
            return SyncOutcome.RETRYING

    def _schedule(self, pending: _Pending, delay: float) -> None:
        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle | None = None

        def requeue() -> None:
            self._waiting.discard(handle)
            self._queue.put_nowait(pending)

        handle = loop.call_later(delay, requeue)
        self._waiting.add(handle)

    async def drain(self) -> None:
        """Process until the queue is empty and no retry is pending."""
        while self.backlog:
            pending = await self._queue.get()
            await self.process(pending)

    async def run(self) -> None:
        """Process notifications until stop() is called."""
        self._running = True
        logger.info("Search synchronizer started")
        try:
            while self._running:
                try:
                    pending = await asyncio.wait_for(self._queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue
                await self.process(pending)
        finally:
            logger.info("Search synchronizer stopped", extra={"backlog": self.backlog})

    def stop(self) -> None:
        self._running = False
        for handle in list(self._waiting):
            handle.cancel()
        self._waiting.clear()
