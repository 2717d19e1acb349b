"""
Read-through recommendation cache.

Entries are stamped with the graph version of the entity they were computed
for. An entry is served only while that stamp equals the entity's current
version and its TTL has not run out; anything else is a MISS.

Invalidation is two-tier: change notifications for high-value entity types
delete the entry right away, all other types rely on the version check at
read time.

Invariants:
    - A stale or expired entry is never returned as a HIT
    - put() never replaces an entry stamped with a newer version
    - Result lists are trimmed to max_items

How to change safely:
    - Keep the version check in get(); TTL alone is not enough
    - Adding a type to high_value_types trades write latency for freshness
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..graph.models import ChangeNotification
from ..graph.store import GraphStore
from ..retry import call_store, is_blocking
from .backends import CacheBackend, CacheEntry

logger = logging.getLogger(__name__)


class CacheStatus(Enum):
    HIT = "hit"
    MISS = "miss"


@dataclass(frozen=True)
class CacheLookup:
    """Result of a cache read.

    Attributes:
        status: HIT or MISS
        items: Cached items on HIT
        graph_version: Stamp of the served entry on HIT
        reason: Why it missed (absent, expired, stale, unknown-entity)
    """

    status: CacheStatus
    items: tuple[str, ...] = ()
    graph_version: int | None = None
    reason: str | None = None

    @property
    def hit(self) -> bool:
        return self.status == CacheStatus.HIT


class RecommendationCache:
    """Version-checked cache of recommendation result sets."""

    def __init__(
        self,
        backend: CacheBackend,
        graph: GraphStore,
        ttl_s: float = 6 * 3600,
        max_items: int = 100,
        high_value_types: tuple[str, ...] = ("user",),
        call_timeout_s: float = 10.0,
    ) -> None:
        self.backend = backend
        self.graph = graph
        self.ttl_ms = int(ttl_s * 1000)
        self.max_items = max_items
        self.high_value_types = set(high_value_types)
        self.call_timeout_s = call_timeout_s

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await call_store(
            fn, *args, timeout_s=self.call_timeout_s, store="cache", blocking=is_blocking(self.backend)
        )

    async def get(self, entity_id: str) -> CacheLookup:
        entry = await self._call(self.backend.get, entity_id)
        if entry is None:
            return CacheLookup(CacheStatus.MISS, reason="absent")

        if entry.expires_at_ms <= await self._call(self.backend.now_ms):
            return CacheLookup(CacheStatus.MISS, reason="expired")

        entity = await self.graph.get_entity(entity_id)
        if entity is None:
            return CacheLookup(CacheStatus.MISS, reason="unknown-entity")
        if entity.version != entry.graph_version:
            logger.debug(
                "Stale cache entry",
                extra={
                    "entity_id": entity_id,
                    "cached_version": entry.graph_version,
                    "graph_version": entity.version,
                },
            )
            return CacheLookup(CacheStatus.MISS, reason="stale")

        return CacheLookup(CacheStatus.HIT, items=entry.items, graph_version=entry.graph_version)

    async def put(
        self,
        entity_id: str,
        items: list[str] | tuple[str, ...],
        graph_version: int,
        ttl_s: float | None = None,
    ) -> bool:
        """Store a result set computed from graph_version.

        Returns:
            False if an entry with a newer stamp is already stored
        """
        ttl_ms = int(ttl_s * 1000) if ttl_s is not None else self.ttl_ms
        trimmed = tuple(items[: self.max_items])
        stored = await self._call(self.backend.put_if_newer, entity_id, trimmed, graph_version, ttl_ms)
        if not stored:
            logger.debug(
                "Refused cache write with older stamp",
                extra={"entity_id": entity_id, "graph_version": graph_version},
            )
        return stored

    async def invalidate(self, entity_id: str) -> bool:
        return await self._call(self.backend.delete, entity_id)

    async def peek(self, entity_id: str) -> CacheEntry | None:
        """Raw entry regardless of validity (for stale-but-labeled reads)."""
        return await self._call(self.backend.get, entity_id)

    async def on_change(self, notification: ChangeNotification) -> None:
        """ChangeBus subscriber: drop entries of high-value entities at once."""
        if notification.entity_type in self.high_value_types:
            if await self.invalidate(notification.entity_id):
                logger.debug(
                    "Invalidated cache entry",
                    extra={"entity_id": notification.entity_id, "version": notification.version},
                )
