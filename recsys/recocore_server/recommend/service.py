"""
Read-through recommendation service.

Serves from the cache when the cached result matches the entity's current
graph version, otherwise computes, stores and returns a fresh result. When
the graph cannot be read, a previously cached result may be served, always
labeled STALE.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from ..cache.cache import RecommendationCache
from ..errors import TransientStoreError
from ..graph.store import GraphStore
from .recommender import CoInteractionRecommender

logger = logging.getLogger(__name__)


class RecommendationSource(Enum):
    CACHE = "cache"
    COMPUTED = "computed"
    STALE = "stale"


@dataclass(frozen=True)
class Recommendations:
    """Recommended items with their provenance.

    Attributes:
        entity_id: Entity the items are for
        items: Recommended entity ids, best first
        graph_version: Entity version the items were computed from
        source: Where the result came from
    """

    entity_id: str
    items: tuple[str, ...]
    graph_version: int
    source: RecommendationSource


class RecommendationService:
    def __init__(
        self,
        graph: GraphStore,
        cache: RecommendationCache,
        recommender: CoInteractionRecommender,
    ) -> None:
        self.graph = graph
        self.cache = cache
        self.recommender = recommender

    async def recommend(self, entity_id: str, allow_stale: bool = True) -> Recommendations | None:
        """Recommendations for an entity, or None if it does not exist or is tombstoned.

        Raises:
            TransientStoreError: If the graph is unreachable and no stale
                result may be served
        """
        try:
            lookup = await self.cache.get(entity_id)
            if lookup.hit:
                return Recommendations(entity_id, lookup.items, lookup.graph_version, RecommendationSource.CACHE)
            return await self.refresh(entity_id)
        except TransientStoreError as e:
            if not allow_stale:
                raise
            entry = await self.cache.peek(entity_id)
            if entry is None:
                raise
            logger.warning(
                f"Serving stale recommendations: {e}",
                extra={"entity_id": entity_id, "graph_version": entry.graph_version},
            )
            return Recommendations(entity_id, entry.items, entry.graph_version, RecommendationSource.STALE)

    async def refresh(self, entity_id: str) -> Recommendations | None:
        """Compute, cache and return recommendations, bypassing the cache read."""
        entity = await self.graph.get_entity(entity_id)
        if entity is None or entity.tombstoned:
            return None

        scored = await self.recommender.recommend(entity_id)
        items = tuple(item.item_id for item in scored)
        await self.cache.put(entity_id, items, entity.version)
        return Recommendations(entity_id, items, entity.version, RecommendationSource.COMPUTED)
