"""
Co-interaction recommender.

Scores candidate items for an entity from the interactions of entities that
touched the same items: for every item the entity interacted with, find the
other entities that interacted with it, and credit the other items those
entities interacted with. Contributions multiply the three edge weights.

Items the entity already interacted with, the entity itself and tombstoned
entities are never recommended.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass

from ..graph.store import GraphStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoredItem:
    item_id: str
    score: float


class CoInteractionRecommender:
    """Graph-walk recommender over the canonical graph.

    Args:
        graph: Graph store
        limit: Items returned per entity
        fanout: Relationships followed per hop
        rel_type: Restrict the walk to one relationship type (all when None)
    """

    def __init__(
        self,
        graph: GraphStore,
        limit: int = 20,
        fanout: int = 50,
        rel_type: str | None = None,
    ) -> None:
        self.graph = graph
        self.limit = limit
        self.fanout = fanout
        self.rel_type = rel_type

    async def recommend(self, entity_id: str) -> list[ScoredItem]:
        interactions = await self.graph.neighbors(entity_id, self.rel_type, self.fanout)
        seen = {rel.target_id for rel in interactions}

        scores: dict[str, float] = defaultdict(float)
        for rel in interactions:
            for peer in await self.graph.incoming(rel.target_id, self.rel_type, self.fanout):
                if peer.source_id == entity_id:
                    continue
                for candidate in await self.graph.neighbors(peer.source_id, self.rel_type, self.fanout):
                    if candidate.target_id in seen or candidate.target_id == entity_id:
                        continue
                    scores[candidate.target_id] += rel.weight * peer.weight * candidate.weight

        ranked = sorted(scores.items(), key=lambda kv: (-kv[1], kv[0]))
        result = []
        for item_id, score in ranked:
            item = await self.graph.get_entity(item_id)
            if item is None or item.tombstoned:
                continue
            result.append(ScoredItem(item_id, score))
            if len(result) >= self.limit:
                break

        logger.debug(
            "Computed recommendations",
            extra={"entity_id": entity_id, "candidates": len(scores), "returned": len(result)},
        )
        return result
