"""Recommendation computation and read-through serving."""

from .recommender import CoInteractionRecommender, ScoredItem
from .service import RecommendationService, Recommendations, RecommendationSource

__all__ = [
    "CoInteractionRecommender",
    "ScoredItem",
    "RecommendationService",
    "Recommendations",
    "RecommendationSource",
]
