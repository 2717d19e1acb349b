"""
Recommendation cache for RecoCore.

A read-through cache of computed result sets, validated against the graph
version on every read.
"""

from .backends import CacheBackend, CacheEntry, InMemoryCacheBackend, SqliteCacheBackend
from .cache import CacheLookup, CacheStatus, RecommendationCache

__all__ = [
    "CacheEntry",
    "CacheBackend",
    "InMemoryCacheBackend",
    "SqliteCacheBackend",
    "CacheLookup",
    "CacheStatus",
    "RecommendationCache",
]
