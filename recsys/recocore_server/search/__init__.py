"""
Search index synchronization for RecoCore.

The search index is a denormalized, version-stamped view of the graph. It
can always be rebuilt from the graph by the reconcile-index job.
"""

from .desync import DesyncLog, DesyncRecord
from .index import (
    IndexDocument,
    InMemorySearchIndex,
    SearchHit,
    SearchIndex,
    build_document,
)
from .sqlite import SqliteSearchIndex
from .synchronizer import SearchSynchronizer, SyncOutcome, SyncStats

__all__ = [
    "IndexDocument",
    "SearchHit",
    "SearchIndex",
    "InMemorySearchIndex",
    "SqliteSearchIndex",
    "build_document",
    "DesyncLog",
    "DesyncRecord",
    "SearchSynchronizer",
    "SyncOutcome",
    "SyncStats",
]
