"""
Canonical relationship graph for RecoCore.

The graph is the source of truth for entities and their interactions. The
search index and the recommendation cache are derived from it through
change notifications.
"""

from .backends import GraphBackend, InMemoryGraphBackend
from .models import (
    UNKNOWN_TYPE,
    ChangeKind,
    ChangeNotification,
    Entity,
    EntityWrite,
    Relationship,
)
from .notifications import ChangeBus
from .sqlite import SqliteGraphBackend
from .store import GraphStore

__all__ = [
    "Entity",
    "Relationship",
    "EntityWrite",
    "ChangeKind",
    "ChangeNotification",
    "UNKNOWN_TYPE",
    "ChangeBus",
    "GraphBackend",
    "InMemoryGraphBackend",
    "SqliteGraphBackend",
    "GraphStore",
]
