"""
Graph storage backends.

The graph store only needs a small capability set from its storage: read an
entity, write a group of entity rows conditionally on their versions (plus
at most one relationship), list relationships in either direction, and scan
entities in id order. Any store with a native conditional write can back it.

Invariants:
    - conditional_write is all-or-nothing
    - conditional_write returns False (no exception) on a version mismatch
    - Relationship listings are ordered by weight desc, then entity id
"""

from __future__ import annotations

from typing import Protocol

from ..errors import TransientStoreError
from .models import Entity, EntityWrite, Relationship


class GraphBackend(Protocol):
    """Capability interface of a graph store."""

    def get_entity(self, entity_id: str) -> Entity | None: ...

    def conditional_write(
        self, writes: list[EntityWrite], relationship: Relationship | None = None
    ) -> bool: ...

    def outgoing(self, entity_id: str, rel_type: str | None, limit: int) -> list[Relationship]: ...

    def incoming(self, entity_id: str, rel_type: str | None, limit: int) -> list[Relationship]: ...

    def scan(self, after_id: str | None, limit: int, entity_type: str | None = None) -> list[Entity]: ...


def _order(relationships: list[Relationship], key: str) -> list[Relationship]:
    return sorted(relationships, key=lambda r: (-r.weight, getattr(r, key), r.rel_type))


class InMemoryGraphBackend:
    """Dictionary-backed graph for tests and local development."""

    def __init__(self) -> None:
        self._entities: dict[str, Entity] = {}
        self._relationships: dict[tuple[str, str, str], Relationship] = {}
        self._failures = 0
        self._forced_conflicts = 0
        self.write_count = 0

    # Testing helpers

    def fail_next(self, count: int = 1) -> None:
        """Make the next `count` calls raise TransientStoreError."""
        self._failures += count

    def force_conflicts(self, count: int) -> None:
        """Make the next `count` conditional writes lose a version race."""
        self._forced_conflicts += count

    def _check_available(self) -> None:
        if self._failures > 0:
            self._failures -= 1
            raise TransientStoreError("graph store unavailable", store="graph")

    # Capability interface

    def get_entity(self, entity_id: str) -> Entity | None:
        self._check_available()
        return self._entities.get(entity_id)

    def conditional_write(
        self, writes: list[EntityWrite], relationship: Relationship | None = None
    ) -> bool:
        self._check_available()
        if self._forced_conflicts > 0:
            self._forced_conflicts -= 1
            return False

        for write in writes:
            current = self._entities.get(write.entity.entity_id)
            current_version = current.version if current else None
            if current_version != write.expected_version:
                return False

        for write in writes:
            self._entities[write.entity.entity_id] = write.entity
        if relationship is not None:
            key = (relationship.source_id, relationship.target_id, relationship.rel_type)
            self._relationships[key] = relationship
        self.write_count += 1
        return True

    def outgoing(self, entity_id: str, rel_type: str | None, limit: int) -> list[Relationship]:
        self._check_available()
        found = [
            r
            for (src, _dst, kind), r in self._relationships.items()
            if src == entity_id and (rel_type is None or kind == rel_type)
        ]
        return _order(found, "target_id")[:limit]

    def incoming(self, entity_id: str, rel_type: str | None, limit: int) -> list[Relationship]:
        self._check_available()
        found = [
            r
            for (_src, dst, kind), r in self._relationships.items()
            if dst == entity_id and (rel_type is None or kind == rel_type)
        ]
        return _order(found, "source_id")[:limit]

    def scan(self, after_id: str | None, limit: int, entity_type: str | None = None) -> list[Entity]:
        self._check_available()
        ids = sorted(
            entity_id
            for entity_id, entity in self._entities.items()
            if (after_id is None or entity_id > after_id)
            and (entity_type is None or entity.entity_type == entity_type)
        )
        return [self._entities[entity_id] for entity_id in ids[:limit]]

    def relationship_count(self) -> int:
        return len(self._relationships)
