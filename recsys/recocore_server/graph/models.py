"""Graph data types and change notifications."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

UNKNOWN_TYPE = "unknown"


@dataclass(frozen=True)
class Entity:
    """An identifiable node of the relationship graph.

    Attributes:
        entity_id: Unique identifier
        entity_type: Type tag (user, item, ...)
        attributes: Scalar attribute values
        version: Incremented on every mutation, starts at 1
        tombstoned: Logically deleted
        updated_at: Timestamp of the last mutation (Unix ms)
    """

    entity_id: str
    entity_type: str
    attributes: dict[str, Any] = field(default_factory=dict)
    version: int = 1
    tombstoned: bool = False
    updated_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "entity_type": self.entity_type,
            "attributes": dict(self.attributes),
            "version": self.version,
            "tombstoned": self.tombstoned,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class Relationship:
    """A directed, typed, weighted edge. At most one per (source, target, type).

    Attributes:
        source_id: Source entity
        target_id: Target entity
        rel_type: Edge type (viewed, purchased, ...)
        weight: Interaction weight
        updated_at: Timestamp of the last upsert (Unix ms)
    """

    source_id: str
    target_id: str
    rel_type: str
    weight: float = 1.0
    updated_at: int = 0


@dataclass(frozen=True)
class EntityWrite:
    """One entity row in a conditional write.

    expected_version is None when the entity must not exist yet.
    """

    entity: Entity
    expected_version: int | None


class ChangeKind(str, Enum):
    """What happened to the entity."""

    CREATED = "created"
    UPDATED = "updated"
    RELATIONSHIP = "relationship"
    TOMBSTONED = "tombstoned"


@dataclass(frozen=True)
class ChangeNotification:
    """Emitted after every successful graph mutation.

    Subscribers must be idempotent on (entity_id, version).
    """

    entity_id: str
    entity_type: str
    version: int
    kind: ChangeKind

    @classmethod
    def for_entity(cls, entity: Entity, kind: ChangeKind) -> ChangeNotification:
        return cls(
            entity_id=entity.entity_id,
            entity_type=entity.entity_type,
            version=entity.version,
            kind=kind,
        )
