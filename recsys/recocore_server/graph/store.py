"""
Graph store adapter.

Owns canonical entities and relationships. Every mutation is a read,
compute, conditional-write cycle on the entity's version; a lost race is
retried from a fresh read, so concurrent mutations of one entity are
linearized without lost updates. After a successful write a change
notification is published for every entity whose version moved.

Invariants:
    - Versions start at 1 and increase by exactly one per mutation
    - Both endpoints of a relationship exist (a missing one is created)
    - Entities are never deleted, only tombstoned
    - Notifications are published only after the write committed

How to change safely:
    - New mutation kinds must bump the version and publish a notification
    - Keep the conflict retry budget bounded; callers treat ConflictError
      as a transient failure
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from ..errors import ConflictError
from ..retry import call_store, is_blocking
from .backends import GraphBackend
from .models import (
    UNKNOWN_TYPE,
    ChangeKind,
    ChangeNotification,
    Entity,
    EntityWrite,
    Relationship,
)
from .notifications import ChangeBus, Subscriber

logger = logging.getLogger(__name__)


class GraphStore:
    """Canonical relationship graph.

    Example:
        >>> graph = GraphStore(SqliteGraphBackend(db))
        >>> await graph.upsert_entity("user", "u42", {"name": "Ada"})
        >>> await graph.upsert_relationship("u42", "item7", "viewed", 1.0)
        >>> [r.target_id for r in await graph.neighbors("u42", "viewed")]
        ['item7']
    """

    def __init__(
        self,
        backend: GraphBackend,
        bus: ChangeBus | None = None,
        max_conflict_retries: int = 5,
        call_timeout_s: float = 10.0,
    ) -> None:
        """Initialize the graph store.

        Args:
            backend: Storage implementing the graph capability interface
            bus: Change notification bus (created if not given)
            max_conflict_retries: Conditional write attempts per mutation
            call_timeout_s: Deadline for one backend call
        """
        self.backend = backend
        self.bus = bus or ChangeBus()
        self.max_conflict_retries = max_conflict_retries
        self.call_timeout_s = call_timeout_s

    def subscribe(self, handler: Subscriber, name: str | None = None) -> None:
        """Register a change notification subscriber."""
        self.bus.subscribe(handler, name=name)

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await call_store(
            fn, *args, timeout_s=self.call_timeout_s, store="graph", blocking=is_blocking(self.backend)
        )

    async def _mutate(
        self,
        entity_id: str,
        plan: Callable[[], Any],
    ) -> Any:
        """Run plan() -> (writes, relationship, notifications, result) until it commits."""
        for attempt in range(1, self.max_conflict_retries + 1):
            planned = await plan()
            if planned is None:
                return None
            writes, relationship, notifications, result = planned
            if not writes:
                return result
            if await self._call(self.backend.conditional_write, writes, relationship):
                for notification in notifications:
                    await self.bus.publish(notification)
                return result
            logger.debug(
                "Version conflict, retrying",
                extra={"entity_id": entity_id, "attempt": attempt},
            )
            await asyncio.sleep(0)
        raise ConflictError(entity_id, self.max_conflict_retries)

    async def upsert_entity(
        self,
        entity_type: str,
        entity_id: str,
        attributes: dict[str, Any] | None = None,
        ts_ms: int | None = None,
    ) -> Entity:
        """Create an entity or merge attributes into it.

        Attributes are merged (PATCH semantics). An entity first created as
        "unknown" by a relationship adopts the given type.

        Returns:
            The entity as written

        Raises:
            ConflictError: If concurrent writers won every attempt
        """
        attributes = attributes or {}
        now = ts_ms if ts_ms is not None else int(time.time() * 1000)

        async def plan():
            current = await self._call(self.backend.get_entity, entity_id)
            if current is None:
                entity = Entity(entity_id, entity_type, dict(attributes), 1, False, now)
                created = ChangeNotification.for_entity(entity, ChangeKind.CREATED)
                return [EntityWrite(entity, None)], None, [created], entity

            merged = dict(current.attributes)
            merged.update(attributes)
            entity = Entity(
                entity_id=entity_id,
                entity_type=entity_type if current.entity_type == UNKNOWN_TYPE else current.entity_type,
                attributes=merged,
                version=current.version + 1,
                tombstoned=current.tombstoned,
                updated_at=now,
            )
            return (
                [EntityWrite(entity, current.version)],
                None,
                [ChangeNotification.for_entity(entity, ChangeKind.UPDATED)],
                entity,
            )

        entity = await self._mutate(entity_id, plan)
        logger.debug("Upserted entity", extra={"entity_id": entity_id, "version": entity.version})
        return entity

    async def upsert_relationship(
        self,
        source_id: str,
        target_id: str,
        rel_type: str,
        weight: float = 1.0,
        source_type: str | None = None,
        target_type: str | None = None,
        ts_ms: int | None = None,
    ) -> Relationship:
        """Create or update the (source, target, type) edge.

        Bumps the source entity's version. Missing endpoints are created at
        version 1 with the given type, or "unknown".

        Raises:
            ConflictError: If concurrent writers won every attempt
        """
        now = ts_ms if ts_ms is not None else int(time.time() * 1000)
        relationship = Relationship(source_id, target_id, rel_type, float(weight), now)

        async def plan():
            writes = []
            notifications = []

            source = await self._call(self.backend.get_entity, source_id)
            if source is None:
                new_source = Entity(source_id, source_type or UNKNOWN_TYPE, {}, 1, False, now)
                writes.append(EntityWrite(new_source, None))
                notifications.append(ChangeNotification.for_entity(new_source, ChangeKind.CREATED))
            else:
                bumped = Entity(
                    entity_id=source_id,
                    entity_type=source.entity_type,
                    attributes=source.attributes,
                    version=source.version + 1,
                    tombstoned=source.tombstoned,
                    updated_at=now,
                )
                writes.append(EntityWrite(bumped, source.version))
                notifications.append(ChangeNotification.for_entity(bumped, ChangeKind.RELATIONSHIP))

            if target_id != source_id:
                target = await self._call(self.backend.get_entity, target_id)
                if target is None:
                    new_target = Entity(target_id, target_type or UNKNOWN_TYPE, {}, 1, False, now)
                    writes.append(EntityWrite(new_target, None))
                    notifications.append(ChangeNotification.for_entity(new_target, ChangeKind.CREATED))

            return writes, relationship, notifications, relationship

        result = await self._mutate(source_id, plan)
        logger.debug(
            "Upserted relationship",
            extra={"source_id": source_id, "target_id": target_id, "rel_type": rel_type},
        )
        return result

    async def tombstone_entity(self, entity_id: str, ts_ms: int | None = None) -> Entity | None:
        """Mark an entity deleted.

        Returns:
            The tombstoned entity, or None if it does not exist. Tombstoning
            an already tombstoned entity changes nothing.
        """
        now = ts_ms if ts_ms is not None else int(time.time() * 1000)

        async def plan():
            current = await self._call(self.backend.get_entity, entity_id)
            if current is None:
                return None
            if current.tombstoned:
                return [], None, [], current
            entity = Entity(
                entity_id=entity_id,
                entity_type=current.entity_type,
                attributes=current.attributes,
                version=current.version + 1,
                tombstoned=True,
                updated_at=now,
            )
            return (
                [EntityWrite(entity, current.version)],
                None,
                [ChangeNotification.for_entity(entity, ChangeKind.TOMBSTONED)],
                entity,
            )

        entity = await self._mutate(entity_id, plan)
        if entity is not None:
            logger.info("Tombstoned entity", extra={"entity_id": entity_id, "version": entity.version})
        return entity

    async def get_entity(self, entity_id: str) -> Entity | None:
        return await self._call(self.backend.get_entity, entity_id)

    async def neighbors(
        self, entity_id: str, rel_type: str | None = None, limit: int = 100
    ) -> list[Relationship]:
        """Outgoing relationships, heaviest first."""
        return await self._call(self.backend.outgoing, entity_id, rel_type, limit)

    async def incoming(
        self, entity_id: str, rel_type: str | None = None, limit: int = 100
    ) -> list[Relationship]:
        """Incoming relationships, heaviest first."""
        return await self._call(self.backend.incoming, entity_id, rel_type, limit)

    async def scan_entities(
        self, after_id: str | None = None, limit: int = 100, entity_type: str | None = None
    ) -> list[Entity]:
        """Entities with id greater than after_id, in id order (chunked bulk reads)."""
        return await self._call(self.backend.scan, after_id, limit, entity_type)
