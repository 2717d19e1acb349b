"""
Search index port and in-memory implementation.

The index holds one denormalized document per graph entity, stamped with
the entity version it was derived from. Writes are conditional on the
stamp: a document only replaces an older one, so late or duplicated
notifications can never roll the index back.

Tombstoned entities stay in the index as tombstoned documents (excluded
from search results). Keeping their stamp prevents an older, still queued
version from resurrecting them.

Invariants:
    - upsert() applies only when the new version is greater than the stored one
    - Search never returns tombstoned documents
    - keys_in_range() lists keys in ascending order
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from ..errors import TransientStoreError
from ..graph.models import Entity, Relationship

_TOKEN = re.compile(r"\w+", re.UNICODE)


def tokenize(text: str) -> list[str]:
    return [t.lower() for t in _TOKEN.findall(text)]


@dataclass(frozen=True)
class IndexDocument:
    """Search document derived from one entity.

    Attributes:
        key: Entity id
        entity_type: Entity type tag
        version: Graph version the document reflects
        attributes: Entity attributes
        relations: Relationship type -> sorted target ids
        tombstoned: Entity is tombstoned
        body: Free text indexed for search
    """

    key: str
    entity_type: str
    version: int
    attributes: dict[str, Any] = field(default_factory=dict)
    relations: dict[str, list[str]] = field(default_factory=dict)
    tombstoned: bool = False
    body: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "entity_type": self.entity_type,
            "version": self.version,
            "attributes": self.attributes,
            "relations": self.relations,
            "tombstoned": self.tombstoned,
            "body": self.body,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IndexDocument:
        return cls(
            key=data["key"],
            entity_type=data["entity_type"],
            version=data["version"],
            attributes=data.get("attributes", {}),
            relations=data.get("relations", {}),
            tombstoned=data.get("tombstoned", False),
            body=data.get("body", ""),
        )


@dataclass(frozen=True)
class SearchHit:
    """One search result."""

    key: str
    entity_type: str
    version: int
    score: float


def build_document(entity: Entity, relationships: list[Relationship]) -> IndexDocument:
    """Derive the index document of an entity from the graph."""
    relations: dict[str, list[str]] = {}
    for rel in relationships:
        relations.setdefault(rel.rel_type, []).append(rel.target_id)
    relations = {kind: sorted(targets) for kind, targets in sorted(relations.items())}

    parts = [entity.entity_id, entity.entity_type]
    parts.extend(str(value) for _, value in sorted(entity.attributes.items()) if value is not None)
    return IndexDocument(
        key=entity.entity_id,
        entity_type=entity.entity_type,
        version=entity.version,
        attributes=dict(entity.attributes),
        relations=relations,
        tombstoned=entity.tombstoned,
        body=" ".join(parts),
    )


class SearchIndex(Protocol):
    """Version-stamped document index."""

    def get_version(self, key: str) -> int | None: ...

    def get(self, key: str) -> IndexDocument | None: ...

    def upsert(self, document: IndexDocument) -> bool: ...

    def delete(self, key: str) -> bool: ...

    def bulk_upsert(self, documents: list[IndexDocument]) -> int: ...

    def keys_in_range(
        self, after_key: str | None, until_key: str | None, limit: int
    ) -> list[tuple[str, int]]: ...

    def search(self, text: str, limit: int = 20, entity_type: str | None = None) -> list[SearchHit]: ...


class InMemorySearchIndex:
    """Dictionary-backed index for tests and local development."""

    def __init__(self) -> None:
        self._documents: dict[str, IndexDocument] = {}
        self._failures = 0
        self.write_attempts = 0

    def fail_next(self, count: int = 1) -> None:
        """Make the next `count` writes raise TransientStoreError (testing helper)."""
        self._failures += count

    def _check_write(self) -> None:
        self.write_attempts += 1
        if self._failures > 0:
            self._failures -= 1
            raise TransientStoreError("search index unavailable", store="search")

    def get_version(self, key: str) -> int | None:
        document = self._documents.get(key)
        return document.version if document else None

    def get(self, key: str) -> IndexDocument | None:
        return self._documents.get(key)

    def upsert(self, document: IndexDocument) -> bool:
        self._check_write()
        current = self._documents.get(document.key)
        if current is not None and current.version >= document.version:
            return False
        self._documents[document.key] = document
        return True

    def delete(self, key: str) -> bool:
        self._check_write()
        return self._documents.pop(key, None) is not None

    def bulk_upsert(self, documents: list[IndexDocument]) -> int:
        return sum(1 for document in documents if self.upsert(document))

    def keys_in_range(
        self, after_key: str | None, until_key: str | None, limit: int
    ) -> list[tuple[str, int]]:
        keys = sorted(
            key
            for key in self._documents
            if (after_key is None or key > after_key) and (until_key is None or key <= until_key)
        )
        return [(key, self._documents[key].version) for key in keys[:limit]]

    def search(self, text: str, limit: int = 20, entity_type: str | None = None) -> list[SearchHit]:
        terms = set(tokenize(text))
        if not terms:
            return []
        hits = []
        for document in self._documents.values():
            if document.tombstoned or (entity_type and document.entity_type != entity_type):
                continue
            tokens = tokenize(document.body)
            score = sum(1 for token in tokens if token in terms)
            if score and terms.issubset(tokens):
                hits.append(SearchHit(document.key, document.entity_type, document.version, float(score)))
        hits.sort(key=lambda h: (-h.score, h.key))
        return hits[:limit]

    def __len__(self) -> int:
        return len(self._documents)
