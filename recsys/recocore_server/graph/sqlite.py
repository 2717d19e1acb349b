"""
SQLite graph backend.

Conditional writes use UPDATE ... WHERE version = ? (and INSERT for new
entities) inside one BEGIN IMMEDIATE transaction; a row count mismatch rolls
the whole group back and reports a conflict.

Table schema:
    entities:
        - entity_id TEXT PRIMARY KEY
        - entity_type TEXT
        - attributes_json TEXT
        - version INTEGER
        - tombstoned INTEGER
        - updated_at INTEGER (Unix ms)
        - INDEX on (entity_type, entity_id)

    relationships:
        - source_id TEXT
        - target_id TEXT
        - rel_type TEXT
        - weight REAL
        - updated_at INTEGER
        - PRIMARY KEY (source_id, target_id, rel_type)
        - INDEX on (target_id, rel_type)
"""

from __future__ import annotations

import json
import logging
import sqlite3

from ..storage.sqlite import SqliteDatabase
from .models import Entity, EntityWrite, Relationship

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS entities (
    entity_id TEXT PRIMARY KEY,
    entity_type TEXT NOT NULL,
    attributes_json TEXT NOT NULL DEFAULT '{}',
    version INTEGER NOT NULL,
    tombstoned INTEGER NOT NULL DEFAULT 0,
    updated_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_entities_type ON entities(entity_type, entity_id);

CREATE TABLE IF NOT EXISTS relationships (
    source_id TEXT NOT NULL,
    target_id TEXT NOT NULL,
    rel_type TEXT NOT NULL,
    weight REAL NOT NULL,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (source_id, target_id, rel_type)
);

CREATE INDEX IF NOT EXISTS idx_relationships_target ON relationships(target_id, rel_type);
"""


class _VersionConflict(Exception):
    """Raised inside a transaction to roll back a conditional write."""


def _row_to_entity(row: sqlite3.Row) -> Entity:
    return Entity(
        entity_id=row["entity_id"],
        entity_type=row["entity_type"],
        attributes=json.loads(row["attributes_json"]),
        version=row["version"],
        tombstoned=bool(row["tombstoned"]),
        updated_at=row["updated_at"],
    )


def _row_to_relationship(row: sqlite3.Row) -> Relationship:
    return Relationship(
        source_id=row["source_id"],
        target_id=row["target_id"],
        rel_type=row["rel_type"],
        weight=row["weight"],
        updated_at=row["updated_at"],
    )


class SqliteGraphBackend:
    """Graph backend on the shared SQLite file."""

    STORE = "graph"
    blocking = True

    def __init__(self, db: SqliteDatabase) -> None:
        self.db = db
        self.db.execute_script(SCHEMA, store=self.STORE)

    def get_entity(self, entity_id: str) -> Entity | None:
        with self.db.connection(self.STORE) as conn:
            row = conn.execute("SELECT * FROM entities WHERE entity_id = ?", (entity_id,)).fetchone()
        return _row_to_entity(row) if row else None

    def conditional_write(
        self, writes: list[EntityWrite], relationship: Relationship | None = None
    ) -> bool:
        try:
            with self.db.transaction(self.STORE) as conn:
                for write in writes:
                    self._write_entity(conn, write)
                if relationship is not None:
                    conn.execute(
                        """
                        INSERT INTO relationships (source_id, target_id, rel_type, weight, updated_at)
                        VALUES (?, ?, ?, ?, ?)
                        ON CONFLICT(source_id, target_id, rel_type) DO UPDATE SET
                            weight = excluded.weight,
                            updated_at = excluded.updated_at
                        """,
                        (
                            relationship.source_id,
                            relationship.target_id,
                            relationship.rel_type,
                            relationship.weight,
                            relationship.updated_at,
                        ),
                    )
        except _VersionConflict:
            return False
        return True

    @staticmethod
    def _write_entity(conn: sqlite3.Connection, write: EntityWrite) -> None:
        entity = write.entity
        if write.expected_version is None:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO entities (entity_id, entity_type, attributes_json,
                                                version, tombstoned, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    entity.entity_id,
                    entity.entity_type,
                    json.dumps(entity.attributes, sort_keys=True),
                    entity.version,
                    int(entity.tombstoned),
                    entity.updated_at,
                ),
            )
        else:
            cursor = conn.execute(
                """
                UPDATE entities
                SET entity_type = ?, attributes_json = ?, version = ?, tombstoned = ?, updated_at = ?
                WHERE entity_id = ? AND version = ?
                """,
                (
                    entity.entity_type,
                    json.dumps(entity.attributes, sort_keys=True),
                    entity.version,
                    int(entity.tombstoned),
                    entity.updated_at,
                    entity.entity_id,
                    write.expected_version,
                ),
            )
        if cursor.rowcount != 1:
            raise _VersionConflict(entity.entity_id)

    def outgoing(self, entity_id: str, rel_type: str | None, limit: int) -> list[Relationship]:
        return self._relationships("source_id", "target_id", entity_id, rel_type, limit)

    def incoming(self, entity_id: str, rel_type: str | None, limit: int) -> list[Relationship]:
        return self._relationships("target_id", "source_id", entity_id, rel_type, limit)

    def _relationships(
        self, column: str, other: str, entity_id: str, rel_type: str | None, limit: int
    ) -> list[Relationship]:
        query = f"SELECT * FROM relationships WHERE {column} = ?"
        params: list = [entity_id]
        if rel_type is not None:
            query += " AND rel_type = ?"
            params.append(rel_type)
        query += f" ORDER BY weight DESC, {other}, rel_type LIMIT ?"
        params.append(limit)
        with self.db.connection(self.STORE) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_relationship(row) for row in rows]

    def scan(self, after_id: str | None, limit: int, entity_type: str | None = None) -> list[Entity]:
        query = "SELECT * FROM entities WHERE entity_id > ?"
        params: list = [after_id or ""]
        if entity_type is not None:
            query += " AND entity_type = ?"
            params.append(entity_type)
        query += " ORDER BY entity_id LIMIT ?"
        params.append(limit)
        with self.db.connection(self.STORE) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_entity(row) for row in rows]
