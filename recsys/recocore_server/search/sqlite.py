"""
SQLite FTS5 search index.

Table schema:
    index_documents:
        - key TEXT PRIMARY KEY (entity id)
        - entity_type TEXT
        - version INTEGER (graph version stamp)
        - tombstoned INTEGER
        - document_json TEXT
        - body TEXT (searchable text)

    fts_documents:
        - FTS5 virtual table over body, kept in sync by triggers
"""

from __future__ import annotations

import json
import logging
import sqlite3

from ..storage.sqlite import SqliteDatabase
from .index import IndexDocument, SearchHit, tokenize

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS index_documents (
    key TEXT PRIMARY KEY,
    entity_type TEXT NOT NULL,
    version INTEGER NOT NULL,
    tombstoned INTEGER NOT NULL DEFAULT 0,
    document_json TEXT NOT NULL,
    body TEXT NOT NULL DEFAULT ''
);

CREATE VIRTUAL TABLE IF NOT EXISTS fts_documents USING fts5(
    body,
    content='index_documents',
    content_rowid='rowid'
);

CREATE TRIGGER IF NOT EXISTS index_documents_ai AFTER INSERT ON index_documents BEGIN
    INSERT INTO fts_documents(rowid, body) VALUES (new.rowid, new.body);
END;

CREATE TRIGGER IF NOT EXISTS index_documents_ad AFTER DELETE ON index_documents BEGIN
    INSERT INTO fts_documents(fts_documents, rowid, body) VALUES('delete', old.rowid, old.body);
END;

CREATE TRIGGER IF NOT EXISTS index_documents_au AFTER UPDATE ON index_documents BEGIN
    INSERT INTO fts_documents(fts_documents, rowid, body) VALUES('delete', old.rowid, old.body);
    INSERT INTO fts_documents(rowid, body) VALUES (new.rowid, new.body);
END;
"""


def _match_expression(text: str) -> str:
    """Quote each token so user text is never parsed as FTS5 syntax."""
    return " ".join('"{}"'.format(token.replace('"', '""')) for token in tokenize(text))


class SqliteSearchIndex:
    """Search index on the shared SQLite file with FTS5 full-text search."""

    STORE = "search"
    blocking = True

    def __init__(self, db: SqliteDatabase) -> None:
        self.db = db
        self.db.execute_script(SCHEMA, store=self.STORE)

    def get_version(self, key: str) -> int | None:
        with self.db.connection(self.STORE) as conn:
            row = conn.execute("SELECT version FROM index_documents WHERE key = ?", (key,)).fetchone()
        return row["version"] if row else None

    def get(self, key: str) -> IndexDocument | None:
        with self.db.connection(self.STORE) as conn:
            row = conn.execute(
                "SELECT document_json FROM index_documents WHERE key = ?", (key,)
            ).fetchone()
        return IndexDocument.from_dict(json.loads(row["document_json"])) if row else None

    @staticmethod
    def _upsert(conn: sqlite3.Connection, document: IndexDocument) -> bool:
        cursor = conn.execute(
            """
            INSERT INTO index_documents (key, entity_type, version, tombstoned, document_json, body)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                entity_type = excluded.entity_type,
                version = excluded.version,
                tombstoned = excluded.tombstoned,
                document_json = excluded.document_json,
                body = excluded.body
            WHERE excluded.version > index_documents.version
            """,
            (
                document.key,
                document.entity_type,
                document.version,
                int(document.tombstoned),
                json.dumps(document.to_dict(), sort_keys=True),
                document.body,
            ),
        )
        return cursor.rowcount == 1

    def upsert(self, document: IndexDocument) -> bool:
        with self.db.transaction(self.STORE) as conn:
            return self._upsert(conn, document)

    def delete(self, key: str) -> bool:
        with self.db.transaction(self.STORE) as conn:
            cursor = conn.execute("DELETE FROM index_documents WHERE key = ?", (key,))
            return cursor.rowcount == 1

    def bulk_upsert(self, documents: list[IndexDocument]) -> int:
        with self.db.transaction(self.STORE) as conn:
            return sum(1 for document in documents if self._upsert(conn, document))

    def keys_in_range(
        self, after_key: str | None, until_key: str | None, limit: int
    ) -> list[tuple[str, int]]:
        sql = "SELECT key, version FROM index_documents WHERE key > ?"
        params: list = [after_key or ""]
        if until_key is not None:
            sql += " AND key <= ?"
            params.append(until_key)
        sql += " ORDER BY key LIMIT ?"
        params.append(limit)
        with self.db.connection(self.STORE) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [(row["key"], row["version"]) for row in rows]

    def search(self, text: str, limit: int = 20, entity_type: str | None = None) -> list[SearchHit]:
        expression = _match_expression(text)
        if not expression:
            return []

        sql = """
            SELECT d.key, d.entity_type, d.version, fts.rank AS rank
            FROM index_documents d
            JOIN fts_documents fts ON d.rowid = fts.rowid
            WHERE fts_documents MATCH ? AND d.tombstoned = 0
        """
        params: list = [expression]
        if entity_type:
            sql += " AND d.entity_type = ?"
            params.append(entity_type)
        sql += " ORDER BY fts.rank, d.key LIMIT ?"
        params.append(limit)

        try:
            with self.db.connection(self.STORE) as conn:
                rows = conn.execute(sql, params).fetchall()
        except sqlite3.OperationalError as e:
            # Handle FTS query errors gracefully
            if "fts5" in str(e).lower():
                logger.warning(f"FTS query error: {e}")
                return []
            raise

        # FTS5 rank is bm25, lower is better
        return [SearchHit(row["key"], row["entity_type"], row["version"], -row["rank"]) for row in rows]
