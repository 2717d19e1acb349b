"""
Recommendation cache backends.

Backends store raw entries and perform the compare-and-swap on the graph
version stamp. Validity (expiry and staleness) is decided by the
RecommendationCache facade.

Table schema (SQLite):
    cache_entries:
        - entity_id TEXT PRIMARY KEY
        - items_json TEXT (ordered recommended ids)
        - graph_version INTEGER
        - computed_at INTEGER (store ms)
        - expires_at INTEGER (store ms)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Protocol

from ..clock import Clock, SystemClock
from ..errors import TransientStoreError
from ..storage.sqlite import SQLITE_NOW_MS, SqliteDatabase

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """A cached recommendation result set.

    Attributes:
        entity_id: Entity the recommendations are for
        items: Recommended entity ids, best first
        graph_version: Entity version the result was computed from
        computed_at_ms: When it was stored (store clock)
        expires_at_ms: When it stops being served (store clock)
    """

    entity_id: str
    items: tuple[str, ...]
    graph_version: int
    computed_at_ms: int
    expires_at_ms: int


class CacheBackend(Protocol):
    def now_ms(self) -> int: ...

    def get(self, entity_id: str) -> CacheEntry | None: ...

    def put_if_newer(self, entity_id: str, items: tuple[str, ...], graph_version: int, ttl_ms: int) -> bool: ...

    def delete(self, entity_id: str) -> bool: ...


class InMemoryCacheBackend:
    """Dictionary-backed cache for tests and single-instance development."""

    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()
        self._entries: dict[str, CacheEntry] = {}
        self._failures = 0

    def fail_next(self, count: int = 1) -> None:
        """Make the next `count` calls raise TransientStoreError (testing helper)."""
        self._failures += count

    def _check_available(self) -> None:
        if self._failures > 0:
            self._failures -= 1
            raise TransientStoreError("cache store unavailable", store="cache")

    def now_ms(self) -> int:
        return self.clock.now_ms()

    def get(self, entity_id: str) -> CacheEntry | None:
        self._check_available()
        return self._entries.get(entity_id)

    def put_if_newer(self, entity_id: str, items: tuple[str, ...], graph_version: int, ttl_ms: int) -> bool:
        self._check_available()
        current = self._entries.get(entity_id)
        if current is not None and current.graph_version > graph_version:
            return False
        now = self.clock.now_ms()
        self._entries[entity_id] = CacheEntry(entity_id, tuple(items), graph_version, now, now + ttl_ms)
        return True

    def delete(self, entity_id: str) -> bool:
        self._check_available()
        return self._entries.pop(entity_id, None) is not None


SCHEMA = """
CREATE TABLE IF NOT EXISTS cache_entries (
    entity_id TEXT PRIMARY KEY,
    items_json TEXT NOT NULL,
    graph_version INTEGER NOT NULL,
    computed_at INTEGER NOT NULL,
    expires_at INTEGER NOT NULL
);
"""


class SqliteCacheBackend:
    """Cache on the shared SQLite file; times come from SQLite's clock."""

    STORE = "cache"
    blocking = True

    def __init__(self, db: SqliteDatabase) -> None:
        self.db = db
        self.db.execute_script(SCHEMA, store=self.STORE)

    def now_ms(self) -> int:
        with self.db.connection(self.STORE) as conn:
            return conn.execute(f"SELECT {SQLITE_NOW_MS}").fetchone()[0]

    def get(self, entity_id: str) -> CacheEntry | None:
        with self.db.connection(self.STORE) as conn:
            row = conn.execute("SELECT * FROM cache_entries WHERE entity_id = ?", (entity_id,)).fetchone()
        if row is None:
            return None
        return CacheEntry(
            entity_id=row["entity_id"],
            items=tuple(json.loads(row["items_json"])),
            graph_version=row["graph_version"],
            computed_at_ms=row["computed_at"],
            expires_at_ms=row["expires_at"],
        )

    def put_if_newer(self, entity_id: str, items: tuple[str, ...], graph_version: int, ttl_ms: int) -> bool:
        with self.db.transaction(self.STORE) as conn:
            cursor = conn.execute(
                f"""
                INSERT INTO cache_entries (entity_id, items_json, graph_version, computed_at, expires_at)
                VALUES (?, ?, ?, {SQLITE_NOW_MS}, {SQLITE_NOW_MS} + ?)
                ON CONFLICT(entity_id) DO UPDATE SET
                    items_json = excluded.items_json,
                    graph_version = excluded.graph_version,
                    computed_at = excluded.computed_at,
                    expires_at = excluded.expires_at
                WHERE excluded.graph_version >= cache_entries.graph_version
                """,
                (entity_id, json.dumps(list(items)), graph_version, ttl_ms),
            )
            return cursor.rowcount == 1

    def delete(self, entity_id: str) -> bool:
        with self.db.transaction(self.STORE) as conn:
            cursor = conn.execute("DELETE FROM cache_entries WHERE entity_id = ?", (entity_id,))
            return cursor.rowcount == 1
