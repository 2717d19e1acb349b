"""
SQLite idempotency ledger.

Table schema:
    processed_events:
        - event_id TEXT PRIMARY KEY
        - state TEXT ('claimed' | 'applied')
        - claimed_at INTEGER (store ms)
        - expires_at INTEGER (store ms, NULL while claimed)
        - INDEX on expires_at for purges
"""

from __future__ import annotations

import logging

from ..storage.sqlite import SQLITE_NOW_MS, SqliteDatabase
from .backends import EntryState, MarkResult

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS processed_events (
    event_id TEXT PRIMARY KEY,
    state TEXT NOT NULL,
    claimed_at INTEGER NOT NULL,
    expires_at INTEGER
);

CREATE INDEX IF NOT EXISTS idx_processed_events_expires ON processed_events(expires_at);
"""


class SqliteLedgerBackend:
    """Durable ledger shared by all ingestion instances."""

    STORE = "ledger"
    blocking = True

    def __init__(self, db: SqliteDatabase) -> None:
        self.db = db
        self.db.execute_script(SCHEMA, store=self.STORE)

    def try_mark(self, event_id: str, claim_timeout_ms: int) -> MarkResult:
        with self.db.transaction(self.STORE) as conn:
            now = conn.execute(f"SELECT {SQLITE_NOW_MS}").fetchone()[0]
            # Drop the entry if it is a stale claim or an expired record
            conn.execute(
                """
                DELETE FROM processed_events
                WHERE event_id = ?
                  AND ((state = 'claimed' AND claimed_at + ? <= ?)
                       OR (state = 'applied' AND expires_at <= ?))
                """,
                (event_id, claim_timeout_ms, now, now),
            )
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO processed_events (event_id, state, claimed_at, expires_at)
                VALUES (?, 'claimed', ?, NULL)
                """,
                (event_id, now),
            )
            if cursor.rowcount == 1:
                return MarkResult.FRESH
            row = conn.execute(
                "SELECT state FROM processed_events WHERE event_id = ?", (event_id,)
            ).fetchone()
            if row["state"] == EntryState.CLAIMED.value:
                return MarkResult.IN_PROGRESS
            return MarkResult.DUPLICATE

    def complete(self, event_id: str, retention_ms: int) -> None:
        with self.db.transaction(self.STORE) as conn:
            conn.execute(
                f"""
                INSERT INTO processed_events (event_id, state, claimed_at, expires_at)
                VALUES (?, 'applied', {SQLITE_NOW_MS}, {SQLITE_NOW_MS} + ?)
                ON CONFLICT(event_id) DO UPDATE SET
                    state = 'applied',
                    expires_at = {SQLITE_NOW_MS} + ?
                """,
                (event_id, retention_ms, retention_ms),
            )

    def release(self, event_id: str) -> bool:
        with self.db.transaction(self.STORE) as conn:
            cursor = conn.execute(
                "DELETE FROM processed_events WHERE event_id = ? AND state = 'claimed'",
                (event_id,),
            )
            return cursor.rowcount == 1

    def purge_expired(self) -> int:
        with self.db.transaction(self.STORE) as conn:
            cursor = conn.execute(
                f"DELETE FROM processed_events WHERE state = 'applied' AND expires_at <= {SQLITE_NOW_MS}"
            )
            return cursor.rowcount

    def state(self, event_id: str) -> EntryState | None:
        with self.db.connection(self.STORE) as conn:
            row = conn.execute(
                "SELECT state FROM processed_events WHERE event_id = ?", (event_id,)
            ).fetchone()
        return EntryState(row["state"]) if row else None
