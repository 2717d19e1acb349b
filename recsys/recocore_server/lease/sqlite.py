"""
SQLite lease backend.

Every instance of the fleet opens the same database file. Each operation
runs in one BEGIN IMMEDIATE transaction and reads the time from SQLite
itself, so instance clock skew never influences who holds a lease.

Table schema:
    leases:
        - job_name TEXT PRIMARY KEY
        - holder_id TEXT
        - token TEXT (fencing token, new per grant)
        - acquired_at INTEGER (store ms)
        - expires_at INTEGER (store ms)
        - duration_ms INTEGER
        - min_hold_ms INTEGER
        - released INTEGER (1 while held only for min-hold)
        - fence INTEGER (grant counter copied from lease_fences)
    lease_fences:
        - job_name TEXT PRIMARY KEY
        - fence INTEGER (last fence granted; never decreases)
"""

from __future__ import annotations

import logging
import sqlite3

from ..storage.sqlite import SQLITE_NOW_MS, SqliteDatabase
from .backends import new_token
from .models import Lease, LeaseResult, LeaseStatus

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS leases (
    job_name TEXT PRIMARY KEY,
    holder_id TEXT NOT NULL,
    token TEXT NOT NULL,
    acquired_at INTEGER NOT NULL,
    expires_at INTEGER NOT NULL,
    duration_ms INTEGER NOT NULL,
    min_hold_ms INTEGER NOT NULL DEFAULT 0,
    released INTEGER NOT NULL DEFAULT 0,
    fence INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS lease_fences (
    job_name TEXT PRIMARY KEY,
    fence INTEGER NOT NULL
);
"""


def _row_to_lease(row: sqlite3.Row) -> Lease:
    return Lease(
        job_name=row["job_name"],
        holder_id=row["holder_id"],
        token=row["token"],
        acquired_at_ms=row["acquired_at"],
        expires_at_ms=row["expires_at"],
        duration_ms=row["duration_ms"],
        min_hold_ms=row["min_hold_ms"],
        fence=row["fence"],
    )


class SqliteLeaseBackend:
    """Durable lease store on a shared SQLite file."""

    STORE = "lease"
    blocking = True

    def __init__(self, db: SqliteDatabase) -> None:
        self.db = db
        self.db.execute_script(SCHEMA, store=self.STORE)

    @staticmethod
    def _now(conn: sqlite3.Connection) -> int:
        return conn.execute(f"SELECT {SQLITE_NOW_MS}").fetchone()[0]

    def now_ms(self) -> int:
        with self.db.connection(self.STORE) as conn:
            return self._now(conn)

    def acquire(self, job_name: str, holder_id: str, duration_ms: int, min_hold_ms: int) -> LeaseResult:
        with self.db.transaction(self.STORE) as conn:
            now = self._now(conn)
            conn.execute("DELETE FROM leases WHERE job_name = ? AND expires_at <= ?", (job_name, now))
            row = conn.execute("SELECT * FROM leases WHERE job_name = ?", (job_name,)).fetchone()

            if row is not None:
                if row["holder_id"] == holder_id and not row["released"]:
                    conn.execute(
                        "UPDATE leases SET expires_at = ? WHERE job_name = ?",
                        (now + duration_ms, job_name),
                    )
                    return LeaseResult(
                        LeaseStatus.GRANTED, lease=_row_to_lease(row).extended(now + duration_ms)
                    )
                return LeaseResult(LeaseStatus.BUSY, holder_id=row["holder_id"])

            conn.execute(
                """
                INSERT INTO lease_fences (job_name, fence) VALUES (?, 1)
                ON CONFLICT(job_name) DO UPDATE SET fence = fence + 1
                """,
                (job_name,),
            )
            fence = conn.execute("SELECT fence FROM lease_fences WHERE job_name = ?", (job_name,)).fetchone()[0]
            lease = Lease(
                job_name=job_name,
                holder_id=holder_id,
                token=new_token(),
                acquired_at_ms=now,
                expires_at_ms=now + duration_ms,
                duration_ms=duration_ms,
                min_hold_ms=min_hold_ms,
                fence=fence,
            )
            conn.execute(
                """
                INSERT INTO leases (job_name, holder_id, token, acquired_at, expires_at,
                                    duration_ms, min_hold_ms, released, fence)
                VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    lease.job_name,
                    lease.holder_id,
                    lease.token,
                    lease.acquired_at_ms,
                    lease.expires_at_ms,
                    lease.duration_ms,
                    lease.min_hold_ms,
                    lease.fence,
                ),
            )
            return LeaseResult(LeaseStatus.GRANTED, lease=lease)

    def renew(self, lease: Lease, duration_ms: int) -> Lease | None:
        with self.db.transaction(self.STORE) as conn:
            now = self._now(conn)
            cursor = conn.execute(
                """
                UPDATE leases SET expires_at = ?
                WHERE job_name = ? AND token = ? AND released = 0 AND expires_at > ?
                """,
                (now + duration_ms, lease.job_name, lease.token, now),
            )
            if cursor.rowcount != 1:
                return None
            return lease.extended(now + duration_ms)

    def release(self, lease: Lease) -> bool:
        with self.db.transaction(self.STORE) as conn:
            now = self._now(conn)
            row = conn.execute(
                """
                SELECT acquired_at, min_hold_ms FROM leases
                WHERE job_name = ? AND token = ? AND released = 0 AND expires_at > ?
                """,
                (lease.job_name, lease.token, now),
            ).fetchone()
            if row is None:
                return False

            hold_until = row["acquired_at"] + row["min_hold_ms"]
            if now < hold_until:
                conn.execute(
                    "UPDATE leases SET expires_at = ?, released = 1 WHERE job_name = ?",
                    (hold_until, lease.job_name),
                )
            else:
                conn.execute("DELETE FROM leases WHERE job_name = ?", (lease.job_name,))
            return True

    def current(self, job_name: str) -> Lease | None:
        with self.db.connection(self.STORE) as conn:
            row = conn.execute(
                f"SELECT * FROM leases WHERE job_name = ? AND expires_at > {SQLITE_NOW_MS}",
                (job_name,),
            ).fetchone()
        return _row_to_lease(row) if row else None
