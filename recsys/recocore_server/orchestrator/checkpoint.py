"""
Job checkpoints.

A checkpoint records how far a job's current pass got: the id of the last
entity of the last committed chunk plus running counters. It is written
after every chunk, so a pass interrupted by a lost lease or a crash resumes
at the next chunk instead of starting over. A completed pass resets it.

Writes are fenced by the lease fence they were made under. A holder whose
lease has been taken over cannot overwrite or reset a checkpoint written by
the newer holder, even if its last lease check passed just before the
takeover.

Table schema (SQLite):
    job_checkpoints:
        - job_name TEXT PRIMARY KEY
        - cursor TEXT (NULL = start of the entity range)
        - processed INTEGER
        - failed INTEGER
        - chunks INTEGER
        - lease_token TEXT (lease under which it was written)
        - fence INTEGER (fence of that lease)
        - updated_at INTEGER (Unix ms)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Protocol

from ..storage.sqlite import SqliteDatabase

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Checkpoint:
    job_name: str
    cursor: str | None = None
    processed: int = 0
    failed: int = 0
    chunks: int = 0
    lease_token: str | None = None
    fence: int = 0
    updated_at: int = 0

    def advance(
        self, cursor: str | None, processed: int, failed: int, lease_token: str, fence: int = 0
    ) -> Checkpoint:
        return replace(
            self,
            cursor=cursor,
            processed=self.processed + processed,
            failed=self.failed + failed,
            chunks=self.chunks + 1,
            lease_token=lease_token,
            fence=fence,
            updated_at=int(time.time() * 1000),
        )


class CheckpointStore(Protocol):
    def load(self, job_name: str) -> Checkpoint | None: ...

    def save(self, checkpoint: Checkpoint) -> bool:
        """Store the checkpoint unless one with a higher fence exists. Returns False if refused."""
        ...

    def reset(self, job_name: str, fence: int | None = None) -> None:
        """Drop the checkpoint, if it was written under a fence no higher than `fence`."""
        ...


class InMemoryCheckpointStore:
    def __init__(self) -> None:
        self._checkpoints: dict[str, Checkpoint] = {}

    def load(self, job_name: str) -> Checkpoint | None:
        return self._checkpoints.get(job_name)

    def save(self, checkpoint: Checkpoint) -> bool:
        current = self._checkpoints.get(checkpoint.job_name)
        if current is not None and current.fence > checkpoint.fence:
            return False
        self._checkpoints[checkpoint.job_name] = checkpoint
        return True

    def reset(self, job_name: str, fence: int | None = None) -> None:
        current = self._checkpoints.get(job_name)
        if current is None or (fence is not None and current.fence > fence):
            return
        del self._checkpoints[job_name]


SCHEMA = """
CREATE TABLE IF NOT EXISTS job_checkpoints (
    job_name TEXT PRIMARY KEY,
    cursor TEXT,
    processed INTEGER NOT NULL DEFAULT 0,
    failed INTEGER NOT NULL DEFAULT 0,
    chunks INTEGER NOT NULL DEFAULT 0,
    lease_token TEXT,
    fence INTEGER NOT NULL DEFAULT 0,
    updated_at INTEGER NOT NULL
);
"""


class SqliteCheckpointStore:
    STORE = "checkpoint"
    blocking = True

    def __init__(self, db: SqliteDatabase) -> None:
        self.db = db
        self.db.execute_script(SCHEMA, store=self.STORE)

    def load(self, job_name: str) -> Checkpoint | None:
        with self.db.connection(self.STORE) as conn:
            row = conn.execute("SELECT * FROM job_checkpoints WHERE job_name = ?", (job_name,)).fetchone()
        if row is None:
            return None
        return Checkpoint(
            job_name=row["job_name"],
            cursor=row["cursor"],
            processed=row["processed"],
            failed=row["failed"],
            chunks=row["chunks"],
            lease_token=row["lease_token"],
            fence=row["fence"],
            updated_at=row["updated_at"],
        )

    def save(self, checkpoint: Checkpoint) -> bool:
        with self.db.transaction(self.STORE) as conn:
            cursor = conn.execute(
                """
                INSERT INTO job_checkpoints
                    (job_name, cursor, processed, failed, chunks, lease_token, fence, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(job_name) DO UPDATE SET
                    cursor = excluded.cursor,
                    processed = excluded.processed,
                    failed = excluded.failed,
                    chunks = excluded.chunks,
                    lease_token = excluded.lease_token,
                    fence = excluded.fence,
                    updated_at = excluded.updated_at
                WHERE excluded.fence >= job_checkpoints.fence
                """,
                (
                    checkpoint.job_name,
                    checkpoint.cursor,
                    checkpoint.processed,
                    checkpoint.failed,
                    checkpoint.chunks,
                    checkpoint.lease_token,
                    checkpoint.fence,
                    checkpoint.updated_at,
                ),
            )
            return cursor.rowcount == 1

    def reset(self, job_name: str, fence: int | None = None) -> None:
        with self.db.transaction(self.STORE) as conn:
            if fence is None:
                conn.execute("DELETE FROM job_checkpoints WHERE job_name = ?", (job_name,))
            else:
                conn.execute(
                    "DELETE FROM job_checkpoints WHERE job_name = ? AND fence <= ?",
                    (job_name, fence),
                )
