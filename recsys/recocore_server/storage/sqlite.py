"""
SQLite connection management shared by the durable backends.

Every call opens a short-lived connection, configures it, and closes it.
Writers take the database lock up front with BEGIN IMMEDIATE so that
read-modify-write sequences (conditional writes, lease takeover, CAS on
cache stamps) are serialized across processes sharing the file.

Invariants:
    - All writes happen inside an explicit transaction
    - Busy/locked errors surface as TransientStoreError, never raw sqlite3 errors
    - The busy timeout bounds every SQLite call, including calls run in an
      executor thread after the caller's deadline has fired
    - Connections are never shared, so backends may be called from any thread
    - SQLITE_NOW_MS is the only clock used for durable expiry decisions

How to change safely:
    - Keep PRAGMAs compatible with WAL mode
    - Add tables in the owning backend's schema, not here
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from ..errors import TransientStoreError

if TYPE_CHECKING:
    from ..config import StorageConfig

logger = logging.getLogger(__name__)

# Milliseconds since the Unix epoch according to the SQLite engine
SQLITE_NOW_MS = "CAST((julianday('now') - 2440587.5) * 86400000 AS INTEGER)"

_TRANSIENT_MARKERS = ("locked", "busy", "disk i/o", "unable to open")


def _is_transient(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


class SqliteDatabase:
    """Connection factory for one SQLite database file.

    Example:
        >>> db = SqliteDatabase("/var/lib/recocore/recocore.db")
        >>> with db.transaction("ledger") as conn:
        ...     conn.execute("INSERT INTO ...")
    """

    def __init__(
        self,
        path: str | Path,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -16000,
    ) -> None:
        """Initialize the database handle.

        Args:
            path: Database file path (parent directories are created)
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout, used as the call deadline
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.path = Path(path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages

    @classmethod
    def from_config(cls, config: StorageConfig) -> SqliteDatabase:
        """Create a handle for the shared database described by config."""
        return cls(
            Path(config.data_dir) / config.db_filename,
            wal_mode=config.wal_mode,
            busy_timeout_ms=config.busy_timeout_ms,
        )

    @contextmanager
    def connection(self, store: str = "sqlite") -> Iterator[sqlite3.Connection]:
        """Open a configured connection.

        Args:
            store: Store name used in error reports

        Yields:
            SQLite connection in autocommit mode

        Raises:
            TransientStoreError: If the database is locked, busy or unreachable
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = sqlite3.connect(
                str(self.path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except sqlite3.OperationalError as e:
            raise TransientStoreError(f"Cannot open {self.path}: {e}", store=store) from e
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")

            yield conn
        except sqlite3.OperationalError as e:
            if _is_transient(e):
                raise TransientStoreError(f"{store} store unavailable: {e}", store=store) from e
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self, store: str = "sqlite") -> Iterator[sqlite3.Connection]:
        """Open a connection inside a BEGIN IMMEDIATE transaction.

        Commits when the block exits normally and rolls back on any exception.
        """
        with self.connection(store) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    def execute_script(self, script: str, store: str = "sqlite") -> None:
        """Run a schema script (CREATE TABLE IF NOT EXISTS ...)."""
        with self.connection(store) as conn:
            conn.executescript(script)
        logger.debug("Applied schema", extra={"store": store, "path": str(self.path)})
