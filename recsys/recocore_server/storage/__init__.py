"""
Shared SQLite storage helpers.

The durable lease, ledger, graph, index and cache backends share one SQLite
file. Each backend owns its tables; this module only owns connections.
"""

from .sqlite import SQLITE_NOW_MS, SqliteDatabase

__all__ = ["SQLITE_NOW_MS", "SqliteDatabase"]
