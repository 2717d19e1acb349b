"""
RecoCore Test Suite.

This package contains:
- unit/: Unit tests (in-memory backends, simulated clocks, temp SQLite files)
- integration/: Integration tests (ingestion, search sync, cache and jobs wired together)
"""
