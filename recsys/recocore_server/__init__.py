"""
RecoCore Server - coordination and consistency core for a recommendation service.

This package computes and serves recommendations derived from a continuously
arriving stream of interaction events, across a fleet of stateless instances:
- A relationship graph is the source of truth for entities and interactions
- An ordered, replayable event stream feeds the graph exactly once per event
- A search index and a recommendation cache are derived views of the graph
- Recurring batch jobs run on at most one instance at a time under a lease

Architecture:
    ┌─────────────┐     ┌──────────────┐     ┌──────────────────┐
    │ Event Stream│────▶│  Ingestion   │────▶│ Idempotency      │
    │ (Kafka)     │     │  Consumer    │     │ Ledger           │
    └─────────────┘     └──────┬───────┘     └──────────────────┘
                               │
                               ▼
                        ┌─────────────────────────────────────────┐
                        │        Graph Store (entities/edges)     │
                        └─────────────────────────────────────────┘
                               │ change notifications
                        ┌──────┴─────────────┐
                        ▼                    ▼
                 ┌─────────────┐      ┌─────────────┐     ┌──────────────┐
                 │ Search Sync │      │ Cache       │◀────│ Orchestrator │
                 │ (index)     │      │ invalidation│     │ (leased jobs)│
                 └─────────────┘      └─────────────┘     └──────────────┘

Invariants:
    - The graph store is the source of truth; index and cache can be rebuilt
    - Event ids are applied at most once system-wide
    - At most one instance holds a valid lease per job name
    - A cache entry is never served when its version stamp is stale

How to change safely:
    - New derived views must subscribe to change notifications and be
      idempotent on (entity_id, version)
    - Keep lease expiry on the store's clock, never the instance clock
    - Offsets commit only after the graph mutation succeeded
"""

from ._version import __version__

__all__ = ["__version__"]
