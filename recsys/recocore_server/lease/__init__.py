"""
Lock coordination for RecoCore.

Leases keyed by job name give a fleet of stateless instances mutual
exclusion for recurring jobs. Leases expire on their own, so a crashed
holder never blocks a job for longer than one lease duration.
"""

from .backends import InMemoryLeaseBackend, LeaseBackend
from .coordinator import LeaseCoordinator
from .models import Lease, LeaseResult, LeaseStatus
from .sqlite import SqliteLeaseBackend

__all__ = [
    "Lease",
    "LeaseResult",
    "LeaseStatus",
    "LeaseBackend",
    "InMemoryLeaseBackend",
    "SqliteLeaseBackend",
    "LeaseCoordinator",
]
