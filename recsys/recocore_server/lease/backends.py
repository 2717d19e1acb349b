"""
Lease store backends.

A backend performs each lease operation as one atomic step against its own
clock. Backends raise TransientStoreError when the store cannot be reached;
the coordinator turns that into LeaseStatus.UNAVAILABLE.

Invariants:
    - At most one non-expired lease per job name
    - Expiry is judged by the backend's clock only
    - A released lease inside its min-hold window stays BUSY for everyone
    - Each new grant for a job name carries a higher fence than any before it;
      refreshing a held lease keeps its fence
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Protocol

from ..clock import Clock, SystemClock
from ..errors import TransientStoreError
from .models import Lease, LeaseResult, LeaseStatus

logger = logging.getLogger(__name__)


class LeaseBackend(Protocol):
    """Atomic lease store operations."""

    def now_ms(self) -> int:
        """Current time on the store's clock."""
        ...

    def acquire(self, job_name: str, holder_id: str, duration_ms: int, min_hold_ms: int) -> LeaseResult:
        """Grant, refresh, or refuse (BUSY) a lease."""
        ...

    def renew(self, lease: Lease, duration_ms: int) -> Lease | None:
        """Extend a lease still held under its token; None when lost."""
        ...

    def release(self, lease: Lease) -> bool:
        """Give a lease back; False when it was no longer held."""
        ...

    def current(self, job_name: str) -> Lease | None:
        """The valid lease for a job, if any."""
        ...


def new_token() -> str:
    return uuid.uuid4().hex


@dataclass
class _Row:
    lease: Lease
    released: bool = False


class InMemoryLeaseBackend:
    """Process-local lease store.

    Shared by several coordinators in tests to model a fleet of instances
    talking to one store. Time comes from the injected clock.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()
        self._rows: dict[str, _Row] = {}
        self._fences: dict[str, int] = {}
        self._failures = 0

    def fail_next(self, count: int = 1) -> None:
        """Make the next `count` calls raise TransientStoreError (testing helper)."""
        self._failures += count

    def _check_available(self) -> None:
        if self._failures > 0:
            self._failures -= 1
            raise TransientStoreError("lease store unavailable", store="lease")

    def now_ms(self) -> int:
        return self.clock.now_ms()

    def acquire(self, job_name: str, holder_id: str, duration_ms: int, min_hold_ms: int) -> LeaseResult:
        self._check_available()
        now = self.clock.now_ms()
        row = self._rows.get(job_name)

        if row is not None and row.lease.is_valid_at(now):
            if row.lease.holder_id == holder_id and not row.released:
                row.lease = row.lease.extended(now + duration_ms)
                return LeaseResult(LeaseStatus.GRANTED, lease=row.lease)
            return LeaseResult(LeaseStatus.BUSY, holder_id=row.lease.holder_id)

        self._fences[job_name] = self._fences.get(job_name, 0) + 1
        lease = Lease(
            job_name=job_name,
            holder_id=holder_id,
            token=new_token(),
            acquired_at_ms=now,
            expires_at_ms=now + duration_ms,
            duration_ms=duration_ms,
            min_hold_ms=min_hold_ms,
            fence=self._fences[job_name],
        )
        self._rows[job_name] = _Row(lease)
        return LeaseResult(LeaseStatus.GRANTED, lease=lease)

    def renew(self, lease: Lease, duration_ms: int) -> Lease | None:
        self._check_available()
        now = self.clock.now_ms()
        row = self._rows.get(lease.job_name)
        if row is None or row.released or row.lease.token != lease.token or not row.lease.is_valid_at(now):
            return None
        row.lease = row.lease.extended(now + duration_ms)
        return row.lease

    def release(self, lease: Lease) -> bool:
        self._check_available()
        now = self.clock.now_ms()
        row = self._rows.get(lease.job_name)
        if row is None or row.released or row.lease.token != lease.token or not row.lease.is_valid_at(now):
            return False

        hold_until = row.lease.acquired_at_ms + row.lease.min_hold_ms
        if now < hold_until:
            row.lease = row.lease.extended(hold_until)
            row.released = True
        else:
            del self._rows[lease.job_name]
        return True

    def current(self, job_name: str) -> Lease | None:
        self._check_available()
        row = self._rows.get(job_name)
        if row is None or not row.lease.is_valid_at(self.clock.now_ms()):
            return None
        return row.lease
