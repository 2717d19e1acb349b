"""Lease data types."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum


class LeaseStatus(Enum):
    """Outcome of a lease operation.

    GRANTED: caller holds a valid lease
    BUSY: another holder has a valid lease
    LOST: the caller's lease expired or was taken over
    UNAVAILABLE: the lease store could not be reached
    """

    GRANTED = "granted"
    BUSY = "busy"
    LOST = "lost"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class Lease:
    """An exclusive, time-bounded claim on a job name.

    All timestamps are milliseconds on the lease store's clock.

    Attributes:
        job_name: Name of the guarded job
        holder_id: Instance holding the lease
        token: Fencing token, unique per grant
        acquired_at_ms: When the grant was made
        expires_at_ms: When the lease stops being valid
        duration_ms: Duration used for renewals
        min_hold_ms: Minimum time the lease is held even if released early
        fence: Grant counter for the job name; every new grant gets a higher
            one, so writes stamped with it can be ordered across holders
    """

    job_name: str
    holder_id: str
    token: str
    acquired_at_ms: int
    expires_at_ms: int
    duration_ms: int
    min_hold_ms: int = 0
    fence: int = 0

    def is_valid_at(self, now_ms: int) -> bool:
        return now_ms < self.expires_at_ms

    def remaining_ms(self, now_ms: int) -> int:
        return max(self.expires_at_ms - now_ms, 0)

    def extended(self, expires_at_ms: int) -> Lease:
        return replace(self, expires_at_ms=expires_at_ms)


@dataclass(frozen=True)
class LeaseResult:
    """Result of acquire/renew.

    Attributes:
        status: Outcome
        lease: The lease when status is GRANTED
        holder_id: Current holder when status is BUSY
        error: Store error message when status is UNAVAILABLE
    """

    status: LeaseStatus
    lease: Lease | None = None
    holder_id: str | None = None
    error: str | None = None

    @property
    def granted(self) -> bool:
        return self.status == LeaseStatus.GRANTED
