"""
Lock coordinator for recurring jobs.

Grants exclusive, time-bounded leases keyed by job name so that at most one
instance of the fleet runs a given job at a time.

Invariants:
    - Zero or one valid lease per job name at any store instant
    - BUSY, LOST and UNAVAILABLE are results, never exceptions
    - Expiry is decided by the backend's clock, never the caller's
    - A holder that gets LOST must stop its work without releasing

How to change safely:
    - Keep the acquire retry budget small; a job that cannot acquire skips
      its cycle and tries again at the next trigger
    - Never extend a lease without checking its token
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from ..errors import TransientStoreError
from ..retry import RetryPolicy, call_store, is_blocking
from .backends import LeaseBackend
from .models import Lease, LeaseResult, LeaseStatus

logger = logging.getLogger(__name__)


class LeaseCoordinator:
    """Acquire, renew and release job leases.

    Example:
        >>> coordinator = LeaseCoordinator(SqliteLeaseBackend(db))
        >>> result = await coordinator.acquire("recompute-recommendations", "host-1", 1800)
        >>> if result.granted:
        ...     ...
        ...     await coordinator.release(result.lease)
    """

    def __init__(
        self,
        backend: LeaseBackend,
        retry_policy: RetryPolicy | None = None,
        call_timeout_s: float = 10.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the coordinator.

        Args:
            backend: Lease store
            retry_policy: Backoff for UNAVAILABLE acquisitions
            call_timeout_s: Deadline for one store call
            sleep: Sleep function (injectable for tests)
        """
        self.backend = backend
        self.retry_policy = retry_policy or RetryPolicy()
        self.call_timeout_s = call_timeout_s
        self._sleep = sleep

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await call_store(
            fn, *args, timeout_s=self.call_timeout_s, store="lease", blocking=is_blocking(self.backend)
        )

    async def acquire(
        self,
        job_name: str,
        holder_id: str,
        lease_duration_s: float,
        min_hold_s: float = 0,
    ) -> LeaseResult:
        """Try to take the lease for job_name.

        Retries with backoff while the store is unavailable, then gives up.

        Args:
            job_name: Job to guard
            holder_id: Identity of the calling instance
            lease_duration_s: How long the lease lasts without renewal
            min_hold_s: Minimum hold time even when released early

        Returns:
            LeaseResult with GRANTED, BUSY or UNAVAILABLE
        """
        duration_ms = int(lease_duration_s * 1000)
        min_hold_ms = int(min_hold_s * 1000)

        attempt = 0
        while True:
            attempt += 1
            try:
                result = await self._call(self.backend.acquire, job_name, holder_id, duration_ms, min_hold_ms)
                break
            except TransientStoreError as e:
                if attempt >= self.retry_policy.max_attempts:
                    logger.warning(
                        f"Lease store unavailable, giving up on {job_name}",
                        extra={"job_name": job_name, "holder_id": holder_id, "attempts": attempt},
                    )
                    return LeaseResult(LeaseStatus.UNAVAILABLE, error=str(e))
                await self._sleep(self.retry_policy.delay_for(attempt))

        if result.granted:
            logger.info(
                "Lease granted",
                extra={
                    "job_name": job_name,
                    "holder_id": holder_id,
                    "token": result.lease.token,
                    "fence": result.lease.fence,
                    "expires_at_ms": result.lease.expires_at_ms,
                },
            )
        else:
            logger.debug(
                "Lease busy",
                extra={"job_name": job_name, "holder_id": holder_id, "current_holder": result.holder_id},
            )
        return result

    async def renew(self, lease: Lease, lease_duration_s: float | None = None) -> LeaseResult:
        """Extend a held lease.

        Returns:
            LeaseResult with GRANTED (new expiry), LOST or UNAVAILABLE
        """
        duration_ms = int(lease_duration_s * 1000) if lease_duration_s is not None else lease.duration_ms
        try:
            renewed = await self._call(self.backend.renew, lease, duration_ms)
        except TransientStoreError as e:
            logger.warning(f"Lease renew failed: {e}", extra={"job_name": lease.job_name})
            return LeaseResult(LeaseStatus.UNAVAILABLE, error=str(e))

        if renewed is None:
            logger.warning(
                "Lease lost",
                extra={"job_name": lease.job_name, "holder_id": lease.holder_id, "token": lease.token},
            )
            return LeaseResult(LeaseStatus.LOST)
        return LeaseResult(LeaseStatus.GRANTED, lease=renewed)

    async def release(self, lease: Lease) -> bool:
        """Give a lease back.

        Returns:
            True if the lease was held and is now released (or parked for its
            min-hold window), False if it had already been lost
        """
        try:
            released = await self._call(self.backend.release, lease)
        except TransientStoreError as e:
            # The lease still expires on its own
            logger.warning(f"Lease release failed: {e}", extra={"job_name": lease.job_name})
            return False

        logger.info(
            "Lease released" if released else "Lease already gone at release",
            extra={"job_name": lease.job_name, "holder_id": lease.holder_id},
        )
        return released

    async def check(self, lease: Lease) -> LeaseResult:
        """Validity check against the store.

        Returns:
            GRANTED with the stored lease (its remaining time is authoritative),
            LOST if expired or taken over, UNAVAILABLE on store error
        """
        try:
            current = await self._call(self.backend.current, lease.job_name)
        except TransientStoreError as e:
            return LeaseResult(LeaseStatus.UNAVAILABLE, error=str(e))
        if current is None or current.token != lease.token:
            return LeaseResult(LeaseStatus.LOST)
        return LeaseResult(LeaseStatus.GRANTED, lease=current)

    async def remaining_ms(self, lease: Lease) -> int:
        """Milliseconds left on a lease, measured on the store clock."""
        now = await self._call(self.backend.now_ms)
        return lease.remaining_ms(now)
