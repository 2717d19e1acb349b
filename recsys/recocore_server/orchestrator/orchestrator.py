"""
Batch orchestrator.

Runs one cycle of a recurring job under a lease:

    acquire lease -> load checkpoint -> process chunks -> release

Before each chunk the lease is checked against the store and renewed when
the remaining time would not cover another chunk plus the renew margin.
The checkpoint is persisted after every chunk. A lost lease stops the cycle
at once without releasing, and the next holder resumes from the checkpoint.

Invariants:
    - A chunk is only started while the lease is valid
    - The checkpoint is only written while the lease is valid, and the store
      refuses a write stamped with an older lease fence than the stored one
    - A LOST lease is never released
    - A completed pass resets the checkpoint and releases the lease
    - One instance never runs the same job twice concurrently

How to change safely:
    - Keep chunks small enough to finish well within one lease duration
    - New jobs implement BatchJob and are registered with a schedule
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..config import JobSchedule
from ..errors import RecoCoreError, TransientStoreError
from ..lease.coordinator import LeaseCoordinator
from ..lease.models import Lease, LeaseStatus
from ..retry import call_store, is_blocking
from .checkpoint import Checkpoint, CheckpointStore
from .jobs import BatchJob

logger = logging.getLogger(__name__)


class JobStatus(Enum):
    """Outcome of one job cycle."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"
    ABORTED = "aborted"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]


_EXIT_CODES = {
    JobStatus.SUCCESS: 0,
    JobStatus.FAILED: 1,
    JobStatus.PARTIAL: 2,
    JobStatus.SKIPPED: 3,
    JobStatus.ABORTED: 4,
}


@dataclass(frozen=True)
class JobOutcome:
    """Result of one job cycle.

    Attributes:
        job_name: Job that ran
        status: Outcome
        processed: Entities handled in the pass (including earlier cycles)
        failed: Entities that failed in the pass
        chunks: Chunks committed in this cycle
        cursor: Checkpoint cursor when the cycle ended
        message: Human readable detail
    """

    job_name: str
    status: JobStatus
    processed: int = 0
    failed: int = 0
    chunks: int = 0
    cursor: str | None = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_name": self.job_name,
            "status": self.status.value,
            "processed": self.processed,
            "failed": self.failed,
            "chunks": self.chunks,
            "cursor": self.cursor,
            "message": self.message,
        }


@dataclass
class _Registration:
    job: BatchJob
    schedule: JobSchedule


class BatchOrchestrator:
    """Leased, checkpointed, chunked job runner.

    Example:
        >>> orchestrator = BatchOrchestrator(coordinator, checkpoints, holder_id="host-1")
        >>> orchestrator.register(RecomputeRecommendationsJob(graph, service), JobSchedule(cron="0 * * * *"))
        >>> outcome = await orchestrator.run_job("recompute-recommendations")
    """

    def __init__(
        self,
        coordinator: LeaseCoordinator,
        checkpoints: CheckpointStore,
        holder_id: str,
        chunk_size: int = 200,
        renew_margin_s: float = 30.0,
        call_timeout_s: float = 10.0,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            coordinator: Lease coordinator
            checkpoints: Checkpoint store
            holder_id: Identity of this instance
            chunk_size: Entities per chunk
            renew_margin_s: Renew when less than chunk time + margin remains
            call_timeout_s: Deadline for one checkpoint store call
            monotonic: Monotonic clock for chunk timing (injectable for tests)
        """
        self.coordinator = coordinator
        self.checkpoints = checkpoints
        self.holder_id = holder_id
        self.chunk_size = chunk_size
        self.renew_margin_ms = int(renew_margin_s * 1000)
        self.call_timeout_s = call_timeout_s
        self._monotonic = monotonic
        self._jobs: dict[str, _Registration] = {}
        self._running: set[str] = set()

    def register(self, job: BatchJob, schedule: JobSchedule | None = None) -> None:
        self._jobs[job.name] = _Registration(job, schedule or JobSchedule())

    @property
    def job_names(self) -> list[str]:
        return sorted(self._jobs)

    def schedule_for(self, job_name: str) -> JobSchedule:
        return self._jobs[job_name].schedule

    def is_running(self, job_name: str) -> bool:
        return job_name in self._running

    async def _store(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await call_store(
            fn, *args, timeout_s=self.call_timeout_s, store="checkpoint", blocking=is_blocking(self.checkpoints)
        )

    async def run_job(self, job_name: str) -> JobOutcome:
        """Run one cycle of a registered job.

        Raises:
            KeyError: If the job is not registered
        """
        registration = self._jobs[job_name]
        if job_name in self._running:
            logger.info("Job already running on this instance", extra={"job_name": job_name})
            return JobOutcome(job_name, JobStatus.SKIPPED, message="already running")

        self._running.add(job_name)
        try:
            return await self._run_cycle(registration)
        finally:
            self._running.discard(job_name)

    async def _run_cycle(self, registration: _Registration) -> JobOutcome:
        job = registration.job
        schedule = registration.schedule

        acquired = await self.coordinator.acquire(
            job.name, self.holder_id, schedule.lease_seconds, schedule.min_hold_seconds
        )
        if not acquired.granted:
            logger.info(
                "Skipping job cycle",
                extra={"job_name": job.name, "lease_status": acquired.status.value, "holder": acquired.holder_id},
            )
            return JobOutcome(job.name, JobStatus.SKIPPED, message=f"lease {acquired.status.value}")

        lease = acquired.lease
        try:
            checkpoint = await self._store(self.checkpoints.load, job.name) or Checkpoint(job.name)
        except RecoCoreError as e:
            await self.coordinator.release(lease)
            return JobOutcome(job.name, JobStatus.FAILED, message=f"checkpoint load failed: {e}")

        if checkpoint.cursor is not None:
            logger.info(
                "Resuming job from checkpoint",
                extra={"job_name": job.name, "cursor": checkpoint.cursor, "chunks": checkpoint.chunks},
            )

        chunks = 0
        chunk_ms = 0.0
        while True:
            lease, status = await self._ensure_lease(lease, chunk_ms)
            if status != LeaseStatus.GRANTED:
                return self._aborted(job.name, checkpoint, chunks, status)

            started = self._monotonic()
            try:
                result = await job.process_chunk(checkpoint.cursor, self.chunk_size)
            except Exception as e:
                logger.exception(
                    "Job chunk failed",
                    extra={"job_name": job.name, "cursor": checkpoint.cursor},
                )
                await self.coordinator.release(lease)
                return JobOutcome(
                    job.name,
                    JobStatus.FAILED,
                    checkpoint.processed,
                    checkpoint.failed,
                    chunks,
                    checkpoint.cursor,
                    message=str(e),
                )
            chunk_ms = max(chunk_ms, (self._monotonic() - started) * 1000)

            check = await self.coordinator.check(lease)
            if check.status != LeaseStatus.GRANTED:
                return self._aborted(job.name, checkpoint, chunks, check.status)

            checkpoint = checkpoint.advance(
                result.cursor, result.processed, result.failed, lease.token, fence=lease.fence
            )
            chunks += 1
            if result.done:
                break
            try:
                saved = await self._store(self.checkpoints.save, checkpoint)
            except RecoCoreError as e:
                await self.coordinator.release(lease)
                return JobOutcome(
                    job.name,
                    JobStatus.FAILED,
                    checkpoint.processed,
                    checkpoint.failed,
                    chunks,
                    checkpoint.cursor,
                    message=f"checkpoint save failed: {e}",
                )
            if not saved:
                logger.warning(
                    "Checkpoint fenced off by a newer lease",
                    extra={"job_name": job.name, "fence": lease.fence, "cursor": checkpoint.cursor},
                )
                return self._aborted(job.name, checkpoint, chunks, LeaseStatus.LOST)
            # Yield between chunks
            await asyncio.sleep(0)

        try:
            await self._store(self.checkpoints.reset, job.name, lease.fence)
        except RecoCoreError as e:
            # The next pass repeats the chunks after the last saved checkpoint
            logger.warning(f"Checkpoint reset failed: {e}", extra={"job_name": job.name})
        await self.coordinator.release(lease)

        status = JobStatus.PARTIAL if checkpoint.failed else JobStatus.SUCCESS
        logger.info(
            "Job pass completed",
            extra={
                "job_name": job.name,
                "status": status.value,
                "processed": checkpoint.processed,
                "failed": checkpoint.failed,
                "chunks": checkpoint.chunks,
            },
        )
        return JobOutcome(
            job.name, status, checkpoint.processed, checkpoint.failed, chunks, None, message="pass completed"
        )

    async def _ensure_lease(self, lease: Lease, chunk_ms: float) -> tuple[Lease, LeaseStatus]:
        """Validate the lease and renew it if another chunk might outlast it."""
        check = await self.coordinator.check(lease)
        if check.status != LeaseStatus.GRANTED:
            return lease, check.status

        try:
            remaining = await self.coordinator.remaining_ms(check.lease)
        except TransientStoreError:
            return lease, LeaseStatus.UNAVAILABLE
        if remaining > chunk_ms + self.renew_margin_ms:
            return check.lease, LeaseStatus.GRANTED

        renewed = await self.coordinator.renew(check.lease)
        if not renewed.granted:
            return lease, renewed.status
        logger.debug(
            "Renewed job lease",
            extra={"job_name": lease.job_name, "expires_at_ms": renewed.lease.expires_at_ms},
        )
        return renewed.lease, LeaseStatus.GRANTED

    def _aborted(self, job_name: str, checkpoint: Checkpoint, chunks: int, status: LeaseStatus) -> JobOutcome:
        logger.warning(
            "Aborting job cycle, lease not held",
            extra={"job_name": job_name, "lease_status": status.value, "cursor": checkpoint.cursor},
        )
        return JobOutcome(
            job_name,
            JobStatus.ABORTED,
            checkpoint.processed,
            checkpoint.failed,
            chunks,
            checkpoint.cursor,
            message=f"lease {status.value}",
        )
