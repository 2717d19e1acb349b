"""
Job scheduler.

Fires registered jobs on their triggers. Every instance runs a scheduler;
the job lease decides which instance actually does the work, so the
scheduler itself keeps no shared state.

Each due job runs as its own task so a long pass never delays the triggers
of other jobs. A job whose previous cycle is still running on this instance
is skipped by the orchestrator.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

from ..config import JobSchedule
from .orchestrator import BatchOrchestrator, JobOutcome
from .schedule import Trigger, trigger_for

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobScheduler:
    """Trigger loop for the batch orchestrator."""

    def __init__(
        self,
        orchestrator: BatchOrchestrator,
        schedules: dict[str, JobSchedule] | None = None,
        now_fn: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        poll_interval_s: float = 1.0,
    ) -> None:
        """Initialize the scheduler.

        Args:
            orchestrator: Orchestrator whose registered jobs are triggered
            schedules: Schedules by job name (default: the registered ones)
            now_fn: Wall clock (UTC)
            sleep: Sleep function (injectable for tests)
            poll_interval_s: Upper bound on one sleep between checks
        """
        self.orchestrator = orchestrator
        self._now = now_fn
        self._sleep = sleep
        self.poll_interval_s = poll_interval_s

        if schedules is None:
            schedules = {name: orchestrator.schedule_for(name) for name in orchestrator.job_names}
        self._triggers: dict[str, Trigger] = {
            name: trigger_for(name, schedule) for name, schedule in schedules.items() if schedule.enabled
        }
        self._next_fire: dict[str, datetime] = {}
        self._tasks: set[asyncio.Task] = set()
        self._running = False
        self.outcomes: dict[str, JobOutcome] = {}

    @property
    def next_fire(self) -> dict[str, datetime]:
        return dict(self._next_fire)

    def _schedule_all(self, now: datetime) -> None:
        for name, trigger in self._triggers.items():
            self._next_fire.setdefault(name, trigger.next_fire(now))

    def tick(self, now: datetime) -> list[str]:
        """Start every job that is due at `now`.

        Returns:
            Names of the jobs started
        """
        self._schedule_all(now)
        started = []
        for name, fire_at in sorted(self._next_fire.items()):
            if fire_at > now:
                continue
            self._next_fire[name] = self._triggers[name].next_fire(now)
            task = asyncio.create_task(self._run(name), name=f"job-{name}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started.append(name)
        return started

    async def _run(self, job_name: str) -> None:
        try:
            outcome = await self.orchestrator.run_job(job_name)
        except Exception as e:
            logger.error(f"Scheduled job crashed: {e}", exc_info=True, extra={"job_name": job_name})
            return
        self.outcomes[job_name] = outcome
        logger.info(
            "Scheduled job cycle finished",
            extra={"job_name": job_name, "status": outcome.status.value, "chunks": outcome.chunks},
        )

    async def run(self) -> None:
        """Run the trigger loop until stopped."""
        if self._running:
            logger.warning("Scheduler already running")
            return
        if not self._triggers:
            logger.info("No enabled jobs, scheduler idle")
            return

        self._running = True
        now = self._now()
        self._schedule_all(now)
        logger.info(
            "Starting job scheduler",
            extra={"jobs": {name: fire.isoformat() for name, fire in self._next_fire.items()}},
        )

        try:
            while self._running:
                now = self._now()
                self.tick(now)
                wait_s = min((fire - now).total_seconds() for fire in self._next_fire.values())
                await self._sleep(max(0.0, min(wait_s, self.poll_interval_s)))
        except asyncio.CancelledError:
            logger.info("Scheduler cancelled")
        finally:
            self._running = False

    async def stop(self, wait: bool = True) -> None:
        """Stop triggering; optionally wait for running cycles to end."""
        self._running = False
        logger.info("Stopping job scheduler")
        if wait and self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "active_jobs": len(self._tasks),
            "next_fire": {name: fire.isoformat() for name, fire in self._next_fire.items()},
            "last_outcomes": {name: outcome.status.value for name, outcome in self.outcomes.items()},
        }
