"""
Batch orchestration for RecoCore.

Recurring jobs run in chunks under a lease with a checkpoint after every
chunk, so at most one instance works on a job and an interrupted pass
resumes where it stopped.
"""

from .checkpoint import Checkpoint, CheckpointStore, InMemoryCheckpointStore, SqliteCheckpointStore
from .jobs import (
    BatchJob,
    ChunkResult,
    ReconcileIndexJob,
    RecomputeRecommendationsJob,
    WarmCacheJob,
)
from .orchestrator import BatchOrchestrator, JobOutcome, JobStatus
from .schedule import CronTrigger, IntervalTrigger, Trigger, trigger_for
from .scheduler import JobScheduler

__all__ = [
    "BatchOrchestrator",
    "JobOutcome",
    "JobStatus",
    "JobScheduler",
    "BatchJob",
    "ChunkResult",
    "RecomputeRecommendationsJob",
    "ReconcileIndexJob",
    "WarmCacheJob",
    "Checkpoint",
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "SqliteCheckpointStore",
    "CronTrigger",
    "IntervalTrigger",
    "Trigger",
    "trigger_for",
]
