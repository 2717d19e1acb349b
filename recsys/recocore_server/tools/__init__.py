"""
CLI tools for RecoCore administration.

This module provides command-line tools for:
- run-job: Run one leased, checkpointed cycle of a batch job

Invariants:
    - Tools take the same leases as the server, so they are safe to run
      next to live instances
"""

from .run_job import main as run_job_main

__all__ = ["run_job_main"]
