"""
Idempotency ledger.

Records which event ids have been applied so that redelivered events are
skipped. The check-and-set in try_mark() is atomic in the backend: of any
number of concurrent callers with the same event id, exactly one sees FRESH.

Invariants:
    - An event id is FRESH at most once per retention window
    - A FRESH caller must either complete() or release() the claim
    - A released claim is FRESH again on redelivery
    - IN_PROGRESS is never treated as applied; the caller must not ack the event
    - Retention must cover the stream's maximum redelivery delay

How to change safely:
    - Never shorten retention below the redelivery window (see config)
    - Keep the claim timeout above the slowest expected apply
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from ..retry import call_store, is_blocking
from .backends import EntryState, LedgerBackend, MarkResult

logger = logging.getLogger(__name__)


class IdempotencyLedger:
    """Async facade over a ledger backend.

    Store errors propagate as TransientStoreError; the ingestion consumer
    owns the retry.

    Example:
        >>> ledger = IdempotencyLedger(SqliteLedgerBackend(db), retention_s=7 * 86400)
        >>> if await ledger.try_mark("e1") == MarkResult.FRESH:
        ...     await apply(event)
        ...     await ledger.complete("e1")
    """

    def __init__(
        self,
        backend: LedgerBackend,
        retention_s: float = 7 * 24 * 3600,
        claim_timeout_s: float = 300,
        call_timeout_s: float = 10.0,
    ) -> None:
        self.backend = backend
        self.retention_ms = int(retention_s * 1000)
        self.claim_timeout_ms = int(claim_timeout_s * 1000)
        self.call_timeout_s = call_timeout_s

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await call_store(
            fn, *args, timeout_s=self.call_timeout_s, store="ledger", blocking=is_blocking(self.backend)
        )

    async def try_mark(self, event_id: str) -> MarkResult:
        """Atomically claim an event id.

        Returns:
            FRESH if the caller now owns the event, DUPLICATE if it was
            already applied, IN_PROGRESS if another worker holds a live claim
        """
        result = await self._call(self.backend.try_mark, event_id, self.claim_timeout_ms)
        if result == MarkResult.DUPLICATE:
            logger.debug("Duplicate event", extra={"event_id": event_id})
        elif result == MarkResult.IN_PROGRESS:
            logger.info("Event claimed by another worker", extra={"event_id": event_id})
        return result

    async def complete(self, event_id: str) -> None:
        """Confirm the claimed event was applied."""
        await self._call(self.backend.complete, event_id, self.retention_ms)

    async def release(self, event_id: str) -> bool:
        """Drop a claim whose application failed."""
        released = await self._call(self.backend.release, event_id)
        if released:
            logger.info("Released ledger claim", extra={"event_id": event_id})
        return released

    async def purge_expired(self) -> int:
        """Delete entries past retention. Returns the number removed."""
        removed = await self._call(self.backend.purge_expired)
        if removed:
            logger.info("Purged expired ledger entries", extra={"removed": removed})
        return removed

    async def state(self, event_id: str) -> EntryState | None:
        return await self._call(self.backend.state, event_id)
