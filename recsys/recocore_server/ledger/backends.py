"""
Idempotency ledger backends.

An entry moves through two states:
    claimed: try_mark() won the event id; the mutation is in flight
    applied: complete() confirmed the mutation; kept until retention ends

A live claimed entry means another worker is applying the event right now;
try_mark() reports it as IN_PROGRESS so the caller neither reapplies nor
acknowledges it. A claimed entry older than the claim timeout belongs to a
worker that died mid-apply and may be claimed again. An applied entry past its retention is
forgotten; a redelivery after that point is applied again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from ..clock import Clock, SystemClock
from ..errors import TransientStoreError

logger = logging.getLogger(__name__)


class MarkResult(Enum):
    """Outcome of try_mark."""

    FRESH = "fresh"
    DUPLICATE = "duplicate"
    IN_PROGRESS = "in_progress"


class EntryState(str, Enum):
    CLAIMED = "claimed"
    APPLIED = "applied"


class LedgerBackend(Protocol):
    """Atomic ledger operations. All times are on the backend's clock."""

    def try_mark(self, event_id: str, claim_timeout_ms: int) -> MarkResult: ...

    def complete(self, event_id: str, retention_ms: int) -> None: ...

    def release(self, event_id: str) -> bool: ...

    def purge_expired(self) -> int: ...

    def state(self, event_id: str) -> EntryState | None: ...


@dataclass
class _Entry:
    state: EntryState
    claimed_at_ms: int
    expires_at_ms: int | None = None


class InMemoryLedgerBackend:
    """Process-local ledger for tests and single-instance development."""

    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()
        self._entries: dict[str, _Entry] = {}
        self._failures = 0

    def fail_next(self, count: int = 1) -> None:
        """Make the next `count` calls raise TransientStoreError (testing helper)."""
        self._failures += count

    def _check_available(self) -> None:
        if self._failures > 0:
            self._failures -= 1
            raise TransientStoreError("ledger store unavailable", store="ledger")

    def _is_live(self, entry: _Entry, now: int, claim_timeout_ms: int) -> bool:
        if entry.state == EntryState.APPLIED:
            return entry.expires_at_ms is None or now < entry.expires_at_ms
        return now < entry.claimed_at_ms + claim_timeout_ms

    def try_mark(self, event_id: str, claim_timeout_ms: int) -> MarkResult:
        self._check_available()
        now = self.clock.now_ms()
        entry = self._entries.get(event_id)
        if entry is not None and self._is_live(entry, now, claim_timeout_ms):
            if entry.state == EntryState.CLAIMED:
                return MarkResult.IN_PROGRESS
            return MarkResult.DUPLICATE
        self._entries[event_id] = _Entry(EntryState.CLAIMED, claimed_at_ms=now)
        return MarkResult.FRESH

    def complete(self, event_id: str, retention_ms: int) -> None:
        self._check_available()
        now = self.clock.now_ms()
        entry = self._entries.get(event_id)
        claimed_at = entry.claimed_at_ms if entry else now
        self._entries[event_id] = _Entry(
            EntryState.APPLIED, claimed_at_ms=claimed_at, expires_at_ms=now + retention_ms
        )

    def release(self, event_id: str) -> bool:
        self._check_available()
        entry = self._entries.get(event_id)
        if entry is None or entry.state != EntryState.CLAIMED:
            return False
        del self._entries[event_id]
        return True

    def purge_expired(self) -> int:
        self._check_available()
        now = self.clock.now_ms()
        expired = [
            event_id
            for event_id, entry in self._entries.items()
            if entry.state == EntryState.APPLIED and entry.expires_at_ms is not None and entry.expires_at_ms <= now
        ]
        for event_id in expired:
            del self._entries[event_id]
        return len(expired)

    def state(self, event_id: str) -> EntryState | None:
        entry = self._entries.get(event_id)
        return entry.state if entry else None
