"""
Unit tests for the idempotency ledger.

Tests cover:
- FRESH exactly once per event id, including concurrent claims
- Claims still in flight reported as IN_PROGRESS, never as DUPLICATE
- Claim release and stale claim takeover
- Retention and purging
- SQLite ledger backend
"""

import asyncio
import tempfile
from pathlib import Path

import pytest

from recsys.recocore_server.clock import ManualClock
from recsys.recocore_server.errors import TransientStoreError
from recsys.recocore_server.ledger import (
    EntryState,
    IdempotencyLedger,
    InMemoryLedgerBackend,
    MarkResult,
    SqliteLedgerBackend,
)
from recsys.recocore_server.storage import SqliteDatabase


class TestIdempotencyLedger:
    """Tests for IdempotencyLedger over the in-memory backend."""

    @pytest.fixture
    def clock(self):
        return ManualClock()

    @pytest.fixture
    def backend(self, clock):
        return InMemoryLedgerBackend(clock)

    @pytest.fixture
    def ledger(self, backend):
        return IdempotencyLedger(backend, retention_s=3600, claim_timeout_s=60)

    @pytest.mark.asyncio
    async def test_first_mark_is_fresh(self, ledger):
        """An unseen event id is FRESH."""
        assert await ledger.try_mark("e1") == MarkResult.FRESH
        assert await ledger.state("e1") == EntryState.CLAIMED

    @pytest.mark.asyncio
    async def test_second_mark_is_duplicate(self, ledger):
        """An applied event id is DUPLICATE."""
        await ledger.try_mark("e1")
        await ledger.complete("e1")

        assert await ledger.try_mark("e1") == MarkResult.DUPLICATE
        assert await ledger.state("e1") == EntryState.APPLIED

    @pytest.mark.asyncio
    async def test_in_flight_claim_is_in_progress(self, ledger):
        """A claim that is still being applied blocks other claimers without looking applied."""
        await ledger.try_mark("e1")

        assert await ledger.try_mark("e1") == MarkResult.IN_PROGRESS
        assert await ledger.state("e1") == EntryState.CLAIMED

    @pytest.mark.asyncio
    async def test_concurrent_marks_one_fresh(self, ledger):
        """Of many concurrent callers exactly one sees FRESH."""
        results = await asyncio.gather(*(ledger.try_mark("e1") for _ in range(20)))

        assert results.count(MarkResult.FRESH) == 1
        assert results.count(MarkResult.IN_PROGRESS) == 19

    @pytest.mark.asyncio
    async def test_released_claim_is_fresh_again(self, ledger):
        """A failed apply releases its claim so redelivery retries it."""
        await ledger.try_mark("e1")

        assert await ledger.release("e1") is True
        assert await ledger.try_mark("e1") == MarkResult.FRESH

    @pytest.mark.asyncio
    async def test_release_does_not_drop_applied(self, ledger):
        """Release never removes an applied entry."""
        await ledger.try_mark("e1")
        await ledger.complete("e1")

        assert await ledger.release("e1") is False
        assert await ledger.try_mark("e1") == MarkResult.DUPLICATE

    @pytest.mark.asyncio
    async def test_stale_claim_can_be_taken_over(self, ledger, clock):
        """A claim older than the claim timeout belongs to a dead worker."""
        await ledger.try_mark("e1")
        clock.advance(60_000)

        assert await ledger.try_mark("e1") == MarkResult.FRESH

    @pytest.mark.asyncio
    async def test_retention_window(self, ledger, clock):
        """An applied id is remembered for the retention window only."""
        await ledger.try_mark("e1")
        await ledger.complete("e1")

        clock.advance(3_599_000)
        assert await ledger.try_mark("e1") == MarkResult.DUPLICATE

        clock.advance(1_000)
        assert await ledger.try_mark("e1") == MarkResult.FRESH

    @pytest.mark.asyncio
    async def test_purge_expired(self, ledger, clock):
        """Purge removes applied entries past retention only."""
        for event_id in ("e1", "e2"):
            await ledger.try_mark(event_id)
            await ledger.complete(event_id)
        await ledger.try_mark("e3")

        clock.advance(3_600_000)

        assert await ledger.purge_expired() == 2
        assert await ledger.state("e1") is None
        assert await ledger.state("e3") == EntryState.CLAIMED

    @pytest.mark.asyncio
    async def test_store_errors_propagate(self, ledger, backend):
        """Store failures surface as TransientStoreError for the caller to retry."""
        backend.fail_next(1)

        with pytest.raises(TransientStoreError):
            await ledger.try_mark("e1")
        assert await ledger.try_mark("e1") == MarkResult.FRESH


class TestSqliteLedgerBackend:
    """Tests for the SQLite ledger."""

    @pytest.fixture
    def db(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield SqliteDatabase(Path(tmpdir) / "recocore.db", wal_mode=False)

    @pytest.fixture
    def ledger(self, db):
        return IdempotencyLedger(SqliteLedgerBackend(db), retention_s=3600, claim_timeout_s=60)

    @pytest.mark.asyncio
    async def test_mark_complete_duplicate(self, ledger):
        """FRESH, then DUPLICATE once applied."""
        assert await ledger.try_mark("e1") == MarkResult.FRESH
        await ledger.complete("e1")

        assert await ledger.try_mark("e1") == MarkResult.DUPLICATE
        assert await ledger.state("e1") == EntryState.APPLIED

    @pytest.mark.asyncio
    async def test_shared_across_instances(self, db):
        """Two ledgers on one database agree on a single FRESH."""
        one = IdempotencyLedger(SqliteLedgerBackend(db))
        two = IdempotencyLedger(SqliteLedgerBackend(db))

        results = [await one.try_mark("e1"), await two.try_mark("e1")]
        assert results == [MarkResult.FRESH, MarkResult.IN_PROGRESS]

        await one.complete("e1")
        assert await two.try_mark("e1") == MarkResult.DUPLICATE

    @pytest.mark.asyncio
    async def test_concurrent_marks_from_worker_threads(self, db):
        """SQLite calls run off the event loop still give exactly one FRESH."""
        ledgers = [IdempotencyLedger(SqliteLedgerBackend(db)) for _ in range(5)]

        results = await asyncio.gather(*(ledger.try_mark("e1") for ledger in ledgers))

        assert results.count(MarkResult.FRESH) == 1
        assert results.count(MarkResult.IN_PROGRESS) == 4

    @pytest.mark.asyncio
    async def test_release_and_reclaim(self, ledger):
        """Released claims are FRESH again."""
        await ledger.try_mark("e1")

        assert await ledger.release("e1") is True
        assert await ledger.try_mark("e1") == MarkResult.FRESH

    @pytest.mark.asyncio
    async def test_zero_retention_is_purged(self, db):
        """Entries past retention are purged and FRESH again."""
        ledger = IdempotencyLedger(SqliteLedgerBackend(db), retention_s=0)
        await ledger.try_mark("e1")
        await ledger.complete("e1")
        await asyncio.sleep(0.01)

        assert await ledger.purge_expired() == 1
        assert await ledger.try_mark("e1") == MarkResult.FRESH
