"""Tests for the persisted sync cursor and run history."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from passport_sync.models.passport import SyncFailureRow
from passport_sync.sync.state_store import (
    CycleReport,
    CycleStatus,
    SyncStateStore,
    as_utc,
)

T0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
CURSOR = "openmrs-observations"


@pytest.fixture
def state_store() -> SyncStateStore:
    return SyncStateStore()


class TestCutoff:
    """Tests for the last-successful-sync timestamp."""

    @pytest.mark.anyio
    async def test_missing_cutoff_is_none(
        self, state_store: SyncStateStore, session: AsyncSession
    ) -> None:
        assert await state_store.load_cutoff(session, CURSOR) is None

    @pytest.mark.anyio
    async def test_cutoff_only_moves_forward(
        self, state_store: SyncStateStore, session: AsyncSession
    ) -> None:
        """An older cutoff never replaces a newer one."""
        assert await state_store.advance_cutoff(session, CURSOR, T0) == T0
        later = T0 + timedelta(minutes=5)
        assert await state_store.advance_cutoff(session, CURSOR, later) == later
        assert await state_store.advance_cutoff(session, CURSOR, T0) == later

        assert await state_store.load_cutoff(session, CURSOR) == later

    @pytest.mark.anyio
    async def test_cutoffs_are_per_cursor(
        self, state_store: SyncStateStore, session: AsyncSession
    ) -> None:
        await state_store.advance_cutoff(session, CURSOR, T0)

        assert await state_store.load_cutoff(session, "other-feed") is None


class TestRunHistory:
    """Tests for cycle history."""

    @pytest.mark.anyio
    async def test_recent_runs_newest_first(
        self, state_store: SyncStateStore, session: AsyncSession
    ) -> None:
        for minute, status in ((0, CycleStatus.COMPLETED), (1, CycleStatus.FAILED)):
            started = T0 + timedelta(minutes=minute)
            report = CycleReport(
                cursor_name=CURSOR,
                started_at=started,
                status=status,
                finished_at=started + timedelta(seconds=2),
                fetched=3,
                synced=2,
                skipped=1,
                cutoff_before=T0,
                error="Source unavailable" if status is CycleStatus.FAILED else None,
            )
            await state_store.record_run(session, report)

        runs = await state_store.recent_runs(session, CURSOR)

        assert [r["status"] for r in runs] == ["failed", "completed"]
        assert runs[0]["error"] == "Source unavailable"
        assert runs[1]["synced"] == 2
        assert runs[1]["started_at"] == T0
        assert runs[1]["cutoff_after"] is None

    @pytest.mark.anyio
    async def test_limit(self, state_store: SyncStateStore, session: AsyncSession) -> None:
        for _ in range(3):
            await state_store.record_run(
                session, CycleReport(cursor_name=CURSOR, started_at=T0)
            )

        assert len(await state_store.recent_runs(session, CURSOR, limit=2)) == 2


class TestFailures:
    """Tests for observations kept for re-attempt."""

    @pytest.mark.anyio
    async def test_pending_failures_oldest_capture_first(
        self, state_store: SyncStateStore, session: AsyncSession
    ) -> None:
        await state_store.record_failure(
            session, CURSOR, "12", T0 + timedelta(minutes=2), "timeout"
        )
        await state_store.record_failure(session, CURSOR, "7", T0, "timeout")
        await state_store.record_failure(session, "other-feed", "9", T0, "timeout")

        assert await state_store.pending_failures(session, CURSOR) == ["7", "12"]
        assert await state_store.pending_failures(session, CURSOR, limit=1) == ["7"]

    @pytest.mark.anyio
    async def test_repeat_failure_counts_attempts(
        self, state_store: SyncStateStore, session: AsyncSession
    ) -> None:
        await state_store.record_failure(session, CURSOR, "7", T0, "timeout")
        await state_store.record_failure(session, CURSOR, "7", T0, "deadlock")

        row = await session.get(SyncFailureRow, (CURSOR, "7"))
        assert row is not None
        assert row.attempts == 2
        assert row.last_error == "deadlock"

    @pytest.mark.anyio
    async def test_clear_failure(
        self, state_store: SyncStateStore, session: AsyncSession
    ) -> None:
        await state_store.record_failure(session, CURSOR, "7", T0, "timeout")

        await state_store.clear_failure(session, CURSOR, "7")
        await state_store.clear_failure(session, CURSOR, "never-failed")

        assert await state_store.pending_failures(session, CURSOR) == []


class TestAsUtc:
    """Tests for timestamp normalization."""

    def test_naive_is_utc(self) -> None:
        assert as_utc(datetime(2026, 3, 2, 8, 0)) == T0

    def test_none(self) -> None:
        assert as_utc(None) is None

    def test_other_offset_converted(self) -> None:
        nairobi = timezone(timedelta(hours=3))
        assert as_utc(datetime(2026, 3, 2, 11, 0, tzinfo=nairobi)) == T0
