"""
Persisted orchestrator state: the sync cutoff, observations that failed to
write, and the cycle history.

The cutoff lives in the passport database so a restarted process resumes
where the last completed cycle left off. The cutoff moves past items that
failed to write; those are kept in sync_failures until a later cycle
writes them.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from passport_sync.models.passport import SyncCursorRow, SyncFailureRow, SyncRunRow

logger = logging.getLogger(__name__)


class CycleStatus(str, Enum):
    """How a sync cycle ended."""

    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"  # Stopped by shutdown before the end


@dataclass
class CycleReport:
    """Counts and outcome of one sync cycle."""

    cursor_name: str
    started_at: datetime
    status: CycleStatus = CycleStatus.FAILED
    finished_at: datetime | None = None
    fetched: int = 0
    synced: int = 0
    already_synced: int = 0
    skipped: int = 0
    errors: int = 0
    cutoff_before: datetime | None = None
    cutoff_after: datetime | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


def as_utc(value: datetime | None) -> datetime | None:
    """Some backends (SQLite) drop tzinfo; stored values are always UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SyncStateStore:
    """Reads and writes the sync cursor and run history."""

    async def load_cutoff(self, session: AsyncSession, name: str) -> datetime | None:
        """Last successful sync timestamp for the named feed, if any."""
        row = await session.get(SyncCursorRow, name)
        return as_utc(row.last_synced_at) if row is not None else None

    async def advance_cutoff(
        self, session: AsyncSession, name: str, cutoff: datetime
    ) -> datetime:
        """
        Move the cutoff forward and commit. A cutoff never moves backwards.

        Returns:
            The stored cutoff after the update
        """
        row = await session.get(SyncCursorRow, name)
        if row is None:
            session.add(SyncCursorRow(name=name, last_synced_at=cutoff))
            try:
                await session.commit()
                return cutoff
            except IntegrityError:
                # Another instance created the cursor first
                await session.rollback()
                row = await session.get(SyncCursorRow, name)
                assert row is not None

        current = as_utc(row.last_synced_at)
        assert current is not None
        if cutoff > current:
            row.last_synced_at = cutoff
            row.updated_at = datetime.now(timezone.utc)
            await session.commit()
            return cutoff
        return current

    async def record_run(self, session: AsyncSession, report: CycleReport) -> None:
        """Append a cycle report to the run history and commit."""
        session.add(
            SyncRunRow(
                cursor_name=report.cursor_name,
                status=report.status.value,
                started_at=report.started_at,
                finished_at=report.finished_at or report.started_at,
                fetched=report.fetched,
                synced=report.synced,
                already_synced=report.already_synced,
                skipped=report.skipped,
                errors=report.errors,
                cutoff_before=report.cutoff_before,
                cutoff_after=report.cutoff_after,
                error=report.error,
            )
        )
        await session.commit()

    async def recent_runs(
        self, session: AsyncSession, name: str, limit: int = 20
    ) -> list[dict[str, Any]]:
        """Most recent cycle reports first."""
        rows = await session.scalars(
            select(SyncRunRow)
            .where(SyncRunRow.cursor_name == name)
            .order_by(SyncRunRow.id.desc())
            .limit(limit)
        )
        runs = []
        for row in rows:
            data = row.to_dict()
            for key in ("started_at", "finished_at", "cutoff_before", "cutoff_after"):
                data[key] = as_utc(data[key])
            runs.append(data)
        return runs

    async def record_failure(
        self,
        session: AsyncSession,
        name: str,
        observation_id: str,
        captured_at: datetime,
        error: str,
    ) -> None:
        """Remember an observation that could not be written, and commit."""
        now = datetime.now(timezone.utc)
        row = await session.get(SyncFailureRow, (name, observation_id))
        if row is None:
            session.add(
                SyncFailureRow(
                    cursor_name=name,
                    source_observation_id=observation_id,
                    captured_at=captured_at,
                    last_error=error,
                    first_failed_at=now,
                    last_failed_at=now,
                )
            )
        else:
            row.attempts += 1
            row.last_error = error
            row.last_failed_at = now
        try:
            await session.commit()
        except IntegrityError:
            # Another instance recorded the same failure first
            await session.rollback()

    async def pending_failures(
        self, session: AsyncSession, name: str, limit: int = 100
    ) -> list[str]:
        """Observation ids still waiting to be written, oldest capture first."""
        ids = await session.scalars(
            select(SyncFailureRow.source_observation_id)
            .where(SyncFailureRow.cursor_name == name)
            .order_by(SyncFailureRow.captured_at, SyncFailureRow.source_observation_id)
            .limit(limit)
        )
        return list(ids)

    async def clear_failure(
        self, session: AsyncSession, name: str, observation_id: str
    ) -> None:
        """Forget a failure once the observation has been handled, and commit."""
        row = await session.get(SyncFailureRow, (name, observation_id))
        if row is not None:
            await session.delete(row)
            await session.commit()
