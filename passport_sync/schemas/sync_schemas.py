"""Schemas for sync endpoints."""

from datetime import datetime

from pydantic import BaseModel, Field

from passport_sync.sync.orchestrator import SyncPhase
from passport_sync.sync.state_store import CycleStatus

MAX_RUNS_PAGE = 200


class CycleReportResponse(BaseModel):
    """Outcome of one sync cycle."""

    cursor_name: str
    status: CycleStatus
    started_at: datetime
    finished_at: datetime | None = None
    fetched: int = Field(default=0, description="Observations read from the source")
    synced: int = Field(default=0, description="New passport records written")
    already_synced: int = Field(
        default=0, description="Observations that were already in the passport"
    )
    skipped: int = Field(
        default=0, description="Malformed or unresolvable observations"
    )
    errors: int = Field(default=0, description="Observations that failed to write")
    cutoff_before: datetime | None = None
    cutoff_after: datetime | None = None
    error: str | None = Field(default=None, description="Why the cycle failed")


class SyncRunResponse(CycleReportResponse):
    """A persisted cycle report."""

    id: int


class SyncCountersResponse(BaseModel):
    """Cumulative counters since the process started."""

    cycles_run: int
    cycles_failed: int
    items_synced: int
    items_already_synced: int
    items_skipped: int
    errors: int


class SyncStatusResponse(BaseModel):
    """Current state of the sync loop."""

    phase: SyncPhase
    running: bool
    cursor_name: str
    cutoff: datetime | None = Field(
        default=None, description="Last successful sync timestamp"
    )
    interval_seconds: float
    counters: SyncCountersResponse
    last_report: CycleReportResponse | None = None
