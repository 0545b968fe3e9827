"""Operational endpoints for the sync loop."""

import logging

from fastapi import APIRouter, Query

from passport_sync.core.auth import Permissions, require_permission
from passport_sync.routers.deps import PassportSessionDep, SyncOrchestratorDep
from passport_sync.schemas.sync_schemas import (
    MAX_RUNS_PAGE,
    CycleReportResponse,
    SyncRunResponse,
    SyncStatusResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["Sync"])


@router.post(
    "/run",
    response_model=CycleReportResponse,
    dependencies=[require_permission(Permissions.SYNC_WRITE)],
)
async def run_sync_now(orchestrator: SyncOrchestratorDep) -> CycleReportResponse:
    """
    Run one sync cycle now and return its report.

    Waits for an in-flight cycle to finish first; cycles never overlap.
    A failed cycle is still a 200 response: the failure is in the report.
    """
    logger.info("Manual sync triggered")
    report = await orchestrator.run_cycle()
    return CycleReportResponse(**report.to_dict())


@router.get(
    "/status",
    response_model=SyncStatusResponse,
    dependencies=[require_permission(Permissions.SYNC_READ)],
)
async def get_sync_status(orchestrator: SyncOrchestratorDep) -> SyncStatusResponse:
    """Current phase, cutoff and counters."""
    return SyncStatusResponse(**orchestrator.status())


@router.get(
    "/runs",
    response_model=list[SyncRunResponse],
    dependencies=[require_permission(Permissions.SYNC_READ)],
)
async def list_sync_runs(
    orchestrator: SyncOrchestratorDep,
    session: PassportSessionDep,
    limit: int = Query(default=20, ge=1, le=MAX_RUNS_PAGE),
) -> list[SyncRunResponse]:
    """Most recent cycle reports, newest first."""
    runs = await orchestrator.state_store.recent_runs(
        session, orchestrator.cursor_name, limit=limit
    )
    return [SyncRunResponse(**run) for run in runs]


@router.post(
    "/start",
    response_model=SyncStatusResponse,
    dependencies=[require_permission(Permissions.SYNC_WRITE)],
)
async def start_sync_loop(orchestrator: SyncOrchestratorDep) -> SyncStatusResponse:
    """Start the polling loop if it is not running."""
    if not orchestrator.running:
        logger.info("Sync loop start requested")
        orchestrator.start()
    return SyncStatusResponse(**orchestrator.status())


@router.post(
    "/stop",
    response_model=SyncStatusResponse,
    dependencies=[require_permission(Permissions.SYNC_WRITE)],
)
async def stop_sync_loop(orchestrator: SyncOrchestratorDep) -> SyncStatusResponse:
    """Stop the polling loop; an in-flight cycle is aborted cleanly."""
    if orchestrator.running:
        logger.info("Sync loop stop requested")
        await orchestrator.stop()
    return SyncStatusResponse(**orchestrator.status())
