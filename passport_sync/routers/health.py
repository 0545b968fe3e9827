"""Health check endpoint."""

import logging

from fastapi import APIRouter
from sqlalchemy import literal, select
from sqlalchemy.exc import SQLAlchemyError

from passport_sync.routers.deps import PassportSessionDep, SyncOrchestratorDep
from passport_sync.schemas.health import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(
    orchestrator: SyncOrchestratorDep,
    session: PassportSessionDep,
) -> HealthResponse:
    """Check connectivity to both databases and report the sync phase."""
    source_healthy = await orchestrator.source.ping()

    try:
        await session.execute(select(literal(1)))
        passport_healthy = True
    except (SQLAlchemyError, OSError) as e:
        logger.warning("Passport database ping failed: %s", e)
        passport_healthy = False

    return HealthResponse(
        status="healthy" if source_healthy and passport_healthy else "degraded",
        source_database=source_healthy,
        passport_database=passport_healthy,
        sync_phase=orchestrator.phase.value,
        sync_running=orchestrator.running,
    )
