"""Passport Sync - OpenMRS to patient passport synchronization service."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from passport_sync.clients.orchestrator import get_orchestrator
from passport_sync.clients.passport_db import get_target_engine
from passport_sync.db.target import create_schema
from passport_sync.exceptions import FatalConfig, PassportSyncError, SourceUnavailable
from passport_sync.logging_config import configure_logging
from passport_sync.routers import health, sync_routes
from passport_sync.settings import settings
from passport_sync.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan management."""
    configure_logging()
    orchestrator: SyncOrchestrator | None = None
    try:
        if settings.target_create_schema:
            await create_schema(get_target_engine())
        orchestrator = get_orchestrator()
        if settings.sync_enabled:
            orchestrator.start()
        else:
            logger.info("Sync loop disabled; use POST /sync/start or /sync/run")
    except FatalConfig as e:
        logger.error("Sync not started, configuration error: %s", e)
    except (SQLAlchemyError, OSError) as e:
        logger.error("Passport database unavailable at startup: %s", e)
        orchestrator = get_orchestrator()
        if settings.sync_enabled:
            orchestrator.start()

    yield

    if orchestrator is not None:
        await orchestrator.close()
        await get_target_engine().dispose()


app = FastAPI(
    title="Passport Sync",
    description="Synchronizes OpenMRS observations into patient passports",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(SourceUnavailable)
async def handle_source_unavailable(
    request: Request, exc: SourceUnavailable
) -> JSONResponse:
    """The hospital database could not be reached."""
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Source database temporarily unavailable"},
    )


@app.exception_handler(FatalConfig)
async def handle_fatal_config(request: Request, exc: FatalConfig) -> JSONResponse:
    """Misconfiguration that an operator must fix."""
    logger.error("Configuration error serving %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": f"Service misconfigured: {exc}"},
    )


@app.exception_handler(PassportSyncError)
async def handle_sync_error(request: Request, exc: PassportSyncError) -> JSONResponse:
    """Other sync errors that reached the API surface."""
    logger.error("Sync error serving %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": str(exc)},
    )


@app.exception_handler(ValidationError)
async def handle_validation_error(
    request: Request, exc: ValidationError
) -> JSONResponse:
    """Handle Pydantic ValidationError and return 422."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": exc.errors()},
    )


@app.exception_handler(Exception)
async def handle_unhandled_exceptions(request: Request, exc: Exception) -> JSONResponse:
    """Catch and log all unhandled exceptions."""
    logger.exception("Unhandled error serving %s", request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


# Register routers
app.include_router(health.router)
app.include_router(sync_routes.router)


@app.get("/")
def root() -> dict[str, str]:
    """Root endpoint."""
    return {"service": "passport-sync", "version": "0.1.0"}
