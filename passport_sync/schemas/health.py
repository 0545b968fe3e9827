"""Health check schemas."""

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str
    source_database: bool
    passport_database: bool
    sync_phase: str
    sync_running: bool
