"""Dependency provider for the sync orchestrator."""

from functools import lru_cache

from passport_sync.clients.passport_db import get_session_factory
from passport_sync.settings import settings
from passport_sync.sync.orchestrator import SyncOrchestrator, create_orchestrator


@lru_cache(maxsize=1)
def get_orchestrator() -> SyncOrchestrator:
    """Get singleton SyncOrchestrator instance."""
    return create_orchestrator(settings, session_factory=get_session_factory())
