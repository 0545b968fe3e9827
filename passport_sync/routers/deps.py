"""Shared dependencies for routers."""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from passport_sync.clients.orchestrator import get_orchestrator
from passport_sync.clients.passport_db import get_session
from passport_sync.sync.orchestrator import SyncOrchestrator

# Typed dependency aliases for use in endpoint signatures
SyncOrchestratorDep = Annotated[SyncOrchestrator, Depends(get_orchestrator)]
PassportSessionDep = Annotated[AsyncSession, Depends(get_session)]
