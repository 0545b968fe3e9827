"""Tests for health endpoint."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from tests.conftest import ClientFactory


class TestHealthEndpoint:
    """Tests for the /health endpoint."""

    @pytest.mark.anyio
    async def test_health_returns_healthy_when_databases_available(
        self,
        client_factory: ClientFactory,
        mock_orchestrator: MagicMock,
    ) -> None:
        """Health check returns healthy when both databases answer."""
        async with client_factory() as client:
            response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["source_database"] is True
        assert data["passport_database"] is True
        assert data["sync_phase"] == "idle"
        mock_orchestrator.source.ping.assert_awaited_once()

    @pytest.mark.anyio
    async def test_health_returns_degraded_when_source_unavailable(
        self,
        client_factory: ClientFactory,
        mock_orchestrator: MagicMock,
    ) -> None:
        """Health check returns degraded when OpenMRS is unreachable."""
        mock_orchestrator.source.ping.return_value = False

        async with client_factory() as client:
            response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "degraded"
        assert data["source_database"] is False

    @pytest.mark.anyio
    async def test_health_returns_degraded_when_passport_db_unavailable(
        self,
        client_factory: ClientFactory,
        mock_session: AsyncMock,
    ) -> None:
        mock_session.execute.side_effect = OperationalError(
            "SELECT 1", {}, Exception("connection refused")
        )

        async with client_factory() as client:
            response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "degraded"
        assert data["passport_database"] is False
