"""Test configuration and fixtures."""

import itertools
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Generator, Protocol
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import Table
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from passport_sync.clients.orchestrator import get_orchestrator
from passport_sync.clients.passport_db import get_session
from passport_sync.db.source import (
    concept_name,
    encounter,
    encounter_provider,
    location,
    obs,
    openmrs_metadata,
    patient_identifier,
    patient_identifier_type,
    person,
    person_name,
    provider,
    users,
)
from passport_sync.db.target import create_schema, create_session_factory
from passport_sync.main import app
from passport_sync.models.passport import PatientRow
from passport_sync.sync.identity_resolver import IdentityResolver
from passport_sync.sync.materializer import RecordMaterializer
from passport_sync.sync.orchestrator import SyncOrchestrator, SyncPhase
from passport_sync.sync.source_connector import ObservationSource
from passport_sync.sync.state_store import SyncStateStore

# Fixed "now" for orchestrator tests; source rows are created just before it
NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)
SOURCE_NOW = NOW.replace(tzinfo=None)


def _memory_engine() -> AsyncEngine:
    """In-memory SQLite shared by every connection of the engine."""
    return create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Configure pytest-anyio to use asyncio."""
    return "asyncio"


@pytest.fixture
async def source_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Empty OpenMRS database."""
    engine = _memory_engine()
    async with engine.begin() as conn:
        await conn.run_sync(openmrs_metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def target_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Empty passport database."""
    engine = _memory_engine()
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(target_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(target_engine)


@pytest.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as s:
        yield s


class OpenMRSData:
    """Inserts rows into the in-memory OpenMRS tables."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._ids = itertools.count(1)
        self._identifier_types: dict[str, int] = {}

    async def _insert(self, table: Table, **values: Any) -> None:
        async with self.engine.begin() as conn:
            await conn.execute(table.insert().values(**values))

    async def add_person(
        self,
        given_name: str | None = None,
        family_name: str | None = None,
        *,
        middle_name: str | None = None,
        uuid: str | None = None,
        national_id: str | None = None,
        voided: bool = False,
    ) -> int:
        person_id = next(self._ids)
        await self._insert(
            person,
            person_id=person_id,
            uuid=uuid or f"person-uuid-{person_id}",
            voided=voided,
        )
        if given_name or family_name:
            await self.add_name(
                person_id, given_name, family_name, middle_name=middle_name, preferred=True
            )
        if national_id:
            await self._insert(
                patient_identifier,
                patient_identifier_id=next(self._ids),
                patient_id=person_id,
                identifier=national_id,
                identifier_type=await self.identifier_type("National ID"),
                preferred=True,
            )
        return person_id

    async def add_name(
        self,
        person_id: int,
        given_name: str | None,
        family_name: str | None,
        *,
        middle_name: str | None = None,
        preferred: bool = False,
        voided: bool = False,
    ) -> None:
        await self._insert(
            person_name,
            person_name_id=next(self._ids),
            person_id=person_id,
            preferred=preferred,
            given_name=given_name,
            middle_name=middle_name,
            family_name=family_name,
            voided=voided,
        )

    async def identifier_type(self, name: str) -> int:
        if name not in self._identifier_types:
            type_id = next(self._ids)
            await self._insert(
                patient_identifier_type, patient_identifier_type_id=type_id, name=name
            )
            self._identifier_types[name] = type_id
        return self._identifier_types[name]

    async def add_concept(
        self,
        name: str,
        *,
        locale: str = "en",
        name_type: str = "FULLY_SPECIFIED",
    ) -> int:
        concept_id = next(self._ids)
        await self._insert(
            concept_name,
            concept_name_id=next(self._ids),
            concept_id=concept_id,
            name=name,
            locale=locale,
            concept_name_type=name_type,
        )
        return concept_id

    async def add_location(self, name: str) -> int:
        location_id = next(self._ids)
        await self._insert(location, location_id=location_id, name=name)
        return location_id

    async def add_user(self, username: str) -> int:
        user_id = next(self._ids)
        await self._insert(users, user_id=user_id, username=username)
        return user_id

    async def add_provider(
        self,
        given_name: str | None = None,
        family_name: str | None = None,
        *,
        name: str | None = None,
        identifier: str | None = None,
    ) -> int:
        person_id = None
        if given_name or family_name:
            person_id = await self.add_person(given_name, family_name)
        provider_id = next(self._ids)
        await self._insert(
            provider,
            provider_id=provider_id,
            person_id=person_id,
            name=name,
            identifier=identifier,
        )
        return provider_id

    async def add_encounter(
        self,
        *,
        location_id: int | None = None,
        provider_id: int | None = None,
        creator: int | None = None,
    ) -> int:
        encounter_id = next(self._ids)
        await self._insert(
            encounter,
            encounter_id=encounter_id,
            location_id=location_id,
            creator=creator,
        )
        if provider_id is not None:
            await self._insert(
                encounter_provider,
                encounter_provider_id=next(self._ids),
                encounter_id=encounter_id,
                provider_id=provider_id,
            )
        return encounter_id

    async def add_obs(
        self,
        person_id: int,
        concept_id: int,
        *,
        created_at: datetime,
        obs_datetime: datetime | None = None,
        obs_id: int | None = None,
        value_text: str | None = None,
        value_numeric: float | None = None,
        value_coded: int | None = None,
        encounter_id: int | None = None,
        location_id: int | None = None,
        comments: str | None = None,
        creator: int | None = None,
        voided: bool = False,
    ) -> int:
        obs_id = obs_id if obs_id is not None else next(self._ids)
        await self._insert(
            obs,
            obs_id=obs_id,
            person_id=person_id,
            concept_id=concept_id,
            encounter_id=encounter_id,
            location_id=location_id,
            obs_datetime=obs_datetime or created_at,
            date_created=created_at,
            value_text=value_text,
            value_numeric=value_numeric,
            value_coded=value_coded,
            comments=comments,
            creator=creator,
            voided=voided,
        )
        return obs_id


@pytest.fixture
def openmrs(source_engine: AsyncEngine) -> OpenMRSData:
    """Helper for populating the OpenMRS database."""
    return OpenMRSData(source_engine)


@pytest.fixture
def observation_source(source_engine: AsyncEngine) -> ObservationSource:
    return ObservationSource(engine=source_engine, page_size=50)


async def add_patient(
    session_factory: async_sessionmaker[AsyncSession],
    display_name: str,
    *,
    national_id: str | None = None,
    active: bool = True,
) -> str:
    """Insert a self-registered passport patient and return its id."""
    async with session_factory() as s:
        row = PatientRow(
            display_name=display_name,
            national_id=national_id,
            linked_account_id=f"account-{display_name.lower().replace(' ', '-')}",
            active=active,
        )
        s.add(row)
        await s.commit()
        return row.id


@pytest.fixture
def make_orchestrator(
    observation_source: ObservationSource,
    session_factory: async_sessionmaker[AsyncSession],
) -> Generator[Any, None, None]:
    """Factory for orchestrators wired to the in-memory databases."""

    def _create(**overrides: Any) -> SyncOrchestrator:
        options: dict[str, Any] = {
            "source": observation_source,
            "session_factory": session_factory,
            "resolver": IdentityResolver(),
            "materializer": RecordMaterializer(),
            "retry_delay_seconds": 0,
            "interval_seconds": 0.01,
            "clock": lambda: NOW,
        }
        options.update(overrides)
        return SyncOrchestrator(**options)

    yield _create


@pytest.fixture
def mock_orchestrator() -> MagicMock:
    """Mock orchestrator for route tests."""
    mock = MagicMock(spec=SyncOrchestrator)
    mock.source = AsyncMock(spec=ObservationSource)
    mock.source.ping.return_value = True
    mock.state_store = AsyncMock(spec=SyncStateStore)
    mock.state_store.recent_runs.return_value = []
    mock.cursor_name = "openmrs-observations"
    mock.phase = SyncPhase.IDLE
    mock.running = False
    mock.status.return_value = {
        "phase": "idle",
        "running": False,
        "cursor_name": "openmrs-observations",
        "cutoff": None,
        "interval_seconds": 10.0,
        "counters": {
            "cycles_run": 0,
            "cycles_failed": 0,
            "items_synced": 0,
            "items_already_synced": 0,
            "items_skipped": 0,
            "errors": 0,
        },
        "last_report": None,
    }
    return mock


@pytest.fixture
def mock_session() -> AsyncMock:
    """Mock passport session for route tests."""
    return AsyncMock(spec=AsyncSession)


class ClientFactory(Protocol):
    """Protocol for client factory fixture."""

    def __call__(self) -> AsyncClient: ...


@pytest.fixture
def client_factory(
    mock_orchestrator: MagicMock,
    mock_session: AsyncMock,
) -> Generator[ClientFactory, None, None]:
    """Factory for creating test clients with mocked dependencies."""

    def _create_client() -> AsyncClient:
        app.dependency_overrides[get_orchestrator] = lambda: mock_orchestrator
        app.dependency_overrides[get_session] = lambda: mock_session

        transport = ASGITransport(app=app)
        return AsyncClient(transport=transport, base_url="http://testserver")

    yield _create_client

    app.dependency_overrides.clear()
