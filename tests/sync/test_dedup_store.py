"""Tests for the synced record store."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from passport_sync.exceptions import DuplicateObservation, TargetWriteFailure
from passport_sync.sync.dedup_store import (
    Provenance,
    RecordType,
    SyncedRecord,
    SyncedRecordStore,
    is_dedup_violation,
)
from tests.conftest import add_patient

CAPTURED = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


def make_record(
    patient_id: str,
    observation_id: str = "5303",
    record_type: RecordType = RecordType.CONDITION,
) -> SyncedRecord:
    return SyncedRecord(
        patient_id=patient_id,
        source_observation_id=observation_id,
        record_type=record_type,
        payload={"title": "Malarial smear", "detail": "Positive"},
        provenance=Provenance(
            source_observation_id=observation_id,
            captured_at=CAPTURED,
            provider_name="Grace Otieno",
            location_name=None,
        ),
    )


@pytest.fixture
def store() -> SyncedRecordStore:
    return SyncedRecordStore()


class TestInsert:
    """Tests for insert-once semantics."""

    @pytest.mark.anyio
    async def test_second_insert_is_duplicate(
        self,
        store: SyncedRecordStore,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        """The same observation for the same patient is stored once."""
        patient_id = await add_patient(session_factory, "Alice Mwangi")
        await store.insert(session, make_record(patient_id))

        with pytest.raises(DuplicateObservation) as exc_info:
            await store.insert(session, make_record(patient_id))

        assert exc_info.value.observation_id == "5303"
        assert len(await store.list_for_patient(session, patient_id)) == 1

    @pytest.mark.anyio
    async def test_same_observation_for_other_patient_is_allowed(
        self,
        store: SyncedRecordStore,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        """The dedup key is the (patient, observation) pair."""
        alice = await add_patient(session_factory, "Alice Mwangi")
        john = await add_patient(session_factory, "John Doe")

        await store.insert(session, make_record(alice))
        await store.insert(session, make_record(john))

        assert len(await store.list_for_patient(session, alice)) == 1
        assert len(await store.list_for_patient(session, john)) == 1

    @pytest.mark.anyio
    async def test_session_usable_after_duplicate(
        self,
        store: SyncedRecordStore,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        """A rejected duplicate does not poison later writes."""
        patient_id = await add_patient(session_factory, "Alice Mwangi")
        await store.insert(session, make_record(patient_id))
        with pytest.raises(DuplicateObservation):
            await store.insert(session, make_record(patient_id))

        await store.insert(session, make_record(patient_id, observation_id="5304"))

        assert len(await store.list_for_patient(session, patient_id)) == 2

    @pytest.mark.anyio
    async def test_other_integrity_error_is_write_failure(
        self, store: SyncedRecordStore, session: AsyncSession
    ) -> None:
        """A constraint other than the dedup key is not a duplicate."""
        record = make_record(None)  # type: ignore[arg-type]

        with pytest.raises(TargetWriteFailure):
            await store.insert(session, record)

    @pytest.mark.anyio
    async def test_operational_error_is_write_failure(
        self, store: SyncedRecordStore
    ) -> None:
        session = AsyncMock(spec=AsyncSession)
        session.add = MagicMock()
        session.commit.side_effect = OperationalError(
            "INSERT", {}, Exception("disk I/O error")
        )

        with pytest.raises(TargetWriteFailure, match="5303"):
            await store.insert(session, make_record("patient-1"))

        session.rollback.assert_awaited_once()


class TestListForPatient:
    """Tests for reading records back."""

    @pytest.mark.anyio
    async def test_filters_by_type_and_restores_provenance(
        self,
        store: SyncedRecordStore,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        patient_id = await add_patient(session_factory, "Alice Mwangi")
        await store.insert(session, make_record(patient_id, "1"))
        await store.insert(session, make_record(patient_id, "2", RecordType.TEST))

        tests = await store.list_for_patient(session, patient_id, RecordType.TEST)

        assert [r.source_observation_id for r in tests] == ["2"]
        assert tests[0].provenance.captured_at == CAPTURED
        assert tests[0].provenance.provider_name == "Grace Otieno"
        assert tests[0].provenance.location_name is None


class TestIsDedupViolation:
    """Tests for recognizing the dedup constraint across backends."""

    def _error(self, message: str) -> IntegrityError:
        return IntegrityError("INSERT", {}, Exception(message))

    def test_postgres_constraint_name(self) -> None:
        error = self._error(
            'duplicate key value violates unique constraint '
            '"uq_synced_records_patient_observation"'
        )
        assert is_dedup_violation(error)

    def test_sqlite_column_message(self) -> None:
        error = self._error(
            "UNIQUE constraint failed: synced_records.patient_id, "
            "synced_records.source_observation_id"
        )
        assert is_dedup_violation(error)

    def test_other_constraint(self) -> None:
        error = self._error("NOT NULL constraint failed: synced_records.patient_id")
        assert not is_dedup_violation(error)
