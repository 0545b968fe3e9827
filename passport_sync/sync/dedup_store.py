"""
Synced record store.

Writes are plain inserts. The (patient_id, source_observation_id) unique
constraint decides whether an observation was already materialized; there
is no read-before-write, so two overlapping cycles (in one process or
several) can race on the same observation and exactly one insert wins.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from passport_sync.exceptions import DuplicateObservation, TargetWriteFailure
from passport_sync.models.passport import DEDUP_CONSTRAINT, SyncedRecordRow

logger = logging.getLogger(__name__)


class RecordType(str, Enum):
    """Clinical record collections in the patient passport."""

    CONDITION = "condition"
    MEDICATION = "medication"
    TEST = "test"
    VISIT = "visit"


@dataclass(frozen=True)
class Provenance:
    """Where a synced record came from."""

    source_observation_id: str
    captured_at: datetime
    provider_name: str | None = None
    location_name: str | None = None
    source_system: str = "openmrs"

    def to_dict(self) -> dict[str, Any]:
        return {
            "sourceObservationId": self.source_observation_id,
            "capturedAt": self.captured_at.isoformat(),
            "providerName": self.provider_name,
            "locationName": self.location_name,
            "sourceSystem": self.source_system,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Provenance":
        return cls(
            source_observation_id=data["sourceObservationId"],
            captured_at=datetime.fromisoformat(data["capturedAt"]),
            provider_name=data.get("providerName"),
            location_name=data.get("locationName"),
            source_system=data.get("sourceSystem", "openmrs"),
        )


@dataclass(frozen=True)
class SyncedRecord:
    """A clinical record materialized from one source observation."""

    patient_id: str
    source_observation_id: str
    record_type: RecordType
    payload: dict[str, Any]
    provenance: Provenance

    @property
    def dedup_key(self) -> tuple[str, str]:
        return (self.patient_id, self.source_observation_id)


def is_dedup_violation(error: IntegrityError) -> bool:
    """True if the integrity error comes from the dedup constraint."""
    message = str(error.orig)
    if DEDUP_CONSTRAINT in message:
        return True
    # SQLite reports the columns rather than the constraint name
    return (
        "synced_records.patient_id" in message
        and "synced_records.source_observation_id" in message
    )


class SyncedRecordStore:
    """Insert-only access to the synced_records table."""

    async def insert(self, session: AsyncSession, record: SyncedRecord) -> None:
        """
        Insert a record and commit.

        Raises:
            DuplicateObservation: If the dedup key already exists
            TargetWriteFailure: If the write fails for any other reason
        """
        session.add(
            SyncedRecordRow(
                patient_id=record.patient_id,
                source_observation_id=record.source_observation_id,
                record_type=record.record_type.value,
                payload=record.payload,
                provenance=record.provenance.to_dict(),
            )
        )
        try:
            await session.commit()
        except IntegrityError as e:
            await session.rollback()
            if is_dedup_violation(e):
                raise DuplicateObservation(*record.dedup_key) from e
            raise TargetWriteFailure(
                f"Integrity error writing observation {record.source_observation_id}: {e.orig}"
            ) from e
        except (SQLAlchemyError, OSError) as e:
            await session.rollback()
            raise TargetWriteFailure(
                f"Failed to write observation {record.source_observation_id}: {e}"
            ) from e

    async def list_for_patient(
        self,
        session: AsyncSession,
        patient_id: str,
        record_type: RecordType | None = None,
    ) -> list[SyncedRecord]:
        """Records for a patient in insertion order."""
        query = select(SyncedRecordRow).where(SyncedRecordRow.patient_id == patient_id)
        if record_type is not None:
            query = query.where(SyncedRecordRow.record_type == record_type.value)
        rows = (await session.scalars(query.order_by(SyncedRecordRow.id))).all()
        return [_to_record(row) for row in rows]


def _to_record(row: SyncedRecordRow) -> SyncedRecord:
    return SyncedRecord(
        patient_id=row.patient_id,
        source_observation_id=row.source_observation_id,
        record_type=RecordType(row.record_type),
        payload=dict(row.payload),
        provenance=Provenance.from_dict(row.provenance),
    )
