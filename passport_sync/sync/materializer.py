"""
Record materializer: one source observation -> one passport record.

Classification is a keyword heuristic on the concept label. A label that
matches nothing still becomes a condition record with a generic category;
a loosely labelled record is preferred over a dropped observation.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from passport_sync.exceptions import DuplicateObservation
from passport_sync.sync.dedup_store import (
    Provenance,
    RecordType,
    SyncedRecord,
    SyncedRecordStore,
)
from passport_sync.sync.identity_resolver import TargetPatient
from passport_sync.sync.source_connector import SourceObservation

logger = logging.getLogger(__name__)

NO_VALUE = "N/A"
GENERIC_CONDITION_LABEL = "General observation"

CONDITION_TERMS = (
    "diagnosis",
    "condition",
    "disease",
    "disorder",
    "syndrome",
    "infection",
    "malaria",
    "smear",
    "fever",
    "pain",
    "problem",
    "complaint",
    "symptom",
)
MEDICATION_TERMS = (
    "medication",
    "medicine",
    "drug",
    "prescription",
    "prescribed",
    "treatment",
    "dosage",
    "dose",
    "regimen",
    "tablet",
)
TEST_TERMS = (
    "test",
    "lab",
    "screening",
    "x-ray",
    "xray",
    "ultrasound",
    "scan",
    "culture",
    "serum",
    "count",
    "level",
    "blood pressure",
    "temperature",
    "pulse",
    "weight",
    "height",
    "saturation",
    "bmi",
)
VISIT_TERMS = (
    "visit",
    "encounter",
    "consultation",
    "admission",
    "discharge",
    "follow-up",
    "follow up",
    "appointment",
    "referral",
)


def _terms_pattern(terms: tuple[str, ...]) -> re.Pattern[str]:
    # Prefix match on word starts, so "malaria" also catches "malarial"
    return re.compile(r"\b(?:" + "|".join(map(re.escape, terms)) + ")", re.IGNORECASE)


# Checked in order; the first category whose terms appear wins
CLASSIFIERS: tuple[tuple[RecordType, str, re.Pattern[str]], ...] = (
    (RecordType.CONDITION, "Diagnosis", _terms_pattern(CONDITION_TERMS)),
    (RecordType.MEDICATION, "Medication", _terms_pattern(MEDICATION_TERMS)),
    (RecordType.TEST, "Test result", _terms_pattern(TEST_TERMS)),
    (RecordType.VISIT, "Visit", _terms_pattern(VISIT_TERMS)),
)


def classify_concept(concept_label: str) -> tuple[RecordType, str]:
    """Map a concept label to a record type and a category label."""
    for record_type, category, pattern in CLASSIFIERS:
        if pattern.search(concept_label):
            return record_type, category
    return RecordType.CONDITION, GENERIC_CONDITION_LABEL


def format_numeric(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return str(value)


def extract_detail(observation: SourceObservation) -> str:
    """Text, then numeric, then coded answer; the first present value wins."""
    if observation.value_text:
        return observation.value_text
    if observation.value_numeric is not None:
        return format_numeric(observation.value_numeric)
    if observation.value_coded_label:
        return observation.value_coded_label
    return NO_VALUE


class MaterializeStatus(str, Enum):
    """Outcome of materializing one observation."""

    SYNCED = "synced"
    ALREADY_SYNCED = "already_synced"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class MaterializeResult:
    """Result of materializing one observation."""

    status: MaterializeStatus
    observation_id: int
    record: SyncedRecord | None = None
    reason: str | None = None


class RecordMaterializer:
    """Builds passport records from observations and inserts them once."""

    def __init__(
        self,
        store: SyncedRecordStore | None = None,
        source_system: str = "openmrs",
        default_provider_name: str = "Unknown Doctor",
        default_location_name: str = "Unknown Hospital",
    ):
        self.store = store or SyncedRecordStore()
        self.source_system = source_system
        self.default_provider_name = default_provider_name
        self.default_location_name = default_location_name

    def build_record(
        self, observation: SourceObservation, patient: TargetPatient
    ) -> SyncedRecord:
        """Build the record for an observation. Pure; the same input gives the same record."""
        record_type, category = classify_concept(observation.concept_label)
        payload: dict[str, Any] = {
            "title": observation.concept_label,
            "detail": extract_detail(observation),
            "category": category,
            "recordedAt": observation.recorded_at.isoformat(),
            "providerName": observation.provider_name or self.default_provider_name,
            "locationName": observation.location_name or self.default_location_name,
            "notes": observation.comments or "",
            "encounterRef": observation.encounter_ref,
        }
        if record_type in (RecordType.CONDITION, RecordType.MEDICATION):
            payload["status"] = "active"

        source_observation_id = str(observation.observation_id)
        return SyncedRecord(
            patient_id=patient.patient_id,
            source_observation_id=source_observation_id,
            record_type=record_type,
            payload=payload,
            provenance=Provenance(
                source_observation_id=source_observation_id,
                captured_at=observation.captured_at,
                provider_name=observation.provider_name,
                location_name=observation.location_name,
                source_system=self.source_system,
            ),
        )

    async def materialize(
        self,
        session: AsyncSession,
        observation: SourceObservation,
        patient: TargetPatient | None,
    ) -> MaterializeResult:
        """
        Materialize an observation for a patient.

        An observation already stored for the patient is reported as
        ALREADY_SYNCED; nothing is updated.

        Raises:
            TargetWriteFailure: If the insert fails for a retryable reason
        """
        if patient is None:
            logger.warning(
                "Skipping observation %s: subject %s did not resolve to a patient",
                observation.observation_id,
                observation.subject_external_id,
            )
            return MaterializeResult(
                status=MaterializeStatus.SKIPPED,
                observation_id=observation.observation_id,
                reason="unresolved patient",
            )

        record = self.build_record(observation, patient)
        try:
            await self.store.insert(session, record)
        except DuplicateObservation:
            logger.debug(
                "Observation %s already synced for patient %s",
                observation.observation_id,
                patient.patient_id,
            )
            return MaterializeResult(
                status=MaterializeStatus.ALREADY_SYNCED,
                observation_id=observation.observation_id,
                record=record,
            )

        return MaterializeResult(
            status=MaterializeStatus.SYNCED,
            observation_id=observation.observation_id,
            record=record,
        )
