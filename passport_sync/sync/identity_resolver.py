"""
Identity resolution from OpenMRS persons to passport patients.

Matching strategy, first hit wins:
1. Existing identity link for the subject (sticky, survives renames)
2. Exact national ID match
3. Exact full-name match (case-insensitive, whitespace-normalized)
4. Partial match: given name and family name both contained in the display name
5. Auto-provision a new patient

A match found by steps 2-4 is linked before returning, so the next lookup
for the subject stops at step 1. Two or more candidates at the same step
are never disambiguated by guessing: the ambiguity is logged as a
data-quality issue and a new patient is provisioned instead.

Name matching (steps 3-4) only considers patients that are not yet linked
to another subject.
"""

import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum

from sqlalchemy import select, true
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from passport_sync.exceptions import AmbiguousIdentity, TargetWriteFailure
from passport_sync.models.passport import IdentityLinkRow, PatientRow
from passport_sync.sync.source_connector import SubjectIdentity

logger = logging.getLogger(__name__)


class MatchKind(str, Enum):
    """Why a subject resolved to a patient (or did not)."""

    LINKED = "linked"
    IDENTIFIER = "identifier"
    NAME = "name"
    PARTIAL = "partial"
    AUTO_PROVISIONED = "auto_provisioned"
    AMBIGUOUS = "ambiguous"  # Only when auto-provisioning is disabled
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class TargetPatient:
    """A patient in the passport."""

    patient_id: str
    display_name: str
    linked_account_id: str
    external_identifier: str | None = None


@dataclass(frozen=True)
class IdentityMatch:
    """Result of resolving one subject."""

    kind: MatchKind
    patient: TargetPatient | None = None
    ambiguity: AmbiguousIdentity | None = None

    @property
    def resolved(self) -> bool:
        return self.patient is not None


def normalize_name(value: str) -> str:
    """Casefold and collapse whitespace."""
    return " ".join(value.casefold().split())


def _to_patient(row: PatientRow) -> TargetPatient:
    return TargetPatient(
        patient_id=row.id,
        display_name=row.display_name,
        linked_account_id=row.linked_account_id,
        external_identifier=row.national_id,
    )


def _single(
    subject: SubjectIdentity, strategy: str, candidates: Sequence[TargetPatient]
) -> TargetPatient | None:
    if len(candidates) > 1:
        raise AmbiguousIdentity(
            subject.external_id, strategy, [c.patient_id for c in candidates]
        )
    return candidates[0] if candidates else None


def _new_account_id() -> str:
    return str(uuid.uuid4())


class IdentityResolver:
    """Resolves OpenMRS subjects to passport patients."""

    def __init__(
        self,
        source_system: str = "openmrs",
        auto_provision: bool = True,
        account_id_factory: Callable[[], str] = _new_account_id,
    ):
        self.source_system = source_system
        self.auto_provision = auto_provision
        self._account_id_factory = account_id_factory

    async def resolve(
        self, session: AsyncSession, subject: SubjectIdentity
    ) -> IdentityMatch:
        """
        Resolve a subject to a passport patient.

        Args:
            session: Passport session; link and patient writes are committed
            subject: Source identity with name parts and optional national ID

        Returns:
            IdentityMatch tagged with how the patient was found

        Raises:
            TargetWriteFailure: If the passport database fails
        """
        try:
            return await self._resolve(session, subject)
        except (SQLAlchemyError, OSError) as e:
            await session.rollback()
            raise TargetWriteFailure(
                f"Identity resolution failed for subject {subject.external_id}: {e}"
            ) from e

    async def _resolve(
        self, session: AsyncSession, subject: SubjectIdentity
    ) -> IdentityMatch:
        linked = await self._linked_patient(session, subject.external_id)
        if linked is not None:
            return IdentityMatch(kind=MatchKind.LINKED, patient=linked)

        ambiguity: AmbiguousIdentity | None = None
        try:
            found = await self._find_candidate(session, subject)
        except AmbiguousIdentity as e:
            logger.warning("Data quality: %s. Not guessing between candidates.", e)
            ambiguity = e
            found = None

        if found is not None:
            kind, patient = found
            return await self._link(session, subject, patient, kind)

        if not self.auto_provision:
            kind = MatchKind.AMBIGUOUS if ambiguity else MatchKind.NOT_FOUND
            return IdentityMatch(kind=kind, ambiguity=ambiguity)

        if not subject.has_name:
            logger.warning(
                "Subject %s has no name; cannot provision a patient",
                subject.external_id,
            )
            return IdentityMatch(kind=MatchKind.NOT_FOUND, ambiguity=ambiguity)

        return await self._provision(session, subject, ambiguity)

    async def _linked_patient(
        self, session: AsyncSession, subject_external_id: str
    ) -> TargetPatient | None:
        row = await session.scalar(
            select(PatientRow)
            .join(IdentityLinkRow, IdentityLinkRow.patient_id == PatientRow.id)
            .where(IdentityLinkRow.subject_external_id == subject_external_id)
        )
        return _to_patient(row) if row is not None else None

    async def _find_candidate(
        self, session: AsyncSession, subject: SubjectIdentity
    ) -> tuple[MatchKind, TargetPatient] | None:
        if subject.national_id:
            rows = await session.scalars(
                select(PatientRow).where(
                    PatientRow.national_id == subject.national_id,
                    PatientRow.active == true(),
                )
            )
            patient = _single(subject, "national ID", [_to_patient(r) for r in rows])
            if patient is not None:
                return MatchKind.IDENTIFIER, patient

        if not subject.has_name:
            return None

        candidates = await self._name_candidates(session, subject)

        full_names = {normalize_name(subject.full_name)}
        if subject.given_name and subject.family_name:
            full_names.add(normalize_name(f"{subject.given_name} {subject.family_name}"))
        exact = [c for c in candidates if normalize_name(c.display_name) in full_names]
        patient = _single(subject, "full name", exact)
        if patient is not None:
            return MatchKind.NAME, patient

        if not (subject.given_name and subject.family_name):
            return None
        given = normalize_name(subject.given_name)
        family = normalize_name(subject.family_name)
        partial = [
            c
            for c in candidates
            if given in normalize_name(c.display_name)
            and family in normalize_name(c.display_name)
        ]
        patient = _single(subject, "partial name", partial)
        if patient is not None:
            return MatchKind.PARTIAL, patient
        return None

    async def _name_candidates(
        self, session: AsyncSession, subject: SubjectIdentity
    ) -> list[TargetPatient]:
        """
        Active, unlinked patients whose normalized name contains the longest
        token of the family (or given) name.

        Narrowing happens on normalized names in Python: SQL lower() neither
        collapses whitespace nor agrees with casefold() outside ASCII.
        """
        anchor = max(
            normalize_name(subject.family_name or subject.given_name or "").split(),
            key=len,
            default="",
        )
        already_linked = (
            select(IdentityLinkRow.subject_external_id)
            .where(IdentityLinkRow.patient_id == PatientRow.id)
            .exists()
        )
        rows = await session.stream_scalars(
            select(PatientRow)
            .where(PatientRow.active == true(), ~already_linked)
            .order_by(PatientRow.id)
        )
        return [
            _to_patient(r)
            async for r in rows
            if anchor in normalize_name(r.display_name)
        ]

    async def _link(
        self,
        session: AsyncSession,
        subject: SubjectIdentity,
        patient: TargetPatient,
        kind: MatchKind,
    ) -> IdentityMatch:
        session.add(self._link_row(subject, patient.patient_id, kind))
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            return await self._adopt_existing_link(session, subject)

        logger.info(
            "Linked subject %s to patient %s by %s",
            subject.external_id,
            patient.patient_id,
            kind.value,
        )
        return IdentityMatch(kind=kind, patient=patient)

    async def _provision(
        self,
        session: AsyncSession,
        subject: SubjectIdentity,
        ambiguity: AmbiguousIdentity | None,
    ) -> IdentityMatch:
        row = PatientRow(
            id=str(uuid.uuid4()),
            display_name=subject.full_name,
            national_id=subject.national_id,
            linked_account_id=self._account_id_factory(),
            active=True,
            auto_provisioned=True,
        )
        session.add(row)
        try:
            await session.flush()
            patient = _to_patient(row)
            session.add(self._link_row(subject, row.id, MatchKind.AUTO_PROVISIONED))
            await session.commit()
        except IntegrityError:
            # The patient insert is rolled back with the link
            await session.rollback()
            return await self._adopt_existing_link(session, subject)

        logger.info(
            "Auto-provisioned patient %s (%s) for subject %s",
            row.id,
            subject.full_name,
            subject.external_id,
        )
        return IdentityMatch(
            kind=MatchKind.AUTO_PROVISIONED,
            patient=patient,
            ambiguity=ambiguity,
        )

    async def _adopt_existing_link(
        self, session: AsyncSession, subject: SubjectIdentity
    ) -> IdentityMatch:
        """Another writer linked the subject first; use its link."""
        linked = await self._linked_patient(session, subject.external_id)
        if linked is None:
            raise TargetWriteFailure(
                f"Could not link subject {subject.external_id}: link insert rejected"
            )
        logger.info(
            "Subject %s was linked concurrently to patient %s",
            subject.external_id,
            linked.patient_id,
        )
        return IdentityMatch(kind=MatchKind.LINKED, patient=linked)

    def _link_row(
        self, subject: SubjectIdentity, patient_id: str, kind: MatchKind
    ) -> IdentityLinkRow:
        return IdentityLinkRow(
            subject_external_id=subject.external_id,
            patient_id=patient_id,
            source_system=self.source_system,
            match_kind=kind.value,
        )
