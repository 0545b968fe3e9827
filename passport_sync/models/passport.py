"""
Patient passport tables written by the sync.

The unique constraint on synced_records (patient_id, source_observation_id)
is the dedup key: a second insert of the same observation for the same
patient fails in the database, whichever process attempts it.
"""

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from passport_sync.db.target import Base

DEDUP_CONSTRAINT = "uq_synced_records_patient_observation"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class PatientRow(Base):
    """A patient in the passport. Created by self-registration or by the sync."""

    __tablename__ = "patients"

    id = Column(String(36), primary_key=True, default=_new_id)
    display_name = Column(String(255), nullable=False, index=True)
    national_id = Column(String(64), nullable=True, index=True)
    linked_account_id = Column(String(64), nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    auto_provisioned = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class IdentityLinkRow(Base):
    """Sticky mapping from a source person to a passport patient."""

    __tablename__ = "patient_identity_links"

    subject_external_id = Column(String(64), primary_key=True)
    patient_id = Column(
        String(36), ForeignKey("patients.id"), nullable=False, index=True
    )
    source_system = Column(String(50), nullable=False)
    match_kind = Column(String(32), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class SyncedRecordRow(Base):
    """A clinical record materialized from one source observation."""

    __tablename__ = "synced_records"
    __table_args__ = (
        UniqueConstraint("patient_id", "source_observation_id", name=DEDUP_CONSTRAINT),
        Index("ix_synced_records_patient_type", "patient_id", "record_type"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    patient_id = Column(String(36), ForeignKey("patients.id"), nullable=False)
    source_observation_id = Column(String(64), nullable=False)
    record_type = Column(String(16), nullable=False)
    payload = Column(JSON, nullable=False)
    provenance = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class SyncCursorRow(Base):
    """Last successful sync timestamp per source feed."""

    __tablename__ = "sync_cursors"

    name = Column(String(100), primary_key=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class SyncRunRow(Base):
    """History of sync cycles for operators."""

    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cursor_name = Column(String(100), nullable=False, index=True)
    status = Column(String(16), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=False)
    finished_at = Column(DateTime(timezone=True), nullable=False)
    fetched = Column(Integer, nullable=False, default=0)
    synced = Column(Integer, nullable=False, default=0)
    already_synced = Column(Integer, nullable=False, default=0)
    skipped = Column(Integer, nullable=False, default=0)
    errors = Column(Integer, nullable=False, default=0)
    cutoff_before = Column(DateTime(timezone=True), nullable=True)
    cutoff_after = Column(DateTime(timezone=True), nullable=True)
    error = Column(Text, nullable=True)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "cursor_name": self.cursor_name,
            "status": self.status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "fetched": self.fetched,
            "synced": self.synced,
            "already_synced": self.already_synced,
            "skipped": self.skipped,
            "errors": self.errors,
            "cutoff_before": self.cutoff_before,
            "cutoff_after": self.cutoff_after,
            "error": self.error,
        }


class SyncFailureRow(Base):
    """An observation whose write attempts ran out; retried every cycle."""

    __tablename__ = "sync_failures"

    cursor_name = Column(String(100), primary_key=True)
    source_observation_id = Column(String(64), primary_key=True)
    captured_at = Column(DateTime(timezone=True), nullable=False)
    attempts = Column(Integer, nullable=False, default=1)
    last_error = Column(Text, nullable=True)
    first_failed_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    last_failed_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
