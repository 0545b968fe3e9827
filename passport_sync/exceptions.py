"""Custom exceptions for the passport sync service."""

from collections.abc import Sequence


class PassportSyncError(Exception):
    """Base exception for passport sync errors."""

    pass


class SourceUnavailable(PassportSyncError):
    """The source database could not be reached. Retryable."""

    pass


class MalformedObservation(PassportSyncError):
    """A source row cannot be turned into an observation and is skipped."""

    def __init__(self, observation_id: object, reason: str):
        self.observation_id = observation_id
        self.reason = reason
        super().__init__(f"Observation {observation_id} is malformed: {reason}")


class AmbiguousIdentity(PassportSyncError):
    """More than one passport patient matches a subject at the same priority."""

    def __init__(self, subject_id: str, strategy: str, candidate_ids: Sequence[str]):
        self.subject_id = subject_id
        self.strategy = strategy
        self.candidate_ids = list(candidate_ids)
        super().__init__(
            f"Subject {subject_id} matches {len(self.candidate_ids)} patients "
            f"by {strategy}: {', '.join(self.candidate_ids)}"
        )


class DuplicateObservation(PassportSyncError):
    """The observation is already materialized for the patient.

    Raised by the record store on a dedup-key violation; callers treat it as
    a successful outcome.
    """

    def __init__(self, patient_id: str, observation_id: str):
        self.patient_id = patient_id
        self.observation_id = observation_id
        super().__init__(
            f"Observation {observation_id} already synced for patient {patient_id}"
        )


class TargetWriteFailure(PassportSyncError):
    """A write to the passport database failed. Retryable per item."""

    pass


class FatalConfig(PassportSyncError):
    """Configuration prevents the sync from running at all."""

    pass
