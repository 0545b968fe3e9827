"""
Sync orchestrator: the polling loop that drives
fetch -> resolve -> materialize -> persist.

Phases: IDLE -> CONNECTING -> FETCHING <-> PROCESSING -> IDLE, with BACKOFF
between failed connection attempts. Cycles never overlap within one
orchestrator: the loop waits a full interval after a cycle ends, and manual
triggers share the same lock.

Failure boundaries:
- Per observation: errors are logged and counted; the batch continues. An
  observation that still fails after its attempts is kept in sync_failures
  and re-attempted at the start of every later cycle until it is written.
- Per cycle: anything escaping the cycle is logged and reported; the loop
  keeps running. The cutoff only advances when a cycle completes.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import aclosing, suppress
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, TypeVar

from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession, async_sessionmaker

from passport_sync.db.target import create_session_factory, create_target_engine
from passport_sync.exceptions import (
    FatalConfig,
    MalformedObservation,
    SourceUnavailable,
    TargetWriteFailure,
)
from passport_sync.settings import Settings
from passport_sync.sync.identity_resolver import IdentityResolver
from passport_sync.sync.materializer import MaterializeStatus, RecordMaterializer
from passport_sync.sync.source_connector import ObservationSource, SourceObservation
from passport_sync.sync.state_store import CycleReport, CycleStatus, SyncStateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors worth reconnecting for, from either database
RETRYABLE_CONNECT_ERRORS = (SourceUnavailable, OperationalError, InterfaceError, OSError)


class SyncPhase(str, Enum):
    """What the orchestrator is doing right now."""

    IDLE = "idle"
    CONNECTING = "connecting"
    FETCHING = "fetching"
    PROCESSING = "processing"
    BACKOFF = "backoff"
    STOPPED = "stopped"


@dataclass
class SyncCounters:
    """Cumulative counters since the orchestrator was created."""

    cycles_run: int = 0
    cycles_failed: int = 0
    items_synced: int = 0
    items_already_synced: int = 0
    items_skipped: int = 0
    errors: int = 0

    def add(self, report: CycleReport) -> None:
        self.cycles_run += 1
        if report.status is CycleStatus.FAILED:
            self.cycles_failed += 1
        self.items_synced += report.synced
        self.items_already_synced += report.already_synced
        self.items_skipped += report.skipped
        self.errors += report.errors + (1 if report.error else 0)

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncOrchestrator:
    """Runs sync cycles on a fixed interval."""

    def __init__(
        self,
        source: ObservationSource,
        session_factory: async_sessionmaker[AsyncSession],
        resolver: IdentityResolver,
        materializer: RecordMaterializer,
        state_store: SyncStateStore | None = None,
        *,
        cursor_name: str = "openmrs-observations",
        interval_seconds: float = 10.0,
        max_connect_attempts: int = 5,
        retry_delay_seconds: float = 3.0,
        backoff_multiplier: float = 2.0,
        max_retry_delay_seconds: float = 60.0,
        initial_lookback: timedelta = timedelta(hours=24),
        overlap: timedelta = timedelta(seconds=60),
        item_attempts: int = 3,
        failure_batch_size: int = 100,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.source = source
        self.session_factory = session_factory
        self.resolver = resolver
        self.materializer = materializer
        self.state_store = state_store or SyncStateStore()
        self.cursor_name = cursor_name
        self.interval_seconds = interval_seconds
        self.max_connect_attempts = max_connect_attempts
        self.retry_delay_seconds = retry_delay_seconds
        self.backoff_multiplier = backoff_multiplier
        self.max_retry_delay_seconds = max_retry_delay_seconds
        self.initial_lookback = initial_lookback
        self.overlap = overlap
        self.item_attempts = item_attempts
        self.failure_batch_size = failure_batch_size
        self._clock = clock

        self.counters = SyncCounters()
        self.last_report: CycleReport | None = None
        self._phase = SyncPhase.IDLE
        self._cutoff: datetime | None = None
        self._cycle_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._last_failure_fatal = False

    @property
    def phase(self) -> SyncPhase:
        return self._phase

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def status(self) -> dict[str, Any]:
        """Snapshot for operators."""
        return {
            "phase": self._phase.value,
            "running": self.running,
            "cursor_name": self.cursor_name,
            "cutoff": self._cutoff,
            "interval_seconds": self.interval_seconds,
            "counters": self.counters.to_dict(),
            "last_report": self.last_report.to_dict() if self.last_report else None,
        }

    async def run_cycle(self) -> CycleReport:
        """Run one full cycle; waits if another cycle is in progress."""
        async with self._cycle_lock:
            return await self._run_cycle()

    async def _run_cycle(self) -> CycleReport:
        report = CycleReport(cursor_name=self.cursor_name, started_at=self._clock())
        self._last_failure_fatal = False
        try:
            await self._execute(report)
        except FatalConfig as e:
            self._last_failure_fatal = True
            report.status = CycleStatus.FAILED
            report.error = f"Configuration error: {e}"
            logger.error("Sync cycle aborted by configuration error: %s", e)
        except SourceUnavailable as e:
            report.status = CycleStatus.FAILED
            report.error = str(e)
            logger.error("Sync cycle gave up, source unavailable: %s", e)
        except Exception as e:
            report.status = CycleStatus.FAILED
            report.error = f"{type(e).__name__}: {e}"
            logger.exception("Sync cycle failed")
        finally:
            report.finished_at = self._clock()
            self._phase = SyncPhase.IDLE
            self.counters.add(report)
            self.last_report = report

        await self._record_run(report)
        logger.info(
            "Sync cycle %s in %.2fs: fetched=%d synced=%d already_synced=%d "
            "skipped=%d errors=%d",
            report.status.value,
            (report.finished_at - report.started_at).total_seconds(),
            report.fetched,
            report.synced,
            report.already_synced,
            report.skipped,
            report.errors,
        )
        return report

    async def _execute(self, report: CycleReport) -> None:
        self._phase = SyncPhase.CONNECTING
        async with self.session_factory() as session:
            stored = await self._with_backoff(
                lambda: self.state_store.load_cutoff(session, self.cursor_name),
                "passport database",
            )
            if stored is None:
                cutoff = report.started_at - self.initial_lookback
                fetch_from = cutoff
            else:
                cutoff = stored
                fetch_from = stored - self.overlap
            self._cutoff = cutoff
            report.cutoff_before = cutoff

            conn = await self._with_backoff(self.source.open_connection, "source database")
            high_water = cutoff
            # Earliest capture of a failed item that could not be recorded
            hold_back: datetime | None = None
            try:
                self._phase = SyncPhase.FETCHING

                def on_malformed(error: MalformedObservation) -> None:
                    report.fetched += 1
                    report.skipped += 1

                pending, retried = await self._retry_failures(
                    session, conn, report, on_malformed
                )
                if self._stop_event.is_set():
                    report.status = CycleStatus.ABORTED
                    logger.info("Stop requested; aborting cycle before completion")
                    return

                stream = self.source.fetch_observations_since(
                    conn, fetch_from, on_malformed=on_malformed
                )
                async with aclosing(stream) as observations:
                    async for observation in observations:
                        if self._stop_event.is_set():
                            report.status = CycleStatus.ABORTED
                            logger.info("Stop requested; aborting cycle before completion")
                            return
                        if str(observation.observation_id) in retried:
                            high_water = max(high_water, observation.captured_at)
                            continue
                        self._phase = SyncPhase.PROCESSING
                        report.fetched += 1
                        handled = await self._handle_item(
                            session, observation, report, pending
                        )
                        if not handled:
                            hold_back = min(
                                hold_back or observation.captured_at,
                                observation.captured_at,
                            )
                        high_water = max(high_water, observation.captured_at)
                        self._phase = SyncPhase.FETCHING
            finally:
                await conn.close()

            # Failed items are re-attempted from sync_failures, so they do not
            # hold the cutoff back unless they could not be recorded there
            if hold_back is not None:
                high_water = min(high_water, hold_back)
            self._cutoff = await self.state_store.advance_cutoff(
                session, self.cursor_name, high_water
            )
            report.cutoff_after = self._cutoff
            report.status = CycleStatus.COMPLETED

    async def _retry_failures(
        self,
        session: AsyncSession,
        conn: AsyncConnection,
        report: CycleReport,
        on_malformed: Callable[[MalformedObservation], None],
    ) -> tuple[set[str], set[str]]:
        """
        Re-attempt observations that earlier cycles failed to write.

        Returns:
            Ids still recorded as failed, and ids attempted here
        """
        pending = set(
            await self.state_store.pending_failures(
                session, self.cursor_name, limit=self.failure_batch_size
            )
        )
        if not pending:
            return pending, set()

        logger.info("Re-attempting %d observations that failed to write", len(pending))
        observations = await self.source.fetch_observations_by_id(
            conn, [int(i) for i in pending], on_malformed=on_malformed
        )
        for gone in pending - {str(o.observation_id) for o in observations}:
            logger.info("Observation %s is no longer readable upstream; dropping it", gone)
            await self.state_store.clear_failure(session, self.cursor_name, gone)
            pending.discard(gone)

        retried: set[str] = set()
        for observation in observations:
            if self._stop_event.is_set():
                break
            self._phase = SyncPhase.PROCESSING
            report.fetched += 1
            await self._handle_item(session, observation, report, pending)
            retried.add(str(observation.observation_id))
        self._phase = SyncPhase.FETCHING
        return pending, retried

    async def _handle_item(
        self,
        session: AsyncSession,
        observation: SourceObservation,
        report: CycleReport,
        pending: set[str],
    ) -> bool:
        """
        Process one observation and keep sync_failures in step.

        Returns:
            False if the item failed and the failure could not be recorded
        """
        observation_id = str(observation.observation_id)
        error = await self._process_item(session, observation, report)
        try:
            if error is None:
                if observation_id in pending:
                    await self.state_store.clear_failure(
                        session, self.cursor_name, observation_id
                    )
                    pending.discard(observation_id)
                return True
            await self.state_store.record_failure(
                session,
                self.cursor_name,
                observation_id,
                observation.captured_at,
                error,
            )
            pending.add(observation_id)
            return True
        except (SQLAlchemyError, OSError) as e:
            logger.warning(
                "Could not update failure record for observation %s: %s",
                observation_id,
                e,
            )
            with suppress(SQLAlchemyError):
                await session.rollback()
            return error is None

    async def _process_item(
        self,
        session: AsyncSession,
        observation: SourceObservation,
        report: CycleReport,
    ) -> str | None:
        """Resolve and materialize one observation; returns the error if it failed."""
        for attempt in range(1, self.item_attempts + 1):
            try:
                match = await self.resolver.resolve(session, observation.subject)
                result = await self.materializer.materialize(
                    session, observation, match.patient
                )
                break
            except TargetWriteFailure as e:
                if attempt < self.item_attempts:
                    logger.warning(
                        "Write failed for observation %s (attempt %d/%d): %s",
                        observation.observation_id,
                        attempt,
                        self.item_attempts,
                        e,
                    )
                    continue
                logger.error(
                    "Giving up on observation %s after %d attempts: %s",
                    observation.observation_id,
                    attempt,
                    e,
                )
                report.errors += 1
                return str(e)
            except Exception as e:
                logger.exception(
                    "Unexpected error processing observation %s",
                    observation.observation_id,
                )
                with suppress(SQLAlchemyError):
                    await session.rollback()
                report.errors += 1
                return f"{type(e).__name__}: {e}"

        if result.status is MaterializeStatus.SYNCED:
            report.synced += 1
        elif result.status is MaterializeStatus.ALREADY_SYNCED:
            report.already_synced += 1
        else:
            report.skipped += 1
        return None

    async def _with_backoff(self, operation: Callable[[], Awaitable[T]], what: str) -> T:
        """Run a connect-type operation, retrying with exponential backoff."""
        delay = self.retry_delay_seconds
        for attempt in range(1, self.max_connect_attempts + 1):
            try:
                return await operation()
            except RETRYABLE_CONNECT_ERRORS as e:
                if attempt >= self.max_connect_attempts:
                    logger.error(
                        "%s unavailable after %d attempts", what.capitalize(), attempt
                    )
                    raise
                logger.warning(
                    "%s unavailable (attempt %d/%d): %s; retrying in %.1fs",
                    what.capitalize(),
                    attempt,
                    self.max_connect_attempts,
                    e,
                    delay,
                )
                self._phase = SyncPhase.BACKOFF
                if await self._pause(delay):
                    raise
                self._phase = SyncPhase.CONNECTING
                delay = min(delay * self.backoff_multiplier, self.max_retry_delay_seconds)
        raise AssertionError("unreachable")

    async def _record_run(self, report: CycleReport) -> None:
        try:
            async with self.session_factory() as session:
                await self.state_store.record_run(session, report)
        except (SQLAlchemyError, OSError) as e:
            logger.warning("Could not record sync run history: %s", e)

    async def _pause(self, seconds: float) -> bool:
        """Sleep; returns True early if a stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def run_forever(self) -> None:
        """Run cycles until stop() is called."""
        logger.info(
            "Starting sync loop for %s (interval %.1fs)",
            self.cursor_name,
            self.interval_seconds,
        )
        try:
            while not self._stop_event.is_set():
                try:
                    await self.run_cycle()
                except Exception:
                    logger.exception("Unexpected error in sync loop")

                wait = self.interval_seconds
                if self._last_failure_fatal:
                    wait = max(wait, self.max_retry_delay_seconds)
                if await self._pause(wait):
                    break
        finally:
            self._phase = SyncPhase.STOPPED
            logger.info("Sync loop stopped: %s", self.counters.to_dict())

    def start(self) -> asyncio.Task[None]:
        """Start the loop in the background if it is not running."""
        if not self.running:
            self._stop_event.clear()
            self._task = asyncio.create_task(
                self.run_forever(), name=f"sync-loop-{self.cursor_name}"
            )
        assert self._task is not None
        return self._task

    def request_stop(self) -> None:
        """Ask the loop and any in-flight cycle to stop after the current item."""
        self._stop_event.set()

    async def stop(self, timeout: float | None = 30.0) -> None:
        """
        Stop the loop and wait for it. The in-flight cycle finishes its
        current item and aborts; connections are released before this returns.
        """
        self.request_stop()
        task, self._task = self._task, None
        if task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Sync loop did not stop within %.1fs; cancelling", timeout)
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        self._stop_event.clear()
        if self._phase is not SyncPhase.STOPPED:
            self._phase = SyncPhase.IDLE

    async def close(self) -> None:
        """Stop the loop and release the source pool."""
        await self.stop()
        await self.source.dispose()


def create_orchestrator(
    config: Settings,
    source: ObservationSource | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> SyncOrchestrator:
    """Factory function to create a SyncOrchestrator from settings."""
    if source is None:
        source = ObservationSource(
            database_url=config.source_database_url,
            page_size=config.source_page_size,
            concept_locale=config.source_concept_locale,
            national_id_type=config.source_national_id_type,
            source_timezone=config.source_timezone,
            pool_size=config.source_pool_size,
            connect_timeout=config.source_connect_timeout,
        )
    if session_factory is None:
        engine = create_target_engine(config.target_database_url, config.target_pool_size)
        session_factory = create_session_factory(engine)

    return SyncOrchestrator(
        source=source,
        session_factory=session_factory,
        resolver=IdentityResolver(
            source_system=config.source_system,
            auto_provision=config.sync_auto_provision,
        ),
        materializer=RecordMaterializer(
            source_system=config.source_system,
            default_provider_name=config.default_provider_name,
            default_location_name=config.default_location_name,
        ),
        cursor_name=config.sync_cursor_name or f"{config.source_system}-observations",
        interval_seconds=config.sync_interval_seconds,
        max_connect_attempts=config.sync_max_connect_attempts,
        retry_delay_seconds=config.sync_retry_delay_seconds,
        backoff_multiplier=config.sync_backoff_multiplier,
        max_retry_delay_seconds=config.sync_max_retry_delay_seconds,
        initial_lookback=timedelta(hours=config.sync_initial_lookback_hours),
        overlap=timedelta(seconds=config.sync_overlap_seconds),
        item_attempts=config.sync_item_attempts,
        failure_batch_size=config.source_page_size,
    )
