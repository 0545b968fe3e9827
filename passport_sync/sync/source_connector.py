"""
Source connector for OpenMRS observations.

Reads non-voided observations created since a cutoff, page by page, in a
deterministic (date_created, obs_id) order. Each page is a bounded query
resumed with a keyset so a cold first run never loads the whole table.

Per-row derived values (preferred name, national ID, concept label,
provider, location) are correlated scalar subqueries rather than joins, so
a person with several names or an encounter with several providers never
duplicates an observation row.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy import Select, and_, false, func, literal, or_, select
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from passport_sync.db.source import (
    concept_name,
    create_source_engine,
    encounter,
    encounter_provider,
    location,
    obs,
    patient_identifier,
    patient_identifier_type,
    person,
    person_name,
    provider,
    users,
)
from passport_sync.exceptions import MalformedObservation, SourceUnavailable

logger = logging.getLogger(__name__)

FULLY_SPECIFIED = "FULLY_SPECIFIED"


@dataclass(frozen=True)
class SubjectIdentity:
    """Who an observation is about, as the source knows them."""

    external_id: str
    given_name: str | None = None
    middle_name: str | None = None
    family_name: str | None = None
    national_id: str | None = None

    @property
    def full_name(self) -> str:
        parts = (self.given_name, self.middle_name, self.family_name)
        return " ".join(p for p in parts if p)

    @property
    def has_name(self) -> bool:
        return bool(self.given_name or self.family_name)


@dataclass(frozen=True)
class SourceObservation:
    """One clinical fact read from OpenMRS."""

    observation_id: int
    subject: SubjectIdentity
    concept_label: str
    recorded_at: datetime
    captured_at: datetime
    value_text: str | None = None
    value_numeric: float | None = None
    value_coded_label: str | None = None
    provider_name: str | None = None
    location_name: str | None = None
    encounter_ref: str | None = None
    comments: str | None = None

    @property
    def subject_external_id(self) -> str:
        return self.subject.external_id


def _clean(value: Any) -> str | None:
    """Collapse whitespace; empty strings become None."""
    if value is None:
        return None
    text = " ".join(str(value).split())
    return text or None


def _first(*values: Any) -> str | None:
    for value in values:
        cleaned = _clean(value)
        if cleaned:
            return cleaned
    return None


class ObservationSource:
    """Read-only access to observations in the OpenMRS database."""

    def __init__(
        self,
        engine: AsyncEngine | None = None,
        *,
        database_url: str | None = None,
        page_size: int = 100,
        concept_locale: str = "en",
        national_id_type: str = "National ID",
        source_timezone: str = "UTC",
        pool_size: int = 5,
        connect_timeout: float = 30.0,
    ):
        if engine is None and database_url is None:
            raise ValueError("Either engine or database_url is required")
        self._engine = engine
        self._database_url = database_url
        self._pool_size = pool_size
        self._connect_timeout = connect_timeout
        self.page_size = page_size
        self.concept_locale = concept_locale
        self.national_id_type = national_id_type
        self.timezone = ZoneInfo(source_timezone)

    @property
    def engine(self) -> AsyncEngine:
        """The source engine, created on first use.

        Raises:
            FatalConfig: If the configured URL cannot produce an engine
        """
        if self._engine is None:
            assert self._database_url is not None
            self._engine = create_source_engine(
                self._database_url,
                pool_size=self._pool_size,
                connect_timeout=self._connect_timeout,
            )
        return self._engine

    async def dispose(self) -> None:
        """Release pooled connections."""
        if self._engine is not None:
            await self._engine.dispose()

    async def open_connection(self) -> AsyncConnection:
        """
        Check out a verified connection.

        Raises:
            SourceUnavailable: If the database cannot be reached
        """
        try:
            conn = await asyncio.wait_for(
                self.engine.connect(), timeout=self._connect_timeout
            )
        except (DBAPIError, OSError, asyncio.TimeoutError) as e:
            raise SourceUnavailable(f"Cannot connect to source database: {e}") from e

        try:
            await conn.execute(select(literal(1)))
        except (DBAPIError, OSError) as e:
            await conn.close()
            raise SourceUnavailable(f"Source database health check failed: {e}") from e
        return conn

    async def ping(self) -> bool:
        """Return True if a connection can be opened."""
        try:
            conn = await self.open_connection()
        except SourceUnavailable as e:
            logger.warning("Source ping failed: %s", e)
            return False
        await conn.close()
        return True

    async def fetch_observations_since(
        self,
        conn: AsyncConnection,
        cutoff: datetime,
        on_malformed: Callable[[MalformedObservation], None] | None = None,
    ) -> AsyncIterator[SourceObservation]:
        """
        Yield observations created at or after the cutoff.

        Args:
            conn: Open source connection, owned by the caller
            cutoff: Aware timestamp; rows with date_created >= cutoff are read
            on_malformed: Called for every row skipped as malformed

        Raises:
            SourceUnavailable: If a page query fails for connectivity reasons
        """
        cutoff_local = self._to_source_time(cutoff)
        after: tuple[datetime, int] | None = None

        while True:
            rows = await self._fetch(conn, self._page_query(cutoff_local, after))
            logger.debug("Fetched page of %d observations (after=%s)", len(rows), after)

            for row in rows:
                try:
                    observation = self._parse_row(row)
                except MalformedObservation as e:
                    logger.warning("Skipping source row: %s", e)
                    if on_malformed is not None:
                        on_malformed(e)
                    continue
                yield observation

            if len(rows) < self.page_size:
                return
            last = rows[-1]
            after = (last["date_created"], last["obs_id"])

    async def fetch_observations_by_id(
        self,
        conn: AsyncConnection,
        observation_ids: Sequence[int],
        on_malformed: Callable[[MalformedObservation], None] | None = None,
    ) -> list[SourceObservation]:
        """
        Read specific observations, in the same order as the since-cutoff feed.

        Ids that are voided or gone upstream are simply absent from the result.

        Raises:
            SourceUnavailable: If the query fails for connectivity reasons
        """
        if not observation_ids:
            return []
        rows = await self._fetch(
            conn, self._observation_query(obs.c.obs_id.in_(list(observation_ids)))
        )
        observations = []
        for row in rows:
            try:
                observations.append(self._parse_row(row))
            except MalformedObservation as e:
                logger.warning("Skipping source row: %s", e)
                if on_malformed is not None:
                    on_malformed(e)
        return observations

    async def _fetch(
        self, conn: AsyncConnection, query: Select[Any]
    ) -> list[Mapping[str, Any]]:
        try:
            result = await conn.execute(query)
            return list(result.mappings().all())
        except (OperationalError, InterfaceError, OSError, asyncio.TimeoutError) as e:
            raise SourceUnavailable(f"Observation query failed: {e}") from e
        except DBAPIError as e:
            if e.connection_invalidated:
                raise SourceUnavailable(f"Source connection lost: {e}") from e
            raise

    def _page_query(
        self, cutoff_local: datetime, after: tuple[datetime, int] | None
    ) -> Select[Any]:
        if after is None:
            window = obs.c.date_created >= cutoff_local
        else:
            last_created, last_id = after
            window = or_(
                obs.c.date_created > last_created,
                and_(obs.c.date_created == last_created, obs.c.obs_id > last_id),
            )
        return self._observation_query(window).limit(self.page_size)

    def _observation_query(self, window: Any) -> Select[Any]:
        return (
            select(
                obs.c.obs_id,
                obs.c.person_id,
                obs.c.encounter_id,
                obs.c.obs_datetime,
                obs.c.date_created,
                obs.c.value_text,
                obs.c.value_numeric,
                obs.c.comments,
                person.c.uuid.label("person_uuid"),
                self._preferred_name(person_name.c.given_name).label("given_name"),
                self._preferred_name(person_name.c.middle_name).label("middle_name"),
                self._preferred_name(person_name.c.family_name).label("family_name"),
                self._national_id().label("national_id"),
                self._concept_label(obs.c.concept_id).label("concept_label"),
                self._concept_label(obs.c.value_coded).label("value_coded_label"),
                self._provider_person_name().label("provider_person_name"),
                self._provider_label().label("provider_label"),
                self._encounter_creator().label("encounter_creator"),
                self._obs_creator().label("obs_creator"),
                self._encounter_location().label("encounter_location"),
                self._obs_location().label("obs_location"),
            )
            .select_from(obs.join(person, person.c.person_id == obs.c.person_id))
            .where(obs.c.voided == false(), person.c.voided == false(), window)
            .order_by(obs.c.date_created, obs.c.obs_id)
        )

    def _preferred_name(self, column: Any) -> Any:
        pn = person_name.alias()
        return (
            select(pn.c[column.name])
            .where(pn.c.person_id == obs.c.person_id, pn.c.voided == false())
            .order_by(pn.c.preferred.desc(), pn.c.person_name_id)
            .limit(1)
            .scalar_subquery()
        )

    def _national_id(self) -> Any:
        pi = patient_identifier.alias()
        pit = patient_identifier_type.alias()
        return (
            select(pi.c.identifier)
            .select_from(
                pi.join(pit, pit.c.patient_identifier_type_id == pi.c.identifier_type)
            )
            .where(
                pi.c.patient_id == obs.c.person_id,
                pi.c.voided == false(),
                pit.c.retired == false(),
                pit.c.name == self.national_id_type,
            )
            .order_by(pi.c.preferred.desc(), pi.c.patient_identifier_id)
            .limit(1)
            .scalar_subquery()
        )

    def _concept_label(self, concept_column: Any) -> Any:
        cn = concept_name.alias()
        return (
            select(cn.c.name)
            .where(
                cn.c.concept_id == concept_column,
                cn.c.locale == self.concept_locale,
                cn.c.concept_name_type == FULLY_SPECIFIED,
                cn.c.voided == false(),
            )
            .order_by(cn.c.concept_name_id)
            .limit(1)
            .scalar_subquery()
        )

    def _provider_person_name(self) -> Any:
        ep = encounter_provider.alias()
        prv = provider.alias()
        ppn = person_name.alias()
        full_name = func.coalesce(ppn.c.given_name, "") + " " + func.coalesce(
            ppn.c.family_name, ""
        )
        return (
            select(full_name)
            .select_from(
                ep.join(prv, prv.c.provider_id == ep.c.provider_id).join(
                    ppn, ppn.c.person_id == prv.c.person_id
                )
            )
            .where(
                ep.c.encounter_id == obs.c.encounter_id,
                ep.c.voided == false(),
                prv.c.retired == false(),
                ppn.c.voided == false(),
            )
            .order_by(ep.c.encounter_provider_id, ppn.c.preferred.desc())
            .limit(1)
            .scalar_subquery()
        )

    def _provider_label(self) -> Any:
        ep = encounter_provider.alias()
        prv = provider.alias()
        return (
            select(func.coalesce(prv.c.name, prv.c.identifier))
            .select_from(ep.join(prv, prv.c.provider_id == ep.c.provider_id))
            .where(
                ep.c.encounter_id == obs.c.encounter_id,
                ep.c.voided == false(),
                prv.c.retired == false(),
            )
            .order_by(ep.c.encounter_provider_id)
            .limit(1)
            .scalar_subquery()
        )

    def _encounter_creator(self) -> Any:
        enc = encounter.alias()
        usr = users.alias()
        return (
            select(usr.c.username)
            .select_from(enc.join(usr, usr.c.user_id == enc.c.creator))
            .where(enc.c.encounter_id == obs.c.encounter_id, enc.c.voided == false())
            .limit(1)
            .scalar_subquery()
        )

    def _obs_creator(self) -> Any:
        usr = users.alias()
        return (
            select(usr.c.username)
            .where(usr.c.user_id == obs.c.creator)
            .limit(1)
            .scalar_subquery()
        )

    def _encounter_location(self) -> Any:
        enc = encounter.alias()
        loc = location.alias()
        return (
            select(loc.c.name)
            .select_from(enc.join(loc, loc.c.location_id == enc.c.location_id))
            .where(
                enc.c.encounter_id == obs.c.encounter_id,
                enc.c.voided == false(),
                loc.c.retired == false(),
            )
            .limit(1)
            .scalar_subquery()
        )

    def _obs_location(self) -> Any:
        loc = location.alias()
        return (
            select(loc.c.name)
            .where(loc.c.location_id == obs.c.location_id, loc.c.retired == false())
            .limit(1)
            .scalar_subquery()
        )

    def _parse_row(self, row: Mapping[str, Any]) -> SourceObservation:
        """Convert a page row into an observation.

        Raises:
            MalformedObservation: If the concept label or a timestamp is unusable
        """
        obs_id = row["obs_id"]
        concept_label = _clean(row["concept_label"])
        if not concept_label:
            raise MalformedObservation(obs_id, "missing concept label")

        recorded_at = self._to_utc(row["obs_datetime"], obs_id, "obs_datetime")
        captured_at = self._to_utc(row["date_created"], obs_id, "date_created")

        subject = SubjectIdentity(
            external_id=_clean(row["person_uuid"]) or str(row["person_id"]),
            given_name=_clean(row["given_name"]),
            middle_name=_clean(row["middle_name"]),
            family_name=_clean(row["family_name"]),
            national_id=_clean(row["national_id"]),
        )

        value_numeric = row["value_numeric"]
        encounter_id = row["encounter_id"]
        return SourceObservation(
            observation_id=obs_id,
            subject=subject,
            concept_label=concept_label,
            recorded_at=recorded_at,
            captured_at=captured_at,
            value_text=_clean(row["value_text"]),
            value_numeric=float(value_numeric) if value_numeric is not None else None,
            value_coded_label=_clean(row["value_coded_label"]),
            provider_name=_first(
                row["provider_person_name"],
                row["provider_label"],
                row["encounter_creator"],
                row["obs_creator"],
            ),
            location_name=_first(row["encounter_location"], row["obs_location"]),
            encounter_ref=str(encounter_id) if encounter_id is not None else None,
            comments=_clean(row["comments"]),
        )

    def _to_source_time(self, value: datetime) -> datetime:
        """Aware UTC cutoff to the source's naive local time."""
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(self.timezone).replace(tzinfo=None)

    def _to_utc(self, value: Any, obs_id: object, column: str) -> datetime:
        if isinstance(value, str):
            try:
                value = datetime.fromisoformat(value)
            except ValueError as e:
                raise MalformedObservation(obs_id, f"unparsable {column}: {value!r}") from e
        if not isinstance(value, datetime):
            raise MalformedObservation(obs_id, f"missing {column}")
        if value.tzinfo is None:
            value = value.replace(tzinfo=self.timezone)
        return value.astimezone(timezone.utc)
