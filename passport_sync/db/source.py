"""
OpenMRS source database: table definitions and engine factory.

Only the columns the sync reads are declared. The tables are never written
by this service; tests create them to stand up a small OpenMRS instance.
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError, NoSuchModuleError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from passport_sync.exceptions import FatalConfig

openmrs_metadata = MetaData()

person = Table(
    "person",
    openmrs_metadata,
    Column("person_id", Integer, primary_key=True),
    Column("uuid", String(38)),
    Column("voided", Boolean, nullable=False, default=False),
)

person_name = Table(
    "person_name",
    openmrs_metadata,
    Column("person_name_id", Integer, primary_key=True),
    Column("person_id", Integer, nullable=False),
    Column("preferred", Boolean, nullable=False, default=False),
    Column("given_name", String(50)),
    Column("middle_name", String(50)),
    Column("family_name", String(50)),
    Column("voided", Boolean, nullable=False, default=False),
)

patient_identifier_type = Table(
    "patient_identifier_type",
    openmrs_metadata,
    Column("patient_identifier_type_id", Integer, primary_key=True),
    Column("name", String(50), nullable=False),
    Column("retired", Boolean, nullable=False, default=False),
)

patient_identifier = Table(
    "patient_identifier",
    openmrs_metadata,
    Column("patient_identifier_id", Integer, primary_key=True),
    Column("patient_id", Integer, nullable=False),
    Column("identifier", String(50), nullable=False),
    Column("identifier_type", Integer, nullable=False),
    Column("preferred", Boolean, nullable=False, default=False),
    Column("voided", Boolean, nullable=False, default=False),
)

concept_name = Table(
    "concept_name",
    openmrs_metadata,
    Column("concept_name_id", Integer, primary_key=True),
    Column("concept_id", Integer, nullable=False),
    Column("name", String(255), nullable=False),
    Column("locale", String(50), nullable=False),
    Column("concept_name_type", String(50)),
    Column("voided", Boolean, nullable=False, default=False),
)

location = Table(
    "location",
    openmrs_metadata,
    Column("location_id", Integer, primary_key=True),
    Column("name", String(255), nullable=False),
    Column("retired", Boolean, nullable=False, default=False),
)

users = Table(
    "users",
    openmrs_metadata,
    Column("user_id", Integer, primary_key=True),
    Column("username", String(50)),
    Column("person_id", Integer),
)

provider = Table(
    "provider",
    openmrs_metadata,
    Column("provider_id", Integer, primary_key=True),
    Column("person_id", Integer),
    Column("name", String(255)),
    Column("identifier", String(255)),
    Column("retired", Boolean, nullable=False, default=False),
)

encounter = Table(
    "encounter",
    openmrs_metadata,
    Column("encounter_id", Integer, primary_key=True),
    Column("location_id", Integer),
    Column("creator", Integer),
    Column("voided", Boolean, nullable=False, default=False),
)

encounter_provider = Table(
    "encounter_provider",
    openmrs_metadata,
    Column("encounter_provider_id", Integer, primary_key=True),
    Column("encounter_id", Integer, nullable=False),
    Column("provider_id", Integer, nullable=False),
    Column("voided", Boolean, nullable=False, default=False),
)

obs = Table(
    "obs",
    openmrs_metadata,
    Column("obs_id", Integer, primary_key=True),
    Column("person_id", Integer, nullable=False),
    Column("concept_id", Integer, nullable=False),
    Column("encounter_id", Integer),
    Column("location_id", Integer),
    Column("obs_datetime", DateTime),
    Column("date_created", DateTime),
    Column("value_text", Text),
    Column("value_numeric", Float),
    Column("value_coded", Integer),
    Column("comments", String(255)),
    Column("creator", Integer),
    Column("voided", Boolean, nullable=False, default=False),
)


def create_source_engine(
    database_url: str,
    pool_size: int = 5,
    connect_timeout: float = 30.0,
) -> AsyncEngine:
    """
    Create the async engine for the OpenMRS database.

    Connections are pre-pinged on checkout so a pooled connection that the
    server dropped between cycles is replaced instead of failing the cycle.

    Raises:
        FatalConfig: If the URL is invalid or its driver is not installed
    """
    try:
        url = make_url(database_url)
        kwargs: dict[str, object] = {"pool_pre_ping": True}
        backend = url.get_backend_name()
        if backend != "sqlite":
            kwargs.update(pool_size=pool_size, max_overflow=0, pool_recycle=3600)
        if backend == "mysql":
            kwargs["connect_args"] = {"connect_timeout": int(connect_timeout)}
        return create_async_engine(url, **kwargs)
    except (ArgumentError, NoSuchModuleError, ImportError) as e:
        raise FatalConfig(f"Invalid source database configuration: {e}") from e
