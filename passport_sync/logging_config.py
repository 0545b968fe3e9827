"""Logging setup shared by the API process and the CLI."""

import logging

from passport_sync.settings import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger once; later calls only adjust the level."""
    resolved = (level or settings.log_level).upper()
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=resolved, format=LOG_FORMAT)
    root.setLevel(resolved)
    # SQLAlchemy engine logging is controlled separately and stays quiet
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
