"""Open the local library from a database URL."""

import logging
from typing import Optional

from sqlalchemy.engine import make_url

from .repository import SQLAlchemyPodcastRepository

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///./rcast.db"


def create_repository(
    database_url: Optional[str] = None, echo: bool = False, create_tables: bool = True
) -> SQLAlchemyPodcastRepository:
    """Open the library at `database_url`, or the default SQLite file.

    The password is masked before the URL is logged.
    """
    database_url = database_url or DEFAULT_DATABASE_URL
    shown = make_url(database_url).render_as_string(hide_password=True)
    logger.info(f"Opening library: {shown}")
    return SQLAlchemyPodcastRepository(
        database_url=database_url, echo=echo, create_tables=create_tables
    )
