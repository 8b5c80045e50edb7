"""Database engine setup and connection checks."""

import logging

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from fhir_marshal.config import settings
from fhir_marshal.errors import StorageConnectionError

logger = logging.getLogger(__name__)


def create_engine(database_url: str | None = None, **kwargs) -> AsyncEngine:
    """Create an async engine (asyncpg driver) for the given URL.

    Args:
        database_url: SQLAlchemy URL; defaults to settings.database_url.
        **kwargs: Passed through to create_async_engine.

    Returns:
        A new AsyncEngine.
    """
    kwargs.setdefault("echo", settings.debug)
    kwargs.setdefault("pool_pre_ping", True)
    return create_async_engine(database_url or settings.database_url, **kwargs)


async def verify_connection(engine: AsyncEngine) -> None:
    """Check the database answers a trivial query.

    Raises:
        StorageConnectionError: If no connection can be established.
    """
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        raise StorageConnectionError(f"Cannot connect to database: {e}") from e
    logger.info("PostgreSQL: connected (%s)", engine.url.render_as_string(hide_password=True))
