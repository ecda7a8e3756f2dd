from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine
from sqlalchemy.orm import declarative_base
import os
import logging

logger = logging.getLogger("quizstore.database")

# Database URL resolution:
# 1. An explicit URL passed by the client (datasources / datasource_url).
# 2. DATABASE_URL from the environment.
# 3. A local SQLite file.

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./quizstore.db"

Base = declarative_base()


def choose_database_url(explicit_url=None) -> str:
    if explicit_url:
        return explicit_url
    if os.getenv("DATABASE_URL"):
        return os.getenv("DATABASE_URL")
    return DEFAULT_DATABASE_URL


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Builds the async engine; SQLite connections get foreign key enforcement."""
    engine = create_async_engine(url, echo=echo)
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    logger.debug("Engine created for dialect %s", engine.dialect.name)
    return engine


async def init_db(engine: AsyncEngine):
    # Models must be imported so they register with Base.metadata
    from quizstore import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
