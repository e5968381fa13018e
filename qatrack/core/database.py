from collections.abc import AsyncGenerator
from typing import Any

from loguru import logger
from sqlalchemy import event
from sqlalchemy.engine.interfaces import DBAPIConnection
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import ConnectionPoolEntry
from sqlmodel.ext.asyncio.session import AsyncSession

from qatrack.config.settings import settings

_BUSY_TIMEOUT_SECONDS = 30


def set_sqlite_pragma(dbapi_connection: DBAPIConnection, connection_record: ConnectionPoolEntry) -> None:
    """Configures SQLite connection pragmas for concurrent, referentially safe access.

    WAL lets resolver reads proceed while a role replacement is being written.
    Foreign keys are off by default in SQLite and must be enabled per connection,
    otherwise the cascades and RESTRICT rules of the schema are silently ignored.

    Args:
        dbapi_connection: The raw DBAPI connection object.
        connection_record: The connection pool record.

    Raises:
        sqlite3.OperationalError: If the database is locked and pragmas cannot be set.
    """
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute(f"PRAGMA busy_timeout={_BUSY_TIMEOUT_SECONDS * 1000}")
        cursor.execute("PRAGMA foreign_keys=ON")
    except Exception as e:
        logger.error(f"Failed to set SQLite pragmas: {e}")
        raise
    finally:
        cursor.close()


def create_sqlite_engine(db_path: str, **engine_kwargs: Any) -> AsyncEngine:
    """Builds an aiosqlite engine with the connection pragmas attached.

    Args:
        db_path: Filesystem path of the database, or ``:memory:``.
        **engine_kwargs: Passed through to ``create_async_engine`` (e.g. ``poolclass``).

    Returns:
        AsyncEngine: The configured engine.
    """
    async_engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": float(_BUSY_TIMEOUT_SECONDS)},
        **engine_kwargs,
    )
    event.listen(async_engine.sync_engine, "connect", set_sqlite_pragma)
    return async_engine


engine: AsyncEngine = create_sqlite_engine(settings.SQLITE_DB_PATH, echo=settings.DEBUG)

async_session_maker = sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yields one session per request."""
    async with async_session_maker() as session:
        yield session
