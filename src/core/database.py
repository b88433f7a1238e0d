import asyncio
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager

from loguru import logger
from sqlalchemy import event
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.engine.interfaces import DBAPIConnection
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import ConnectionPoolEntry
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from src.config.settings import settings
from src.core.errors import ErrorCategory, ProviderError, TransientProviderError

DATABASE_URL = f"sqlite+aiosqlite:///{settings.SQLITE_DB_PATH}"

# Busy timeout covers the web process and the arq worker writing concurrently
engine: AsyncEngine = create_async_engine(
    DATABASE_URL,
    echo=settings.DEBUG,
    connect_args={
        "check_same_thread": False,
        "timeout": 30.0,
    },
)


@event.listens_for(engine.sync_engine, "connect")
def set_sqlite_pragma(dbapi_connection: DBAPIConnection, connection_record: ConnectionPoolEntry) -> None:
    """Configures SQLite connection pragmas for concurrent access.

    Enables Write-Ahead Logging (WAL) so readers never block the worker's
    reconciliation writes, and turns on foreign keys so bundle grants keep
    their provenance.

    Raises:
        sqlite3.OperationalError: If the database is locked and pragmas cannot be set.
    """
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.execute("PRAGMA foreign_keys=ON")
    except Exception as e:
        logger.error(f"Failed to set SQLite pragmas: {e}")
        raise
    finally:
        cursor.close()


async_session_maker = sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


async def init_db() -> None:
    """Creates every registered table. Safe to call on each startup."""
    # Registers the table metadata before create_all
    import src.domain.permissions.models  # noqa: F401
    import src.domain.users.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info(f"Database schema ready at {settings.SQLITE_DB_PATH}")


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Dependency provider for asynchronous database sessions.

    Yields:
        AsyncSession: An active SQLAlchemy/SQLModel asynchronous session.
    """
    async with async_session_maker() as session:
        yield session


@asynccontextmanager
async def db_operation(op_name: str) -> AsyncIterator[None]:
    """Bounds a block of database work by DB_TIMEOUT_SECONDS and categorizes failures.

    Raises:
        TransientProviderError: On timeout or a locked/unavailable database.
        ProviderError: On any other SQLAlchemy failure.
    """
    try:
        async with asyncio.timeout(settings.DB_TIMEOUT_SECONDS):
            yield
    except TimeoutError as e:
        logger.warning(f"Database operation {op_name} timed out after {settings.DB_TIMEOUT_SECONDS}s")
        raise TransientProviderError(
            f"Database timeout during {op_name}", category=ErrorCategory.TIMEOUT, system="database"
        ) from e
    except OperationalError as e:
        logger.warning(f"Database operation {op_name} failed: {e}")
        raise TransientProviderError(
            f"Database unavailable during {op_name}", category=ErrorCategory.CONNECTION_FAILED, system="database"
        ) from e
    except SQLAlchemyError as e:
        logger.error(f"Database operation {op_name} failed: {e}")
        raise ProviderError(f"Database error during {op_name}", system="database") from e
