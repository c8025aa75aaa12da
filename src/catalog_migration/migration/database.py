"""
Database engine and session management for the ledger.

SQLite is the default store; any SQLAlchemy URL works. Each ``Database``
owns its engine and session factory so several ledgers (e.g. in tests) can
coexist in one process.
"""

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import Engine, create_engine, event, pool, text
from sqlalchemy.orm import Session, sessionmaker

from catalog_migration.client.exceptions import ConfigurationError, StateError
from catalog_migration.migration.models import Base
from catalog_migration.utils.logging import get_logger

logger = get_logger(__name__)


def _enable_sqlite_pragmas(dbapi_conn, connection_record):
    """Enable foreign keys and WAL journaling on each new SQLite connection."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def create_database_engine(
    database_url: str,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    pool_recycle: int = 3600,
) -> Engine:
    """
    Create a SQLAlchemy engine with settings suited to the backend.

    Args:
        database_url: Database connection URL (sqlite:/// or postgresql://)
        echo: Whether to log SQL statements
        pool_size: Connections kept in the pool (non-SQLite)
        max_overflow: Extra connections allowed beyond pool_size
        pool_timeout: Seconds to wait for a pooled connection
        pool_recycle: Recycle connections after this many seconds

    Returns:
        SQLAlchemy Engine instance

    Raises:
        ConfigurationError: If the URL is empty or the engine cannot be created
    """
    if not database_url:
        raise ConfigurationError("Database URL cannot be empty")

    try:
        is_sqlite = database_url.startswith("sqlite")

        if is_sqlite:
            engine = create_engine(
                database_url,
                echo=echo,
                poolclass=pool.NullPool,
                connect_args={"check_same_thread": False},
            )
            event.listen(engine, "connect", _enable_sqlite_pragmas)
        else:
            engine = create_engine(
                database_url,
                echo=echo,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_timeout=pool_timeout,
                pool_pre_ping=True,
                pool_recycle=pool_recycle,
            )

        logger.debug(
            "database_engine_created",
            database_type="sqlite" if is_sqlite else engine.dialect.name,
        )
        return engine

    except Exception as e:
        logger.error("database_engine_failed", error=str(e))
        raise ConfigurationError(f"Failed to create database engine: {e}") from e


class Database:
    """Engine, schema and session factory for one ledger database."""

    def __init__(self, database_url: str, echo: bool = False, **pool_options: int):
        self.database_url = database_url
        self.engine = create_database_engine(database_url, echo=echo, **pool_options)

        try:
            Base.metadata.create_all(self.engine)
        except Exception as e:
            logger.error("database_init_failed", error=str(e))
            raise ConfigurationError(f"Failed to initialize database: {e}") from e

        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        logger.info("database_initialized", tables=len(Base.metadata.tables))

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        Yield a session that commits on success and rolls back on error.

        Raises:
            StateError: If the database operation fails
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error("database_session_rolled_back", error=str(e))
            raise StateError(f"Database operation failed: {e}") from e
        finally:
            session.close()

    def validate_connection(self) -> bool:
        """Return True if a trivial query succeeds."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error("database_connection_invalid", error=str(e))
            return False

    def reset(self) -> None:
        """Drop and recreate all tables. Destroys all ledger data."""
        Base.metadata.drop_all(self.engine)
        Base.metadata.create_all(self.engine)
        logger.warning("database_reset")

    def dispose(self) -> None:
        self.engine.dispose()
