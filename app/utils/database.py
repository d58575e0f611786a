"""
SQLAlchemy database client with connection pooling and helper functions.

Provides:
- Engine and session management
- Transaction helpers
- SQLite tuning (WAL, busy timeout) so readers never block the writer
"""

from contextlib import contextmanager
from typing import Iterator, Optional

from loguru import logger
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.models.records import Base
from app.utils.config import get_settings

SQLITE_BUSY_TIMEOUT_S = 30


def _enable_sqlite_wal(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_S * 1000}")
    cursor.close()


class DatabaseClient:
    """Relational database client with connection pooling."""

    def __init__(self, url: str = None):
        """Initialize database client."""
        self.url = url or get_settings().database_url

        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    def connect(self):
        """Create the engine and session factory."""
        if self._engine is None:
            logger.info(f"Connecting to database at {self.url}...")
            connect_args = {}
            if self.is_sqlite:
                connect_args = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_S}
            self._engine = create_engine(
                self.url,
                connect_args=connect_args,
                pool_pre_ping=True,
            )
            if self.is_sqlite:
                event.listen(self._engine, "connect", _enable_sqlite_wal)
            self._session_factory = sessionmaker(
                bind=self._engine,
                autoflush=False,
                expire_on_commit=False,
            )
            logger.success("Database engine ready")

    def close(self):
        """Dispose of the engine and its pooled connections."""
        if self._engine is not None:
            logger.info("Closing database connection...")
            self._engine.dispose()
            self._engine = None
            self._session_factory = None

    @property
    def engine(self) -> Engine:
        """Get engine, connecting if necessary."""
        if self._engine is None:
            self.connect()
        return self._engine

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context manager for a transactional session."""
        if self._session_factory is None:
            self.connect()
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_schema(self):
        """Create tables that do not exist yet."""
        Base.metadata.create_all(self.engine)
        logger.info("Database schema ensured")

    def ping(self) -> bool:
        """Run a trivial query; raises if the database is unreachable."""
        with self.engine.connect() as connection:
            return connection.execute(text("SELECT 1")).scalar() == 1
