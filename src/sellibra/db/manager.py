"""Database connection manager for the quota store."""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.orm import Session, sessionmaker

from sellibra.db.base import Base

logger = logging.getLogger(__name__)


class DatabaseManager:
    """
    Owns the SQLAlchemy engine and session factory.

    Constructed once per process and passed to the components that need
    it; ``close()`` disposes the connection pool on shutdown.
    """

    def __init__(
        self,
        database_url: str = "sqlite:///data/sellibra.db",
        echo: bool = False,
        sqlite_busy_timeout_ms: int = 30000,
    ) -> None:
        """
        Initialize the database manager.

        Args:
            database_url: SQLAlchemy database URL
            echo: Enable SQL echo logging
            sqlite_busy_timeout_ms: How long SQLite writers wait for the lock
        """
        self._database_url = database_url
        self._echo = echo
        self._busy_timeout_ms = sqlite_busy_timeout_ms
        self._engine: Engine | None = None
        self._session_factory: sessionmaker[Session] | None = None

    @property
    def is_sqlite(self) -> bool:
        return self._database_url.startswith("sqlite")

    @property
    def engine(self) -> Engine:
        """Get or create the database engine."""
        if self._engine is None:
            self._engine = self._create_engine()
        return self._engine

    def _create_engine(self) -> Engine:
        """Create a new SQLAlchemy engine."""
        connect_args = {}
        if self.is_sqlite:
            # Ensure data directory exists for SQLite
            if self._database_url.startswith("sqlite:///"):
                db_path = self._database_url.replace("sqlite:///", "")
                if db_path and db_path != ":memory:":
                    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            # Connections are used from worker threads
            connect_args = {
                "check_same_thread": False,
                "timeout": self._busy_timeout_ms / 1000,
            }

        engine = create_engine(
            self._database_url,
            echo=self._echo,
            pool_pre_ping=True,  # Enable connection health checks
            connect_args=connect_args,
        )

        if self.is_sqlite:
            self._configure_sqlite_pragmas(engine)

        return engine

    def _configure_sqlite_pragmas(self, engine: Engine) -> None:
        """Configure SQLite pragmas for concurrent writers."""
        busy_timeout = self._busy_timeout_ms

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record) -> None:  # type: ignore
            cursor = dbapi_connection.cursor()
            # Wait for the write lock instead of failing immediately
            cursor.execute(f"PRAGMA busy_timeout={busy_timeout}")
            # WAL lets readers proceed while a writer holds the lock
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

        logger.info("SQLite pragmas configured")

    @property
    def session_factory(self) -> sessionmaker[Session]:
        """Get or create the session factory."""
        if self._session_factory is None:
            self._session_factory = sessionmaker(
                bind=self.engine,
                autocommit=False,
                autoflush=False,
                expire_on_commit=False,
            )
        return self._session_factory

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Get a database session with automatic cleanup.

        Yields:
            SQLAlchemy Session instance

        Usage:
            with db_manager.get_session() as session:
                session.get(User, user_id)
        """
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def init_db(self) -> None:
        """Create all tables if they don't exist."""
        Base.metadata.create_all(bind=self.engine)
        logger.info("Database tables created/verified")

    def drop_db(self) -> None:
        """Drop all tables. Use with caution!"""
        Base.metadata.drop_all(bind=self.engine)
        logger.warning("All database tables dropped")

    def health_check(self) -> bool:
        """
        Check if the database connection is healthy.

        Returns:
            True if connection is healthy, False otherwise
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def close(self) -> None:
        """Close the database engine and release resources."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database connection closed")
