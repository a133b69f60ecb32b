"""
Database engine and session management.

Any SQLAlchemy URL works; sqlite is used for local runs and tests.
"""
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from liquidity_guard.monitoring.logger import get_logger

logger = get_logger(__name__)

# Base class for ORM models
Base = declarative_base()


class Database:
    """Database engine and session manager."""

    def __init__(self, database_url: str):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy connection string
        """
        self.database_url = database_url
        url = make_url(database_url)

        if url.get_backend_name() == "sqlite":
            if url.database and url.database != ":memory:":
                Path(url.database).parent.mkdir(parents=True, exist_ok=True)
            self.engine = create_engine(
                database_url,
                echo=False,
                connect_args={"check_same_thread": False},
            )
        else:
            self.engine = create_engine(
                database_url,
                echo=False,
                pool_pre_ping=True,  # Verify connections before using
                pool_size=5,
                max_overflow=10,
                pool_recycle=3600,
            )

        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        logger.info("Database initialized", backend=url.get_backend_name(), database=url.database)

    def create_all(self):
        """Create all tables."""
        # Registers every ORM model on Base.metadata
        import liquidity_guard.storage.repository  # noqa: F401

        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Context manager for database sessions.

        Yields:
            SQLAlchemy Session

        Example:
            with db.get_session() as session:
                session.add(obj)
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def init_db(database_url: str) -> Database:
    """
    Initialize database with specific URL and create any missing tables.

    Args:
        database_url: SQLAlchemy connection string

    Returns:
        Database instance
    """
    db = Database(database_url)
    db.create_all()
    return db
