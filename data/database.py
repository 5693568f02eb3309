"""
Database engine and session handling.

One `DatabaseManager` owns the engine. Services receive its `session`
context manager as their session factory, so every quota charge or refund
runs in its own short transaction.
"""
import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from config.settings import settings
from .db_models import Base

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Owns the engine and hands out sessions."""

    def __init__(self, database_url: Optional[str] = None):
        """
        Args:
            database_url: SQLAlchemy database URL (defaults to settings.database_url)
        """
        self.database_url = database_url or settings.database_url

        if self.is_sqlite:
            # Requests and background batches share connections across threads
            extra = {'poolclass': StaticPool} if self.is_in_memory else {}
            self.engine = create_engine(
                self.database_url,
                connect_args={'check_same_thread': False},
                echo=False,
                **extra
            )
        else:
            self.engine = create_engine(self.database_url, echo=False, pool_pre_ping=True)

        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=self.engine
        )

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith('sqlite')

    @property
    def is_in_memory(self) -> bool:
        return self.is_sqlite and (':memory:' in self.database_url or self.database_url == 'sqlite://')

    def create_tables(self):
        """Create all tables that do not exist yet."""
        Base.metadata.create_all(bind=self.engine)
        logger.info(f"Database tables created at: {self.database_url}")

    def drop_tables(self):
        """Drop every table, including usage counters. Use with caution!"""
        Base.metadata.drop_all(bind=self.engine)
        logger.warning(f"Database tables dropped from: {self.database_url}")

    def dispose(self):
        """Close pooled connections."""
        self.engine.dispose()

    def get_session(self) -> Session:
        """New session; the caller closes it."""
        return self.SessionLocal()

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        Transactional session scope.

        Commits on success, rolls back on exception.

        Usage:
            with db_manager.session() as session:
                UsageRepository(session).get_daily(user_id, day)
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


# Global database manager instance
_db_manager = None


def get_db_manager(database_url: Optional[str] = None) -> DatabaseManager:
    """
    Get or create global database manager instance.

    Args:
        database_url: Optional database URL. Only used on first call.

    Returns:
        DatabaseManager instance
    """
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager(database_url)
    return _db_manager


def set_db_manager(db_manager: DatabaseManager) -> None:
    """Replace the global database manager (used by tests and scripts)."""
    global _db_manager
    _db_manager = db_manager


def init_database(database_url: Optional[str] = None):
    """
    Initialize database by creating all tables.

    Args:
        database_url: Optional database URL
    """
    db_manager = get_db_manager(database_url)
    db_manager.create_tables()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """
    Context manager for database sessions using global manager.

    Usage:
        with session_scope() as session:
            user = session.get(User, user_id)
    """
    with get_db_manager().session() as session:
        yield session


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for FastAPI endpoints.

    Usage:
        @app.get("/sets/{set_id}")
        async def get_set(set_id: str, db: Session = Depends(get_db)):
            ...
    """
    with session_scope() as session:
        yield session
