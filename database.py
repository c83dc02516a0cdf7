"""
Database engine and session handling for MedNudge
"""

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool
from contextlib import contextmanager
from typing import Callable, Generator, Optional
import logging

from config import settings


logger = logging.getLogger(__name__)


if settings.DATABASE_URL.startswith("sqlite"):
    # Single shared connection
    engine = create_engine(
        settings.DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=settings.DATABASE_ECHO
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()
else:
    engine = create_engine(
        settings.DATABASE_URL,
        echo=settings.DATABASE_ECHO,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True
    )

# Rows returned by services outlive the session that loaded them
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine
)

Base = declarative_base()


@contextmanager
def session_scope(
    db: Optional[Session] = None,
    session_factory: Callable[[], Session] = SessionLocal
) -> Generator[Session, None, None]:
    """
    Reuse the caller's session when one is given, otherwise open a new one.

    A session opened here is committed on success and rolled back on error;
    a borrowed session is left to its owner.
    """
    if db is not None:
        yield db
        return

    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db() -> None:
    """Create every table registered on Base"""
    import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info(f"Database initialized at: {settings.DATABASE_URL}")


class DatabaseHealthCheck:
    """Database health check utilities"""

    @staticmethod
    def is_connected() -> bool:
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.warning(f"Database health check failed: {e}")
            return False


__all__ = [
    "engine",
    "SessionLocal",
    "Base",
    "session_scope",
    "init_db",
    "DatabaseHealthCheck"
]
