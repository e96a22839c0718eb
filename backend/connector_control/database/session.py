"""Database session management."""

import logging
from typing import Generator, Optional

from sqlalchemy import create_engine, event, pool, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from connector_control.config import DATABASE_URL
from connector_control.database.base import Base

logger = logging.getLogger(__name__)


def build_engine(url: str = DATABASE_URL) -> Engine:
    """Create an engine with settings suited to the database backend.

    SQLite in-memory databases share a single connection so every session
    sees the same data; PostgreSQL connections get keepalives.
    """
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = pool.StaticPool
        sqlite_engine = create_engine(url, echo=False, **kwargs)
        event.listen(sqlite_engine, "connect", _set_sqlite_pragma)
        return sqlite_engine

    return create_engine(
        url,
        pool_pre_ping=True,
        pool_recycle=3600,
        echo=False,
        connect_args={
            "connect_timeout": 30,
            "keepalives": 1,
            "keepalives_idle": 30,
            "keepalives_interval": 10,
            "keepalives_count": 5,
        }
    )


def _set_sqlite_pragma(dbapi_conn, connection_record):
    """Enforce foreign keys on SQLite connections."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


engine = build_engine()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind: Optional[Engine] = None) -> None:
    """Create all tables that do not exist yet."""
    # Register models on the metadata before create_all
    from connector_control.database import models_db  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables ensured")


def check_db_connection(bind: Optional[Engine] = None) -> bool:
    """Check if database is available.

    Returns:
        True if database is available, False otherwise
    """
    try:
        with (bind or engine).connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except (OperationalError, DisconnectionError) as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


def get_db() -> Generator[Session, None, None]:
    """Yield a database session and always close it afterwards.

    Used as a FastAPI dependency. An exception thrown into the generator
    rolls the session back before it propagates.
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
