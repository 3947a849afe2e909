"""Database connection and session management."""

import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from mailfeed.config import settings

logger = logging.getLogger(__name__)


def build_engine(database_url: str, echo: bool = False, **kwargs):
    """Create an engine; SQLite connections get foreign keys switched on."""
    connect_args = {"check_same_thread": False} if "sqlite" in database_url else {}
    engine = create_engine(database_url, echo=echo, connect_args=connect_args, **kwargs)

    if engine.dialect.name == "sqlite":
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


# Create database engine
engine = build_engine(settings.database_url, echo=settings.database_echo)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@contextmanager
def get_db_session(session_factory=None):
    """Context manager for database sessions."""
    db = (session_factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception as e:
        logger.error(f"Database session error: {e}")
        db.rollback()
        raise
    finally:
        db.close()


def init_database(bind=None):
    """Initialize database tables."""
    from mailfeed.models.base import Base

    # Import all models to ensure they're registered
    from mailfeed.models import account, feed, rule  # noqa: F401

    # Create all tables
    Base.metadata.create_all(bind=bind or engine)

    logger.info("Database initialized successfully")
