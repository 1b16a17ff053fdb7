"""
Database configuration and session management
"""

from contextlib import contextmanager
import logging

from sqlalchemy import create_engine, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from printdispatch.config import Config

logger = logging.getLogger(__name__)

# Base class for models
Base = declarative_base()


def make_engine(database_url=None, echo=False):
    """Create an engine; SQLite gets WAL and a busy timeout for multi-threaded writers"""
    database_url = database_url or Config.DATABASE_URL

    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=echo
        )

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA synchronous=NORMAL;")
            cursor.close()

        return engine

    return create_engine(
        database_url,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,  # Verify connections before using
        echo=echo
    )


def make_session_factory(engine):
    """Session factory bound to the given engine"""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@contextmanager
def session_scope(session_factory):
    """Context manager for database session"""
    db = session_factory()
    try:
        yield db
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error: {e}")
        raise
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(engine):
    """Initialize database - create all tables"""
    # Register tables on Base.metadata
    from printdispatch import models  # noqa: F401
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("✓ Database tables created successfully")
    except Exception as e:
        logger.error(f"✗ Failed to create database tables: {e}")
        raise


def drop_all_tables(engine):
    """Drop all tables (use with caution!)"""
    Base.metadata.drop_all(bind=engine)
    logger.warning("⚠ All tables dropped")
