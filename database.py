"""
Database Configuration and Session Management
============================================

Engine and session factory builders plus the transactional session context
manager used by every service. Nothing here is a process-wide singleton:
callers build a session factory once and pass it to the services explicitly.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from config import Config
from models import Base
from utils.error_handler import EscrowDomainError

logger = logging.getLogger(__name__)


def build_engine(database_url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    """Create an engine for the configured database"""
    url = database_url or Config.DATABASE_URL
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")

    echo = Config.DATABASE_ECHO if echo is None else echo

    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(
        url,
        pool_size=7,
        max_overflow=15,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,
        pool_timeout=30,
        echo=echo,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


def create_tables(engine: Engine):
    """Create all database tables if they don't exist"""
    logger.info("🏗️ Creating database tables (if they don't exist)...")
    Base.metadata.create_all(bind=engine)
    logger.info("✅ Database tables ready")


@contextmanager
def managed_session(session_factory: sessionmaker) -> Iterator[Session]:
    """Sync context manager for database sessions: commit on success, rollback on error"""
    session = session_factory()
    try:
        yield session
        session.commit()
    except EscrowDomainError:
        session.rollback()
        raise
    except Exception as e:
        session.rollback()
        logger.error(f"Database session error: {type(e).__name__}: {e}")
        raise
    finally:
        session.close()
