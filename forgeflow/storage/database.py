"""Database connection and session management."""

import os
from typing import Optional
from sqlalchemy import create_engine, Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

DEFAULT_DATABASE_URL = "sqlite:///./forgeflow.db"

# Base class for all database models
Base = declarative_base()

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def get_database_engine(database_url: Optional[str] = None,
                        echo: bool = False,
                        connect_args: Optional[dict] = None) -> Engine:
    """Get or create the process-wide database engine."""
    global _engine, _session_factory

    if _engine is None:
        if database_url is None:
            database_url = os.getenv("FORGEFLOW_DATABASE_URL", DEFAULT_DATABASE_URL)

        if connect_args is None:
            connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}

        if database_url.startswith("sqlite"):
            # Runs persist from the worker thread while the API reads from
            # request threads; share one connection for SQLite.
            _engine = create_engine(
                database_url,
                connect_args=connect_args,
                poolclass=StaticPool,
                echo=echo
            )
        else:
            _engine = create_engine(database_url, echo=echo, connect_args=connect_args)

        _session_factory = sessionmaker(autocommit=False, autoflush=False, bind=_engine)

    return _engine


def reset_database_engine():
    """Reset the global database engine (mainly for testing)."""
    global _engine, _session_factory
    if _engine:
        _engine.dispose()
    _engine = None
    _session_factory = None


def get_db():
    """Yield a database session bound to the process-wide engine."""
    get_database_engine()
    db = _session_factory()
    try:
        yield db
    finally:
        db.close()


def create_tables():
    """Create all database tables."""
    from . import models  # noqa: F401  registers the ORM classes on Base
    Base.metadata.create_all(bind=get_database_engine())


def drop_tables():
    """Drop all database tables."""
    Base.metadata.drop_all(bind=get_database_engine())
