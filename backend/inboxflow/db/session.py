from __future__ import annotations

import logging
from collections.abc import Callable, Generator, Iterator
from contextlib import contextmanager
from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from inboxflow.settings import get_settings

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


@lru_cache(maxsize=1)
def _engine() -> Engine:
    settings = get_settings()
    url = settings.sqlalchemy_database_url

    if url.startswith("sqlite"):
        return create_engine(url, future=True, connect_args={"check_same_thread": False})

    return create_engine(
        url,
        pool_pre_ping=True,
        future=True,
        pool_size=20,
        max_overflow=30,
        pool_recycle=3600,
        pool_timeout=30,
        echo=False,
        connect_args={
            "connect_timeout": 10,
            "application_name": "inboxflow",
        },
    )


@lru_cache(maxsize=1)
def _session_factory() -> sessionmaker[Session]:
    return sessionmaker(bind=_engine(), autoflush=False, autocommit=False, future=True)


def get_db_session() -> Generator[Session, None, None]:
    session = _session_factory()()
    try:
        yield session
    finally:
        session.close()


def create_session() -> Session:
    """
    Create a new database session.

    Use this when you need a session outside of FastAPI dependency injection.
    Remember to close the session when done.
    """
    return _session_factory()()


def get_engine() -> Engine:
    """Get the SQLAlchemy engine instance."""
    return _engine()


@contextmanager
def db_session(factory: SessionFactory | None = None) -> Iterator[Session]:
    """
    Context manager for read-mostly database work with guaranteed cleanup.

    Usage:
        with db_session() as session:
            rows = session.execute(select(QueuedMessage)).scalars().all()
    """
    session = (factory or _session_factory())()
    try:
        yield session
    except Exception as e:
        logger.warning("Database session error, rolling back: %s", e)
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def db_transaction(factory: SessionFactory | None = None) -> Iterator[Session]:
    """
    Context manager for a short transaction with automatic commit/rollback.

    Every queue mutation in the pipeline is its own transaction; nothing spans
    the whole processing of a group.
    """
    session = (factory or _session_factory())()
    try:
        yield session
        session.commit()
        logger.debug("Database transaction committed successfully")
    except Exception as e:
        logger.warning("Database transaction failed, rolling back: %s", e)
        session.rollback()
        raise
    finally:
        session.close()
