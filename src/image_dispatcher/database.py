"""Database engine creation and helper utilities."""

from __future__ import annotations

import logging
from contextlib import contextmanager

from sqlmodel import Session, SQLModel, create_engine

from . import models  # noqa: F401  registers tables on SQLModel.metadata
from .config import settings

logger = logging.getLogger(__name__)

_connect_args = {"check_same_thread": False} if settings.db_url.startswith("sqlite") else {}
engine = create_engine(settings.db_url, connect_args=_connect_args)


def init_db() -> None:
    """Create database tables."""
    logger.debug("Creating database schema")
    SQLModel.metadata.create_all(engine)


@contextmanager
def session_scope():
    """Context manager yielding a short-lived session."""
    session = Session(engine)
    try:
        yield session
    finally:
        session.close()


def get_session():
    """FastAPI dependency hook yielding a new session."""
    with Session(engine) as session:
        yield session
