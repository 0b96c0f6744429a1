"""
Engine and session factory.

Request handlers get a session through get_session(); background jobs
open their own with session_scope().
"""

import logging
from contextlib import contextmanager
from typing import Callable, Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session

from config import DATABASE_URL
from db.models import Base

logger = logging.getLogger(__name__)

# The scheduler runs jobs outside the request thread.
engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {},
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db() -> None:
    """Create all tables if they don't exist."""
    Base.metadata.create_all(bind=engine)
    logger.info("Schema ready on %s.", engine.url.render_as_string(hide_password=True))


@contextmanager
def session_scope(factory: Callable[[], Session] = SessionLocal) -> Iterator[Session]:
    """One session for the block, always closed; commits are left to the caller."""
    session = factory()
    try:
        yield session
    finally:
        session.close()


def get_session() -> Iterator[Session]:
    """Dependency-injectable session factory for FastAPI routes."""
    with session_scope() as session:
        yield session
