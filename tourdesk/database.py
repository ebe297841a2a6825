"""Database configuration and session management for TourDesk."""
from __future__ import annotations

import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import DATABASE_URL

logger = logging.getLogger(__name__)


def _build_engine(url: str):
    """Create the SQLAlchemy engine with backend-specific tuning."""

    engine_kwargs = {"future": True, "echo": False}
    dialect = make_url(url).get_backend_name()

    if dialect == "sqlite":
        # SQLite needs a special flag for usage with FastAPI's threaded test client.
        engine_kwargs["connect_args"] = {"check_same_thread": False}
    else:
        engine_kwargs["pool_pre_ping"] = True

    logger.debug("Creating %s engine", dialect)
    return create_engine(url, **engine_kwargs)


engine = _build_engine(DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

Base = declarative_base()


