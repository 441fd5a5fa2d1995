"""
Database Connection Management

Provides the SQLAlchemy engine and session factory shared by the
account-security services, with pooling configured from the environment.
"""

import logging
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from src.infrastructure.config import DatabaseConfig

logger = logging.getLogger(__name__)


class ConnectionFactory:
    """Builds engines and session factories from configuration."""

    @staticmethod
    def create_engine(config: DatabaseConfig) -> Engine:
        """
        Create a pooled engine.

        SQLite URLs get ``check_same_thread=False``; in-memory SQLite uses a
        single shared connection so every session sees the same database.
        """
        kwargs: dict[str, Any] = {"echo": config.echo, "future": True}

        if config.is_sqlite:
            kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in config.url or config.url.rstrip("/") == "sqlite:":
                kwargs["poolclass"] = StaticPool
        else:
            kwargs["pool_size"] = config.pool_size
            kwargs["max_overflow"] = config.max_overflow
            kwargs["pool_pre_ping"] = True

        engine = create_engine(config.url, **kwargs)
        logger.info(f"Database engine created for {engine.url.render_as_string(hide_password=True)}")
        return engine

    @staticmethod
    def create_session_factory(engine: Engine) -> sessionmaker[Session]:
        """Create a session factory bound to the engine."""
        return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all account-security tables."""
    from src.infrastructure.auth.models import Base

    Base.metadata.create_all(bind=engine)


def health_check(engine: Engine) -> bool:
    """Return True when the database answers a trivial query."""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        return False


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Provide a session that is closed on exit; commits are explicit."""
    session = factory()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
