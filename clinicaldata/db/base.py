"""
Database base configuration and session handling for the clinical data engines
"""

import logging
from contextlib import contextmanager
from typing import Any, Generator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

logger = logging.getLogger(__name__)

# Create declarative base
Base = declarative_base()


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _is_sqlite_memory(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url


def build_engine(database_url: str, **kwargs: Any) -> Engine:
    """
    Build a SQLAlchemy engine for the given URL

    Args:
        database_url: Database connection URL
        **kwargs: pool_size, max_overflow, pool_timeout, pool_recycle, echo

    Returns:
        SQLAlchemy Engine
    """
    echo = kwargs.get("echo", False)

    engine_config = {
        "poolclass": QueuePool,
        "pool_size": kwargs.get("pool_size", 5),
        "max_overflow": kwargs.get("max_overflow", 10),
        "pool_timeout": kwargs.get("pool_timeout", 30),
        "pool_recycle": kwargs.get("pool_recycle", 3600),
        "echo": echo,
    }

    # SQLite-specific configuration
    if _is_sqlite(database_url):
        engine_config = {
            "connect_args": {"check_same_thread": False, "timeout": 30},
            "echo": echo,
        }
        # In-memory databases live on a single connection
        if _is_sqlite_memory(database_url):
            engine_config["poolclass"] = StaticPool

    engine = create_engine(database_url, **engine_config)

    # Enable foreign keys for SQLite
    if _is_sqlite(database_url):
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


class Database:
    """
    Engine plus session factory for one database

    Instances are passed to the stores explicitly; there is no module-level
    engine.
    """

    def __init__(self, database_url: str, engine: Optional[Engine] = None, **kwargs: Any):
        self.database_url = database_url
        self.engine = engine or build_engine(database_url, **kwargs)
        self.session_factory = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False,
        )

    def new_session(self) -> Session:
        return self.session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Session context manager: commit on success, rollback on error

        Yields:
            Database session
        """
        session = self.new_session()

        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def init_db(self, drop_all: bool = False) -> None:
        """
        Create all tables

        Args:
            drop_all: If True, drop all tables first
        """
        # Register the tables on Base.metadata
        from clinicaldata.db import models_dde  # noqa: F401

        if drop_all:
            Base.metadata.drop_all(bind=self.engine)

        Base.metadata.create_all(bind=self.engine)
        logger.info("Database schema initialized for %s", self.engine.url.render_as_string(hide_password=True))

    def ping(self) -> bool:
        """Return True if a trivial query succeeds"""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def dispose(self) -> None:
        self.engine.dispose()
