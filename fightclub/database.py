"""SQLModel database engine and session management.

The engine is built once at process start (see ``fightclub.main``) and passed
into every service that needs it.
"""

import logging
from collections.abc import Iterator

from fastapi import Request
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine, Session

from fightclub.config import settings

logger = logging.getLogger(__name__)


def build_engine(database_url: str | None = None) -> Engine:
    """Create the process-wide engine for ``database_url`` (defaults to settings)."""
    url = database_url or settings.database_url

    # SQLite needs check_same_thread=False; PostgreSQL does not
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    engine = create_engine(url, echo=False, connect_args=connect_args)

    if url.startswith("sqlite"):
        _use_immediate_transactions(engine)
    return engine


def _use_immediate_transactions(engine: Engine):
    """Make every SQLite transaction take the write lock up front.

    SQLite ignores SELECT ... FOR UPDATE, so the settlement lock would otherwise
    only be advisory. BEGIN IMMEDIATE serializes transactions at the storage layer.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_db_and_tables(engine: Engine):
    """Create all tables. Called on startup."""
    import fightclub.models  # noqa: F401  (registers table metadata)

    SQLModel.metadata.create_all(engine)
    logger.info(f"Database ready ({engine.url.get_backend_name()})")


def get_session(request: Request) -> Iterator[Session]:
    """Dependency that yields a database session."""
    with Session(request.app.state.engine) as session:
        yield session
