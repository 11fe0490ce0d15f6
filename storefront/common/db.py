"""Database bootstrap helpers.

The engine and session factory are built by the process bootstrap and passed
to each component; nothing here opens a connection at import time.
"""

from sqlalchemy import JSON, create_engine, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from storefront.common.config import Settings


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in local runs and tests).
JSONPayload = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass


def create_db_engine(settings: Settings) -> Engine:
    """Create the process engine with bounded lock waits for its dialect."""

    if settings.database_url.startswith("sqlite"):
        engine = create_engine(
            settings.database_url,
            connect_args={"timeout": settings.lock_timeout_ms / 1000.0, "check_same_thread": False},
        )
        _enable_sqlite_immediate_transactions(engine)
        return engine

    engine = create_engine(settings.database_url, pool_pre_ping=True)
    lock_timeout_ms = int(settings.lock_timeout_ms)

    @event.listens_for(engine, "connect")
    def _set_lock_timeout(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute(f"SET lock_timeout = '{lock_timeout_ms}ms'")
        cursor.close()
        dbapi_connection.commit()

    return engine


def _enable_sqlite_immediate_transactions(engine: Engine) -> None:
    # pysqlite's deferred BEGIN lets two writers deadlock on lock upgrade;
    # BEGIN IMMEDIATE takes the write lock up front and waits on the busy timeout.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_session_factory(engine: Engine) -> sessionmaker:
    # `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
