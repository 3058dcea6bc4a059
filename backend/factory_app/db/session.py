"""Engine and session factory for the requisition database."""

from collections.abc import Generator
from typing import Annotated, Any

from fastapi import Depends
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from factory_app.core.config import Settings, settings


def is_sqlite(database_url: str) -> bool:
    return database_url.startswith("sqlite")


def engine_options(config: Settings) -> dict[str, Any]:
    """Keyword arguments for ``create_engine`` under the given settings.

    SQLite is file-local and shared across the request threadpool, so it
    gets ``check_same_thread=False`` and no sized pool. Server databases
    get a bounded pool from ``DB_POOL_SIZE`` / ``DB_MAX_OVERFLOW``.
    """
    options: dict[str, Any] = {
        "echo": config.db_echo,
        "pool_pre_ping": True,
        "pool_recycle": config.db_pool_recycle,
    }
    if is_sqlite(config.database_url):
        options["connect_args"] = {"check_same_thread": False}
    else:
        options["pool_size"] = config.db_pool_size
        options["max_overflow"] = config.db_max_overflow
    return options


def enable_sqlite_foreign_keys(target_engine: Engine) -> None:
    """Turn on foreign key enforcement for every new SQLite connection.

    Line items and approvals cascade off the requisition header, which
    SQLite ignores unless the pragma is set per connection.
    """

    @event.listens_for(target_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def build_engine(config: Settings) -> Engine:
    new_engine = create_engine(config.database_url, **engine_options(config))
    if is_sqlite(config.database_url):
        enable_sqlite_foreign_keys(new_engine)
    return new_engine


engine = build_engine(settings)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """Request-scoped session; the services own commit and rollback."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


DbSession = Annotated[Session, Depends(get_db)]
