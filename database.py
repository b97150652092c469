"""
Database connection handling.

A single Database object owns the engine (and its connection pool) and hands out
ORM sessions. The app factory builds one at startup and disposes it on shutdown.
"""
import logging
import os
from typing import Optional

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///./pharmacy.db"


class Base(DeclarativeBase):
    pass


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, **kwargs)
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    return create_engine(
        url,
        pool_size=int(os.getenv("DB_POOL_SIZE", 20)),
        pool_timeout=float(os.getenv("DB_POOL_TIMEOUT", 2)),
        pool_recycle=int(os.getenv("DB_POOL_RECYCLE", 30)),
        pool_pre_ping=True,
    )


class Database:
    def __init__(self, url: Optional[str] = None):
        self.url = url or os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
        self.engine = build_engine(self.url)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_all(self) -> None:
        # Import registers the mapped classes on Base.metadata
        import models  # noqa: F401

        Base.metadata.create_all(self.engine)

    def session(self) -> Session:
        return self.session_factory()

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def table_names(self):
        return inspect(self.engine).get_table_names()

    def dispose(self) -> None:
        logger.info("Closing database connection pool")
        self.engine.dispose()
