"""
Engine, session factory and declarative Base for the chat tables.
"""

from __future__ import annotations

import logging
from typing import Any, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeMeta, Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from topicchat.core.config import settings

logger = logging.getLogger(__name__)

_DEFAULT_POOL_KWARGS: dict[str, Any] = {
    "pool_size": 5,
    "max_overflow": 5,
    "pool_timeout": 5,
    "pool_recycle": 300,
    "pool_pre_ping": True,
}


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _build_engine_kwargs(db_url: str) -> dict[str, Any]:
    if not _is_sqlite(db_url):
        return dict(_DEFAULT_POOL_KWARGS)

    kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    # In-memory databases live per connection; share one across threads.
    if ":memory:" in db_url or db_url.rstrip("/") == "sqlite:":
        kwargs["poolclass"] = StaticPool
    return kwargs


def create_db_engine(db_url: str) -> Engine:
    db_engine = create_engine(db_url, **_build_engine_kwargs(db_url))
    if _is_sqlite(db_url):
        event.listen(db_engine, "connect", _enable_sqlite_foreign_keys)
    return db_engine


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


engine: Engine = create_db_engine(settings.database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)

Base: DeclarativeMeta = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency - one session per request, committed on success."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(bind: Engine | None = None) -> None:
    """Create all tables. Migrations are out of scope; local and test runs use this."""
    import topicchat.models  # noqa: F401  (registers mappers)

    Base.metadata.create_all(bind=bind or engine)
    logger.info("[DB] Schema ensured")


__all__ = [
    "Base",
    "SessionLocal",
    "create_db_engine",
    "engine",
    "get_db",
    "init_db",
]
