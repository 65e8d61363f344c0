"""
Engine, session factory and declarative base for the payments database.

The API process and each Celery worker build their own engine on import.
"""

from __future__ import annotations

import logging
from typing import Any, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeMeta, Session, declarative_base, sessionmaker

from app.core.config import settings

logger = logging.getLogger(__name__)

POSTGRES_POOL: dict[str, Any] = {
    "pool_size": 3,
    "max_overflow": 5,
    "pool_timeout": 2,
    "pool_recycle": 30,
    "pool_pre_ping": True,
}


def _engine_options(url: str) -> dict[str, Any]:
    if url.startswith("sqlite"):
        return {"future": True, "connect_args": {"check_same_thread": False}}
    return {"future": True, **POSTGRES_POOL}


db_url = settings.get_database_url()
engine: Engine = create_engine(db_url, **_engine_options(db_url))


@event.listens_for(engine, "connect")
def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
    logger.debug("Database connection opened")


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)

Base: DeclarativeMeta = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency: one session per request, committed on success."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


__all__ = ["Base", "SessionLocal", "engine", "get_db"]
