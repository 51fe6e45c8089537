"""
Database Sessions
=================

One engine per DATABASE_URL. The URL is re-read on every `get_engine()` call,
so tests (and the ledger CLI) can point the service at another database at
runtime; `reset_engine()` drops the cached engine.

Three ways to get a session:
- `get_db()`: FastAPI dependency, closed after the request
- `new_session()`: standalone, caller closes it (jobs, cooldown store)
- `session_scope()`: commit on success, rollback on error (scripts)
"""

import logging
import os
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from .models import Base

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///./lawman.db"

# SQLite waits this long for a competing writer before failing the transition
SQLITE_BUSY_TIMEOUT_SECONDS = 10

_engine = None
_engine_url = None

SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False)


def database_url() -> str:
    return os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)


def _sqlite_engine(url: str, echo: bool):
    engine = create_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS},
        echo=echo,
    )

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


def get_engine():
    """Engine for the current DATABASE_URL, rebuilt when the URL changes."""
    global _engine, _engine_url
    url = database_url()
    if _engine is None or _engine_url != url:
        if _engine is not None:
            _engine.dispose()
        echo = os.environ.get("SQL_ECHO", "false").lower() == "true"
        if url.startswith("sqlite"):
            _engine = _sqlite_engine(url, echo)
        else:
            _engine = create_engine(url, pool_pre_ping=True, echo=echo)
        _engine_url = url
        SessionLocal.configure(bind=_engine)
        logger.info(f"Database engine bound to {_engine.url.render_as_string(hide_password=True)}")
    return _engine


def reset_engine():
    global _engine, _engine_url
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _engine_url = None
    SessionLocal.configure(bind=None)


def init_db():
    """Create any missing tables."""
    Base.metadata.create_all(bind=get_engine())


def new_session() -> Session:
    get_engine()
    return SessionLocal()


def get_db() -> Generator[Session, None, None]:
    db = new_session()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """
    Transactional scope for scripts.

        with session_scope() as db:
            create_staff_user(db, ...)
    """
    db = new_session()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
