from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from dealpilot.models import Base

log = logging.getLogger(__name__)

DATA_DIR = Path(__file__).parent / "data"
DEFAULT_TIMEOUT = 5.0


def default_db_path() -> Path:
    """Database file from ``DEALPILOT_DB``, else ``dealpilot/data/dealpilot.db``."""
    configured = os.environ.get("DEALPILOT_DB", "").strip()
    return Path(configured) if configured else DATA_DIR / "dealpilot.db"


def _install_sqlite_hooks(engine: Engine) -> None:
    """Emit BEGIN ourselves so reads get a real snapshot and writes can lock up front."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn, _record):
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        mode = conn.get_execution_options().get("sqlite_begin", "DEFERRED")
        conn.exec_driver_sql(f"BEGIN {mode}")


def create_db_engine(db_path: str | Path | None = None, timeout: float = DEFAULT_TIMEOUT) -> Engine:
    """Create the SQLite engine and make sure the schema exists.

    ``timeout`` is handed to sqlite as the busy timeout, so a writer waiting on
    another writer's lock gives up after that many seconds.
    """
    db_path = Path(db_path) if db_path is not None else default_db_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": timeout},
    )
    _install_sqlite_hooks(engine)
    Base.metadata.create_all(engine)
    log.info("Opened deal store at %s", db_path)
    return engine


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def session_scope(factory: sessionmaker[Session], *, write: bool = False) -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Write scopes take the database write lock when the transaction starts
    (``BEGIN IMMEDIATE``); read scopes see one consistent snapshot for their
    whole lifetime. The caller commits; anything else is rolled back.

    Usage::

        with session_scope(factory, write=True) as session:
            ...
            session.commit()
    """
    session = factory()
    try:
        if write:
            session.connection(execution_options={"sqlite_begin": "IMMEDIATE"})
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
