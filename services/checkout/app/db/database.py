from __future__ import annotations

import os

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

_ENGINE: Engine | None = None
_ENGINE_URL: str | None = None
_SESSIONMAKER: sessionmaker | None = None


def _default_db_url() -> str:
    # Local-only default. Production must provide DATABASE_URL explicitly.
    return "sqlite+pysqlite:///.local/checkout.db"


def _prepare_sqlite(url: str) -> dict:
    if ":///" in url and ":memory:" not in url:
        db_dir = os.path.dirname(url.split(":///", 1)[1])
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

    # Concurrent checkouts queue on the SQLite write lock instead of failing fast.
    return {"check_same_thread": False, "timeout": 30}


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    del connection_record
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_engine() -> Engine:
    """Return a cached SQLAlchemy engine.

    We cache based on DATABASE_URL so tests can override DATABASE_URL before first use.
    SQLite connections enforce foreign keys, matching the production datastore.
    """

    global _ENGINE, _ENGINE_URL, _SESSIONMAKER

    url = os.getenv("DATABASE_URL", _default_db_url())

    if _ENGINE is not None and _ENGINE_URL == url:
        return _ENGINE

    is_sqlite = url.startswith("sqlite")
    connect_args = _prepare_sqlite(url) if is_sqlite else {}
    engine = create_engine(url, future=True, connect_args=connect_args)
    if is_sqlite:
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)

    if _ENGINE is not None:
        _ENGINE.dispose()

    _ENGINE = engine
    _ENGINE_URL = url
    _SESSIONMAKER = sessionmaker(bind=_ENGINE, class_=Session, autocommit=False, autoflush=False)
    return _ENGINE


def db_session() -> Session:
    get_engine()  # ensure _SESSIONMAKER is created
    assert _SESSIONMAKER is not None
    return _SESSIONMAKER()
