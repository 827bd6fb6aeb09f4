from __future__ import annotations

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

_engine: Engine | None = None
_SessionLocal: sessionmaker | None = None


def _sqlite_on_connect(dbapi_connection, connection_record) -> None:
    # Let SQLAlchemy own BEGIN so SAVEPOINT and the slot claim behave as on Postgres.
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _sqlite_on_begin(conn) -> None:
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def init_engine(db_url: str) -> None:
    global _engine, _SessionLocal
    connect_args = {}
    is_sqlite = (db_url or "").strip().lower().startswith("sqlite")
    if is_sqlite:
        # Enable sqlite usage for local tests/dev; worker threads share the engine.
        connect_args = {"check_same_thread": False, "timeout": 30}
    _engine = create_engine(db_url, pool_pre_ping=True, connect_args=connect_args)
    if is_sqlite:
        # ON DELETE CASCADE is only honoured with foreign keys switched on.
        event.listen(_engine, "connect", _sqlite_on_connect)
        event.listen(_engine, "begin", _sqlite_on_begin)
    _SessionLocal = sessionmaker(
        bind=_engine, autocommit=False, autoflush=False, expire_on_commit=False
    )


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError("DB engine not initialized (call init_engine on startup)")
    return _engine


def get_session_maker() -> sessionmaker:
    if _SessionLocal is None:
        raise RuntimeError(
            "DB session factory not initialized (call init_engine on startup)"
        )
    return _SessionLocal


@contextmanager
def db_session() -> Generator[Session, None, None]:
    s: Session = get_session_maker()()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
