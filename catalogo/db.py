from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from catalogo.models import Base

_SQLITE_PRAGMAS = ("PRAGMA foreign_keys=ON;",)


def _apply_sqlite_pragmas(dbapi_conn, _record) -> None:
    # foreign_keys is per connection; plan/product links rely on it.
    cur = dbapi_conn.cursor()
    try:
        for pragma in _SQLITE_PRAGMAS:
            cur.execute(pragma)
    finally:
        cur.close()


def create_engine_from_url(database_url: str) -> Engine:
    is_sqlite = database_url.startswith("sqlite:")
    connect_args = {"check_same_thread": False} if is_sqlite else {}
    engine = create_engine(database_url, future=True, connect_args=connect_args)

    if is_sqlite:
        event.listen(engine, "connect", _apply_sqlite_pragmas)
        # journal_mode is stored in the database file, once is enough.
        with engine.connect() as conn:
            conn.exec_driver_sql("PRAGMA journal_mode=WAL;")
    return engine


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(engine)


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    # Objects stay readable after commit; repos hand them back to callers.
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)


@contextmanager
def session_scope(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    """One transaction: commit on success, roll back on any error."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
