import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings

logger = logging.getLogger(__name__)

# Milliseconds a writer waits on the SQLite lock before failing.
SQLITE_BUSY_TIMEOUT_MS = 5000


def build_engine(database_url: str) -> Engine:
    is_sqlite = database_url.startswith("sqlite")
    connect_args: dict[str, object] = {"check_same_thread": False} if is_sqlite else {}
    ledger_engine = create_engine(database_url, connect_args=connect_args)
    if is_sqlite:
        event.listen(ledger_engine, "connect", _sqlite_ledger_pragmas)
    return ledger_engine


def _sqlite_ledger_pragmas(dbapi_conn, _record) -> None:
    cursor = dbapi_conn.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL;")
        # transaction -> account cascades and payment -> transaction SET NULL
        # depend on enforced foreign keys.
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS};")
    finally:
        cursor.close()


engine = build_engine(get_settings().database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    """One unit of work for background jobs: commit on success, roll back and
    re-raise on any failure."""
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        logger.exception("session_scope: rolling back ledger unit of work")
        session.rollback()
        raise
    finally:
        session.close()
