import logging
import threading
import weakref
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings
from errors import StorageFailure

logger = logging.getLogger(__name__)


def create_ledger_engine(database_url: Optional[str] = None, **kwargs) -> Engine:
    url = database_url or get_settings().database_url
    connect_args: dict[str, object] = dict(kwargs.pop("connect_args", {}))
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    eng = create_engine(url, connect_args=connect_args, **kwargs)
    if url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
        event.listen(eng, "begin", _begin_sqlite_transaction)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    # pysqlite must not open transactions on its own, otherwise SAVEPOINTs break
    dbapi_conn.isolation_level = None
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def _begin_sqlite_transaction(conn):
    conn.exec_driver_sql("BEGIN")


engine = create_ledger_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


# entries disappear once no writer holds the lock
_user_locks: "weakref.WeakValueDictionary[int, threading.RLock]" = (
    weakref.WeakValueDictionary()
)
_user_locks_guard = threading.Lock()


def user_lock(user_id: int) -> threading.RLock:
    with _user_locks_guard:
        lock = _user_locks.get(user_id)
        if lock is None:
            lock = threading.RLock()
            _user_locks[user_id] = lock
        return lock


@contextmanager
def ledger_write(session: Session, user_id: int) -> Iterator[Session]:
    """
    Unit of work for one logical mutation of a user's ledger.

    Serializes writers per user, commits on success and rolls back on any
    failure. Database errors surface as StorageFailure. Nested blocks on the
    same session join the outermost one, which alone commits or rolls back.
    """
    with user_lock(user_id):
        depth = session.info.get("ledger_write_depth", 0)
        session.info["ledger_write_depth"] = depth + 1
        try:
            yield session
            if depth == 0:
                session.commit()
        except SQLAlchemyError as exc:
            if depth:
                raise
            session.rollback()
            logger.exception(f"ledger_write_failed: user={user_id}")
            raise StorageFailure(f"Storage operation failed: {exc}") from exc
        except Exception:
            if depth == 0:
                session.rollback()
            raise
        finally:
            session.info["ledger_write_depth"] = depth
