import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class SnapshotIntegrityError(ValueError):
    """Raised when a byte blob cannot be opened as a ledger database image."""


class WriteInProgressError(RuntimeError):
    """Raised when serializing would capture an uncommitted write."""


def _enable_sqlite_pragmas(dbapi_conn, _record):
    # Let SQLAlchemy emit BEGIN itself so SAVEPOINT/ROLLBACK behave.
    dbapi_conn.isolation_level = None
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def _emit_begin(conn):
    conn.exec_driver_sql("BEGIN")


def _create_memory_engine() -> Engine:
    eng = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        # Sessions share one connection; returning a raw handle must not roll
        # back a session that is still writing.
        pool_reset_on_return=None,
    )
    event.listen(eng, "connect", _enable_sqlite_pragmas)
    event.listen(eng, "begin", _emit_begin)
    return eng


class LedgerStore:
    """One embedded ledger database held in memory.

    The store is an explicit handle: services receive sessions created from it,
    and the persistence layer serializes it to (and rebuilds it from) a byte
    blob. Several stores may coexist, which is how restore validates a new
    image before the current one is discarded.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self.SessionLocal = sessionmaker(
            bind=engine, autoflush=False, expire_on_commit=False
        )

    @classmethod
    def create(cls) -> "LedgerStore":
        from migrations import upgrade_to_head

        store = cls(_create_memory_engine())
        upgrade_to_head(store.engine)
        return store

    @classmethod
    def from_bytes(cls, blob: bytes) -> "LedgerStore":
        from migrations import upgrade_to_head

        if not blob:
            raise SnapshotIntegrityError("Snapshot is empty")
        engine = _create_memory_engine()
        raw = engine.raw_connection()
        try:
            raw.driver_connection.deserialize(blob)
            row = raw.driver_connection.execute("PRAGMA quick_check;").fetchone()
        except sqlite3.DatabaseError as exc:
            raw.close()
            engine.dispose()
            raise SnapshotIntegrityError(
                "Snapshot is not a valid database image"
            ) from exc
        raw.close()
        if not row or row[0] != "ok":
            engine.dispose()
            raise SnapshotIntegrityError("Snapshot failed the integrity check")

        store = cls(engine)
        try:
            upgrade_to_head(engine)
        except Exception as exc:
            engine.dispose()
            raise SnapshotIntegrityError(
                "Snapshot could not be migrated to the current schema"
            ) from exc
        logger.info(f"store_opened: bytes={len(blob)}")
        return store

    def to_bytes(self) -> bytes:
        raw = self.engine.raw_connection()
        try:
            conn = raw.driver_connection
            if conn.in_transaction:
                raise WriteInProgressError("A write is in progress on this store")
            return bytes(conn.serialize())
        finally:
            raw.close()

    def table_names(self) -> set[str]:
        return set(inspect(self.engine).get_table_names())

    def session(self) -> Session:
        return self.SessionLocal()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        session: Session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()
