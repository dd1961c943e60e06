import logging
import os
import sqlite3
import tempfile
import threading
from contextlib import contextmanager
from datetime import date
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import event
from sqlalchemy.orm import Session

from database import LedgerStore, WriteInProgressError
from encryption import decrypt_blob, encrypt_blob, is_encrypted

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "finance_backup"


class PasswordRequiredError(ValueError):
    def __init__(self) -> None:
        super().__init__("This snapshot is password protected")


class SnapshotFlushError(RuntimeError):
    pass


class SnapshotStorage:
    """Keyed blob files under one directory."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def path_for(self, key: str) -> Path:
        return self.root / f"{key}.bin"

    def read(self, key: str) -> Optional[bytes]:
        path = self.path_for(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def write(self, key: str, data: bytes) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        target = self.path_for(key)
        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def delete(self, key: str) -> None:
        self.path_for(key).unlink(missing_ok=True)


def backup_filename(on_date: Optional[date] = None) -> str:
    on_date = on_date or date.today()
    return f"{BACKUP_PREFIX}_{on_date.isoformat()}.sqlite"


class PersistenceGateway:
    """Owns the single live ``LedgerStore`` and its durable snapshot.

    Writes happen against the in-memory store first; ``flush`` then serializes
    the whole image (encrypting it when a password is set) and replaces the
    stored blob. A failed flush leaves the in-memory store untouched.
    """

    def __init__(
        self,
        storage: SnapshotStorage,
        *,
        key: str = "db_binary",
        password: Optional[str] = None,
    ) -> None:
        self.storage = storage
        self.key = key
        self._password = password or None
        self._store: Optional[LedgerStore] = None
        self._lock = threading.RLock()
        # Plain Lock: a request may acquire it on one worker thread and
        # release it on another.
        self._writer = threading.Lock()

    @property
    def store(self) -> LedgerStore:
        if self._store is None:
            raise RuntimeError("Persistence gateway has not been opened")
        return self._store

    @property
    def is_open(self) -> bool:
        return self._store is not None

    @property
    def is_encrypted(self) -> bool:
        return self._password is not None

    def _swap(self, store: LedgerStore) -> None:
        previous, self._store = self._store, store
        if previous is not None and previous is not store:
            previous.dispose()

    def open(self) -> LedgerStore:
        with self._lock:
            blob = self.storage.read(self.key)
            if blob is None:
                self._swap(LedgerStore.create())
                logger.info(f"snapshot_created: key={self.key}")
                self.flush()
                return self._store

            if is_encrypted(blob):
                if not self._password:
                    raise PasswordRequiredError()
                blob = decrypt_blob(blob, self._password)
            self._swap(LedgerStore.from_bytes(blob))
            logger.info(
                f"snapshot_loaded: key={self.key} encrypted={self.is_encrypted}"
            )
            return self._store

    def unlock(self, password: str) -> LedgerStore:
        with self._lock:
            previous = self._password
            self._password = password
            try:
                return self.open()
            except ValueError:
                self._password = previous
                raise

    def close(self) -> None:
        with self._lock:
            if self._store is not None:
                self._store.dispose()
                self._store = None

    def _encode(self, password: Optional[str]) -> bytes:
        data = self.store.to_bytes()
        if password:
            data = encrypt_blob(data, password)
        return data

    def flush(self) -> None:
        with self._lock:
            try:
                data = self._encode(self._password)
                self.storage.write(self.key, data)
            except (OSError, sqlite3.Error, WriteInProgressError) as exc:
                raise SnapshotFlushError(f"Failed to persist snapshot {self.key}") from exc
            logger.info(f"snapshot_flushed: key={self.key} bytes={len(data)}")

    def flush_quietly(self) -> None:
        try:
            self.flush()
        except SnapshotFlushError:
            logger.exception(f"snapshot_flush_failed: key={self.key}")

    @contextmanager
    def exclusive(self) -> Iterator["PersistenceGateway"]:
        """Hold the single-writer slot for the duration of the block."""
        with self._writer:
            yield self

    @contextmanager
    def session(self) -> Iterator[Session]:
        """A session whose committed work reaches the snapshot when it closes.

        The flush runs after the session is closed, so it never serializes a
        write that is still open.
        """
        session = self.store.session()
        committed: list[bool] = []
        event.listen(session, "after_commit", lambda _s: committed.append(True))
        try:
            yield session
        finally:
            session.close()
            if committed:
                self.flush_quietly()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        with self.store.session_scope() as session:
            yield session
        self.flush()

    def export_backup(self, password: Optional[str] = None) -> tuple[str, bytes]:
        with self._lock:
            data = self._encode(password)
        return backup_filename(), data

    def restore(self, blob: bytes, password: Optional[str] = None) -> LedgerStore:
        """Replace the live store with ``blob`` once it has been validated."""
        if is_encrypted(blob):
            if not password:
                raise PasswordRequiredError()
            blob = decrypt_blob(blob, password)
        candidate = LedgerStore.from_bytes(blob)
        with self._lock:
            self._swap(candidate)
            logger.info(f"snapshot_restored: key={self.key} bytes={len(blob)}")
            self.flush()
        return candidate

    def reset(self) -> LedgerStore:
        fresh = LedgerStore.create()
        with self._lock:
            self._swap(fresh)
            logger.info(f"snapshot_reset: key={self.key}")
            self.flush()
        return fresh

    def set_password(self, password: str) -> None:
        if not password:
            raise ValueError("Password must not be empty")
        with self._lock:
            self._password = password
            self.flush()

    def remove_password(self) -> None:
        with self._lock:
            self._password = None
            self.flush()
