import re
import sqlite3
import threading
from datetime import date, datetime

import pytest
from sqlalchemy import select

from database import LedgerStore, SnapshotIntegrityError
from encryption import DecryptionError, is_encrypted
from models import (
    Account,
    Category,
    CategoryGroup,
    SavingsGoal,
    Transaction,
    TransactionType,
    TransferLink,
)
from persistence import (
    PasswordRequiredError,
    PersistenceGateway,
    SnapshotFlushError,
    SnapshotStorage,
)
from schemas import AccountIn
from services import AccountService, TransactionService


def make_gateway(tmp_path, password=None) -> PersistenceGateway:
    gateway = PersistenceGateway(SnapshotStorage(tmp_path), password=password)
    gateway.open()
    return gateway


def account_names(gateway: PersistenceGateway) -> list[str]:
    with gateway.store.session() as session:
        return [a.name for a in AccountService(session).list_all()]


def test_open_creates_snapshot_when_absent(tmp_path) -> None:
    gateway = make_gateway(tmp_path)
    stored = SnapshotStorage(tmp_path).read("db_binary")

    assert stored is not None
    assert stored.startswith(b"SQLite format 3")
    assert "transactions" in gateway.store.table_names()
    assert "alembic_version" in gateway.store.table_names()


def test_committed_writes_survive_reopen(tmp_path) -> None:
    gateway = make_gateway(tmp_path)
    with gateway.transaction() as session:
        session.add(Account(id="acc-1", name="Checking", is_savings=False))
    gateway.close()

    assert account_names(make_gateway(tmp_path)) == ["Checking"]


def test_encrypted_snapshot_needs_the_right_password(tmp_path) -> None:
    gateway = make_gateway(tmp_path, password="s3cret")
    with gateway.store.session() as session:
        AccountService(session).create(AccountIn(name="Checking"))
    gateway.flush()
    assert is_encrypted(SnapshotStorage(tmp_path).read("db_binary"))

    with pytest.raises(PasswordRequiredError):
        PersistenceGateway(SnapshotStorage(tmp_path)).open()
    with pytest.raises(DecryptionError):
        PersistenceGateway(SnapshotStorage(tmp_path), password="nope").open()

    locked = PersistenceGateway(SnapshotStorage(tmp_path))
    locked.unlock("s3cret")
    assert account_names(locked) == ["Checking"]


def test_failed_unlock_keeps_previous_password(tmp_path) -> None:
    make_gateway(tmp_path, password="s3cret")
    locked = PersistenceGateway(SnapshotStorage(tmp_path))
    with pytest.raises(DecryptionError):
        locked.unlock("wrong")
    assert not locked.is_open
    assert not locked.is_encrypted


def test_set_and_remove_password_rewrite_snapshot(tmp_path) -> None:
    gateway = make_gateway(tmp_path)
    storage = SnapshotStorage(tmp_path)

    gateway.set_password("pw")
    assert gateway.is_encrypted
    assert is_encrypted(storage.read("db_binary"))

    gateway.remove_password()
    assert not gateway.is_encrypted
    assert not is_encrypted(storage.read("db_binary"))


def test_restore_rejects_invalid_image_and_keeps_current_store(tmp_path) -> None:
    gateway = make_gateway(tmp_path)
    with gateway.store.session() as session:
        AccountService(session).create(AccountIn(name="Checking"))
    before = gateway.store

    for blob in (b"", b"definitely not a database" * 40):
        with pytest.raises(SnapshotIntegrityError):
            gateway.restore(blob)

    assert gateway.store is before
    assert account_names(gateway) == ["Checking"]


def test_restore_swaps_in_backup(tmp_path) -> None:
    source = make_gateway(tmp_path / "source")
    with source.store.session() as session:
        AccountService(session).create(AccountIn(name="From backup"))
    filename, blob = source.export_backup()
    assert re.fullmatch(r"finance_backup_\d{4}-\d{2}-\d{2}\.sqlite", filename)

    target = make_gateway(tmp_path / "target")
    target.restore(blob)

    assert account_names(target) == ["From backup"]
    assert account_names(make_gateway(tmp_path / "target")) == ["From backup"]


def test_restore_encrypted_backup_requires_password(tmp_path) -> None:
    source = make_gateway(tmp_path / "source")
    _, blob = source.export_backup(password="pw")
    assert is_encrypted(blob)

    target = make_gateway(tmp_path / "target")
    with pytest.raises(PasswordRequiredError):
        target.restore(blob)
    with pytest.raises(DecryptionError):
        target.restore(blob, "wrong")
    target.restore(blob, "pw")


def test_reset_wipes_all_rows(tmp_path) -> None:
    gateway = make_gateway(tmp_path)
    with gateway.store.session() as session:
        AccountService(session).create(AccountIn(name="Checking"))
    gateway.reset()

    assert account_names(gateway) == []
    assert account_names(make_gateway(tmp_path)) == []


def test_flush_failure_keeps_memory_state(tmp_path, monkeypatch, caplog) -> None:
    gateway = make_gateway(tmp_path)

    def broken_write(key, data):
        raise OSError("disk full")

    monkeypatch.setattr(gateway.storage, "write", broken_write)
    with gateway.store.session() as session:
        AccountService(session).create(AccountIn(name="Checking"))

    with pytest.raises(SnapshotFlushError):
        gateway.flush()
    gateway.flush_quietly()

    assert "snapshot_flush_failed" in caplog.text
    assert account_names(gateway) == ["Checking"]


def _legacy_image() -> bytes:
    conn = sqlite3.connect(":memory:")
    conn.executescript(
        """
        CREATE TABLE transactions (
          id TEXT PRIMARY KEY, date TEXT, description TEXT, amount REAL,
          category TEXT, type TEXT, account TEXT
        );
        CREATE TABLE savings_goals (
          id TEXT PRIMARY KEY, name TEXT, targetAmount REAL, deadline TEXT,
          targetAccount TEXT
        );
        CREATE TABLE accounts (id TEXT PRIMARY KEY, name TEXT UNIQUE);
        CREATE TABLE categories (
          id TEXT PRIMARY KEY, name TEXT UNIQUE, type TEXT, group_name TEXT
        );
        """
    )
    conn.executemany(
        "INSERT INTO transactions VALUES (?, ?, ?, ?, ?, ?, ?)",
        [
            ("t1", "2024-03-01", "Salary", 2500.0, "Salary", "Income", "Checking"),
            ("t2", "2024-03-02", "Groceries", -45.5, "Food", "Expense", "Checking"),
            ("t3", "2024-03-03", "Coffee", -3.2, "Food", "Expense", None),
            ("o", "2024-03-04", "Move", -50.0, "Transfer", "Transfer", "Checking"),
            ("i", "2024-03-04", "Move", 50.0, "Transfer", "Transfer", "Savings"),
            ("bad", "sometime in May", "Broken", -1.0, "Food", "Expense", "Checking"),
        ],
    )
    conn.execute("INSERT INTO accounts VALUES ('acc-1', 'Checking')")
    conn.execute("INSERT INTO categories VALUES ('cat-1', 'Food', 'Expense', 'Recurring')")
    conn.execute(
        "INSERT INTO savings_goals VALUES ('g1', 'Trip', 1000.0, '2024-12-31', '[\"Checking\"]')"
    )
    conn.commit()
    data = bytes(conn.serialize())
    conn.close()
    return data


def test_legacy_image_is_migrated_on_open() -> None:
    store = LedgerStore.from_bytes(_legacy_image())
    assert {"alembic_version", "transfers", "configs"} <= store.table_names()

    with store.session() as session:
        txns = {t.id: t for t in TransactionService(session).all_for_period(None)}
        assert txns["t1"].type == TransactionType.income
        assert txns["t1"].amount_cents == 250_000
        assert txns["t1"].occurred_at == datetime(2024, 3, 1)
        assert txns["t2"].amount_cents == -4_550
        assert txns["t2"].account_id == "acc-1"
        assert txns["t3"].amount_cents == -320
        assert txns["t3"].account.name == "Main Account"

        food = session.get(Category, "cat-1")
        assert food.group == CategoryGroup.recurring
        assert txns["t2"].category_id == food.id == txns["t3"].category_id
        assert txns["t1"].category.name == "Salary"
        assert txns["t1"].category.type == TransactionType.income

        goal = session.scalar(select(SavingsGoal))
        assert goal.target_amount_cents == 100_000
        assert goal.deadline == date(2024, 12, 31)
        assert goal.target_account_ids == ["acc-1"]

        assert sorted(txns) == ["i", "o", "t1", "t2", "t3"]


def test_legacy_transfer_pairs_are_linked() -> None:
    store = LedgerStore.from_bytes(_legacy_image())

    with store.session() as session:
        link = session.scalar(select(TransferLink))
        assert (link.source_transaction_id, link.destination_transaction_id) == ("o", "i")
        assert session.get(Transaction, "i").account.name == "Savings"

        assert sorted(TransactionService(session).delete("o")) == ["i", "o"]
        assert session.get(Transaction, "i") is None
        assert session.scalar(select(TransferLink)) is None


def test_legacy_row_with_unreadable_date_is_skipped(caplog) -> None:
    store = LedgerStore.from_bytes(_legacy_image())

    with store.session() as session:
        assert session.get(Transaction, "bad") is None
        assert session.get(Transaction, "t2") is not None
    assert "legacy_transaction_skipped: id=bad" in caplog.text


def test_flush_refuses_an_open_write(tmp_path) -> None:
    gateway = make_gateway(tmp_path)
    session = gateway.store.session()
    session.add(Account(id="acc-half", name="Half written", is_savings=False))
    session.flush()

    with pytest.raises(SnapshotFlushError):
        gateway.flush()

    session.rollback()
    session.close()
    assert account_names(gateway) == []
    assert account_names(make_gateway(tmp_path)) == []


def test_gateway_session_flushes_committed_work(tmp_path) -> None:
    gateway = make_gateway(tmp_path)
    with gateway.session() as session:
        AccountService(session).create(AccountIn(name="Checking"))

    assert account_names(make_gateway(tmp_path)) == ["Checking"]


def test_exclusive_slot_can_be_released_from_another_thread(tmp_path) -> None:
    gateway = make_gateway(tmp_path)
    slot = gateway.exclusive()
    slot.__enter__()

    worker = threading.Thread(target=slot.__exit__, args=(None, None, None))
    worker.start()
    worker.join()

    assert gateway._writer.acquire(timeout=1)
    gateway._writer.release()


def test_reopen_disposes_the_replaced_store(tmp_path, monkeypatch) -> None:
    gateway = make_gateway(tmp_path)
    first = gateway.store
    disposed = []
    monkeypatch.setattr(first, "dispose", lambda: disposed.append(True))

    gateway.open()

    assert gateway.store is not first
    assert disposed == [True]
