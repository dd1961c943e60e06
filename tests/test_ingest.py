from datetime import datetime

import pytest
from sqlalchemy import func, select

from database import LedgerStore
from models import (
    DEFAULT_ACCOUNT_NAME,
    Account,
    Category,
    Transaction,
    TransactionType,
    TransferLink,
)
from schemas import AccountIn, CategoryIn, TransactionIn, TransferIn
from services import (
    AccountService,
    CategoryService,
    EntityResolver,
    IngestConstraintViolation,
    IngestResolutionFailure,
    IngestService,
    IngestValidationError,
)


def expense(description: str, cents: int, **refs) -> TransactionIn:
    return TransactionIn(
        occurred_at=datetime(2024, 3, 5, 12, 0),
        description=description,
        amount_cents=-cents,
        type=TransactionType.expense,
        **refs,
    )


def count(session, model) -> int:
    return session.scalar(select(func.count()).select_from(model))


def test_ingest_creates_unseen_names_once_per_batch() -> None:
    store = LedgerStore.create()
    with store.session() as session:
        batch = [
            expense("Coffee", 350, account_name="Checking", category_name="Food"),
            expense("Lunch", 1200, account_name="Checking", category_name="Food"),
            expense("Dinner", 2400, account_name="Checking", category_name="Food"),
        ]
        result = IngestService(session).ingest(batch)

        assert result.inserted == 3
        assert result.created_accounts == ["Checking"]
        assert result.created_categories == [("Food", TransactionType.expense)]
        assert count(session, Account) == 1
        assert count(session, Category) == 1
        account_ids = session.scalars(select(Transaction.account_id).distinct()).all()
        assert len(account_ids) == 1


def test_ingest_prefers_existing_id_and_matches_names_exactly() -> None:
    store = LedgerStore.create()
    with store.session() as session:
        checking = AccountService(session).create(AccountIn(name="Checking"))
        food = CategoryService(session).create(
            CategoryIn(name="Food", type=TransactionType.expense)
        )
        batch = [
            expense("By id", 100, account_id=checking.id, account_name="Ignored"),
            expense("By name", 200, account_name="Checking", category_name="Food"),
        ]
        result = IngestService(session).ingest(batch)

        assert result.created_accounts == []
        assert result.created_categories == []
        rows = session.scalars(select(Transaction).order_by(Transaction.amount_cents)).all()
        assert {r.account_id for r in rows} == {checking.id}
        assert rows[0].category_id == food.id


def test_same_category_name_with_other_type_is_a_new_category() -> None:
    store = LedgerStore.create()
    with store.session() as session:
        CategoryService(session).create(CategoryIn(name="Refund", type=TransactionType.expense))
        income = TransactionIn(
            occurred_at=datetime(2024, 3, 6),
            description="Shop refund",
            amount_cents=1500,
            type=TransactionType.income,
            category_name="Refund",
        )
        result = IngestService(session).ingest([income])

        assert result.created_categories == [("Refund", TransactionType.income)]
        assert count(session, Category) == 2


def test_missing_account_uses_default_and_missing_category_stays_empty() -> None:
    store = LedgerStore.create()
    with store.session() as session:
        IngestService(session).ingest([expense("Cash", 500)])
        txn = session.scalar(select(Transaction))

        assert txn.account.name == DEFAULT_ACCOUNT_NAME
        assert txn.category_id is None

        IngestService(session).ingest([expense("More cash", 700)])
        assert count(session, Account) == 1


def test_unknown_id_without_name_rolls_back_whole_batch() -> None:
    store = LedgerStore.create()
    with store.session() as session:
        batch = [
            expense("Fine", 100, account_name="Brand New"),
            expense("Broken", 200, account_id="acc-missing"),
        ]
        with pytest.raises(IngestResolutionFailure):
            IngestService(session).ingest(batch)

        assert count(session, Transaction) == 0
        assert count(session, Account) == 0


def test_validation_errors_carry_row_context_and_write_nothing() -> None:
    store = LedgerStore.create()
    with store.session() as session:
        batch = [
            expense("Fine", 100),
            TransactionIn(
                occurred_at=datetime(2024, 3, 5),
                description="Negative salary",
                amount_cents=-100,
                type=TransactionType.income,
            ),
            TransactionIn(
                occurred_at=datetime(2024, 3, 5),
                description="Empty transfer",
                amount_cents=0,
                type=TransactionType.transfer,
            ),
        ]
        with pytest.raises(IngestValidationError) as excinfo:
            IngestService(session).ingest(batch)

        assert [e.index for e in excinfo.value.errors] == [1, 2]
        assert excinfo.value.errors[0].transaction_id == batch[1].id
        assert count(session, Transaction) == 0


def test_constraint_violation_rolls_back_rows_and_created_entities() -> None:
    store = LedgerStore.create()
    with store.session() as session:
        leg = expense("Orphan leg", 100, account_name="Checking")
        with pytest.raises(IngestConstraintViolation):
            IngestService(session).ingest([leg], transfer_pairs=[(leg.id, "txn-missing")])

        assert count(session, Transaction) == 0
        assert count(session, Account) == 0
        assert count(session, TransferLink) == 0


def test_reimporting_same_batch_overwrites_in_place() -> None:
    store = LedgerStore.create()
    batch = [
        expense("Coffee", 350, account_name="Checking", category_name="Food"),
        expense("Rent", 90000, account_name="Checking", category_name="Housing"),
    ]
    with store.session() as session:
        IngestService(session).ingest(batch)
    with store.session() as session:
        result = IngestService(session).ingest(batch)

        assert result.inserted == 0
        assert result.updated == 2
        assert count(session, Transaction) == 2
        assert count(session, Account) == 1
        assert count(session, Category) == 2


def test_plan_reports_new_names_without_writing() -> None:
    store = LedgerStore.create()
    with store.session() as session:
        AccountService(session).create(AccountIn(name="Checking"))
        batch = [
            expense("A", 100, account_name="Checking", category_name="Food"),
            expense("B", 100, account_name="Wallet", category_name="Food"),
            expense("C", 100, account_id="acc-missing"),
        ]
        plan = EntityResolver(session).plan(batch)

        assert plan.new_accounts == ["Wallet"]
        assert plan.new_categories == [("Food", TransactionType.expense)]
        assert [f.index for f in plan.failures] == [2]
        assert not plan.creates_nothing
        assert count(session, Account) == 1
        assert count(session, Category) == 0


def test_plan_for_known_names_creates_nothing() -> None:
    store = LedgerStore.create()
    with store.session() as session:
        IngestService(session).ingest([expense("A", 100, account_name="Checking")])
        plan = EntityResolver(session).plan([expense("B", 100, account_name="Checking")])

        assert plan.creates_nothing
        assert plan.failures == []


def test_resolver_recovers_when_name_was_created_concurrently(monkeypatch) -> None:
    store = LedgerStore.create()
    with store.session() as session:
        existing = EntityResolver(session).resolve_account(None, "Shared")
        session.commit()

        stale = EntityResolver(session)
        monkeypatch.setattr(stale, "_find_account", lambda account_id, name: (None, name))

        assert stale.resolve_account(None, "Shared") == existing
        assert stale.created_accounts == []
        assert count(session, Account) == 1


def test_create_transfer_writes_linked_legs() -> None:
    store = LedgerStore.create()
    with store.session() as session:
        accounts = AccountService(session)
        checking = accounts.create(AccountIn(name="Checking"))
        savings = accounts.create(AccountIn(name="Savings", is_savings=True))

        link = IngestService(session).create_transfer(
            TransferIn(
                occurred_at=datetime(2024, 3, 10, 9),
                amount_cents=25000,
                source_account_id=checking.id,
                destination_account_id=savings.id,
            )
        )

        source = session.get(Transaction, link.source_transaction_id)
        destination = session.get(Transaction, link.destination_transaction_id)
        assert source.amount_cents == -25000
        assert destination.amount_cents == 25000
        assert source.account_id == checking.id
        assert destination.account_id == savings.id
        assert source.description == "Transfer Out"
        assert destination.category.name == "Transfer"
        assert destination.category.type == TransactionType.transfer


def leg(txn: Transaction, cents: int) -> TransactionIn:
    return TransactionIn(
        id=txn.id,
        occurred_at=txn.occurred_at,
        description=txn.description,
        amount_cents=cents,
        type=TransactionType.transfer,
        account_id=txn.account_id,
        category_id=txn.category_id,
    )


def test_linked_transfer_leg_cannot_change_alone() -> None:
    store = LedgerStore.create()
    with store.session() as session:
        accounts = AccountService(session)
        checking = accounts.create(AccountIn(name="Checking"))
        savings = accounts.create(AccountIn(name="Savings", is_savings=True))
        link = IngestService(session).create_transfer(
            TransferIn(
                occurred_at=datetime(2024, 3, 10, 9),
                amount_cents=5000,
                source_account_id=checking.id,
                destination_account_id=savings.id,
            )
        )
        source = session.get(Transaction, link.source_transaction_id)
        destination = session.get(Transaction, link.destination_transaction_id)

        with pytest.raises(IngestConstraintViolation):
            IngestService(session).ingest([leg(source, -9000)])
        assert (source.amount_cents, destination.amount_cents) == (-5000, 5000)

        with pytest.raises(IngestConstraintViolation):
            IngestService(session).ingest([leg(source, -9000), leg(destination, 4000)])

        # Unchanged amounts pass, and both legs may move together.
        IngestService(session).ingest([leg(source, -5000)])
        IngestService(session).ingest([leg(source, -9000), leg(destination, 9000)])
        assert (source.amount_cents, destination.amount_cents) == (-9000, 9000)
        assert count(session, TransferLink) == 1


def test_create_transfer_requires_existing_accounts() -> None:
    store = LedgerStore.create()
    with store.session() as session:
        checking = AccountService(session).create(AccountIn(name="Checking"))
        with pytest.raises(IngestResolutionFailure):
            IngestService(session).create_transfer(
                TransferIn(
                    occurred_at=datetime(2024, 3, 10),
                    amount_cents=100,
                    source_account_id=checking.id,
                    destination_account_id="acc-missing",
                )
            )
        assert count(session, Transaction) == 0


def test_transfer_to_same_account_is_rejected() -> None:
    with pytest.raises(ValueError):
        TransferIn(
            occurred_at=datetime(2024, 3, 10),
            amount_cents=100,
            source_account_id="acc-1",
            destination_account_id="acc-1",
        )
