from datetime import datetime

from database import LedgerStore
from dedup import DupStatus, classify, existing_signatures, select_for_import, signature
from models import TransactionType
from schemas import TransactionIn
from services import IngestService


def row(description: str, cents: int, when: datetime, type=TransactionType.expense) -> TransactionIn:
    return TransactionIn(
        occurred_at=when, description=description, amount_cents=cents, type=type
    )


def test_signature_shape() -> None:
    txn = row("Coffee", -1250, datetime(2024, 3, 5, 8, 30))
    assert signature(txn) == "2024-03-05_12.50_coffee"


def test_signature_ignores_time_sign_whitespace_and_case() -> None:
    morning = row("  Coffee Shop ", -450, datetime(2024, 3, 5, 8, 0))
    evening = row("coffee shop", 450, datetime(2024, 3, 5, 23, 59), TransactionType.income)
    next_day = row("coffee shop", -450, datetime(2024, 3, 6, 0, 0))

    assert signature(morning) == signature(evening)
    assert signature(morning) != signature(next_day)


def test_classify_flags_store_hits_before_batch_repeats() -> None:
    stored = row("Rent", -90000, datetime(2024, 3, 1))
    batch = [
        row("Rent", -90000, datetime(2024, 3, 1, 9)),
        row("Groceries", -4550, datetime(2024, 3, 2)),
        row("groceries ", -4550, datetime(2024, 3, 2, 18)),
        row("Salary", 250000, datetime(2024, 3, 1), TransactionType.income),
    ]
    statuses = classify(batch, {signature(stored)})

    assert [statuses[t.id] for t in batch] == [
        DupStatus.in_store,
        DupStatus.none,
        DupStatus.in_batch,
        DupStatus.none,
    ]


def test_same_day_identical_purchases_collide() -> None:
    first = row("Bus ticket", -280, datetime(2024, 3, 5, 7, 45))
    second = row("Bus ticket", -280, datetime(2024, 3, 5, 17, 10))

    statuses = classify([first, second], set())
    assert statuses[second.id] == DupStatus.in_batch


def test_select_for_import_applies_overrides() -> None:
    batch = [
        row("A", -100, datetime(2024, 3, 5)),
        row("A", -100, datetime(2024, 3, 5)),
        row("B", -200, datetime(2024, 3, 5)),
    ]
    statuses = classify(batch, set())

    assert select_for_import(batch, statuses) == [batch[0], batch[2]]
    kept = select_for_import(batch, statuses, {batch[1].id: True, batch[2].id: False})
    assert kept == [batch[0], batch[1]]


def test_existing_signatures_reads_stored_rows() -> None:
    store = LedgerStore.create()
    with store.session() as session:
        IngestService(session).ingest([row("Coffee", -350, datetime(2024, 3, 5, 9))])

        assert existing_signatures(session) == {"2024-03-05_3.50_coffee"}
        again = row("COFFEE", -350, datetime(2024, 3, 5, 16))
        assert classify([again], existing_signatures(session))[again.id] == DupStatus.in_store
