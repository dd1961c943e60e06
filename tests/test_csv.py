from datetime import datetime

from csv_utils import parse_csv, sanitize_csv_value
from database import LedgerStore
from models import TransactionType
from services import CSVService, TransactionService

CSV_TEXT = """Date,Description,Amount,Type,Category,Account
2024-03-01,Salary,"2500,00",income,Salary,Checking
2024-03-02,Groceries,-45.50,,Food,Checking
05.03.2024,Refund,12.00,,,
not-a-date,Broken,1.00,expense,Food,Checking
"""


def test_parse_csv_infers_type_from_sign_and_reports_bad_rows() -> None:
    rows, errors = parse_csv(CSV_TEXT)

    assert [r.description for r in rows] == ["Salary", "Groceries", "Refund"]
    assert [r.amount_cents for r in rows] == [250_000, -4_550, 1_200]
    assert [r.type for r in rows] == [
        TransactionType.income,
        TransactionType.expense,
        TransactionType.income,
    ]
    assert rows[2].occurred_at == datetime(2024, 3, 5)
    assert rows[2].account_name is None
    assert rows[2].category_name is None
    assert len(errors) == 1
    assert errors[0].startswith("Row 4:")


def test_csv_commit_skips_rows_already_stored() -> None:
    store = LedgerStore.create()
    valid = "\n".join(CSV_TEXT.splitlines()[:4]) + "\n"
    with store.session() as session:
        first = CSVService(session).commit(valid)
        second = CSVService(session).commit(valid)

        assert first.inserted == 3
        assert second.inserted == 0
        assert TransactionService(session).count() == 3


def test_export_guards_against_formula_injection() -> None:
    assert sanitize_csv_value("=SUM(A1:A2)") == "\t=SUM(A1:A2)"
    assert sanitize_csv_value("Groceries") == "Groceries"

    store = LedgerStore.create()
    with store.session() as session:
        CSVService(session).commit(
            "Date,Description,Amount,Type,Category,Account\n"
            "2024-03-02,=HYPERLINK(x),-1.00,expense,Food,Checking\n"
        )
        exported = CSVService(session).export()

    header, line = exported.splitlines()
    assert header == "Id,Date,Description,Amount,Type,Category,Account"
    assert "\t=HYPERLINK(x)" in line
    assert line.endswith(",-1.00,expense,Food,Checking")
