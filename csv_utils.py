import csv
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Sequence

from pydantic import ValidationError

from models import Transaction, TransactionType
from schemas import TransactionIn

EXPORT_HEADER = ["Id", "Date", "Description", "Amount", "Type", "Category", "Account"]


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def parse_occurred_at(value: str) -> datetime:
    value = value.strip()
    for fmt in ("%Y-%m-%d", "%d.%m.%Y", "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise ValueError(f"Invalid date '{value}'") from exc


def parse_amount(value: str) -> int:
    clean = value.strip().replace("€", "").replace("$", "").replace(" ", "")
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    return int((amount * 100).quantize(Decimal("1")))


def parse_type(value: str, amount_cents: int) -> TransactionType:
    # A blank type follows the sign of the amount.
    type_raw = value.strip().lower()
    if not type_raw:
        return TransactionType.income if amount_cents >= 0 else TransactionType.expense
    return TransactionType(type_raw)


def parse_csv(content: str) -> tuple[list[TransactionIn], list[str]]:
    """Parse an export-shaped CSV into ingestion candidates.

    Columns: Date, Description, Amount (signed), Type, Category, Account and an
    optional Id. Rows that fail to parse are reported and left out.
    """
    reader = csv.DictReader(StringIO(content.lstrip("\ufeff")))
    rows: list[TransactionIn] = []
    errors: list[str] = []
    for idx, raw in enumerate(reader, start=1):
        try:
            amount_cents = parse_amount(raw.get("Amount") or "0")
            txn_type = parse_type(raw.get("Type") or "", amount_cents)
            values = dict(
                occurred_at=parse_occurred_at(raw.get("Date") or ""),
                description=(raw.get("Description") or "").strip().lstrip("\t"),
                amount_cents=amount_cents,
                type=txn_type,
                category_name=(raw.get("Category") or "").lstrip("\t"),
                account_name=(raw.get("Account") or "").lstrip("\t"),
            )
            txn_id = (raw.get("Id") or "").strip()
            if txn_id:
                values["id"] = txn_id
            rows.append(TransactionIn(**values))
        except (ValueError, ValidationError) as exc:
            errors.append(f"Row {idx}: {exc}")
    return rows, errors


def export_transactions(transactions: Sequence[Transaction]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(EXPORT_HEADER)
    for txn in transactions:
        writer.writerow(
            [
                txn.id,
                txn.occurred_at.isoformat(),
                sanitize_csv_value(txn.description or ""),
                f"{txn.amount_cents / 100:.2f}",
                txn.type.value,
                sanitize_csv_value(txn.category_name or ""),
                sanitize_csv_value(txn.account_name or ""),
            ]
        )
    return output.getvalue()
