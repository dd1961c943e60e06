"""normalize ledger references

Revision ID: 0002_normalize_ledger_references
Revises: 0001_legacy_baseline
Create Date: 2025-02-03 18:30:00.000000

Accounts and categories become real rows referenced by id, categories are
unique per (name, type), amounts move to signed integer cents, transfers get
an explicit link table, savings goal targets move to an association table and
the key/value configs table is created.

"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

import sqlalchemy as sa
from alembic import op

logger = logging.getLogger(__name__)


revision = "0002_normalize_ledger_references"
down_revision = "0001_legacy_baseline"
branch_labels = None
depends_on = None

TRANSACTION_TYPES = ("income", "expense", "transfer", "balance")
CATEGORY_GROUPS = ("recurring", "general", "savings")
DEFAULT_ACCOUNT_NAME = "Main Account"


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex}"


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _legacy_type(value) -> str:
    text = (value or "").strip().lower()
    if text in TRANSACTION_TYPES:
        return text
    return "expense"


def _legacy_group(value) -> str:
    text = (value or "").strip().lower()
    if text in CATEGORY_GROUPS:
        return text
    return "general"


LEGACY_DATE_FORMATS = ("%d.%m.%Y", "%m/%d/%Y", "%Y/%m/%d")


def _legacy_datetime(value) -> Optional[datetime]:
    text = (value or "").strip()
    if not text:
        return datetime(1970, 1, 1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        for fmt in LEGACY_DATE_FORMATS:
            try:
                return datetime.strptime(text, fmt)
            except ValueError:
                continue
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _legacy_cents(value) -> int:
    if value is None:
        return 0
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return 0
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _legacy_goal_accounts(value) -> list[str]:
    if not value:
        return []
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        return [str(value)]
    if isinstance(parsed, list):
        return [str(item) for item in parsed]
    return [str(parsed)]


def _pair_legacy_transfers(rows: list[dict]) -> list[tuple[str, str]]:
    """Link transfer legs that were stored as two loose rows.

    Legs share the instant, absolute amount and category, carry opposite signs
    and sit on different accounts. Returns (source, destination) id pairs.
    """
    unmatched: dict[tuple, list[dict]] = {}
    pairs = []
    for row in sorted(rows, key=lambda r: r["id"]):
        if row["type"] != "transfer" or row["amount_cents"] == 0:
            continue
        key = (row["occurred_at"], abs(row["amount_cents"]), row["category_id"])
        waiting = unmatched.setdefault(key, [])
        match = next(
            (
                leg
                for leg in waiting
                if (leg["amount_cents"] < 0) != (row["amount_cents"] < 0)
                and leg["account_id"] != row["account_id"]
            ),
            None,
        )
        if match is None:
            waiting.append(row)
            continue
        waiting.remove(match)
        source, destination = (match, row) if match["amount_cents"] < 0 else (row, match)
        pairs.append((source["id"], destination["id"]))
    return pairs


def _insert(table, rows) -> None:
    if rows:
        op.bulk_insert(table, rows)


def _read_legacy_rows(bind) -> dict[str, list]:
    insp = sa.inspect(bind)
    tables = set(insp.get_table_names())
    rows: dict[str, list] = {
        "transactions": [],
        "accounts": [],
        "categories": [],
        "savings_goals": [],
    }
    if "transactions" in tables:
        columns = {c["name"] for c in insp.get_columns("transactions")}
        account_expr = "account" if "account" in columns else "NULL"
        rows["transactions"] = list(
            bind.execute(
                sa.text(
                    "SELECT id, date, description, amount, category, type, "
                    f"{account_expr} AS account FROM transactions"
                )
            ).mappings()
        )
    if "accounts" in tables:
        rows["accounts"] = list(
            bind.execute(sa.text("SELECT id, name FROM accounts")).mappings()
        )
    if "categories" in tables:
        rows["categories"] = list(
            bind.execute(
                sa.text("SELECT id, name, type, group_name FROM categories")
            ).mappings()
        )
    if "savings_goals" in tables:
        rows["savings_goals"] = list(
            bind.execute(
                sa.text(
                    'SELECT id, name, "targetAmount" AS target_amount, deadline, '
                    '"targetAccount" AS target_account FROM savings_goals'
                )
            ).mappings()
        )
    for table in ("transactions", "savings_goals", "accounts", "categories"):
        if table in tables:
            op.drop_table(table)
    return rows


def _create_current_tables() -> dict[str, sa.Table]:
    accounts = op.create_table(
        "accounts",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("is_savings", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("name"),
    )
    categories = op.create_table(
        "categories",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", sa.Enum(*TRANSACTION_TYPES, name="transactiontype"), nullable=False),
        sa.Column(
            "group_name",
            sa.Enum(*CATEGORY_GROUPS, name="categorygroup"),
            nullable=False,
            server_default="general",
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("name", "type", name="uq_category_name_type"),
    )
    transactions = op.create_table(
        "transactions",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("type", sa.Enum(*TRANSACTION_TYPES, name="transactiontype"), nullable=False),
        sa.Column(
            "account_id", sa.String(length=64), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("category_id", sa.String(length=64), sa.ForeignKey("categories.id")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_transactions_account_occurred",
        "transactions",
        ["account_id", "occurred_at"],
    )
    op.create_index("ix_transactions_occurred", "transactions", ["occurred_at"])
    op.create_index("ix_transactions_category", "transactions", ["category_id"])

    transfers = op.create_table(
        "transfers",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column(
            "source_transaction_id",
            sa.String(length=64),
            sa.ForeignKey("transactions.id"),
            nullable=False,
        ),
        sa.Column(
            "destination_transaction_id",
            sa.String(length=64),
            sa.ForeignKey("transactions.id"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("source_transaction_id"),
        sa.UniqueConstraint("destination_transaction_id"),
    )

    savings_goals = op.create_table(
        "savings_goals",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("target_amount_cents", sa.Integer(), nullable=False),
        sa.Column("deadline", sa.Date()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    goal_accounts = op.create_table(
        "savings_goal_accounts",
        sa.Column(
            "goal_id",
            sa.String(length=64),
            sa.ForeignKey("savings_goals.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "account_id",
            sa.String(length=64),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )

    op.create_table(
        "configs",
        sa.Column("key", sa.String(length=100), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    return {
        "accounts": accounts,
        "categories": categories,
        "transactions": transactions,
        "transfers": transfers,
        "savings_goals": savings_goals,
        "savings_goal_accounts": goal_accounts,
    }


def upgrade() -> None:
    bind = op.get_bind()
    legacy = _read_legacy_rows(bind)
    tables = _create_current_tables()
    now = _now()

    account_ids: dict[str, str] = {}
    for row in legacy["accounts"]:
        name = (row["name"] or "").strip()
        if name and name not in account_ids:
            account_ids[name] = str(row["id"])

    category_ids: dict[tuple[str, str], str] = {}
    category_groups: dict[tuple[str, str], str] = {}
    for row in legacy["categories"]:
        name = (row["name"] or "").strip()
        if not name:
            continue
        key = (name, _legacy_type(row["type"]))
        if key not in category_ids:
            category_ids[key] = str(row["id"])
            category_groups[key] = _legacy_group(row["group_name"])

    transaction_rows = []
    for row in legacy["transactions"]:
        occurred_at = _legacy_datetime(row["date"])
        if occurred_at is None:
            logger.warning(
                f"legacy_transaction_skipped: id={row['id']} date={row['date']!r}"
            )
            continue
        txn_type = _legacy_type(row["type"])
        account_name = (row["account"] or "").strip() or DEFAULT_ACCOUNT_NAME
        if account_name not in account_ids:
            account_ids[account_name] = _new_id("acc")
        category_id = None
        category_name = (row["category"] or "").strip()
        if category_name:
            key = (category_name, txn_type)
            if key not in category_ids:
                category_ids[key] = _new_id("cat")
                category_groups[key] = "general"
            category_id = category_ids[key]
        transaction_rows.append(
            {
                "id": str(row["id"]),
                "occurred_at": occurred_at,
                "description": row["description"] or "",
                "amount_cents": _legacy_cents(row["amount"]),
                "type": txn_type,
                "account_id": account_ids[account_name],
                "category_id": category_id,
                "created_at": now,
                "updated_at": now,
            }
        )

    _insert(
        tables["accounts"],
        [
            {
                "id": account_id,
                "name": name,
                "is_savings": False,
                "created_at": now,
                "updated_at": now,
            }
            for name, account_id in account_ids.items()
        ],
    )
    _insert(
        tables["categories"],
        [
            {
                "id": category_id,
                "name": name,
                "type": txn_type,
                "group_name": category_groups[(name, txn_type)],
                "created_at": now,
                "updated_at": now,
            }
            for (name, txn_type), category_id in category_ids.items()
        ],
    )
    _insert(tables["transactions"], transaction_rows)
    _insert(
        tables["transfers"],
        [
            {
                "id": _new_id("xfer"),
                "source_transaction_id": source_id,
                "destination_transaction_id": destination_id,
                "created_at": now,
            }
            for source_id, destination_id in _pair_legacy_transfers(transaction_rows)
        ],
    )

    known_ids = set(account_ids.values())
    goal_rows = []
    goal_account_rows = []
    for row in legacy["savings_goals"]:
        goal_id = str(row["id"])
        deadline = None
        if row["deadline"]:
            parsed = _legacy_datetime(row["deadline"])
            deadline = parsed.date() if parsed else None
        goal_rows.append(
            {
                "id": goal_id,
                "name": row["name"] or "",
                "target_amount_cents": _legacy_cents(row["target_amount"]),
                "deadline": deadline,
                "created_at": now,
                "updated_at": now,
            }
        )
        linked: set[str] = set()
        for ref in _legacy_goal_accounts(row["target_account"]):
            account_id = ref if ref in known_ids else account_ids.get(ref)
            if account_id and account_id not in linked:
                linked.add(account_id)
                goal_account_rows.append({"goal_id": goal_id, "account_id": account_id})
    _insert(tables["savings_goals"], goal_rows)
    _insert(tables["savings_goal_accounts"], goal_account_rows)


def downgrade() -> None:
    bind = op.get_bind()
    transactions = list(
        bind.execute(
            sa.text(
                "SELECT t.id, t.occurred_at, t.description, t.amount_cents, t.type, "
                "a.name AS account, c.name AS category "
                "FROM transactions t JOIN accounts a ON a.id = t.account_id "
                "LEFT JOIN categories c ON c.id = t.category_id"
            )
        ).mappings()
    )
    accounts = list(bind.execute(sa.text("SELECT id, name FROM accounts")).mappings())
    categories = list(
        bind.execute(
            sa.text("SELECT id, name, type, group_name FROM categories")
        ).mappings()
    )
    goals = list(
        bind.execute(
            sa.text(
                "SELECT id, name, target_amount_cents, deadline FROM savings_goals"
            )
        ).mappings()
    )
    goal_accounts: dict[str, list[str]] = {}
    for row in bind.execute(
        sa.text("SELECT goal_id, account_id FROM savings_goal_accounts")
    ).mappings():
        goal_accounts.setdefault(row["goal_id"], []).append(row["account_id"])

    op.drop_table("configs")
    op.drop_table("savings_goal_accounts")
    op.drop_table("savings_goals")
    op.drop_table("transfers")
    op.drop_index("ix_transactions_category", table_name="transactions")
    op.drop_index("ix_transactions_occurred", table_name="transactions")
    op.drop_index("ix_transactions_account_occurred", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("categories")
    op.drop_table("accounts")

    legacy_transactions = op.create_table(
        "transactions",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("date", sa.Text()),
        sa.Column("description", sa.Text()),
        sa.Column("amount", sa.Float()),
        sa.Column("category", sa.Text()),
        sa.Column("type", sa.Text()),
        sa.Column("account", sa.Text(), server_default="Main Account"),
    )
    legacy_goals = op.create_table(
        "savings_goals",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text()),
        sa.Column("targetAmount", sa.Float()),
        sa.Column("deadline", sa.Text()),
        sa.Column("targetAccount", sa.Text()),
    )
    legacy_accounts = op.create_table(
        "accounts",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text(), unique=True),
    )
    legacy_categories = op.create_table(
        "categories",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text(), unique=True),
        sa.Column("type", sa.Text()),
        sa.Column("group_name", sa.Text()),
    )

    _insert(
        legacy_transactions,
        [
            {
                "id": row["id"],
                "date": str(row["occurred_at"]),
                "description": row["description"],
                "amount": row["amount_cents"] / 100,
                "category": row["category"],
                "type": str(row["type"]).capitalize(),
                "account": row["account"],
            }
            for row in transactions
        ],
    )
    _insert(
        legacy_accounts, [{"id": row["id"], "name": row["name"]} for row in accounts]
    )
    seen_names: set[str] = set()
    category_rows = []
    for row in categories:
        if row["name"] in seen_names:
            continue
        seen_names.add(row["name"])
        category_rows.append(
            {
                "id": row["id"],
                "name": row["name"],
                "type": str(row["type"]).capitalize(),
                "group_name": str(row["group_name"]).capitalize(),
            }
        )
    _insert(legacy_categories, category_rows)
    _insert(
        legacy_goals,
        [
            {
                "id": row["id"],
                "name": row["name"],
                "targetAmount": row["target_amount_cents"] / 100,
                "deadline": str(row["deadline"]) if row["deadline"] else None,
                "targetAccount": json.dumps(goal_accounts.get(row["id"], [])),
            }
            for row in goals
        ],
    )
