"""legacy baseline schema

Revision ID: 0001_legacy_baseline
Revises:
Create Date: 2025-01-10 09:00:00.000000

Shape of the ledger before accounts and categories were referenced by id:
transactions carry the account and category as free text and savings goals
keep their target accounts as a JSON string.

"""

from alembic import op
import sqlalchemy as sa


revision = "0001_legacy_baseline"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "transactions",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("date", sa.Text()),
        sa.Column("description", sa.Text()),
        sa.Column("amount", sa.Float()),
        sa.Column("category", sa.Text()),
        sa.Column("type", sa.Text()),
        sa.Column("account", sa.Text(), server_default="Main Account"),
    )

    op.create_table(
        "savings_goals",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text()),
        sa.Column("targetAmount", sa.Float()),
        sa.Column("deadline", sa.Text()),
        sa.Column("targetAccount", sa.Text()),
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text(), unique=True),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text(), unique=True),
        sa.Column("type", sa.Text()),
        sa.Column("group_name", sa.Text()),
    )


def downgrade():
    op.drop_table("categories")
    op.drop_table("accounts")
    op.drop_table("savings_goals")
    op.drop_table("transactions")
