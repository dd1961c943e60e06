import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base

DEFAULT_ACCOUNT_NAME = "Main Account"
UNCATEGORIZED_LABEL = "Uncategorized"
TRANSFER_CATEGORY_NAME = "Transfer"


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"
    balance = "balance"


class CategoryGroup(str, Enum):
    recurring = "recurring"
    general = "general"
    savings = "savings"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    is_savings: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="account"
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    group: Mapped[CategoryGroup] = mapped_column(
        "group_name",
        SAEnum(CategoryGroup),
        default=CategoryGroup.general,
        nullable=False,
    )

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("name", "type", name="uq_category_name_type"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    account_id: Mapped[str] = mapped_column(
        ForeignKey("accounts.id"), nullable=False
    )
    category_id: Mapped[Optional[str]] = mapped_column(ForeignKey("categories.id"))

    account: Mapped["Account"] = relationship("Account", back_populates="transactions")
    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="transactions"
    )

    __table_args__ = (
        Index("ix_transactions_account_occurred", "account_id", "occurred_at"),
        Index("ix_transactions_occurred", "occurred_at"),
        Index("ix_transactions_category", "category_id"),
    )

    @property
    def category_name(self) -> Optional[str]:
        return self.category.name if self.category else None

    @property
    def account_name(self) -> Optional[str]:
        return self.account.name if self.account else None


class TransferLink(Base):
    __tablename__ = "transfers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    source_transaction_id: Mapped[str] = mapped_column(
        ForeignKey("transactions.id"), nullable=False, unique=True
    )
    destination_transaction_id: Mapped[str] = mapped_column(
        ForeignKey("transactions.id"), nullable=False, unique=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    source: Mapped["Transaction"] = relationship(
        "Transaction", foreign_keys=[source_transaction_id]
    )
    destination: Mapped["Transaction"] = relationship(
        "Transaction", foreign_keys=[destination_transaction_id]
    )

    def partner_of(self, transaction_id: str) -> str:
        if transaction_id == self.source_transaction_id:
            return self.destination_transaction_id
        return self.source_transaction_id


savings_goal_accounts = Table(
    "savings_goal_accounts",
    Base.metadata,
    Column(
        "goal_id",
        String(64),
        ForeignKey("savings_goals.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "account_id",
        String(64),
        ForeignKey("accounts.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


class SavingsGoal(Base, TimestampMixin):
    __tablename__ = "savings_goals"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    target_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    deadline: Mapped[Optional[date]] = mapped_column(Date)

    target_accounts: Mapped[list["Account"]] = relationship(
        "Account", secondary=savings_goal_accounts, order_by="Account.name"
    )

    @property
    def target_account_ids(self) -> list[str]:
        return [account.id for account in self.target_accounts]


class ConfigEntry(Base, TimestampMixin):
    __tablename__ = "configs"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
