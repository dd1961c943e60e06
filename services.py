from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional, Sequence

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from balances import RunningBalances, compute_running_balances
from csv_utils import export_transactions, parse_csv
from database import LedgerStore, WriteInProgressError
from dedup import DupStatus, classify, existing_signatures
from insights import (
    FAILED_ANSWER,
    FAILED_INSIGHT,
    MISSING_KEY_ANSWER,
    MISSING_KEY_INSIGHT,
    InsightsClient,
    InsightsUnavailable,
    LedgerLine,
)
from models import (
    DEFAULT_ACCOUNT_NAME,
    TRANSFER_CATEGORY_NAME,
    UNCATEGORIZED_LABEL,
    Account,
    Category,
    CategoryGroup,
    ConfigEntry,
    SavingsGoal,
    Transaction,
    TransactionType,
    TransferLink,
    new_id,
    savings_goal_accounts,
    utcnow,
)
from periods import Period, resolve_fiscal_period
from schemas import (
    AccountIn,
    AccountUpdate,
    CalendarPolicy,
    CategoryIn,
    FiscalConfig,
    IncomeTriggerPolicy,
    Insight,
    QueryResult,
    SavingsGoalIn,
    TransactionIn,
    TransferIn,
    fiscal_config_adapter,
)

logger = logging.getLogger(__name__)

FISCAL_CONFIG_KEY = "fiscal_config"
QUERY_ROW_LIMIT = 1000


def cents_to_amount(cents: int) -> float:
    return cents / 100


class NotFoundError(ValueError):
    pass


class ConstraintError(ValueError):
    def __init__(self, message: str, referencing_count: int) -> None:
        super().__init__(message)
        self.referencing_count = referencing_count


class QueryError(ValueError):
    pass


@dataclass(frozen=True)
class RowError:
    index: int
    transaction_id: Optional[str]
    message: str

    def __str__(self) -> str:
        return f"row {self.index}: {self.message}"


class IngestError(ValueError):
    pass


class IngestValidationError(IngestError):
    def __init__(self, errors: list[RowError]) -> None:
        super().__init__("; ".join(str(e) for e in errors))
        self.errors = errors


class IngestConstraintViolation(IngestError):
    pass


class IngestResolutionFailure(IngestError):
    pass


class AccountService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Account]:
        return self.session.scalars(select(Account).order_by(Account.name)).all()

    def get(self, account_id: str) -> Account:
        account = self.session.get(Account, account_id)
        if not account:
            raise NotFoundError("Account not found")
        return account

    def transaction_counts(self) -> dict[str, int]:
        stmt = select(Transaction.account_id, func.count(Transaction.id)).group_by(
            Transaction.account_id
        )
        return {account_id: count for account_id, count in self.session.execute(stmt)}

    def balances(self, as_of: Optional[datetime] = None) -> dict[str, int]:
        stmt = select(
            Transaction.account_id, func.coalesce(func.sum(Transaction.amount_cents), 0)
        ).group_by(Transaction.account_id)
        if as_of is not None:
            stmt = stmt.where(Transaction.occurred_at <= as_of)
        return {account_id: int(total) for account_id, total in self.session.execute(stmt)}

    def _name_taken(self, name: str, exclude_id: Optional[str] = None) -> bool:
        stmt = select(Account.id).where(Account.name == name)
        if exclude_id:
            stmt = stmt.where(Account.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def create(self, data: AccountIn) -> Account:
        name = data.name.strip()
        if not name:
            raise ValueError("Account name cannot be empty")
        if self._name_taken(name):
            raise ValueError("Account with this name already exists")
        account = Account(id=new_id("acc"), name=name, is_savings=data.is_savings)
        self.session.add(account)
        self.session.commit()
        return account

    def update(self, account_id: str, data: AccountUpdate) -> Account:
        account = self.get(account_id)
        if data.name is not None:
            name = data.name.strip()
            if not name:
                raise ValueError("Account name cannot be empty")
            if self._name_taken(name, exclude_id=account.id):
                raise ValueError("Account with this name already exists")
            account.name = name
        if data.is_savings is not None:
            account.is_savings = data.is_savings
        self.session.commit()
        return account

    def delete(self, account_id: str) -> None:
        account = self.get(account_id)
        count = self.session.execute(
            select(func.count(Transaction.id)).where(Transaction.account_id == account.id)
        ).scalar_one()
        if count:
            raise ConstraintError(
                f"Account '{account.name}' is used by {count} transaction(s)", count
            )
        # Savings goals only lose the reference; the goal itself stays.
        self.session.execute(
            delete(savings_goal_accounts).where(
                savings_goal_accounts.c.account_id == account.id
            )
        )
        self.session.delete(account)
        self.session.commit()


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self, type: Optional[TransactionType] = None) -> list[Category]:
        stmt = select(Category).order_by(Category.type, Category.name)
        if type:
            stmt = stmt.where(Category.type == type)
        return self.session.scalars(stmt).all()

    def get(self, category_id: str) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFoundError("Category not found")
        return category

    def _name_taken(
        self, name: str, type: TransactionType, exclude_id: Optional[str] = None
    ) -> bool:
        stmt = select(Category.id).where(Category.name == name, Category.type == type)
        if exclude_id:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if not name:
            raise ValueError("Category name cannot be empty")
        if self._name_taken(name, data.type):
            raise ValueError("Category with this name already exists")
        category = Category(
            id=new_id("cat"), name=name, type=data.type, group=data.group
        )
        self.session.add(category)
        self.session.commit()
        return category

    def update(self, category_id: str, data: CategoryIn) -> Category:
        category = self.get(category_id)
        name = data.name.strip()
        if not name:
            raise ValueError("Category name cannot be empty")
        if self._name_taken(name, data.type, exclude_id=category.id):
            raise ValueError("Category with this name already exists")
        category.name = name
        category.type = data.type
        category.group = data.group
        self.session.commit()
        return category

    def delete(self, category_id: str) -> None:
        category = self.get(category_id)
        count = self.session.execute(
            select(func.count(Transaction.id)).where(
                Transaction.category_id == category.id
            )
        ).scalar_one()
        if count:
            raise ConstraintError(
                f"Category '{category.name}' is used by {count} transaction(s)", count
            )
        self.session.delete(category)
        self.session.commit()


@dataclass
class TransactionFilters:
    query: Optional[str] = None
    category_id: Optional[str] = None
    account_id: Optional[str] = None
    type: Optional[TransactionType] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    # Bounds on the absolute amount.
    min_amount_cents: Optional[int] = None
    max_amount_cents: Optional[int] = None


class TransactionService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _base(self):
        return select(Transaction).options(
            joinedload(Transaction.category), joinedload(Transaction.account)
        )

    def _apply(self, stmt, period: Optional[Period], filters: TransactionFilters):
        if period is not None:
            if period.start is not None:
                stmt = stmt.where(Transaction.occurred_at >= period.start)
            stmt = stmt.where(Transaction.occurred_at <= period.end)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.account_id:
            stmt = stmt.where(Transaction.account_id == filters.account_id)
        if filters.start:
            stmt = stmt.where(Transaction.occurred_at >= filters.start)
        if filters.end:
            stmt = stmt.where(Transaction.occurred_at <= filters.end)
        if filters.min_amount_cents is not None:
            stmt = stmt.where(func.abs(Transaction.amount_cents) >= filters.min_amount_cents)
        if filters.max_amount_cents is not None:
            stmt = stmt.where(func.abs(Transaction.amount_cents) <= filters.max_amount_cents)
        if filters.query:
            like = f"%{filters.query.lower()}%"
            stmt = stmt.where(func.lower(Transaction.description).like(like))
        return stmt

    def has_any(self) -> bool:
        return self.count() > 0

    def count(self) -> int:
        return self.session.execute(select(func.count(Transaction.id))).scalar_one() or 0

    def get(self, transaction_id: str) -> Transaction:
        txn = self.session.scalar(self._base().where(Transaction.id == transaction_id))
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def search(
        self,
        filters: Optional[TransactionFilters] = None,
        period: Optional[Period] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Transaction]:
        stmt = self._apply(self._base(), period, filters or TransactionFilters())
        stmt = stmt.order_by(Transaction.occurred_at.desc(), Transaction.id.desc())
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return self.session.scalars(stmt).all()

    def all_for_period(
        self, period: Optional[Period], filters: Optional[TransactionFilters] = None
    ) -> list[Transaction]:
        stmt = self._apply(self._base(), period, filters or TransactionFilters())
        stmt = stmt.order_by(Transaction.occurred_at.asc(), Transaction.id.asc())
        return self.session.scalars(stmt).all()

    def recent(self, limit: int = 50) -> list[Transaction]:
        return self.search(limit=limit)

    def months(self) -> list[str]:
        month = func.strftime("%Y-%m", Transaction.occurred_at)
        stmt = select(month).distinct().order_by(month.desc())
        return [row for row in self.session.scalars(stmt) if row]

    def running_balances(self, account_id: Optional[str] = None) -> RunningBalances:
        # Balances need the full history of an account, never a filtered slice.
        filters = TransactionFilters(account_id=account_id)
        return compute_running_balances(self.all_for_period(None, filters))

    def transfer_partner_id(self, transaction_id: str) -> Optional[str]:
        link = self._link_for(transaction_id)
        return link.partner_of(transaction_id) if link else None

    def _link_for(self, transaction_id: str) -> Optional[TransferLink]:
        return self.session.scalar(
            select(TransferLink).where(
                or_(
                    TransferLink.source_transaction_id == transaction_id,
                    TransferLink.destination_transaction_id == transaction_id,
                )
            )
        )

    def delete(self, transaction_id: str) -> list[str]:
        """Delete a transaction; a transfer leg takes its partner with it."""
        txn = self.session.get(Transaction, transaction_id)
        if not txn:
            raise NotFoundError("Transaction not found")
        removed = [txn.id]
        link = self._link_for(txn.id)
        if link:
            partner = self.session.get(Transaction, link.partner_of(txn.id))
            self.session.delete(link)
            self.session.flush()
            if partner:
                self.session.delete(partner)
                removed.append(partner.id)
        self.session.delete(txn)
        self.session.commit()
        return removed

    def delete_all(self) -> int:
        count = self.count()
        self.session.execute(delete(TransferLink))
        self.session.execute(delete(Transaction))
        self.session.commit()
        return count


@dataclass
class ResolutionPlan:
    new_accounts: list[str] = field(default_factory=list)
    new_categories: list[tuple[str, TransactionType]] = field(default_factory=list)
    failures: list[RowError] = field(default_factory=list)

    @property
    def creates_nothing(self) -> bool:
        return not self.new_accounts and not self.new_categories


class EntityResolver:
    """Maps account/category references in a batch onto stored ids.

    One resolver serves one batch: names seen earlier in the batch hit the
    cache, so a name unseen by the store is created exactly once.
    """

    def __init__(self, session: Session) -> None:
        self.session = session
        self._account_ids: dict[str, str] = {}
        self._category_ids: dict[tuple[str, TransactionType], str] = {}
        self._known_ids: set[str] = set()
        self.created_accounts: list[str] = []
        self.created_categories: list[tuple[str, TransactionType]] = []

    def _exists(self, model, entity_id: str) -> bool:
        if entity_id in self._known_ids:
            return True
        if self.session.get(model, entity_id) is not None:
            self._known_ids.add(entity_id)
            return True
        return False

    def _find_account(
        self, account_id: Optional[str], name: Optional[str]
    ) -> tuple[Optional[str], str]:
        if account_id and self._exists(Account, account_id):
            return account_id, ""
        if not name:
            if account_id:
                raise IngestResolutionFailure(f"Account '{account_id}' does not exist")
            name = DEFAULT_ACCOUNT_NAME
        if name in self._account_ids:
            return self._account_ids[name], name
        found = self.session.scalar(select(Account.id).where(Account.name == name))
        if found:
            self._account_ids[name] = found
        return found, name

    def _find_category(
        self,
        category_id: Optional[str],
        name: Optional[str],
        type: TransactionType,
    ) -> tuple[Optional[str], str]:
        if category_id and self._exists(Category, category_id):
            return category_id, ""
        if not name:
            if category_id:
                raise IngestResolutionFailure(
                    f"Category '{category_id}' does not exist"
                )
            return None, ""
        key = (name, type)
        if key in self._category_ids:
            return self._category_ids[key], name
        found = self.session.scalar(
            select(Category.id).where(Category.name == name, Category.type == type)
        )
        if found:
            self._category_ids[key] = found
        return found, name

    def plan(self, batch: Sequence[TransactionIn]) -> ResolutionPlan:
        """Report what resolving ``batch`` would create, without writing."""
        result = ResolutionPlan()
        for index, item in enumerate(batch):
            try:
                account_id, account_name = self._find_account(
                    item.account_id, item.account_name
                )
                category_id, category_name = self._find_category(
                    item.category_id, item.category_name, item.type
                )
            except IngestResolutionFailure as exc:
                result.failures.append(RowError(index, item.id, str(exc)))
                continue
            if account_id is None and account_name not in result.new_accounts:
                result.new_accounts.append(account_name)
            category_key = (category_name, item.type)
            if (
                category_id is None
                and category_name
                and category_key not in result.new_categories
            ):
                result.new_categories.append(category_key)
        return result

    def _create(self, row, lookup) -> tuple[str, bool]:
        try:
            with self.session.begin_nested():
                self.session.add(row)
        except IntegrityError:
            # Someone else created the same name first.
            existing = self.session.scalar(lookup)
            if existing is None:
                raise
            return existing, False
        return row.id, True

    def resolve_account(self, account_id: Optional[str], name: Optional[str]) -> str:
        found, name = self._find_account(account_id, name)
        if found:
            return found
        account_id, created = self._create(
            Account(id=new_id("acc"), name=name, is_savings=False),
            select(Account.id).where(Account.name == name),
        )
        self._account_ids[name] = account_id
        self._known_ids.add(account_id)
        if created:
            self.created_accounts.append(name)
            logger.info(f"resolver_created: kind=account name={name!r}")
        return account_id

    def resolve_category(
        self,
        category_id: Optional[str],
        name: Optional[str],
        type: TransactionType,
    ) -> Optional[str]:
        found, name = self._find_category(category_id, name, type)
        if found or not name:
            return found
        category_id, created = self._create(
            Category(id=new_id("cat"), name=name, type=type, group=CategoryGroup.general),
            select(Category.id).where(Category.name == name, Category.type == type),
        )
        self._category_ids[(name, type)] = category_id
        self._known_ids.add(category_id)
        if created:
            self.created_categories.append((name, type))
            logger.info(f"resolver_created: kind=category name={name!r} type={type.value}")
        return category_id


@dataclass
class IngestPreview:
    rows: list[TransactionIn]
    statuses: dict[str, DupStatus]
    plan: ResolutionPlan
    errors: list[RowError]

    @property
    def duplicate_count(self) -> int:
        return sum(1 for s in self.statuses.values() if s != DupStatus.none)


@dataclass
class IngestResult:
    inserted: int = 0
    updated: int = 0
    transaction_ids: list[str] = field(default_factory=list)
    created_accounts: list[str] = field(default_factory=list)
    created_categories: list[tuple[str, TransactionType]] = field(default_factory=list)


class IngestService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def validate(self, batch: Sequence[TransactionIn]) -> list[RowError]:
        errors: list[RowError] = []
        seen_ids: set[str] = set()
        for index, item in enumerate(batch):
            if item.id in seen_ids:
                errors.append(RowError(index, item.id, "Duplicate id in batch"))
            seen_ids.add(item.id)
            if item.type == TransactionType.income and item.amount_cents < 0:
                errors.append(
                    RowError(index, item.id, "Income amount must not be negative")
                )
            elif item.type == TransactionType.expense and item.amount_cents > 0:
                errors.append(
                    RowError(index, item.id, "Expense amount must not be positive")
                )
            elif item.type == TransactionType.transfer and item.amount_cents == 0:
                errors.append(
                    RowError(index, item.id, "Transfer amount must not be zero")
                )
        return errors

    def preview(self, batch: Sequence[TransactionIn]) -> IngestPreview:
        statuses = classify(batch, existing_signatures(self.session))
        plan = EntityResolver(self.session).plan(batch)
        errors = self.validate(batch) + plan.failures
        return IngestPreview(list(batch), statuses, plan, errors)

    def _check_transfer_legs(self, batch: Sequence[TransactionIn]) -> None:
        """A linked leg only changes together with a mirrored partner."""
        amounts = {item.id: item.amount_cents for item in batch}
        links = self.session.scalars(
            select(TransferLink).where(
                or_(
                    TransferLink.source_transaction_id.in_(list(amounts)),
                    TransferLink.destination_transaction_id.in_(list(amounts)),
                )
            )
        ).all()
        for link in links:
            source_id = link.source_transaction_id
            destination_id = link.destination_transaction_id
            if source_id in amounts and destination_id in amounts:
                if amounts[source_id] >= 0 or amounts[source_id] + amounts[destination_id] != 0:
                    raise IngestConstraintViolation(
                        f"Transfer '{link.id}' legs must mirror each other"
                    )
                continue
            leg_id = source_id if source_id in amounts else destination_id
            stored = self.session.get(Transaction, leg_id)
            if stored is not None and stored.amount_cents != amounts[leg_id]:
                raise IngestConstraintViolation(
                    f"Transaction '{leg_id}' is one leg of transfer '{link.id}'; "
                    "update both legs together"
                )

    def ingest(
        self,
        batch: Sequence[TransactionIn],
        *,
        transfer_pairs: Sequence[tuple[str, str]] = (),
    ) -> IngestResult:
        """Write ``batch`` as one unit: every row lands or none does.

        Rows are upserted by id, so re-importing the same batch overwrites in
        place instead of adding rows.
        """
        errors = self.validate(batch)
        if errors:
            raise IngestValidationError(errors)

        resolver = EntityResolver(self.session)
        result = IngestResult()
        try:
            self._check_transfer_legs(batch)
            for item in batch:
                account_id = resolver.resolve_account(item.account_id, item.account_name)
                category_id = resolver.resolve_category(
                    item.category_id, item.category_name, item.type
                )
                txn = self.session.get(Transaction, item.id)
                if txn is None:
                    txn = Transaction(id=item.id)
                    self.session.add(txn)
                    result.inserted += 1
                else:
                    result.updated += 1
                txn.occurred_at = item.occurred_at
                txn.description = item.description
                txn.amount_cents = item.amount_cents
                txn.type = item.type
                txn.account_id = account_id
                txn.category_id = category_id
                result.transaction_ids.append(item.id)
            self.session.flush()
            for source_id, destination_id in transfer_pairs:
                self.session.add(
                    TransferLink(
                        id=new_id("xfer"),
                        source_transaction_id=source_id,
                        destination_transaction_id=destination_id,
                    )
                )
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise IngestConstraintViolation(
                f"Batch violates a storage constraint: {exc.orig}"
            ) from exc
        except IngestError:
            self.session.rollback()
            raise

        result.created_accounts = resolver.created_accounts
        result.created_categories = resolver.created_categories
        logger.info(
            f"ingest_committed: inserted={result.inserted} updated={result.updated} "
            f"new_accounts={len(result.created_accounts)} "
            f"new_categories={len(result.created_categories)}"
        )
        return result

    def create_transfer(self, data: TransferIn) -> TransferLink:
        if data.category_id or data.category_name:
            category_name = data.category_name
        else:
            category_name = TRANSFER_CATEGORY_NAME
        source = TransactionIn(
            occurred_at=data.occurred_at,
            description=data.description or "Transfer Out",
            amount_cents=-data.amount_cents,
            type=TransactionType.transfer,
            account_id=data.source_account_id,
            category_id=data.category_id,
            category_name=category_name,
        )
        destination = TransactionIn(
            occurred_at=data.occurred_at,
            description=data.description or "Transfer In",
            amount_cents=data.amount_cents,
            type=TransactionType.transfer,
            account_id=data.destination_account_id,
            category_id=data.category_id,
            category_name=category_name,
        )
        self.ingest([source, destination], transfer_pairs=[(source.id, destination.id)])
        return self.session.scalar(
            select(TransferLink).where(TransferLink.source_transaction_id == source.id)
        )


class CSVService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def preview(self, content: str) -> tuple[IngestPreview, list[str]]:
        rows, parse_errors = parse_csv(content)
        return IngestService(self.session).preview(rows), parse_errors

    def commit(self, content: str, *, skip_duplicates: bool = True) -> IngestResult:
        preview, parse_errors = self.preview(content)
        if parse_errors:
            raise ValueError("; ".join(parse_errors))
        rows = preview.rows
        if skip_duplicates:
            rows = [r for r in rows if preview.statuses[r.id] == DupStatus.none]
        return IngestService(self.session).ingest(rows)

    def export(self, transactions: Optional[list[Transaction]] = None) -> str:
        if transactions is None:
            transactions = TransactionService(self.session).all_for_period(None)
        return export_transactions(transactions)


@dataclass
class GoalProgress:
    current_cents: int
    remaining_cents: int
    progress_pct: float
    months_remaining: Optional[int]
    monthly_contribution_cents: int
    is_achieved: bool


def months_between(start: date, end: date) -> int:
    return (end.year - start.year) * 12 + (end.month - start.month)


class SavingsGoalService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[SavingsGoal]:
        stmt = (
            select(SavingsGoal)
            .options(joinedload(SavingsGoal.target_accounts))
            .order_by(SavingsGoal.deadline, SavingsGoal.name)
        )
        return self.session.scalars(stmt).unique().all()

    def get(self, goal_id: str) -> SavingsGoal:
        goal = self.session.get(SavingsGoal, goal_id)
        if not goal:
            raise NotFoundError("Savings goal not found")
        return goal

    def _accounts(self, account_ids: list[str]) -> list[Account]:
        accounts = []
        for account_id in dict.fromkeys(account_ids):
            account = self.session.get(Account, account_id)
            if not account:
                raise NotFoundError(f"Account '{account_id}' not found")
            accounts.append(account)
        return accounts

    def create(self, data: SavingsGoalIn) -> SavingsGoal:
        goal = SavingsGoal(
            id=new_id("goal"),
            name=data.name.strip(),
            target_amount_cents=data.target_amount_cents,
            deadline=data.deadline,
        )
        goal.target_accounts = self._accounts(data.target_account_ids)
        self.session.add(goal)
        self.session.commit()
        return goal

    def update(self, goal_id: str, data: SavingsGoalIn) -> SavingsGoal:
        goal = self.get(goal_id)
        goal.name = data.name.strip()
        goal.target_amount_cents = data.target_amount_cents
        goal.deadline = data.deadline
        goal.target_accounts = self._accounts(data.target_account_ids)
        self.session.commit()
        return goal

    def delete(self, goal_id: str) -> None:
        goal = self.get(goal_id)
        self.session.delete(goal)
        self.session.commit()

    def progress(self, goal: SavingsGoal, today: Optional[date] = None) -> GoalProgress:
        today = today or utcnow().date()
        balances = AccountService(self.session).balances()
        current = sum(balances.get(account_id, 0) for account_id in goal.target_account_ids)
        target = goal.target_amount_cents
        remaining = max(0, target - current)
        if target > 0:
            pct = min(100.0, max(0.0, current / target * 100))
        else:
            pct = 100.0
        months_left = months_between(today, goal.deadline) if goal.deadline else None
        if months_left and months_left > 0:
            monthly = -(-remaining // months_left)
        else:
            monthly = remaining
        return GoalProgress(
            current_cents=current,
            remaining_cents=remaining,
            progress_pct=round(pct, 1),
            months_remaining=months_left,
            monthly_contribution_cents=monthly,
            is_achieved=current >= target,
        )


class SettingsService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_value(self, key: str) -> Optional[str]:
        entry = self.session.get(ConfigEntry, key)
        return entry.value if entry else None

    def set_value(self, key: str, value: str) -> None:
        entry = self.session.get(ConfigEntry, key)
        if entry:
            entry.value = value
        else:
            self.session.add(ConfigEntry(key=key, value=value))
        self.session.commit()

    def fiscal_config(self) -> FiscalConfig:
        raw = self.get_value(FISCAL_CONFIG_KEY)
        if raw is None:
            return CalendarPolicy()
        return fiscal_config_adapter.validate_json(raw)

    def set_fiscal_config(self, config: FiscalConfig) -> FiscalConfig:
        self.set_value(FISCAL_CONFIG_KEY, fiscal_config_adapter.dump_json(config).decode())
        logger.info(f"fiscal_config_updated: mode={config.mode}")
        return config

    def _trigger_history(self, trigger_category: str) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .outerjoin(Category, Transaction.category_id == Category.id)
            .options(joinedload(Transaction.category))
            .where(
                or_(
                    Transaction.category_id == trigger_category,
                    Category.name == trigger_category,
                )
            )
            .order_by(Transaction.occurred_at)
        )
        return self.session.scalars(stmt).all()

    def resolve_period(
        self, period_key: Optional[str], now: Optional[datetime] = None
    ) -> Period:
        config = self.fiscal_config()
        history: list[Transaction] = []
        if isinstance(config, IncomeTriggerPolicy):
            history = self._trigger_history(config.trigger_category)
        return resolve_fiscal_period(period_key, config, history, now=now)


@dataclass
class FinancialSummary:
    total_income_cents: int = 0
    total_expense_cents: int = 0
    net_savings_cents: int = 0
    top_categories: list[dict] = field(default_factory=list)
    expense_by_group: list[dict] = field(default_factory=list)
    monthly: list[dict] = field(default_factory=list)
    account_balances: list[dict] = field(default_factory=list)
    active_balance_cents: int = 0
    net_worth_cents: int = 0
    savings_rate_pct: float = 0.0


class MetricsService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def summary(self, period: Period) -> FinancialSummary:
        """Aggregate the period's flows plus balances as of the period end.

        Transfers and balance adjustments move money between accounts or set a
        starting point; neither counts as income or expense.
        """
        transactions = TransactionService(self.session).all_for_period(period)
        accounts = AccountService(self.session).list_all()
        savings_ids = {a.id for a in accounts if a.is_savings}

        income = expense = savings_flow = 0
        by_category: dict[str, int] = {}
        by_group: dict[str, int] = {}
        monthly: dict[str, dict[str, int]] = {}
        for txn in transactions:
            if txn.account_id in savings_ids:
                savings_flow += txn.amount_cents
            month = monthly.setdefault(
                f"{txn.occurred_at:%Y-%m}", {"income_cents": 0, "expense_cents": 0}
            )
            amount = abs(txn.amount_cents)
            if txn.type == TransactionType.income:
                income += amount
                month["income_cents"] += amount
            elif txn.type == TransactionType.expense:
                expense += amount
                month["expense_cents"] += amount
                name = txn.category_name or UNCATEGORIZED_LABEL
                by_category[name] = by_category.get(name, 0) + amount
                group = txn.category.group.value if txn.category else CategoryGroup.general.value
                by_group[group] = by_group.get(group, 0) + amount

        balances = AccountService(self.session).balances(as_of=period.end)
        account_balances = sorted(
            (
                {"account_id": a.id, "account": a.name, "balance_cents": balances.get(a.id, 0)}
                for a in accounts
            ),
            key=lambda row: (-row["balance_cents"], row["account"]),
        )
        net_worth = sum(balances.values())
        active = sum(v for k, v in balances.items() if k not in savings_ids)

        return FinancialSummary(
            total_income_cents=income,
            total_expense_cents=expense,
            net_savings_cents=income - expense,
            top_categories=[
                {"name": name, "value_cents": value}
                for name, value in sorted(by_category.items(), key=lambda i: (-i[1], i[0]))[:5]
            ],
            expense_by_group=[
                {"name": name, "value_cents": value}
                for name, value in sorted(by_group.items(), key=lambda i: (-i[1], i[0]))
            ],
            monthly=[{"month": key, **values} for key, values in sorted(monthly.items())],
            account_balances=account_balances,
            active_balance_cents=active,
            net_worth_cents=net_worth,
            savings_rate_pct=round(savings_flow / income * 100, 1) if income else 0.0,
        )


class QueryService:
    """Runs ad-hoc SQL against a disposable read-only copy of the store."""

    def __init__(self, store: LedgerStore) -> None:
        self.store = store

    def run(self, sql: str, limit: int = QUERY_ROW_LIMIT) -> QueryResult:
        conn = sqlite3.connect(":memory:")
        try:
            conn.deserialize(self.store.to_bytes())
            conn.execute("PRAGMA query_only=ON;")
            cursor = conn.execute(sql)
            columns = [d[0] for d in cursor.description or []]
            rows = [list(row) for row in cursor.fetchmany(limit)] if columns else []
        except (sqlite3.Error, sqlite3.Warning, WriteInProgressError) as exc:
            raise QueryError(str(exc)) from exc
        finally:
            conn.close()
        return QueryResult(columns=columns, rows=rows)


class InsightsService:
    def __init__(self, session: Session, client: Optional[InsightsClient] = None) -> None:
        self.session = session
        self.client = client or InsightsClient()

    def _lines(self, limit: int) -> list[LedgerLine]:
        return [
            LedgerLine(
                day=txn.occurred_at.date().isoformat(),
                description=txn.description,
                amount=f"{cents_to_amount(txn.amount_cents):.2f}",
                category=txn.category_name or UNCATEGORIZED_LABEL,
            )
            for txn in TransactionService(self.session).recent(limit)
        ]

    def insights(self, period: Period) -> list[Insight]:
        if not self.client.configured:
            return [MISSING_KEY_INSIGHT]
        summary = MetricsService(self.session).summary(period)
        aggregates = {
            "total_income": cents_to_amount(summary.total_income_cents),
            "total_expense": cents_to_amount(summary.total_expense_cents),
            "net_savings": cents_to_amount(summary.net_savings_cents),
        }
        try:
            return self.client.insights(self._lines(50), aggregates)
        except InsightsUnavailable:
            logger.warning("insights_failed: returning placeholder", exc_info=True)
            return [FAILED_INSIGHT]

    def answer(self, question: str) -> str:
        if not self.client.configured:
            return MISSING_KEY_ANSWER
        try:
            return self.client.answer(question, self._lines(100))
        except InsightsUnavailable:
            logger.warning("insights_chat_failed: returning placeholder", exc_info=True)
            return FAILED_ANSWER
