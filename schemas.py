from datetime import date, datetime, timezone
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from models import CategoryGroup, TransactionType, new_id


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    is_savings: bool = False


class AccountUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    is_savings: Optional[bool] = None


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    group: CategoryGroup = CategoryGroup.general


class TransactionIn(BaseModel):
    """A transaction as handed to the ingestion pipeline.

    The account and category may be referenced by id, by name, or both; the
    id wins when it exists. Re-using an existing ``id`` overwrites that row.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: new_id("txn"), min_length=1, max_length=64)
    occurred_at: datetime
    description: str = Field(default="", max_length=500)
    amount_cents: int
    type: TransactionType
    account_id: Optional[str] = None
    account_name: Optional[str] = Field(default=None, max_length=100)
    category_id: Optional[str] = None
    category_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("occurred_at")
    @classmethod
    def normalize_occurred_at(cls, value: datetime) -> datetime:
        return _to_naive_utc(value)

    @field_validator("account_id", "account_name", "category_id", "category_name")
    @classmethod
    def strip_refs(cls, value: Optional[str]) -> Optional[str]:
        return _blank_to_none(value)


class IngestBatchIn(BaseModel):
    transactions: list[TransactionIn] = Field(..., min_length=1)
    # Rows flagged as duplicates are dropped unless overridden per id.
    skip_duplicates: bool = True
    overrides: dict[str, bool] = Field(default_factory=dict)


class TransferIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    occurred_at: datetime
    amount_cents: int = Field(..., gt=0)
    source_account_id: str = Field(..., min_length=1)
    destination_account_id: str = Field(..., min_length=1)
    description: str = Field(default="", max_length=500)
    category_id: Optional[str] = None
    category_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("occurred_at")
    @classmethod
    def normalize_occurred_at(cls, value: datetime) -> datetime:
        return _to_naive_utc(value)

    @model_validator(mode="after")
    def distinct_accounts(self) -> "TransferIn":
        if self.source_account_id == self.destination_account_id:
            raise ValueError("Source and destination accounts must differ")
        return self


class SavingsGoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    target_amount_cents: int = Field(..., ge=0)
    deadline: Optional[date] = None
    target_account_ids: list[str] = Field(default_factory=list)


class CalendarPolicy(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    mode: Literal["calendar"] = "calendar"


class FixedDayPolicy(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    mode: Literal["fixed_day"] = "fixed_day"
    start_day: int = Field(..., ge=1, le=31)


class IncomeTriggerPolicy(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    mode: Literal["income_trigger"] = "income_trigger"
    # Category id or name.
    trigger_category: str = Field(..., min_length=1, max_length=100)


FiscalConfig = Annotated[
    Union[CalendarPolicy, FixedDayPolicy, IncomeTriggerPolicy],
    Field(discriminator="mode"),
]
fiscal_config_adapter: TypeAdapter[FiscalConfig] = TypeAdapter(FiscalConfig)


class QueryIn(BaseModel):
    sql: str = Field(..., min_length=1, max_length=10_000)


class QueryResult(BaseModel):
    columns: list[str]
    rows: list[list[object]]


class Insight(BaseModel):
    title: str
    content: str
    kind: Literal["positive", "negative", "neutral", "action"] = "neutral"


class ChatIn(BaseModel):
    question: str = Field(..., min_length=1, max_length=2_000)


class PasswordIn(BaseModel):
    password: str = Field(..., min_length=1)
