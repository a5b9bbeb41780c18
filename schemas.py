import datetime as dt
from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from models import (
    AccountType,
    BudgetPeriod,
    CategoryType,
    RecurrenceFrequency,
    TransactionStatus,
    TransactionType,
)


class RecurrenceConfig(BaseModel):
    frequency: RecurrenceFrequency
    interval: int = Field(default=1, ge=1)
    end_date: Optional[date] = None


class AccountIn(BaseModel):
    name: str = Field(..., max_length=100)
    type: AccountType
    initial_balance_cents: int = 0
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    is_active: bool = True


class AccountPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, max_length=100)
    type: Optional[AccountType] = None
    initial_balance_cents: Optional[int] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    is_active: Optional[bool] = None


class CategoryIn(BaseModel):
    name: str = Field(..., max_length=50)
    type: CategoryType
    color: str
    icon: str = Field(..., max_length=50)
    parent_category_id: Optional[int] = None


class CategoryPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, max_length=50)
    type: Optional[CategoryType] = None
    color: Optional[str] = None
    icon: Optional[str] = Field(default=None, max_length=50)
    parent_category_id: Optional[int] = None


class TransactionIn(BaseModel):
    type: TransactionType
    amount_cents: int = Field(..., ge=0)
    description: str = Field(..., max_length=200)
    category_id: Optional[int] = None
    date: date
    due_date: Optional[date] = None
    payment_date: Optional[date] = None
    status: TransactionStatus = TransactionStatus.pending
    tags: list[str] = Field(default_factory=list)
    is_recurring: bool = False
    recurrence_config: Optional[RecurrenceConfig] = None
    account_id: Optional[int] = None


class TransactionPatch(BaseModel):
    """Partial update. Only fields explicitly set are applied."""

    model_config = ConfigDict(extra="forbid")

    type: Optional[TransactionType] = None
    amount_cents: Optional[int] = Field(default=None, ge=0)
    description: Optional[str] = Field(default=None, max_length=200)
    category_id: Optional[int] = None
    date: Optional[dt.date] = None
    due_date: Optional[dt.date] = None
    payment_date: Optional[dt.date] = None
    status: Optional[TransactionStatus] = None
    tags: Optional[list[str]] = None
    is_recurring: Optional[bool] = None
    recurrence_config: Optional[RecurrenceConfig] = None
    account_id: Optional[int] = None


class TransferIn(BaseModel):
    from_account_id: Optional[int] = None
    to_account_id: Optional[int] = None
    amount_cents: Optional[int] = None
    date: Optional[dt.date] = None
    description: Optional[str] = Field(default=None, max_length=200)
    status: Literal["paid", "pending"] = "paid"
    due_date: Optional[dt.date] = None


class MarkPaidIn(BaseModel):
    payment_date: Optional[date] = None


class MarkManyPaidIn(BaseModel):
    ids: list[int] = Field(..., min_length=1)
    payment_date: Optional[date] = None


class BudgetIn(BaseModel):
    category_id: Optional[int] = None
    amount_cents: int = Field(..., ge=0)
    period: BudgetPeriod
    start_date: date
    end_date: Optional[date] = None


class BudgetPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category_id: Optional[int] = None
    amount_cents: Optional[int] = Field(default=None, ge=0)
    period: Optional[BudgetPeriod] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
