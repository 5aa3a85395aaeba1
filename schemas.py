import datetime as dt
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import Frequency, MonthDayPolicy, TransactionType
from periods import MAX_ANCHOR_DAY, MIN_ANCHOR_DAY


class GroupIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class PersonIn(BaseModel):
    group_id: int
    name: str = Field(..., min_length=1, max_length=100)
    budget_start_day: Optional[int] = Field(
        default=None, ge=MIN_ANCHOR_DAY, le=MAX_ANCHOR_DAY
    )


class PersonUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    budget_start_day: Optional[int] = Field(
        default=None, ge=MIN_ANCHOR_DAY, le=MAX_ANCHOR_DAY
    )


class AccountIn(BaseModel):
    group_id: int
    name: str = Field(..., min_length=1, max_length=100)
    person_ids: list[int] = Field(default_factory=list)


class CategoryIn(BaseModel):
    group_id: int
    name: str = Field(..., min_length=1, max_length=100)


class BudgetIn(BaseModel):
    person_id: int
    description: str = Field(..., min_length=1, max_length=120)
    amount_cents: int = Field(..., ge=0)
    categories: list[str] = Field(default_factory=list)


class BudgetUpdate(BaseModel):
    description: Optional[str] = Field(default=None, min_length=1, max_length=120)
    amount_cents: Optional[int] = Field(default=None, ge=0)
    categories: Optional[list[str]] = None


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: str = Field(..., min_length=1, max_length=200)
    amount_cents: int = Field(..., gt=0)
    date: dt.date
    occurred_at: Optional[datetime] = None
    type: TransactionType
    category: str = Field(..., min_length=1, max_length=100)
    account_id: int
    to_account_id: Optional[int] = None

    @model_validator(mode="after")
    def _check_accounts(self) -> "TransactionIn":
        if self.to_account_id is not None and self.to_account_id == self.account_id:
            raise ValueError("Source and destination account must differ")
        return self


class PeriodStartIn(BaseModel):
    reference_date: Optional[date] = None


class PeriodEndIn(BaseModel):
    end_date: date


class BudgetExceptionIn(BaseModel):
    exception_date: date
    reason: Optional[str] = Field(default=None, max_length=200)


class LinkIn(BaseModel):
    parent_id: int
    child_id: int


class CategoryRename(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class RecurringSeriesIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = Field(default=None, max_length=200)
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    category: str = Field(..., min_length=1, max_length=100)
    account_id: int
    to_account_id: Optional[int] = None
    frequency: Frequency
    month_day_policy: MonthDayPolicy = MonthDayPolicy.snap_to_end
    start_date: date
    end_date: Optional[date] = None
    auto_execute: bool = True
    skip_weekends: bool = False

    @model_validator(mode="after")
    def _check_schedule(self) -> "RecurringSeriesIn":
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("End date must be on or after the start date")
        if self.to_account_id is not None and self.to_account_id == self.account_id:
            raise ValueError("Source and destination account must differ")
        return self


class SeriesPauseIn(BaseModel):
    paused: bool
    until: Optional[date] = None
