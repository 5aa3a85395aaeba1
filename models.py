from datetime import date, datetime, timedelta
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
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
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base

TRANSFER_CATEGORY = "transfer"


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class Frequency(str, Enum):
    weekly = "weekly"
    biweekly = "biweekly"
    monthly = "monthly"
    yearly = "yearly"


class MonthDayPolicy(str, Enum):
    snap_to_end = "snap_to_end"
    skip = "skip"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Group(Base, TimestampMixin):
    __tablename__ = "groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    people: Mapped[list["Person"]] = relationship(
        "Person", back_populates="group", order_by="Person.id"
    )
    accounts: Mapped[list["Account"]] = relationship(
        "Account", back_populates="group", order_by="Account.id"
    )
    categories: Mapped[list["Category"]] = relationship(
        "Category", back_populates="group", order_by="Category.name"
    )


account_people = Table(
    "account_people",
    Base.metadata,
    Column(
        "account_id",
        Integer,
        ForeignKey("accounts.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "person_id",
        Integer,
        ForeignKey("people.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


budget_categories = Table(
    "budget_categories",
    Base.metadata,
    Column(
        "budget_id",
        Integer,
        ForeignKey("budgets.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "category_id",
        Integer,
        ForeignKey("categories.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


class Person(Base, TimestampMixin):
    __tablename__ = "people"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(
        ForeignKey("groups.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    budget_start_day: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    group: Mapped["Group"] = relationship("Group", back_populates="people")
    accounts: Mapped[list["Account"]] = relationship(
        "Account", secondary=account_people, back_populates="people"
    )
    budgets: Mapped[list["Budget"]] = relationship(
        "Budget", back_populates="person", order_by="Budget.id"
    )
    budget_periods: Mapped[list["BudgetPeriod"]] = relationship(
        "BudgetPeriod",
        back_populates="person",
        order_by="BudgetPeriod.start_date",
    )
    budget_exceptions: Mapped[list["BudgetException"]] = relationship(
        "BudgetException",
        back_populates="person",
        order_by="BudgetException.exception_date",
    )

    __table_args__ = (
        CheckConstraint(
            "budget_start_day BETWEEN 1 AND 28", name="ck_person_budget_start_day"
        ),
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(
        ForeignKey("groups.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    group: Mapped["Group"] = relationship("Group", back_populates="accounts")
    people: Mapped[list["Person"]] = relationship(
        "Person", secondary=account_people, back_populates="accounts"
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(
        ForeignKey("groups.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    group: Mapped["Group"] = relationship("Group", back_populates="categories")

    @property
    def is_transfer(self) -> bool:
        return (self.name or "").strip().lower() == TRANSFER_CATEGORY

    __table_args__ = (
        UniqueConstraint("group_id", "name", name="uq_category_group_name"),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    person_id: Mapped[int] = mapped_column(
        ForeignKey("people.id", ondelete="CASCADE"), nullable=False
    )
    description: Mapped[str] = mapped_column(String(120), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    person: Mapped["Person"] = relationship("Person", back_populates="budgets")
    categories: Mapped[list["Category"]] = relationship(
        "Category", secondary=budget_categories, order_by="Category.name"
    )

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
    )


class BudgetPeriod(Base, TimestampMixin):
    __tablename__ = "budget_periods"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    person_id: Mapped[int] = mapped_column(
        ForeignKey("people.id", ondelete="CASCADE"), nullable=False
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    # Inclusive last day; null while the period is open.
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    # Exclusive end of the anchor window the period was opened for.
    expected_end: Mapped[Optional[date]] = mapped_column(Date)
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    person: Mapped["Person"] = relationship("Person", back_populates="budget_periods")
    exceptions: Mapped[list["BudgetException"]] = relationship(
        "BudgetException",
        back_populates="period",
        foreign_keys="BudgetException.period_id",
    )

    @property
    def is_open(self) -> bool:
        return not self.is_completed

    @property
    def end_exclusive(self) -> Optional[date]:
        if self.end_date is None:
            return None
        return self.end_date + timedelta(days=1)

    __table_args__ = (
        UniqueConstraint("person_id", "start_date", name="uq_budget_period_start"),
        Index(
            "uq_budget_period_person_open",
            "person_id",
            unique=True,
            sqlite_where=text("is_completed = 0"),
            postgresql_where=text("NOT is_completed"),
        ),
        CheckConstraint(
            "(end_date IS NULL AND is_completed = 0) "
            "OR (end_date IS NOT NULL AND is_completed = 1)",
            name="ck_budget_period_completion",
        ),
        CheckConstraint(
            "end_date IS NULL OR end_date >= start_date",
            name="ck_budget_period_order",
        ),
        CheckConstraint(
            "expected_end IS NULL OR expected_end > start_date",
            name="ck_budget_period_expected_end",
        ),
    )


class BudgetException(Base, TimestampMixin):
    __tablename__ = "budget_exceptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    person_id: Mapped[int] = mapped_column(
        ForeignKey("people.id", ondelete="CASCADE"), nullable=False
    )
    period_id: Mapped[int] = mapped_column(
        ForeignKey("budget_periods.id", ondelete="CASCADE"), nullable=False
    )
    exception_date: Mapped[date] = mapped_column(Date, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text)

    # What applying the exception changed, kept so removal can revert it.
    replaced_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    split_period_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("budget_periods.id", ondelete="SET NULL")
    )
    previous_period_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("budget_periods.id", ondelete="SET NULL")
    )
    previous_end_date: Mapped[Optional[date]] = mapped_column(Date)

    person: Mapped["Person"] = relationship(
        "Person", back_populates="budget_exceptions"
    )
    period: Mapped["BudgetPeriod"] = relationship(
        "BudgetPeriod", back_populates="exceptions", foreign_keys=[period_id]
    )

    @property
    def is_consumed(self) -> bool:
        return bool(self.period and self.period.is_completed)

    __table_args__ = (
        Index("ix_budget_exceptions_person_date", "person_id", "exception_date"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(
        ForeignKey("groups.id", ondelete="CASCADE"), nullable=False
    )
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    to_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE")
    )
    is_reconciled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    parent_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL")
    )
    linked_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    recurring_series_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_series.id", ondelete="SET NULL")
    )
    occurrence_date: Mapped[Optional[date]] = mapped_column(Date)

    category: Mapped["Category"] = relationship("Category")
    account: Mapped["Account"] = relationship("Account", foreign_keys=[account_id])
    to_account: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[to_account_id]
    )
    parent: Mapped[Optional["Transaction"]] = relationship(
        "Transaction", remote_side=[id], back_populates="children"
    )
    children: Mapped[list["Transaction"]] = relationship(
        "Transaction",
        back_populates="parent",
        order_by="Transaction.id",
    )
    recurring_series: Mapped[Optional["RecurringSeries"]] = relationship(
        "RecurringSeries", back_populates="transactions"
    )

    @property
    def is_transfer(self) -> bool:
        return bool(self.category and self.category.is_transfer)

    @property
    def settled_cents(self) -> int:
        return sum(
            child.amount_cents for child in self.children if child.deleted_at is None
        )

    @property
    def remaining_amount_cents(self) -> int:
        if self.parent_transaction_id is not None:
            return 0
        return max(0, self.amount_cents - self.settled_cents)

    __table_args__ = (
        UniqueConstraint(
            "recurring_series_id",
            "occurrence_date",
            name="uq_txn_series_occurrence",
        ),
        Index("ix_transactions_group_date", "group_id", "date"),
        Index("ix_transactions_account_date", "account_id", "date"),
        Index("ix_transactions_parent", "parent_transaction_id"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )


class RecurringSeries(Base, TimestampMixin):
    __tablename__ = "recurring_series"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(
        ForeignKey("groups.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(200))
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    to_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE")
    )
    frequency: Mapped[Frequency] = mapped_column(SAEnum(Frequency), nullable=False)
    month_day_policy: Mapped[MonthDayPolicy] = mapped_column(
        SAEnum(MonthDayPolicy), default=MonthDayPolicy.snap_to_end, nullable=False
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    # Scheduled date of the next occurrence, before any weekend shift.
    next_due_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_paused: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    pause_until: Mapped[Optional[date]] = mapped_column(Date)
    auto_execute: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    skip_weekends: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    total_executions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_executions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_executed_date: Mapped[Optional[date]] = mapped_column(Date)

    category: Mapped["Category"] = relationship("Category")
    account: Mapped["Account"] = relationship("Account", foreign_keys=[account_id])
    to_account: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[to_account_id]
    )
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction",
        back_populates="recurring_series",
        order_by="Transaction.occurrence_date",
    )

    def is_paused_on(self, day: date) -> bool:
        if not self.is_paused:
            return False
        return self.pause_until is None or day < self.pause_until

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_series_amount_positive"),
        CheckConstraint(
            "end_date IS NULL OR end_date >= start_date", name="ck_series_order"
        ),
        Index("ix_recurring_series_due", "is_active", "next_due_date"),
    )
