from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import ConflictError
from models import BudgetPeriod, Transaction, TransactionType
from schemas import AccountIn, CategoryIn, GroupIn, PersonIn, TransactionIn
from services import (
    AccountService,
    BudgetPeriodService,
    CategoryService,
    GroupService,
    PersonService,
    ReconciliationService,
    TransactionService,
)


@pytest.fixture()
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'shared.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    yield factory
    engine.dispose()


def seed(session):
    group = GroupService(session).create(GroupIn(name="Home"))
    person = PersonService(session).create(PersonIn(group_id=group.id, name="Alex"))
    account = AccountService(session).create(
        AccountIn(group_id=group.id, name="Main", person_ids=[person.id])
    )
    for name in ("Dinner", "Refunds"):
        CategoryService(session).create(CategoryIn(group_id=group.id, name=name))
    return person, account


def add_txn(session, account, txn_type, amount_cents, category):
    return TransactionService(session).create(
        TransactionIn(
            description=f"{category} {amount_cents}",
            amount_cents=amount_cents,
            date=date(2025, 7, 10),
            type=txn_type,
            category=category,
            account_id=account.id,
        )
    )


def test_concurrent_start_hits_single_open_period(session_factory, monkeypatch) -> None:
    first = session_factory()
    second = session_factory()
    person, _ = seed(first)

    late = BudgetPeriodService(second)
    # The second writer read the person's state before the first one committed.
    monkeypatch.setattr(late, "current_period", lambda person_id: None)
    BudgetPeriodService(first).start_period(person.id, date(2025, 7, 3))

    with pytest.raises(ConflictError) as exc:
        late.start_period(person.id, date(2025, 8, 5))
    assert exc.value.invariant == "single_open_period"

    with session_factory() as check:
        open_periods = check.scalars(
            select(BudgetPeriod).where(BudgetPeriod.is_completed.is_(False))
        ).all()
    assert [p.start_date for p in open_periods] == [date(2025, 7, 1)]
    first.close()
    second.close()


def test_concurrent_link_keeps_single_parent(session_factory) -> None:
    first = session_factory()
    second = session_factory()
    _, account = seed(first)
    dinner = add_txn(first, account, TransactionType.expense, 10_000, "Dinner")
    lunch = add_txn(first, account, TransactionType.expense, 8_000, "Dinner")
    refund = add_txn(first, account, TransactionType.income, 4_000, "Refunds")

    # Both writers see the refund unlinked.
    stale = TransactionService(second).get(refund.id)
    TransactionService(second).get(lunch.id)
    assert stale.parent_transaction_id is None

    ReconciliationService(first).link(dinner.id, refund.id)

    with pytest.raises(ConflictError) as exc:
        ReconciliationService(second).link(lunch.id, refund.id)
    assert exc.value.invariant == "single_parent"

    with session_factory() as check:
        stored = check.get(Transaction, refund.id)
        assert stored.parent_transaction_id == dinner.id
        assert not check.get(Transaction, lunch.id).is_reconciled
    first.close()
    second.close()


def test_concurrent_unlink_conflicts(session_factory) -> None:
    first = session_factory()
    second = session_factory()
    _, account = seed(first)
    dinner = add_txn(first, account, TransactionType.expense, 10_000, "Dinner")
    refund = add_txn(first, account, TransactionType.income, 4_000, "Refunds")
    ReconciliationService(first).link(dinner.id, refund.id)

    stale = TransactionService(second).get(refund.id)
    assert stale.parent_transaction_id == dinner.id

    ReconciliationService(first).unlink(refund.id)

    with pytest.raises(ConflictError) as exc:
        ReconciliationService(second).unlink(refund.id)
    assert exc.value.invariant == "single_parent"
    first.close()
    second.close()
