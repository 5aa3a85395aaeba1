from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Optional, Union

from rapidfuzz.distance import Levenshtein
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from models import (
    Account,
    Budget,
    BudgetException,
    BudgetPeriod,
    Category,
    Group,
    Person,
    RecurringSeries,
    TRANSFER_CATEGORY,
    Transaction,
    TransactionType,
    account_people,
)
from periods import (
    ONE_DAY,
    Period,
    compute_period,
    is_weekend,
    local_today,
    natural_period,
    validate_anchor_day,
)
from recurrence import RecurringEngine, calculate_next_date, upcoming_dates
from schemas import (
    AccountIn,
    BudgetIn,
    BudgetUpdate,
    CategoryIn,
    GroupIn,
    PersonIn,
    PersonUpdate,
    RecurringSeriesIn,
    TransactionIn,
)

logger = logging.getLogger(__name__)


def _commit(session: Session, message: str, *, invariant: str, context: dict) -> None:
    """Commit, turning a store-level constraint violation into a conflict."""
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError(message, invariant=invariant, context=context) from exc


class GroupService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, data: GroupIn) -> Group:
        group = Group(name=data.name.strip())
        self.session.add(group)
        self.session.flush()
        self.session.add(Category(group_id=group.id, name=TRANSFER_CATEGORY))
        self.session.commit()
        self.session.refresh(group)
        return group

    def get(self, group_id: int) -> Group:
        group = self.session.get(Group, group_id)
        if not group:
            raise NotFoundError(
                "Group not found", invariant="group_exists", context={"group_id": group_id}
            )
        return group


class PersonService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, data: PersonIn) -> Person:
        GroupService(self.session).get(data.group_id)
        anchor_day = data.budget_start_day or get_settings().default_anchor_day
        person = Person(
            group_id=data.group_id,
            name=data.name.strip(),
            budget_start_day=validate_anchor_day(anchor_day),
        )
        self.session.add(person)
        self.session.commit()
        self.session.refresh(person)
        return person

    def get(self, person_id: int) -> Person:
        person = self.session.get(Person, person_id)
        if not person:
            raise NotFoundError(
                "Person not found",
                invariant="person_exists",
                context={"person_id": person_id},
            )
        return person

    def list_for_group(self, group_id: int) -> list[Person]:
        stmt = select(Person).where(Person.group_id == group_id).order_by(Person.name)
        return self.session.scalars(stmt).all()

    def update(self, person_id: int, data: PersonUpdate) -> Person:
        person = self.get(person_id)
        if data.name is not None:
            person.name = data.name.strip()
        if data.budget_start_day is not None:
            # Only periods computed from now on follow the new anchor day.
            person.budget_start_day = validate_anchor_day(data.budget_start_day)
        self.session.commit()
        self.session.refresh(person)
        return person


class AccountService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, data: AccountIn) -> Account:
        GroupService(self.session).get(data.group_id)
        people: list[Person] = []
        for person_id in dict.fromkeys(data.person_ids):
            person = PersonService(self.session).get(person_id)
            if person.group_id != data.group_id:
                raise ValidationError(
                    "Account holders must belong to the account's group",
                    invariant="same_group",
                    context={"person_id": person_id, "group_id": data.group_id},
                )
            people.append(person)
        account = Account(group_id=data.group_id, name=data.name.strip(), people=people)
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account:
            raise NotFoundError(
                "Account not found",
                invariant="account_exists",
                context={"account_id": account_id},
            )
        return account

    def list_for_group(self, group_id: int) -> list[Account]:
        stmt = select(Account).where(Account.group_id == group_id).order_by(Account.name)
        return self.session.scalars(stmt).all()


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self, group_id: int, include_archived: bool = False) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.group_id == group_id)
            .order_by(Category.name)
        )
        if not include_archived:
            stmt = stmt.where(Category.archived_at.is_(None))
        return self.session.scalars(stmt).all()

    def _find_by_name(self, group_id: int, name: str) -> Optional[Category]:
        return self.session.scalar(
            select(Category).where(
                Category.group_id == group_id,
                func.lower(Category.name) == name.strip().lower(),
            )
        )

    def create(self, data: CategoryIn) -> Category:
        GroupService(self.session).get(data.group_id)
        if self._find_by_name(data.group_id, data.name):
            raise ConflictError(
                "Category with this name already exists",
                invariant="category_unique",
                context={"group_id": data.group_id, "name": data.name.strip()},
            )
        category = Category(group_id=data.group_id, name=data.name.strip())
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFoundError(
                "Category not found",
                invariant="category_exists",
                context={"category_id": category_id},
            )
        return category

    def resolve(self, group_id: int, name: str) -> Category:
        clean_name = name.strip()
        if not clean_name:
            raise ValidationError(
                "Category name cannot be empty", invariant="category_required"
            )
        input_lower = clean_name.lower()
        categories = self.list_all(group_id)
        for category in categories:
            if category.name.strip().lower() == input_lower:
                return category

        ranked = sorted(
            (
                (int(Levenshtein.distance(input_lower, c.name.strip().lower())), c)
                for c in categories
            ),
            key=lambda pair: (pair[0], pair[1].name),
        )
        best = [c for dist, c in ranked if dist == ranked[0][0]] if ranked else []
        if ranked and ranked[0][0] <= 1:
            if len(best) > 1:
                options = ", ".join(sorted({c.name for c in best}))
                raise ValidationError(
                    f"Category '{clean_name}' is ambiguous; matches: {options}",
                    invariant="category_unambiguous",
                    context={"category": clean_name},
                )
            return best[0]
        suggestions = [c.name for _, c in ranked[:3]]
        raise ValidationError(
            f"Unknown category '{clean_name}'",
            invariant="category_registered",
            context={"category": clean_name, "suggestions": suggestions},
        )

    def _guard_reserved(self, category: Category) -> None:
        if category.is_transfer:
            raise ConflictError(
                "The transfer category is reserved",
                invariant="transfer_reserved",
                context={"category_id": category.id},
            )

    def rename(self, category_id: int, name: str) -> Category:
        category = self.get(category_id)
        self._guard_reserved(category)
        clean_name = name.strip()
        if not clean_name:
            raise ValidationError(
                "Category name cannot be empty", invariant="category_required"
            )
        existing = self._find_by_name(category.group_id, clean_name)
        if existing and existing.id != category.id:
            raise ConflictError(
                "Category with this name already exists",
                invariant="category_unique",
                context={"group_id": category.group_id, "name": clean_name},
            )
        category.name = clean_name
        self.session.commit()
        return category

    def archive(self, category_id: int) -> None:
        category = self.get(category_id)
        self._guard_reserved(category)
        category.archived_at = datetime.utcnow()
        self.session.commit()

    def restore(self, category_id: int) -> None:
        category = self.get(category_id)
        category.archived_at = None
        self.session.commit()


class TransactionService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _validate_accounts(
        self, account_id: int, to_account_id: Optional[int], category: Category
    ) -> Account:
        accounts = AccountService(self.session)
        account = accounts.get(account_id)
        if to_account_id is not None:
            destination = accounts.get(to_account_id)
            if destination.group_id != account.group_id:
                raise ValidationError(
                    "Transfer accounts must belong to the same group",
                    invariant="same_group",
                    context={"account_id": account_id, "to_account_id": to_account_id},
                )
        if category.is_transfer and to_account_id is None:
            raise ValidationError(
                "Transfers require a destination account",
                invariant="transfer_destination",
                context={"account_id": account_id},
            )
        if not category.is_transfer and to_account_id is not None:
            raise ValidationError(
                "Only transfers can have a destination account",
                invariant="transfer_destination",
                context={"account_id": account_id, "to_account_id": to_account_id},
            )
        return account

    def create(self, data: TransactionIn) -> Transaction:
        account = AccountService(self.session).get(data.account_id)
        category = CategoryService(self.session).resolve(account.group_id, data.category)
        self._validate_accounts(data.account_id, data.to_account_id, category)
        txn = Transaction(
            group_id=account.group_id,
            description=data.description.strip(),
            amount_cents=data.amount_cents,
            date=data.date,
            occurred_at=data.occurred_at or datetime.combine(data.date, time(12, 0)),
            type=data.type,
            category_id=category.id,
            account_id=data.account_id,
            to_account_id=data.to_account_id,
            is_reconciled=False,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int, *, include_deleted: bool = False) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.id == transaction_id)
        )
        if not include_deleted:
            stmt = stmt.where(Transaction.deleted_at.is_(None))
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError(
                "Transaction not found",
                invariant="transaction_exists",
                context={"transaction_id": transaction_id},
            )
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        account = AccountService(self.session).get(data.account_id)
        if account.group_id != txn.group_id:
            raise ValidationError(
                "Transactions cannot move between groups",
                invariant="same_group",
                context={"transaction_id": txn.id, "account_id": account.id},
            )
        category = CategoryService(self.session).resolve(account.group_id, data.category)
        self._validate_accounts(data.account_id, data.to_account_id, category)

        is_linked = txn.parent_transaction_id is not None or bool(txn.children)
        if is_linked and (data.type != txn.type or category.is_transfer):
            raise ConflictError(
                "Unlink the transaction before changing its type or making it a transfer",
                invariant="link_compatible",
                context={"transaction_id": txn.id},
            )
        if txn.children and data.amount_cents < txn.settled_cents:
            raise ValidationError(
                "Amount cannot be less than the settled total",
                invariant="no_overpayment",
                context={
                    "transaction_id": txn.id,
                    "settled_cents": txn.settled_cents,
                },
            )
        parent = txn.parent
        if parent is not None:
            settled_after = parent.settled_cents - txn.amount_cents + data.amount_cents
            if settled_after > parent.amount_cents:
                raise ValidationError(
                    "Amount would over-settle the linked transaction",
                    invariant="no_overpayment",
                    context={"transaction_id": txn.id, "parent_id": parent.id},
                )

        txn.description = data.description.strip()
        txn.amount_cents = data.amount_cents
        txn.date = data.date
        txn.occurred_at = data.occurred_at or datetime.combine(data.date, time(12, 0))
        txn.type = data.type
        txn.category_id = category.id
        txn.category = category
        txn.account_id = data.account_id
        txn.to_account_id = data.to_account_id
        self.session.flush()

        reconciliation = ReconciliationService(self.session)
        if txn.children:
            reconciliation.refresh_parent(txn)
        if parent is not None:
            reconciliation.refresh_parent(parent)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def list_for_person(
        self,
        person_id: int,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> list[Transaction]:
        """Transactions on the person's accounts with ``start <= date < end``."""
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .join(account_people, account_people.c.account_id == Transaction.account_id)
            .where(
                account_people.c.person_id == person_id,
                Transaction.deleted_at.is_(None),
            )
            .order_by(Transaction.date.asc(), Transaction.id.asc())
        )
        if start is not None:
            stmt = stmt.where(Transaction.date >= start)
        if end is not None:
            stmt = stmt.where(Transaction.date < end)
        return self.session.scalars(stmt).unique().all()

    def soft_delete(self, transaction_id: int) -> None:
        txn = self.session.get(Transaction, transaction_id)
        if not txn:
            raise NotFoundError(
                "Transaction not found",
                invariant="transaction_exists",
                context={"transaction_id": transaction_id},
            )
        if txn.deleted_at is not None:
            return
        reconciliation = ReconciliationService(self.session)
        children = [c for c in txn.children if c.deleted_at is None]
        if children:
            if get_settings().parent_delete_policy == "reject":
                raise ConflictError(
                    "Transaction settles other transactions; unlink them first",
                    invariant="parent_delete_policy",
                    context={
                        "transaction_id": txn.id,
                        "child_ids": [c.id for c in children],
                    },
                )
            for child in children:
                reconciliation.detach(child)
        if txn.parent_transaction_id is not None:
            reconciliation.detach(txn)
        txn.deleted_at = datetime.utcnow()
        txn.is_reconciled = False
        self.session.commit()
        logger.info(
            f"transaction_deleted: transaction_id={txn.id} unlinked_children={len(children)}"
        )

    def restore(self, transaction_id: int) -> None:
        txn = self.session.get(Transaction, transaction_id)
        if not txn:
            raise NotFoundError(
                "Transaction not found",
                invariant="transaction_exists",
                context={"transaction_id": transaction_id},
            )
        if txn.deleted_at is None:
            return
        txn.deleted_at = None
        self.session.commit()


class BudgetPeriodService:
    """Lifecycle of a person's budget periods.

    A person has any number of closed periods and at most one open period.
    Closed periods are contiguous: each one starts the day after the
    previous one ended. Every call re-reads the person's state, so the
    service holds nothing between calls.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def _person(self, person_id: int) -> Person:
        return PersonService(self.session).get(person_id)

    def list_periods(self, person_id: int) -> list[BudgetPeriod]:
        self._person(person_id)
        stmt = (
            select(BudgetPeriod)
            .where(BudgetPeriod.person_id == person_id)
            .order_by(BudgetPeriod.start_date.asc())
        )
        return self.session.scalars(stmt).all()

    def current_period(self, person_id: int) -> Optional[BudgetPeriod]:
        return self.session.scalar(
            select(BudgetPeriod).where(
                BudgetPeriod.person_id == person_id,
                BudgetPeriod.is_completed.is_(False),
            )
        )

    def get_period(self, person_id: int, period_id: int) -> BudgetPeriod:
        period = self.session.get(BudgetPeriod, period_id)
        if not period or period.person_id != person_id:
            raise NotFoundError(
                "Budget period not found",
                invariant="period_exists",
                context={"person_id": person_id, "period_id": period_id},
            )
        return period

    def _last_closed(self, person_id: int) -> Optional[BudgetPeriod]:
        return self.session.scalar(
            select(BudgetPeriod)
            .where(
                BudgetPeriod.person_id == person_id,
                BudgetPeriod.is_completed.is_(True),
            )
            .order_by(BudgetPeriod.start_date.desc())
            .limit(1)
        )

    def active_exception(self, person_id: int) -> Optional[BudgetException]:
        return self.session.scalar(
            select(BudgetException)
            .join(BudgetPeriod, BudgetException.period_id == BudgetPeriod.id)
            .where(
                BudgetException.person_id == person_id,
                BudgetPeriod.is_completed.is_(False),
            )
        )

    def list_exceptions(self, person_id: int) -> list[BudgetException]:
        self._person(person_id)
        stmt = (
            select(BudgetException)
            .where(BudgetException.person_id == person_id)
            .order_by(BudgetException.exception_date.asc())
        )
        return self.session.scalars(stmt).all()

    def window(self, period: BudgetPeriod) -> Period:
        """Half-open window of a period.

        Closed periods end the day after ``end_date``. An open period runs
        until the end of the anchor window it was opened for. An exception
        after the start moves that end to the boundary following the
        exception; one before the start keeps it.
        """
        if period.end_date is not None:
            return Period(period.start_date, period.end_exclusive)
        anchor = period.person.budget_start_day
        end = period.expected_end or natural_period(period.start_date, anchor).end
        for exception in period.exceptions:
            if exception.exception_date > exception.replaced_start_date:
                end = natural_period(exception.exception_date, anchor).end
        return Period(period.start_date, end)

    def _start(self, person: Person, reference: date) -> BudgetPeriod:
        computed = compute_period(reference, person.budget_start_day)
        start = computed.start
        last = self._last_closed(person.id)
        if last is not None:
            start = last.end_date + ONE_DAY
            if reference < start:
                raise ConflictError(
                    "Reference date is already covered by a closed period",
                    invariant="non_overlap",
                    context={
                        "person_id": person.id,
                        "period_id": last.id,
                        "reference_date": reference,
                    },
                )
        # The end follows the reference, even when history pulls the start back.
        period = BudgetPeriod(
            person_id=person.id,
            start_date=start,
            expected_end=computed.end,
            is_completed=False,
        )
        self.session.add(period)
        self.session.flush()
        return period

    def start_period(
        self, person_id: int, reference_date: Optional[date] = None
    ) -> BudgetPeriod:
        person = self._person(person_id)
        reference = reference_date or local_today()
        current = self.current_period(person_id)
        if current is not None:
            raise InvalidStateError(
                "A budget period is already open",
                invariant="single_open_period",
                context={"person_id": person_id, "period_id": current.id},
            )
        try:
            period = self._start(person, reference)
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError(
                "A budget period was opened concurrently",
                invariant="single_open_period",
                context={"person_id": person_id},
            ) from exc
        _commit(
            self.session,
            "A budget period was opened concurrently",
            invariant="single_open_period",
            context={"person_id": person_id},
        )
        self.session.refresh(period)
        logger.info(
            f"period_started: person_id={person_id} period_id={period.id} "
            f"start={period.start_date} reference={reference}"
        )
        return period

    def _end(self, period: BudgetPeriod, end_date: date) -> BudgetPeriod:
        if end_date < period.start_date:
            raise ValidationError(
                "End date must be on or after the period start",
                invariant="end_after_start",
                context={
                    "period_id": period.id,
                    "start_date": period.start_date,
                    "end_date": end_date,
                },
            )
        period.end_date = end_date
        period.is_completed = True
        self.session.flush()
        return period

    def end_period(self, person_id: int, end_date: date) -> BudgetPeriod:
        self._person(person_id)
        current = self.current_period(person_id)
        if current is None:
            raise InvalidStateError(
                "No budget period is open",
                invariant="period_open",
                context={"person_id": person_id},
            )
        period = self._end(current, end_date)
        _commit(
            self.session,
            "Budget period changed concurrently",
            invariant="single_open_period",
            context={"person_id": person_id, "period_id": period.id},
        )
        self.session.refresh(period)
        logger.info(
            f"period_ended: person_id={person_id} period_id={period.id} "
            f"start={period.start_date} end={period.end_date}"
        )
        return period

    def _check_exception(
        self, person_id: int, exception_date: date
    ) -> tuple[BudgetPeriod, Period, Optional[BudgetPeriod]]:
        """Validate an exception date against the open period.

        Returns the open period, its current window and, when the exception
        moves the start earlier, the closed period it would shorten.
        """
        current = self.current_period(person_id)
        if current is None:
            raise InvalidStateError(
                "Exceptions can only be added while a period is open",
                invariant="period_open",
                context={"person_id": person_id},
            )
        existing = self.active_exception(person_id)
        if existing is not None:
            raise ConflictError(
                "An exception already governs the current period",
                invariant="single_exception",
                context={"person_id": person_id, "exception_id": existing.id},
            )
        window = self.window(current)
        if exception_date >= window.end:
            raise ValidationError(
                "Exception date falls after the current period",
                invariant="exception_in_window",
                context={
                    "person_id": person_id,
                    "exception_date": exception_date,
                    "period_end": window.end,
                },
            )
        previous: Optional[BudgetPeriod] = None
        if exception_date < current.start_date:
            previous = self._last_closed(person_id)
            if previous is None or exception_date <= previous.start_date:
                raise ConflictError(
                    "Exception would start the period before the previous one",
                    invariant="non_overlap",
                    context={
                        "person_id": person_id,
                        "previous_period_id": previous.id if previous else None,
                        "exception_date": exception_date,
                    },
                )
        return current, window, previous

    def preview_exception(self, person_id: int, exception_date: date) -> Period:
        """Window the open period would have after ``add_exception``.

        Raises exactly what ``add_exception`` would raise for the same date.
        """
        person = self._person(person_id)
        current, window, _ = self._check_exception(person_id, exception_date)
        if exception_date > current.start_date:
            return compute_period(exception_date, person.budget_start_day, exception_date)
        return Period(exception_date, window.end)

    def add_exception(
        self, person_id: int, exception_date: date, reason: Optional[str] = None
    ) -> BudgetException:
        self._person(person_id)
        current, _, previous = self._check_exception(person_id, exception_date)

        replaced_start = current.start_date
        split_period: Optional[BudgetPeriod] = None
        previous_end: Optional[date] = None

        if exception_date > replaced_start:
            # Days before the exception become their own closed period.
            current.start_date = exception_date
            self.session.flush()
            split_period = BudgetPeriod(
                person_id=person_id,
                start_date=replaced_start,
                end_date=exception_date - ONE_DAY,
                is_completed=True,
            )
            self.session.add(split_period)
        elif previous is not None:
            previous_end = previous.end_date
            previous.end_date = exception_date - ONE_DAY
            current.start_date = exception_date
        self.session.flush()

        exception = BudgetException(
            person_id=person_id,
            period=current,
            exception_date=exception_date,
            reason=(reason or "").strip() or None,
            replaced_start_date=replaced_start,
            split_period_id=split_period.id if split_period else None,
            previous_period_id=previous.id if previous else None,
            previous_end_date=previous_end,
        )
        self.session.add(exception)
        _commit(
            self.session,
            "Budget periods changed concurrently",
            invariant="non_overlap",
            context={"person_id": person_id},
        )
        self.session.refresh(exception)
        if is_weekend(exception_date):
            logger.warning(
                f"exception_on_weekend: person_id={person_id} date={exception_date}"
            )
        logger.info(
            f"exception_added: person_id={person_id} exception_id={exception.id} "
            f"date={exception_date} replaced_start={replaced_start}"
        )
        return exception

    def remove_exception(self, person_id: int, exception_id: int) -> None:
        exception = self.session.get(BudgetException, exception_id)
        if not exception or exception.person_id != person_id:
            raise NotFoundError(
                "Budget exception not found",
                invariant="exception_exists",
                context={"person_id": person_id, "exception_id": exception_id},
            )
        if exception.is_consumed:
            raise InvalidStateError(
                "Exception belongs to a completed period",
                invariant="exception_unconsumed",
                context={
                    "exception_id": exception_id,
                    "period_id": exception.period_id,
                },
            )
        period = exception.period
        replaced_start = exception.replaced_start_date
        split_period_id = exception.split_period_id
        previous_period_id = exception.previous_period_id
        previous_end = exception.previous_end_date

        self.session.delete(exception)
        self.session.flush()
        self.session.expire(period, ["exceptions"])
        if split_period_id is not None:
            split_period = self.session.get(BudgetPeriod, split_period_id)
            if split_period is not None:
                self.session.delete(split_period)
                self.session.flush()
        period.start_date = replaced_start
        if previous_period_id is not None and previous_end is not None:
            previous = self.session.get(BudgetPeriod, previous_period_id)
            if previous is not None:
                previous.end_date = previous_end
        _commit(
            self.session,
            "Budget periods changed concurrently",
            invariant="non_overlap",
            context={"person_id": person_id},
        )
        logger.info(
            f"exception_removed: person_id={person_id} exception_id={exception_id} "
            f"restored_start={replaced_start}"
        )

    def rollover(
        self, person_id: int, as_of: Optional[date] = None
    ) -> Optional[BudgetPeriod]:
        """Close expired periods and open the one containing ``as_of``.

        Returns the newly opened period, or ``None`` when the open period
        still covers ``as_of``.
        """
        person = self._person(person_id)
        as_of = as_of or local_today()
        current = self.current_period(person_id)
        if current is None:
            return self.start_period(person_id, as_of)

        opened: Optional[BudgetPeriod] = None
        window = self.window(current)
        while window.end <= as_of:
            self._end(current, window.last_day)
            current = self._start(person, window.end)
            opened = current
            window = self.window(current)
        if opened is None:
            return None
        _commit(
            self.session,
            "A budget period was opened concurrently",
            invariant="single_open_period",
            context={"person_id": person_id},
        )
        self.session.refresh(opened)
        logger.info(
            f"period_rolled_over: person_id={person_id} period_id={opened.id} "
            f"start={opened.start_date}"
        )
        return opened

    def overdue_people(self, as_of: Optional[date] = None) -> list[tuple[Person, BudgetPeriod]]:
        as_of = as_of or local_today()
        stmt = (
            select(BudgetPeriod)
            .options(joinedload(BudgetPeriod.person))
            .where(BudgetPeriod.is_completed.is_(False))
            .order_by(BudgetPeriod.person_id)
        )
        overdue: list[tuple[Person, BudgetPeriod]] = []
        for period in self.session.scalars(stmt).all():
            if self.window(period).end <= as_of:
                overdue.append((period.person, period))
        return overdue


@dataclass
class PeriodTotals:
    current_spent: int = 0
    total_saved: int = 0
    category_spending: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class BudgetCalculationData:
    budget_id: int
    amount_cents: int
    current_spent: int
    percentage: float
    percentage_undefined: bool
    remaining: int
    is_over_budget: bool
    period_start: date
    period_end: Optional[date]
    is_completed: bool


PeriodRef = Union[BudgetPeriod, Period]


class BudgetService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _categories(self, person: Person, names: list[str]) -> list[Category]:
        resolver = CategoryService(self.session)
        resolved: dict[int, Category] = {}
        for name in names:
            category = resolver.resolve(person.group_id, name)
            if category.is_transfer:
                raise ValidationError(
                    "Transfers cannot be budgeted",
                    invariant="transfer_excluded",
                    context={"category": category.name},
                )
            resolved[category.id] = category
        return list(resolved.values())

    def create(self, data: BudgetIn) -> Budget:
        person = PersonService(self.session).get(data.person_id)
        budget = Budget(
            person_id=person.id,
            description=data.description.strip(),
            amount_cents=data.amount_cents,
            categories=self._categories(person, data.categories),
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def get(self, budget_id: int, *, person_id: Optional[int] = None) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or (person_id is not None and budget.person_id != person_id):
            raise NotFoundError(
                "Budget not found",
                invariant="budget_exists",
                context={"budget_id": budget_id, "person_id": person_id},
            )
        return budget

    def update(self, budget_id: int, data: BudgetUpdate) -> Budget:
        budget = self.get(budget_id)
        if data.description is not None:
            budget.description = data.description.strip()
        if data.amount_cents is not None:
            budget.amount_cents = data.amount_cents
        if data.categories is not None:
            budget.categories = self._categories(budget.person, data.categories)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.session.delete(budget)
        self.session.commit()

    def list_for_person(self, person_id: int) -> list[Budget]:
        PersonService(self.session).get(person_id)
        stmt = select(Budget).where(Budget.person_id == person_id).order_by(Budget.id)
        return self.session.scalars(stmt).all()

    def _bounds(self, period: PeriodRef) -> tuple[date, Optional[date]]:
        if isinstance(period, Period):
            return period.start, period.end
        # The open period keeps collecting until it is ended.
        return period.start_date, period.end_exclusive

    def _window_transactions(
        self, person_id: int, period: PeriodRef
    ) -> list[Transaction]:
        start, end = self._bounds(period)
        txns = TransactionService(self.session).list_for_person(person_id, start, end)
        return [t for t in txns if not t.is_transfer]

    @staticmethod
    def _budget_spent(budget: Budget, txns: list[Transaction]) -> int:
        category_ids = {c.id for c in budget.categories}
        spent = 0
        for txn in txns:
            if txn.category_id not in category_ids:
                continue
            if txn.type == TransactionType.income:
                spent -= txn.amount_cents
            else:
                spent += txn.amount_cents
        return max(0, spent)

    def calculate_period_totals(self, person_id: int, period: PeriodRef) -> PeriodTotals:
        """Spending of a person over a period, recomputed from transactions.

        Income in a budget's categories refills that budget. Each budget's
        spend is clamped at zero before being summed.
        """
        person = PersonService(self.session).get(person_id)
        txns = self._window_transactions(person.id, period)
        totals = PeriodTotals()
        budget_total = 0
        for budget in self.list_for_person(person.id):
            if budget.amount_cents <= 0:
                continue
            budget_total += budget.amount_cents
            totals.current_spent += self._budget_spent(budget, txns)
        for txn in txns:
            if txn.type != TransactionType.expense:
                continue
            name = txn.category.name
            totals.category_spending[name] = (
                totals.category_spending.get(name, 0) + txn.amount_cents
            )
        totals.total_saved = max(0, budget_total - totals.current_spent)
        return totals

    def calculate_budget_data(
        self,
        person_id: int,
        budget_id: int,
        period: Optional[PeriodRef] = None,
    ) -> BudgetCalculationData:
        person = PersonService(self.session).get(person_id)
        budget = self.get(budget_id, person_id=person.id)
        periods = BudgetPeriodService(self.session)
        if period is None:
            period = periods.current_period(person.id) or compute_period(
                local_today(), person.budget_start_day
            )

        if isinstance(period, Period):
            window, is_completed = period, False
        else:
            window, is_completed = periods.window(period), period.is_completed

        spent = self._budget_spent(budget, self._window_transactions(person.id, period))
        amount = budget.amount_cents
        if amount > 0:
            percentage = spent * 100 / amount
            percentage_undefined = False
        else:
            percentage = 0.0
            percentage_undefined = True
        is_over_budget = spent > amount
        return BudgetCalculationData(
            budget_id=budget.id,
            amount_cents=amount,
            current_spent=spent,
            percentage=float(percentage),
            percentage_undefined=percentage_undefined,
            remaining=spent - amount if is_over_budget else amount - spent,
            is_over_budget=is_over_budget,
            period_start=window.start,
            period_end=window.end,
            is_completed=is_completed,
        )


LINK_RULES = {
    "self_link": "A transaction cannot be linked to itself",
    "same_direction": "Linked transactions must have opposite types",
    "transfer": "Transfers cannot be reconciled",
    "already_reconciled": "Transaction is already reconciled",
    "deleted": "Deleted transactions cannot be reconciled",
}


class ReconciliationService:
    """Links pairs of opposite transactions that record one movement twice.

    A parent settles any number of children; a child has exactly one
    parent. Remaining amounts are always derived from the linked rows.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    @staticmethod
    def link_violation(candidate: Transaction, pivot: Transaction) -> Optional[str]:
        if candidate.id == pivot.id:
            return "self_link"
        if candidate.type == pivot.type:
            return "same_direction"
        if candidate.is_transfer or pivot.is_transfer:
            return "transfer"
        if candidate.is_reconciled:
            return "already_reconciled"
        if candidate.deleted_at is not None or pivot.deleted_at is not None:
            return "deleted"
        return None

    @classmethod
    def is_linkable(cls, candidate: Transaction, pivot: Transaction) -> bool:
        return cls.link_violation(candidate, pivot) is None

    @staticmethod
    def remaining_amount(txn: Transaction) -> int:
        return txn.remaining_amount_cents

    def _get(self, transaction_id: int) -> Transaction:
        return TransactionService(self.session).get(transaction_id)

    def linkable_candidates(self, pivot_id: int, limit: int = 50) -> list[Transaction]:
        pivot = self._get(pivot_id)
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.group_id == pivot.group_id,
                Transaction.id != pivot.id,
                Transaction.type != pivot.type,
                Transaction.is_reconciled.is_(False),
                Transaction.parent_transaction_id.is_(None),
                Transaction.deleted_at.is_(None),
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        candidates = [
            t
            for t in self.session.scalars(stmt).unique().all()
            if self.is_linkable(t, pivot) and not t.children
        ]
        return candidates[:limit]

    def refresh_parent(self, parent: Transaction) -> None:
        self.session.expire(parent, ["children"])
        parent.is_reconciled = bool(parent.children) and parent.remaining_amount_cents == 0

    def link(self, parent_id: int, child_id: int) -> Transaction:
        parent = self._get(parent_id)
        child = self._get(child_id)
        context = {"parent_id": parent_id, "child_id": child_id}

        if child.parent_transaction_id is not None:
            raise ConflictError(
                "Transaction is already linked to a parent",
                invariant="single_parent",
                context={**context, "current_parent_id": child.parent_transaction_id},
            )
        violation = self.link_violation(child, parent)
        if violation:
            raise ValidationError(LINK_RULES[violation], invariant=violation, context=context)
        if parent.parent_transaction_id is not None or child.children:
            raise ConflictError(
                "Links cannot be chained",
                invariant="no_nested_links",
                context=context,
            )
        if parent.settled_cents + child.amount_cents > parent.amount_cents:
            raise ValidationError(
                "Link would settle more than the transaction amount",
                invariant="no_overpayment",
                context={
                    **context,
                    "remaining_cents": parent.remaining_amount_cents,
                    "child_amount_cents": child.amount_cents,
                },
            )

        result = self.session.execute(
            update(Transaction)
            .where(
                Transaction.id == child.id,
                Transaction.parent_transaction_id.is_(None),
            )
            .values(
                parent_transaction_id=parent.id,
                is_reconciled=True,
                linked_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.session.rollback()
            raise ConflictError(
                "Transaction was linked concurrently",
                invariant="single_parent",
                context=context,
            )
        self.session.expire(child)
        self.refresh_parent(parent)
        self.session.commit()
        self.session.refresh(child)
        logger.info(
            f"transactions_linked: parent_id={parent.id} child_id={child.id} "
            f"parent_remaining_cents={parent.remaining_amount_cents}"
        )
        return child

    def detach(self, child: Transaction) -> Optional[Transaction]:
        """Clear a child's parent without committing; returns the old parent."""
        parent = child.parent
        result = self.session.execute(
            update(Transaction)
            .where(
                Transaction.id == child.id,
                Transaction.parent_transaction_id == child.parent_transaction_id,
            )
            .values(parent_transaction_id=None, is_reconciled=False, linked_at=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.session.rollback()
            raise ConflictError(
                "Transaction was unlinked concurrently",
                invariant="single_parent",
                context={"child_id": child.id},
            )
        self.session.expire(child)
        if parent is not None:
            self.refresh_parent(parent)
        return parent

    def unlink(self, child_id: int) -> Transaction:
        child = self._get(child_id)
        if child.parent_transaction_id is None:
            raise InvalidStateError(
                "Transaction is not linked to a parent",
                invariant="linked",
                context={"child_id": child_id},
            )
        parent = self.detach(child)
        self.session.commit()
        self.session.refresh(child)
        logger.info(
            f"transactions_unlinked: parent_id={parent.id if parent else None} "
            f"child_id={child.id}"
        )
        return child


@dataclass(frozen=True)
class SeriesReconciliation:
    series_id: int
    expected_executions: int
    actual_executions: int
    missed_payments: int
    total_paid: int
    expected_total: int
    difference: int
    success_rate: float


class RecurringSeriesService:
    """Recurring series and the transactions they post.

    A series posts one transaction per scheduled occurrence, linked back
    through ``recurring_series_id`` and ``occurrence_date``. Posting the
    same occurrence twice is a no-op.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, series_id: int) -> RecurringSeries:
        series = self.session.get(RecurringSeries, series_id)
        if not series:
            raise NotFoundError(
                "Recurring series not found",
                invariant="series_exists",
                context={"series_id": series_id},
            )
        return series

    def list_for_group(
        self, group_id: int, include_inactive: bool = True
    ) -> list[RecurringSeries]:
        GroupService(self.session).get(group_id)
        stmt = (
            select(RecurringSeries)
            .options(joinedload(RecurringSeries.category))
            .where(RecurringSeries.group_id == group_id)
            .order_by(RecurringSeries.next_due_date, RecurringSeries.id)
        )
        if not include_inactive:
            stmt = stmt.where(RecurringSeries.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def _resolve(self, data: RecurringSeriesIn) -> tuple[Account, Category]:
        account = AccountService(self.session).get(data.account_id)
        category = CategoryService(self.session).resolve(account.group_id, data.category)
        TransactionService(self.session)._validate_accounts(
            data.account_id, data.to_account_id, category
        )
        return account, category

    def _apply(
        self, series: RecurringSeries, data: RecurringSeriesIn, category: Category
    ) -> None:
        series.name = data.name.strip()
        series.description = (data.description or "").strip() or None
        series.type = data.type
        series.amount_cents = data.amount_cents
        series.category_id = category.id
        series.category = category
        series.account_id = data.account_id
        series.to_account_id = data.to_account_id
        series.frequency = data.frequency
        series.month_day_policy = data.month_day_policy
        series.start_date = data.start_date
        series.end_date = data.end_date
        series.auto_execute = data.auto_execute
        series.skip_weekends = data.skip_weekends

    @staticmethod
    def _first_due_after(series: RecurringSeries, after: Optional[date]) -> date:
        scheduled = series.start_date
        if after is None:
            return scheduled
        while scheduled <= after:
            scheduled = calculate_next_date(series, scheduled)
        return scheduled

    def create(self, data: RecurringSeriesIn) -> RecurringSeries:
        account, category = self._resolve(data)
        series = RecurringSeries(
            group_id=account.group_id,
            next_due_date=data.start_date,
            is_active=True,
            is_paused=False,
            total_executions=0,
            failed_executions=0,
        )
        self._apply(series, data, category)
        self.session.add(series)
        self.session.commit()
        self.session.refresh(series)
        logger.info(
            f"series_created: series_id={series.id} group_id={series.group_id} "
            f"frequency={series.frequency.value} start={series.start_date}"
        )
        return series

    def update(self, series_id: int, data: RecurringSeriesIn) -> RecurringSeries:
        series = self.get(series_id)
        account, category = self._resolve(data)
        if account.group_id != series.group_id:
            raise ValidationError(
                "Recurring series cannot move between groups",
                invariant="same_group",
                context={"series_id": series.id, "account_id": account.id},
            )
        schedule_changed = (
            data.frequency != series.frequency
            or data.start_date != series.start_date
            or data.month_day_policy != series.month_day_policy
        )
        self._apply(series, data, category)
        if schedule_changed:
            series.next_due_date = self._first_due_after(
                series, series.last_executed_date
            )
        series.is_active = (
            series.end_date is None or series.next_due_date <= series.end_date
        )
        self.session.commit()
        self.session.refresh(series)
        return series

    def set_paused(
        self, series_id: int, paused: bool, until: Optional[date] = None
    ) -> RecurringSeries:
        series = self.get(series_id)
        if not paused and until is not None:
            raise ValidationError(
                "A pause end date needs a pause",
                invariant="pause_until_paused",
                context={"series_id": series_id},
            )
        series.is_paused = paused
        series.pause_until = until if paused else None
        self.session.commit()
        self.session.refresh(series)
        logger.info(
            f"series_paused: series_id={series_id} paused={paused} until={until}"
        )
        return series

    def delete(self, series_id: int) -> None:
        series = self.get(series_id)
        # Posted transactions stay; they only lose the series link.
        self.session.delete(series)
        self.session.commit()
        logger.info(f"series_deleted: series_id={series_id}")

    def _post(self, run, today: date) -> int:
        try:
            count = run(RecurringEngine(self.session), today)
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError(
                "Occurrence was posted concurrently",
                invariant="single_occurrence",
                context={"as_of": today},
            ) from exc
        _commit(
            self.session,
            "Occurrence was posted concurrently",
            invariant="single_occurrence",
            context={"as_of": today},
        )
        return count

    def execute_due(self, today: Optional[date] = None) -> int:
        """Post due occurrences of every auto-executing series."""
        today = today or local_today()
        count = self._post(lambda engine, day: engine.post_due_series(day), today)
        logger.info(f"series_executed: as_of={today} occurrences_posted={count}")
        return count

    def execute(self, series_id: int, today: Optional[date] = None) -> int:
        """Catch one series up to ``today``, whether or not it auto-executes."""
        series = self.get(series_id)
        if not series.is_active:
            raise InvalidStateError(
                "Recurring series is no longer active",
                invariant="series_active",
                context={"series_id": series_id},
            )
        today = today or local_today()
        return self._post(lambda engine, day: engine.catch_up_series(series, day), today)

    def upcoming(self, series_id: int, count: int = 5) -> list[date]:
        series = self.get(series_id)
        if not series.is_active:
            return []
        return upcoming_dates(series, count)

    def reconciliation(self, series_id: int) -> SeriesReconciliation:
        """Compare what a series executed with the transactions still on record."""
        series = self.get(series_id)
        live = self.session.scalars(
            select(Transaction).where(
                Transaction.recurring_series_id == series.id,
                Transaction.deleted_at.is_(None),
            )
        ).all()
        expected = series.total_executions
        actual = len(live)
        total_paid = sum(txn.amount_cents for txn in live)
        expected_total = series.amount_cents * expected
        return SeriesReconciliation(
            series_id=series.id,
            expected_executions=expected,
            actual_executions=actual,
            missed_payments=max(0, expected - actual),
            total_paid=total_paid,
            expected_total=expected_total,
            difference=total_paid - expected_total,
            success_rate=actual * 100 / expected if expected > 0 else 0.0,
        )

    def missed_series(self, group_id: int) -> list[tuple[RecurringSeries, int]]:
        missed: list[tuple[RecurringSeries, int]] = []
        for series in self.list_for_group(group_id, include_inactive=False):
            summary = self.reconciliation(series.id)
            if summary.missed_payments > 0:
                missed.append((series, summary.missed_payments))
        return missed
