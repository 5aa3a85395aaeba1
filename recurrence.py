import logging
from datetime import date, datetime, time, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from errors import DomainError, ValidationError
from models import Frequency, MonthDayPolicy, RecurringSeries, Transaction
from periods import ONE_DAY, days_in_month, is_weekend, local_today

logger = logging.getLogger(__name__)

MAX_CATCH_UP = 366


def _add_months(
    base: date,
    months: int,
    *,
    desired_day: int,
    policy: MonthDayPolicy,
) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1

    if policy == MonthDayPolicy.skip:
        # A later month always has the day, so this terminates.
        while desired_day > days_in_month(year, month):
            total_months += months
            year = base.year + total_months // 12
            month = total_months % 12 + 1
    return date(year, month, min(desired_day, days_in_month(year, month)))


def calculate_next_date(series: RecurringSeries, from_date: date) -> date:
    """Scheduled date of the occurrence after ``from_date``.

    Monthly and yearly series keep the day of their start date; months too
    short for it are snapped to their last day or skipped, depending on the
    series' month day policy.
    """
    if series.frequency == Frequency.weekly:
        return from_date + timedelta(weeks=1)
    if series.frequency == Frequency.biweekly:
        return from_date + timedelta(weeks=2)
    months = 1 if series.frequency == Frequency.monthly else 12
    return _add_months(
        from_date,
        months,
        desired_day=series.start_date.day,
        policy=series.month_day_policy,
    )


def posting_date(series: RecurringSeries, scheduled: date) -> date:
    """Date the occurrence is booked on; weekends move to the next Monday."""
    posted = scheduled
    if series.skip_weekends:
        while is_weekend(posted):
            posted += ONE_DAY
    return posted


def upcoming_dates(series: RecurringSeries, count: int) -> list[date]:
    dates: list[date] = []
    scheduled = series.next_due_date
    while len(dates) < count:
        if series.end_date and scheduled > series.end_date:
            break
        dates.append(posting_date(series, scheduled))
        scheduled = calculate_next_date(series, scheduled)
    return dates


class RecurringEngine:
    def __init__(self, session: Session) -> None:
        self.session = session

    def catch_up_series(
        self, series: RecurringSeries, today: Optional[date] = None
    ) -> int:
        """Post every occurrence due up to ``today``; returns how many were posted.

        Occurrences inside a pause are skipped. A failed occurrence stops the
        catch-up and stays due, so the next run retries it.
        """
        today = today or local_today()
        posted_count = 0
        iterations = 0
        while (
            series.is_active
            and series.next_due_date <= today
            and iterations < MAX_CATCH_UP
        ):
            occurrence_date = series.next_due_date
            iterations += 1
            if series.is_paused_on(occurrence_date):
                logger.info(
                    f"series_occurrence_skipped: series_id={series.id} "
                    f"date={occurrence_date} reason=paused"
                )
            else:
                try:
                    posted = self._post_occurrence(series, occurrence_date)
                except DomainError as exc:
                    series.failed_executions += 1
                    logger.warning(
                        f"series_occurrence_failed: series_id={series.id} "
                        f"date={occurrence_date} invariant={exc.invariant}"
                    )
                    break
                if posted:
                    series.total_executions += 1
                    series.last_executed_date = occurrence_date
                    posted_count += 1
            series.next_due_date = calculate_next_date(series, occurrence_date)
            if series.end_date and series.next_due_date > series.end_date:
                series.is_active = False
                logger.info(f"series_finished: series_id={series.id}")
        if series.is_paused and series.pause_until and series.pause_until <= today:
            series.is_paused = False
            series.pause_until = None
        return posted_count

    def post_due_series(self, today: Optional[date] = None) -> int:
        today = today or local_today()
        stmt = (
            select(RecurringSeries)
            .where(
                RecurringSeries.is_active.is_(True),
                RecurringSeries.auto_execute.is_(True),
                RecurringSeries.next_due_date <= today,
            )
            .order_by(RecurringSeries.next_due_date, RecurringSeries.id)
        )
        count = 0
        for series in self.session.scalars(stmt).all():
            count += self.catch_up_series(series, today)
        return count

    def _post_occurrence(self, series: RecurringSeries, occurrence_date: date) -> bool:
        existing = self.session.scalar(
            select(Transaction.id)
            .where(
                Transaction.recurring_series_id == series.id,
                Transaction.occurrence_date == occurrence_date,
            )
            .limit(1)
        )
        if existing:
            return False
        if series.category.archived_at is not None:
            raise ValidationError(
                "Recurring series uses an archived category",
                invariant="category_active",
                context={"series_id": series.id, "category_id": series.category_id},
            )

        posted_on = posting_date(series, occurrence_date)
        txn = Transaction(
            group_id=series.group_id,
            description=series.description or series.name,
            date=posted_on,
            occurred_at=datetime.combine(posted_on, time(12, 0)),
            type=series.type,
            amount_cents=series.amount_cents,
            category_id=series.category_id,
            account_id=series.account_id,
            to_account_id=series.to_account_id,
            is_reconciled=False,
            recurring_series_id=series.id,
            occurrence_date=occurrence_date,
        )
        self.session.add(txn)
        self.session.flush()
        logger.info(
            f"series_occurrence_posted: series_id={series.id} "
            f"transaction_id={txn.id} date={posted_on}"
        )
        return True
