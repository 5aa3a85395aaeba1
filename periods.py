"""Budget period date arithmetic.

Periods are half-open ``[start, end)`` windows. A person's default period
starts on their anchor day of the month; an exception date moves the start
boundary of the natural period it falls in.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Optional, Union
from zoneinfo import ZoneInfo

from config import get_settings
from errors import ValidationError

if TYPE_CHECKING:  # pragma: no cover
    from models import BudgetException

MIN_ANCHOR_DAY = 1
MAX_ANCHOR_DAY = 28

ONE_DAY = timedelta(days=1)


@dataclass(frozen=True)
class Period:
    start: date
    end: date

    def contains(self, day: date) -> bool:
        return self.start <= day < self.end

    @property
    def last_day(self) -> date:
        return self.end - ONE_DAY

    @property
    def days(self) -> int:
        return (self.end - self.start).days

    def as_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def validate_anchor_day(anchor_day: int) -> int:
    if not MIN_ANCHOR_DAY <= anchor_day <= MAX_ANCHOR_DAY:
        raise ValidationError(
            f"Anchor day must be between {MIN_ANCHOR_DAY} and {MAX_ANCHOR_DAY}",
            invariant="anchor_day_range",
            context={"anchor_day": anchor_day},
        )
    return anchor_day


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    total = year * 12 + (month - 1) + delta
    return total // 12, total % 12 + 1


def anchor_date(year: int, month: int, anchor_day: int) -> date:
    return date(year, month, min(anchor_day, days_in_month(year, month)))


def natural_period(reference: date, anchor_day: int) -> Period:
    validate_anchor_day(anchor_day)
    this_month = anchor_date(reference.year, reference.month, anchor_day)
    if reference >= this_month:
        start = this_month
    else:
        year, month = _shift_month(reference.year, reference.month, -1)
        start = anchor_date(year, month, anchor_day)
    year, month = _shift_month(start.year, start.month, 1)
    return Period(start, anchor_date(year, month, anchor_day))


ExceptionLike = Union[date, "BudgetException"]


def _exception_date(exception: Optional[ExceptionLike]) -> Optional[date]:
    if exception is None:
        return None
    if isinstance(exception, date):
        return exception
    return exception.exception_date


def compute_period(
    reference: date,
    anchor_day: int,
    exception: Optional[ExceptionLike] = None,
) -> Period:
    natural = natural_period(reference, anchor_day)
    shifted = _exception_date(exception)
    if shifted is None or not natural.contains(shifted):
        return natural
    if reference >= shifted:
        return Period(shifted, natural.end)
    # The exception cuts the natural window: days before it close the
    # previous period.
    return Period(natural.start, shifted)


def preview_exception(exception_date: date, anchor_day: int) -> Period:
    return compute_period(exception_date, anchor_day, exception_date)


def is_weekend(day: date) -> bool:
    return day.weekday() >= 5
