import logging
from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from models import BudgetPeriod
from periods import Period
from schemas import GroupIn, PersonIn
from services import BudgetPeriodService, GroupService, PersonService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_person(session, anchor_day: int = 1):
    group = GroupService(session).create(GroupIn(name="Home"))
    return PersonService(session).create(
        PersonIn(group_id=group.id, name="Alex", budget_start_day=anchor_day)
    )


def spans(service: BudgetPeriodService, person_id: int) -> list[tuple]:
    return [
        (p.start_date, p.end_date, p.is_completed)
        for p in service.list_periods(person_id)
    ]


def assert_contiguous(service: BudgetPeriodService, person_id: int) -> None:
    periods = service.list_periods(person_id)
    for current, following in zip(periods, periods[1:]):
        assert service.window(current).end == following.start_date


def test_start_period_uses_anchor_day() -> None:
    session = make_session()
    person = make_person(session, anchor_day=15)
    service = BudgetPeriodService(session)

    period = service.start_period(person.id, date(2025, 7, 20))

    assert period.start_date == date(2025, 7, 15)
    assert period.end_date is None
    assert not period.is_completed
    assert service.window(period) == Period(date(2025, 7, 15), date(2025, 8, 15))
    assert service.current_period(person.id).id == period.id


def test_start_period_twice_is_rejected() -> None:
    session = make_session()
    person = make_person(session)
    service = BudgetPeriodService(session)
    service.start_period(person.id, date(2025, 7, 3))

    with pytest.raises(InvalidStateError) as exc:
        service.start_period(person.id, date(2025, 7, 4))
    assert exc.value.invariant == "single_open_period"


def test_end_period_requires_open_period() -> None:
    session = make_session()
    person = make_person(session)
    with pytest.raises(InvalidStateError):
        BudgetPeriodService(session).end_period(person.id, date(2025, 7, 31))


def test_end_before_start_is_rejected() -> None:
    session = make_session()
    person = make_person(session)
    service = BudgetPeriodService(session)
    service.start_period(person.id, date(2025, 7, 3))

    with pytest.raises(ValidationError) as exc:
        service.end_period(person.id, date(2025, 6, 30))
    assert exc.value.invariant == "end_after_start"
    assert service.current_period(person.id) is not None


def test_next_period_starts_after_previous_end() -> None:
    session = make_session()
    person = make_person(session)
    service = BudgetPeriodService(session)
    service.start_period(person.id, date(2025, 7, 3))
    ended = service.end_period(person.id, date(2025, 7, 31))
    assert ended.is_completed

    following = service.start_period(person.id, date(2025, 8, 2))

    assert following.start_date == date(2025, 8, 1)
    assert spans(service, person.id) == [
        (date(2025, 7, 1), date(2025, 7, 31), True),
        (date(2025, 8, 1), None, False),
    ]
    assert_contiguous(service, person.id)


def test_late_start_window_contains_reference() -> None:
    session = make_session()
    person = make_person(session)
    service = BudgetPeriodService(session)
    service.start_period(person.id, date(2025, 7, 3))
    service.end_period(person.id, date(2025, 7, 20))

    period = service.start_period(person.id, date(2025, 9, 15))

    assert period.start_date == date(2025, 7, 21)
    window = service.window(period)
    assert window == Period(date(2025, 7, 21), date(2025, 10, 1))
    assert window.contains(date(2025, 9, 15))
    assert service.overdue_people(date(2025, 9, 15)) == []
    assert service.rollover(person.id, date(2025, 9, 30)) is None
    assert_contiguous(service, person.id)


def test_late_start_keeps_end_through_exception_round_trip() -> None:
    session = make_session()
    person = make_person(session)
    service = BudgetPeriodService(session)
    service.start_period(person.id, date(2025, 7, 3))
    service.end_period(person.id, date(2025, 7, 20))
    period = service.start_period(person.id, date(2025, 9, 15))

    exception = service.add_exception(person.id, date(2025, 7, 18))
    assert service.window(period) == Period(date(2025, 7, 18), date(2025, 10, 1))

    service.remove_exception(person.id, exception.id)
    assert service.window(period) == Period(date(2025, 7, 21), date(2025, 10, 1))


def test_start_inside_closed_period_conflicts() -> None:
    session = make_session()
    person = make_person(session)
    service = BudgetPeriodService(session)
    service.start_period(person.id, date(2025, 7, 3))
    service.end_period(person.id, date(2025, 7, 31))

    with pytest.raises(ConflictError) as exc:
        service.start_period(person.id, date(2025, 7, 20))
    assert exc.value.invariant == "non_overlap"


def test_store_rejects_second_open_period() -> None:
    session = make_session()
    person = make_person(session)
    BudgetPeriodService(session).start_period(person.id, date(2025, 7, 3))

    session.add(
        BudgetPeriod(person_id=person.id, start_date=date(2025, 9, 1), is_completed=False)
    )
    with pytest.raises(IntegrityError):
        session.commit()


def test_early_salary_splits_current_period() -> None:
    session = make_session()
    person = make_person(session)
    service = BudgetPeriodService(session)
    service.start_period(person.id, date(2025, 7, 1))

    preview = service.preview_exception(person.id, date(2025, 7, 11))
    exception = service.add_exception(person.id, date(2025, 7, 11), "salary early")

    current = service.current_period(person.id)
    assert service.window(current) == Period(date(2025, 7, 11), date(2025, 8, 1))
    assert service.window(current) == preview
    assert spans(service, person.id) == [
        (date(2025, 7, 1), date(2025, 7, 10), True),
        (date(2025, 7, 11), None, False),
    ]
    assert exception.replaced_start_date == date(2025, 7, 1)
    assert exception.split_period_id is not None
    assert service.active_exception(person.id).id == exception.id
    assert_contiguous(service, person.id)


def test_exception_pulls_start_before_previous_end() -> None:
    session = make_session()
    person = make_person(session)
    service = BudgetPeriodService(session)
    service.start_period(person.id, date(2025, 7, 1))
    service.end_period(person.id, date(2025, 7, 31))
    service.start_period(person.id, date(2025, 8, 1))

    preview = service.preview_exception(person.id, date(2025, 7, 28))
    service.add_exception(person.id, date(2025, 7, 28))

    assert spans(service, person.id) == [
        (date(2025, 7, 1), date(2025, 7, 27), True),
        (date(2025, 7, 28), None, False),
    ]
    current = service.current_period(person.id)
    assert service.window(current) == Period(date(2025, 7, 28), date(2025, 9, 1))
    assert service.window(current) == preview
    assert_contiguous(service, person.id)


def test_exception_on_start_day_keeps_boundaries() -> None:
    session = make_session()
    person = make_person(session)
    service = BudgetPeriodService(session)
    service.start_period(person.id, date(2025, 7, 1))

    service.add_exception(person.id, date(2025, 7, 1))

    assert spans(service, person.id) == [(date(2025, 7, 1), None, False)]


def test_exception_requires_open_period() -> None:
    session = make_session()
    person = make_person(session)
    with pytest.raises(InvalidStateError):
        BudgetPeriodService(session).add_exception(person.id, date(2025, 7, 11))


def test_second_exception_conflicts() -> None:
    session = make_session()
    person = make_person(session)
    service = BudgetPeriodService(session)
    service.start_period(person.id, date(2025, 7, 1))
    service.add_exception(person.id, date(2025, 7, 11))

    with pytest.raises(ConflictError) as exc:
        service.add_exception(person.id, date(2025, 7, 15))
    assert exc.value.invariant == "single_exception"


def test_exception_after_period_end_is_rejected() -> None:
    session = make_session()
    person = make_person(session)
    service = BudgetPeriodService(session)
    service.start_period(person.id, date(2025, 7, 1))

    with pytest.raises(ValidationError) as exc:
        service.add_exception(person.id, date(2025, 8, 1))
    assert exc.value.invariant == "exception_in_window"


def test_exception_cannot_swallow_previous_period() -> None:
    session = make_session()
    person = make_person(session)
    service = BudgetPeriodService(session)
    service.start_period(person.id, date(2025, 7, 1))
    service.end_period(person.id, date(2025, 7, 31))
    service.start_period(person.id, date(2025, 8, 1))

    with pytest.raises(ConflictError) as exc:
        service.add_exception(person.id, date(2025, 7, 1))
    assert exc.value.invariant == "non_overlap"
    assert spans(service, person.id)[0] == (date(2025, 7, 1), date(2025, 7, 31), True)


def test_exception_before_first_period_conflicts() -> None:
    session = make_session()
    person = make_person(session)
    service = BudgetPeriodService(session)
    service.start_period(person.id, date(2025, 7, 1))

    with pytest.raises(ConflictError):
        service.add_exception(person.id, date(2025, 6, 28))


def test_preview_rejects_what_add_rejects() -> None:
    session = make_session()
    person = make_person(session)
    service = BudgetPeriodService(session)

    with pytest.raises(InvalidStateError):
        service.preview_exception(person.id, date(2025, 7, 11))

    service.start_period(person.id, date(2025, 7, 1))

    with pytest.raises(ValidationError) as exc:
        service.preview_exception(person.id, date(2025, 8, 1))
    assert exc.value.invariant == "exception_in_window"

    with pytest.raises(ConflictError) as exc:
        service.preview_exception(person.id, date(2025, 6, 28))
    assert exc.value.invariant == "non_overlap"


def test_preview_rejects_swallowing_previous_period() -> None:
    session = make_session()
    person = make_person(session)
    service = BudgetPeriodService(session)
    service.start_period(person.id, date(2025, 7, 1))
    service.end_period(person.id, date(2025, 7, 31))
    service.start_period(person.id, date(2025, 8, 1))

    with pytest.raises(ConflictError) as exc:
        service.preview_exception(person.id, date(2025, 7, 1))
    assert exc.value.invariant == "non_overlap"
    assert service.preview_exception(person.id, date(2025, 7, 2)) == Period(
        date(2025, 7, 2), date(2025, 9, 1)
    )


def test_preview_rejected_once_exception_exists() -> None:
    session = make_session()
    person = make_person(session)
    service = BudgetPeriodService(session)
    service.start_period(person.id, date(2025, 7, 1))
    service.add_exception(person.id, date(2025, 7, 11))

    with pytest.raises(ConflictError) as exc:
        service.preview_exception(person.id, date(2025, 7, 15))
    assert exc.value.invariant == "single_exception"


def test_weekend_exception_is_logged(caplog) -> None:
    session = make_session()
    person = make_person(session)
    service = BudgetPeriodService(session)
    service.start_period(person.id, date(2025, 7, 1))

    with caplog.at_level(logging.WARNING):
        service.add_exception(person.id, date(2025, 7, 12))

    assert "exception_on_weekend" in caplog.text
    assert service.current_period(person.id).start_date == date(2025, 7, 12)


def test_remove_exception_reverts_split() -> None:
    session = make_session()
    person = make_person(session)
    service = BudgetPeriodService(session)
    service.start_period(person.id, date(2025, 7, 1))
    exception = service.add_exception(person.id, date(2025, 7, 11))

    service.remove_exception(person.id, exception.id)

    assert spans(service, person.id) == [(date(2025, 7, 1), None, False)]
    assert service.active_exception(person.id) is None
    current = service.current_period(person.id)
    assert service.window(current) == Period(date(2025, 7, 1), date(2025, 8, 1))


def test_remove_exception_restores_previous_end() -> None:
    session = make_session()
    person = make_person(session)
    service = BudgetPeriodService(session)
    service.start_period(person.id, date(2025, 7, 1))
    service.end_period(person.id, date(2025, 7, 31))
    service.start_period(person.id, date(2025, 8, 1))
    exception = service.add_exception(person.id, date(2025, 7, 28))

    service.remove_exception(person.id, exception.id)

    assert spans(service, person.id) == [
        (date(2025, 7, 1), date(2025, 7, 31), True),
        (date(2025, 8, 1), None, False),
    ]


def test_consumed_exception_cannot_be_removed() -> None:
    session = make_session()
    person = make_person(session)
    service = BudgetPeriodService(session)
    service.start_period(person.id, date(2025, 7, 1))
    exception = service.add_exception(person.id, date(2025, 7, 11))
    service.end_period(person.id, date(2025, 7, 31))

    assert exception.is_consumed
    assert service.active_exception(person.id) is None
    with pytest.raises(InvalidStateError) as exc:
        service.remove_exception(person.id, exception.id)
    assert exc.value.invariant == "exception_unconsumed"


def test_remove_unknown_exception() -> None:
    session = make_session()
    person = make_person(session)
    with pytest.raises(NotFoundError):
        BudgetPeriodService(session).remove_exception(person.id, 999)


def test_rollover_closes_every_expired_period() -> None:
    session = make_session()
    person = make_person(session)
    service = BudgetPeriodService(session)
    service.start_period(person.id, date(2025, 7, 3))

    opened = service.rollover(person.id, date(2025, 9, 5))

    assert opened.start_date == date(2025, 9, 1)
    assert spans(service, person.id) == [
        (date(2025, 7, 1), date(2025, 7, 31), True),
        (date(2025, 8, 1), date(2025, 8, 31), True),
        (date(2025, 9, 1), None, False),
    ]
    assert_contiguous(service, person.id)
    assert service.rollover(person.id, date(2025, 9, 6)) is None


def test_rollover_consumes_exception() -> None:
    session = make_session()
    person = make_person(session)
    service = BudgetPeriodService(session)
    service.start_period(person.id, date(2025, 7, 1))
    exception = service.add_exception(person.id, date(2025, 7, 11))

    service.rollover(person.id, date(2025, 8, 2))

    assert exception.is_consumed
    assert spans(service, person.id)[1] == (date(2025, 7, 11), date(2025, 7, 31), True)
    assert service.current_period(person.id).start_date == date(2025, 8, 1)


def test_rollover_without_open_period_starts_one() -> None:
    session = make_session()
    person = make_person(session, anchor_day=15)
    opened = BudgetPeriodService(session).rollover(person.id, date(2025, 7, 20))
    assert opened.start_date == date(2025, 7, 15)


def test_overdue_people_lists_expired_open_periods() -> None:
    session = make_session()
    person = make_person(session)
    service = BudgetPeriodService(session)
    period = service.start_period(person.id, date(2025, 7, 3))

    assert service.overdue_people(date(2025, 7, 31)) == []
    overdue = service.overdue_people(date(2025, 8, 1))
    assert [(p.id, bp.id) for p, bp in overdue] == [(person.id, period.id)]
