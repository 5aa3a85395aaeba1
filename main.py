import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from database import SessionLocal
from errors import DomainError
from models import (
    Account,
    Budget,
    BudgetException,
    BudgetPeriod,
    Category,
    Group,
    Person,
    RecurringSeries,
    Transaction,
)
from periods import Period, compute_period, local_today, preview_exception
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    BudgetExceptionIn,
    BudgetIn,
    BudgetUpdate,
    CategoryIn,
    CategoryRename,
    GroupIn,
    LinkIn,
    PeriodEndIn,
    PeriodStartIn,
    PersonIn,
    PersonUpdate,
    RecurringSeriesIn,
    SeriesPauseIn,
    TransactionIn,
)
from services import (
    AccountService,
    BudgetPeriodService,
    BudgetService,
    CategoryService,
    GroupService,
    PersonService,
    ReconciliationService,
    RecurringSeriesService,
    TransactionService,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Spendcycle")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(DomainError)
def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    logger.info(
        f"request_rejected: path={request.url.path} invariant={exc.invariant} "
        f"status={exc.status_code}"
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def group_dict(group: Group) -> dict:
    return {"id": group.id, "name": group.name}


def person_dict(person: Person) -> dict:
    return {
        "id": person.id,
        "group_id": person.group_id,
        "name": person.name,
        "budget_start_day": person.budget_start_day,
    }


def account_dict(account: Account) -> dict:
    return {
        "id": account.id,
        "group_id": account.group_id,
        "name": account.name,
        "person_ids": [p.id for p in account.people],
    }


def category_dict(category: Category) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "archived": category.archived_at is not None,
        "is_transfer": category.is_transfer,
    }


def budget_dict(budget: Budget) -> dict:
    return {
        "id": budget.id,
        "person_id": budget.person_id,
        "description": budget.description,
        "amount_cents": budget.amount_cents,
        "categories": [c.name for c in budget.categories],
    }


def transaction_dict(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "description": txn.description,
        "date": txn.date.isoformat(),
        "type": txn.type.value,
        "amount_cents": txn.amount_cents,
        "category": txn.category.name if txn.category else None,
        "account_id": txn.account_id,
        "to_account_id": txn.to_account_id,
        "is_reconciled": txn.is_reconciled,
        "parent_transaction_id": txn.parent_transaction_id,
        "remaining_amount_cents": txn.remaining_amount_cents,
        "recurring_series_id": txn.recurring_series_id,
        "occurrence_date": _iso(txn.occurrence_date),
        "deleted": txn.deleted_at is not None,
    }


def series_dict(series: RecurringSeries) -> dict:
    return {
        "id": series.id,
        "group_id": series.group_id,
        "name": series.name,
        "description": series.description,
        "type": series.type.value,
        "amount_cents": series.amount_cents,
        "category": series.category.name if series.category else None,
        "account_id": series.account_id,
        "to_account_id": series.to_account_id,
        "frequency": series.frequency.value,
        "month_day_policy": series.month_day_policy.value,
        "start_date": series.start_date.isoformat(),
        "end_date": _iso(series.end_date),
        "next_due_date": series.next_due_date.isoformat(),
        "is_active": series.is_active,
        "is_paused": series.is_paused,
        "pause_until": _iso(series.pause_until),
        "auto_execute": series.auto_execute,
        "skip_weekends": series.skip_weekends,
        "total_executions": series.total_executions,
        "failed_executions": series.failed_executions,
        "last_executed_date": _iso(series.last_executed_date),
    }


def period_dict(period: BudgetPeriod, window: Period) -> dict:
    return {
        "id": period.id,
        "start_date": period.start_date.isoformat(),
        "end_date": _iso(period.end_date),
        "expected_end": window.end.isoformat(),
        "is_completed": period.is_completed,
    }


def exception_dict(exception: BudgetException) -> dict:
    return {
        "id": exception.id,
        "period_id": exception.period_id,
        "exception_date": exception.exception_date.isoformat(),
        "reason": exception.reason,
        "is_consumed": exception.is_consumed,
    }


@app.get("/api/periods/compute")
def api_compute_period(
    anchor_day: int,
    reference: Optional[date] = None,
    exception: Optional[date] = None,
):
    period = compute_period(reference or local_today(), anchor_day, exception)
    return period.as_dict()


@app.get("/api/periods/preview")
def api_preview_period(exception_date: date, anchor_day: int):
    return preview_exception(exception_date, anchor_day).as_dict()


@app.post("/api/groups", status_code=201)
def api_create_group(payload: GroupIn, db: Session = Depends(get_db)):
    return group_dict(GroupService(db).create(payload))


@app.get("/api/groups/{group_id}/people")
def api_list_people(group_id: int, db: Session = Depends(get_db)):
    GroupService(db).get(group_id)
    return [person_dict(p) for p in PersonService(db).list_for_group(group_id)]


@app.get("/api/groups/{group_id}/accounts")
def api_list_accounts(group_id: int, db: Session = Depends(get_db)):
    GroupService(db).get(group_id)
    return [account_dict(a) for a in AccountService(db).list_for_group(group_id)]


@app.get("/api/groups/{group_id}/categories")
def api_list_categories(
    group_id: int, include_archived: bool = False, db: Session = Depends(get_db)
):
    GroupService(db).get(group_id)
    categories = CategoryService(db).list_all(group_id, include_archived=include_archived)
    return [category_dict(c) for c in categories]


@app.post("/api/people", status_code=201)
def api_create_person(payload: PersonIn, db: Session = Depends(get_db)):
    return person_dict(PersonService(db).create(payload))


@app.get("/api/people/{person_id}")
def api_get_person(person_id: int, db: Session = Depends(get_db)):
    return person_dict(PersonService(db).get(person_id))


@app.patch("/api/people/{person_id}")
def api_update_person(
    person_id: int, payload: PersonUpdate, db: Session = Depends(get_db)
):
    return person_dict(PersonService(db).update(person_id, payload))


@app.post("/api/accounts", status_code=201)
def api_create_account(payload: AccountIn, db: Session = Depends(get_db)):
    return account_dict(AccountService(db).create(payload))


@app.post("/api/categories", status_code=201)
def api_create_category(payload: CategoryIn, db: Session = Depends(get_db)):
    return category_dict(CategoryService(db).create(payload))


@app.post("/api/categories/{category_id}/rename")
def api_rename_category(
    category_id: int, payload: CategoryRename, db: Session = Depends(get_db)
):
    return category_dict(CategoryService(db).rename(category_id, payload.name))


@app.post("/api/categories/{category_id}/archive", status_code=204)
def api_archive_category(category_id: int, db: Session = Depends(get_db)):
    CategoryService(db).archive(category_id)
    return Response(status_code=204)


@app.post("/api/categories/{category_id}/restore", status_code=204)
def api_restore_category(category_id: int, db: Session = Depends(get_db)):
    CategoryService(db).restore(category_id)
    return Response(status_code=204)


@app.post("/api/budgets", status_code=201)
def api_create_budget(payload: BudgetIn, db: Session = Depends(get_db)):
    return budget_dict(BudgetService(db).create(payload))


@app.patch("/api/budgets/{budget_id}")
def api_update_budget(
    budget_id: int, payload: BudgetUpdate, db: Session = Depends(get_db)
):
    return budget_dict(BudgetService(db).update(budget_id, payload))


@app.delete("/api/budgets/{budget_id}", status_code=204)
def api_delete_budget(budget_id: int, db: Session = Depends(get_db)):
    BudgetService(db).delete(budget_id)
    return Response(status_code=204)


@app.get("/api/people/{person_id}/budgets")
def api_list_budgets(person_id: int, db: Session = Depends(get_db)):
    return [budget_dict(b) for b in BudgetService(db).list_for_person(person_id)]


@app.get("/api/people/{person_id}/budgets/{budget_id}/progress")
def api_budget_progress(
    person_id: int,
    budget_id: int,
    period_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    period = None
    if period_id is not None:
        period = BudgetPeriodService(db).get_period(person_id, period_id)
    data = BudgetService(db).calculate_budget_data(person_id, budget_id, period)
    return {
        "budget_id": data.budget_id,
        "amount_cents": data.amount_cents,
        "current_spent": data.current_spent,
        "percentage": data.percentage,
        "percentage_undefined": data.percentage_undefined,
        "remaining": data.remaining,
        "is_over_budget": data.is_over_budget,
        "period_start": data.period_start.isoformat(),
        "period_end": _iso(data.period_end),
        "is_completed": data.is_completed,
    }


@app.post("/api/transactions", status_code=201)
def api_create_transaction(payload: TransactionIn, db: Session = Depends(get_db)):
    return transaction_dict(TransactionService(db).create(payload))


@app.get("/api/transactions/{transaction_id}")
def api_get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    return transaction_dict(TransactionService(db).get(transaction_id))


@app.put("/api/transactions/{transaction_id}")
def api_update_transaction(
    transaction_id: int, payload: TransactionIn, db: Session = Depends(get_db)
):
    return transaction_dict(TransactionService(db).update(transaction_id, payload))


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def api_delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    TransactionService(db).soft_delete(transaction_id)
    return Response(status_code=204)


@app.post("/api/transactions/{transaction_id}/restore")
def api_restore_transaction(transaction_id: int, db: Session = Depends(get_db)):
    service = TransactionService(db)
    service.restore(transaction_id)
    return transaction_dict(service.get(transaction_id))


@app.get("/api/people/{person_id}/transactions")
def api_person_transactions(
    person_id: int,
    start: Optional[date] = None,
    end: Optional[date] = None,
    db: Session = Depends(get_db),
):
    PersonService(db).get(person_id)
    txns = TransactionService(db).list_for_person(person_id, start, end)
    return [transaction_dict(t) for t in txns]


@app.get("/api/transactions/{transaction_id}/candidates")
def api_link_candidates(
    transaction_id: int, limit: int = 50, db: Session = Depends(get_db)
):
    limit = min(max(limit, 1), 100)
    candidates = ReconciliationService(db).linkable_candidates(transaction_id, limit)
    return [transaction_dict(t) for t in candidates]


@app.post("/api/reconciliations")
def api_link(payload: LinkIn, db: Session = Depends(get_db)):
    service = ReconciliationService(db)
    child = service.link(payload.parent_id, payload.child_id)
    parent = TransactionService(db).get(payload.parent_id)
    return {"child": transaction_dict(child), "parent": transaction_dict(parent)}


@app.delete("/api/reconciliations/{child_id}")
def api_unlink(child_id: int, db: Session = Depends(get_db)):
    child = ReconciliationService(db).unlink(child_id)
    return transaction_dict(child)


@app.get("/api/people/{person_id}/periods")
def api_list_periods(person_id: int, db: Session = Depends(get_db)):
    service = BudgetPeriodService(db)
    return [period_dict(p, service.window(p)) for p in service.list_periods(person_id)]


@app.post("/api/people/{person_id}/periods/start", status_code=201)
def api_start_period(
    person_id: int, payload: PeriodStartIn, db: Session = Depends(get_db)
):
    service = BudgetPeriodService(db)
    period = service.start_period(person_id, payload.reference_date)
    return period_dict(period, service.window(period))


@app.post("/api/people/{person_id}/periods/end")
def api_end_period(person_id: int, payload: PeriodEndIn, db: Session = Depends(get_db)):
    service = BudgetPeriodService(db)
    period = service.end_period(person_id, payload.end_date)
    return period_dict(period, service.window(period))


@app.post("/api/people/{person_id}/periods/rollover")
def api_rollover(
    person_id: int, as_of: Optional[date] = None, db: Session = Depends(get_db)
):
    service = BudgetPeriodService(db)
    period = service.rollover(person_id, as_of)
    if period is None:
        return {"rolled_over": False, "period": None}
    return {"rolled_over": True, "period": period_dict(period, service.window(period))}


@app.get("/api/people/{person_id}/periods/{period_id}/totals")
def api_period_totals(person_id: int, period_id: int, db: Session = Depends(get_db)):
    period = BudgetPeriodService(db).get_period(person_id, period_id)
    totals = BudgetService(db).calculate_period_totals(person_id, period)
    return {
        "period_id": period.id,
        "current_spent": totals.current_spent,
        "total_saved": totals.total_saved,
        "category_spending": totals.category_spending,
    }


@app.get("/api/people/{person_id}/exceptions/preview")
def api_preview_exception(
    person_id: int, exception_date: date, db: Session = Depends(get_db)
):
    return BudgetPeriodService(db).preview_exception(person_id, exception_date).as_dict()


@app.get("/api/people/{person_id}/exceptions")
def api_list_exceptions(person_id: int, db: Session = Depends(get_db)):
    exceptions = BudgetPeriodService(db).list_exceptions(person_id)
    return [exception_dict(e) for e in exceptions]


@app.post("/api/people/{person_id}/exceptions", status_code=201)
def api_add_exception(
    person_id: int, payload: BudgetExceptionIn, db: Session = Depends(get_db)
):
    exception = BudgetPeriodService(db).add_exception(
        person_id, payload.exception_date, payload.reason
    )
    return exception_dict(exception)


@app.delete("/api/people/{person_id}/exceptions/{exception_id}", status_code=204)
def api_remove_exception(
    person_id: int, exception_id: int, db: Session = Depends(get_db)
):
    BudgetPeriodService(db).remove_exception(person_id, exception_id)
    return Response(status_code=204)


@app.get("/api/groups/{group_id}/recurring-series")
def api_list_series(
    group_id: int, include_inactive: bool = True, db: Session = Depends(get_db)
):
    series = RecurringSeriesService(db).list_for_group(group_id, include_inactive)
    return [series_dict(s) for s in series]


@app.get("/api/groups/{group_id}/recurring-series/missed")
def api_missed_series(group_id: int, db: Session = Depends(get_db)):
    return [
        {"series": series_dict(series), "missed_count": missed}
        for series, missed in RecurringSeriesService(db).missed_series(group_id)
    ]


@app.post("/api/recurring-series", status_code=201)
def api_create_series(payload: RecurringSeriesIn, db: Session = Depends(get_db)):
    return series_dict(RecurringSeriesService(db).create(payload))


@app.post("/api/recurring-series/execute")
def api_execute_due_series(
    as_of: Optional[date] = None, db: Session = Depends(get_db)
):
    return {"occurrences_posted": RecurringSeriesService(db).execute_due(as_of)}


@app.get("/api/recurring-series/{series_id}")
def api_get_series(series_id: int, db: Session = Depends(get_db)):
    return series_dict(RecurringSeriesService(db).get(series_id))


@app.put("/api/recurring-series/{series_id}")
def api_update_series(
    series_id: int, payload: RecurringSeriesIn, db: Session = Depends(get_db)
):
    return series_dict(RecurringSeriesService(db).update(series_id, payload))


@app.delete("/api/recurring-series/{series_id}", status_code=204)
def api_delete_series(series_id: int, db: Session = Depends(get_db)):
    RecurringSeriesService(db).delete(series_id)
    return Response(status_code=204)


@app.post("/api/recurring-series/{series_id}/pause")
def api_pause_series(
    series_id: int, payload: SeriesPauseIn, db: Session = Depends(get_db)
):
    series = RecurringSeriesService(db).set_paused(
        series_id, payload.paused, payload.until
    )
    return series_dict(series)


@app.post("/api/recurring-series/{series_id}/execute")
def api_execute_series(
    series_id: int, as_of: Optional[date] = None, db: Session = Depends(get_db)
):
    service = RecurringSeriesService(db)
    posted = service.execute(series_id, as_of)
    return {"occurrences_posted": posted, "series": series_dict(service.get(series_id))}


@app.get("/api/recurring-series/{series_id}/upcoming")
def api_upcoming_series(series_id: int, count: int = 5, db: Session = Depends(get_db)):
    dates = RecurringSeriesService(db).upcoming(series_id, count)
    return [d.isoformat() for d in dates]


@app.get("/api/recurring-series/{series_id}/reconciliation")
def api_series_reconciliation(series_id: int, db: Session = Depends(get_db)):
    summary = RecurringSeriesService(db).reconciliation(series_id)
    return {
        "series_id": summary.series_id,
        "expected_executions": summary.expected_executions,
        "actual_executions": summary.actual_executions,
        "missed_payments": summary.missed_payments,
        "total_paid": summary.total_paid,
        "expected_total": summary.expected_total,
        "difference": summary.difference,
        "success_rate": summary.success_rate,
    }
