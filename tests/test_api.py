import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from main import app, get_db


@pytest.fixture()
def client():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_person(client, anchor_day: int = 1) -> dict:
    group = client.post("/api/groups", json={"name": "Home"}).json()
    person = client.post(
        "/api/people",
        json={"group_id": group["id"], "name": "Alex", "budget_start_day": anchor_day},
    ).json()
    account = client.post(
        "/api/accounts",
        json={"group_id": group["id"], "name": "Main", "person_ids": [person["id"]]},
    ).json()
    for name in ("Food", "Refunds"):
        client.post("/api/categories", json={"group_id": group["id"], "name": name})
    return {"group": group, "person": person, "account": account}


def test_compute_period_endpoint(client) -> None:
    resp = client.get(
        "/api/periods/compute", params={"anchor_day": 15, "reference": "2025-07-20"}
    )
    assert resp.status_code == 200
    assert resp.json() == {"start": "2025-07-15", "end": "2025-08-15"}


def test_preview_endpoint(client) -> None:
    resp = client.get(
        "/api/periods/preview",
        params={"exception_date": "2025-07-11", "anchor_day": 1},
    )
    assert resp.json() == {"start": "2025-07-11", "end": "2025-08-01"}


def test_invalid_anchor_day_maps_to_422(client) -> None:
    resp = client.get(
        "/api/periods/compute", params={"anchor_day": 31, "reference": "2025-07-20"}
    )
    assert resp.status_code == 422
    body = resp.json()
    assert body["invariant"] == "anchor_day_range"
    assert body["context"] == {"anchor_day": 31}


def test_unknown_person_maps_to_404(client) -> None:
    resp = client.get("/api/people/404")
    assert resp.status_code == 404
    assert resp.json()["invariant"] == "person_exists"


def test_period_lifecycle_over_http(client) -> None:
    ids = make_person(client)
    person_id = ids["person"]["id"]
    base = f"/api/people/{person_id}"

    started = client.post(f"{base}/periods/start", json={"reference_date": "2025-07-03"})
    assert started.status_code == 201
    assert started.json()["start_date"] == "2025-07-01"
    assert started.json()["expected_end"] == "2025-08-01"

    again = client.post(f"{base}/periods/start", json={"reference_date": "2025-07-04"})
    assert again.status_code == 409
    assert again.json()["invariant"] == "single_open_period"

    added = client.post(
        f"{base}/exceptions", json={"exception_date": "2025-07-11", "reason": "salary"}
    )
    assert added.status_code == 201
    exception_id = added.json()["id"]

    periods = client.get(f"{base}/periods").json()
    assert [(p["start_date"], p["end_date"]) for p in periods] == [
        ("2025-07-01", "2025-07-10"),
        ("2025-07-11", None),
    ]

    removed = client.delete(f"{base}/exceptions/{exception_id}")
    assert removed.status_code == 204
    periods = client.get(f"{base}/periods").json()
    assert [(p["start_date"], p["end_date"]) for p in periods] == [("2025-07-01", None)]

    ended = client.post(f"{base}/periods/end", json={"end_date": "2025-07-31"})
    assert ended.json()["is_completed"] is True


def test_totals_and_progress_over_http(client) -> None:
    ids = make_person(client)
    person_id = ids["person"]["id"]
    base = f"/api/people/{person_id}"
    budget = client.post(
        "/api/budgets",
        json={
            "person_id": person_id,
            "description": "Groceries",
            "amount_cents": 50_000,
            "categories": ["Food"],
        },
    ).json()
    period = client.post(f"{base}/periods/start", json={"reference_date": "2025-07-01"}).json()
    client.post(
        "/api/transactions",
        json={
            "description": "Big shop",
            "amount_cents": 62_500,
            "date": "2025-07-05",
            "type": "expense",
            "category": "food",
            "account_id": ids["account"]["id"],
        },
    )

    totals = client.get(f"{base}/periods/{period['id']}/totals").json()
    assert totals["current_spent"] == 62_500
    assert totals["total_saved"] == 0
    assert totals["category_spending"] == {"Food": 62_500}

    progress = client.get(f"{base}/budgets/{budget['id']}/progress").json()
    assert progress["percentage"] == 125.0
    assert progress["is_over_budget"] is True
    assert progress["remaining"] == 12_500


def test_reconciliation_over_http(client) -> None:
    ids = make_person(client)
    account_id = ids["account"]["id"]

    def create(txn_type: str, amount: int, category: str) -> dict:
        return client.post(
            "/api/transactions",
            json={
                "description": f"{txn_type} {amount}",
                "amount_cents": amount,
                "date": "2025-07-10",
                "type": txn_type,
                "category": category,
                "account_id": account_id,
            },
        ).json()

    dinner = create("expense", 10_000, "Food")
    first = create("income", 4_000, "Refunds")
    second = create("income", 6_000, "Refunds")

    candidates = client.get(f"/api/transactions/{dinner['id']}/candidates").json()
    assert {c["id"] for c in candidates} == {first["id"], second["id"]}

    linked = client.post(
        "/api/reconciliations", json={"parent_id": dinner["id"], "child_id": first["id"]}
    ).json()
    assert linked["parent"]["remaining_amount_cents"] == 6_000
    linked = client.post(
        "/api/reconciliations", json={"parent_id": dinner["id"], "child_id": second["id"]}
    ).json()
    assert linked["parent"]["remaining_amount_cents"] == 0
    assert linked["parent"]["is_reconciled"] is True

    self_link = client.post(
        "/api/reconciliations", json={"parent_id": dinner["id"], "child_id": dinner["id"]}
    )
    assert self_link.status_code == 422
    assert self_link.json()["invariant"] == "self_link"

    unlinked = client.delete(f"/api/reconciliations/{first['id']}")
    assert unlinked.json()["parent_transaction_id"] is None
    assert unlinked.json()["remaining_amount_cents"] == 4_000

    again = client.delete(f"/api/reconciliations/{first['id']}")
    assert again.status_code == 409


def test_unknown_category_reports_suggestions(client) -> None:
    ids = make_person(client)
    resp = client.post(
        "/api/transactions",
        json={
            "description": "Mystery",
            "amount_cents": 100,
            "date": "2025-07-10",
            "type": "expense",
            "category": "Gadgets",
            "account_id": ids["account"]["id"],
        },
    )
    assert resp.status_code == 422
    assert resp.json()["invariant"] == "category_registered"


def test_recurring_series_over_http(client) -> None:
    ids = make_person(client)
    created = client.post(
        "/api/recurring-series",
        json={
            "name": "Groceries box",
            "type": "expense",
            "amount_cents": 4_500,
            "category": "Food",
            "account_id": ids["account"]["id"],
            "frequency": "monthly",
            "start_date": "2025-01-01",
        },
    )
    assert created.status_code == 201
    series = created.json()
    assert series["group_id"] == ids["group"]["id"]
    assert series["next_due_date"] == "2025-01-01"

    posted = client.post(
        "/api/recurring-series/execute", params={"as_of": "2025-03-01"}
    )
    assert posted.json() == {"occurrences_posted": 3}

    upcoming = client.get(
        f"/api/recurring-series/{series['id']}/upcoming", params={"count": 2}
    )
    assert upcoming.json() == ["2025-04-01", "2025-05-01"]

    summary = client.get(f"/api/recurring-series/{series['id']}/reconciliation").json()
    assert summary["expected_executions"] == 3
    assert summary["total_paid"] == 13_500
    assert summary["success_rate"] == 100.0

    bad_pause = client.post(
        f"/api/recurring-series/{series['id']}/pause",
        json={"paused": False, "until": "2025-06-01"},
    )
    assert bad_pause.status_code == 422
    assert bad_pause.json()["invariant"] == "pause_until_paused"

    assert client.delete(f"/api/recurring-series/{series['id']}").status_code == 204
    missing = client.get(f"/api/recurring-series/{series['id']}")
    assert missing.status_code == 404
    assert missing.json()["invariant"] == "series_exists"
