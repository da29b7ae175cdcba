from contextlib import contextmanager
from datetime import date

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

import main
from aggregates import AggregateConsistencyError
from budget import BudgetService
from database import Base
from models import BudgetIntervalType, BudgetSourceType, Contact, PostingKind
from postings import PostingService
from schemas import BudgetPurposeIn, BudgetRuleIn, PostingIn


def _client():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    def override_get_db():
        db = Session(engine)
        try:
            yield db
        finally:
            db.close()

    main.app.dependency_overrides[main.get_db] = override_get_db
    return TestClient(main.app), engine


def test_report_query_returns_points():
    client, engine = _client()
    with Session(engine) as session:
        contact = Contact(owner_user_id=1, name="Grocer")
        session.add(contact)
        session.commit()
        PostingService(session, 1).book(
            PostingIn(
                kind=PostingKind.contact,
                contact_id=contact.id,
                booking_date=date(2025, 3, 5),
                amount_cents=-4200,
            )
        )
        contact_id = contact.id

    response = client.post(
        "/reports/query",
        json={"kind": "contact", "take": 1, "analysis_date": "2025-03-31"},
        headers={"X-User-Id": "1"},
    )

    assert response.status_code == 200
    assert response.json() == [
        {
            "period_start": "2025-03-01",
            "group_key": f"Contact:{contact_id}",
            "group_name": "Grocer",
            "category_name": None,
            "amount_cents": -4200,
            "parent_group_key": None,
            "previous_amount_cents": None,
            "year_ago_amount_cents": None,
        }
    ]


def test_report_query_requires_user_header():
    client, _ = _client()
    response = client.post(
        "/reports/query", json={"kind": "contact", "analysis_date": "2025-03-31"}
    )
    assert response.status_code == 422


def test_consistency_failures_map_to_service_unavailable(monkeypatch):
    client, _ = _client()

    def conflict(self, query):
        raise AggregateConsistencyError("still racing")

    monkeypatch.setattr(main.ReportAggregationService, "query", conflict)
    response = client.post(
        "/reports/query",
        json={"kind": "bank", "analysis_date": "2025-03-31"},
        headers={"X-User-Id": "1"},
    )

    assert response.status_code == 503


def test_planned_values_endpoint():
    client, engine = _client()
    with Session(engine) as session:
        budgets = BudgetService(session, user_id=5)
        purpose = budgets.create_purpose(
            BudgetPurposeIn(
                name="Savings", source_type=BudgetSourceType.savings_plan, source_id=1
            )
        )
        budgets.create_rule(
            BudgetRuleIn(
                budget_purpose_id=purpose.id,
                amount_cents=-250,
                interval=BudgetIntervalType.monthly,
                start_date=date(2026, 2, 1),
            )
        )
        purpose_id = purpose.id

    response = client.get(
        "/budget/planned",
        params={"from": "2026-01", "to": "2026-03", "purpose_id": purpose_id},
        headers={"X-User-Id": "5"},
    )

    assert response.status_code == 200
    assert [(v["period"], v["amount_cents"]) for v in response.json()] == [
        ("2026-01", 0),
        ("2026-02", -250),
        ("2026-03", -250),
    ]

    bad = client.get(
        "/budget/planned",
        params={"from": "2026-13", "to": "2026-03"},
        headers={"X-User-Id": "5"},
    )
    assert bad.status_code == 400
    assert bad.json()["detail"] == "Month must be between 1 and 12"


def test_rebuild_task_lifecycle(monkeypatch):
    client, engine = _client()

    @contextmanager
    def scope():
        session = Session(engine)
        try:
            yield session
            session.commit()
        finally:
            session.close()

    monkeypatch.setattr(main.task_manager, "session_factory", scope)

    created = client.post("/admin/aggregates/rebuild", headers={"X-User-Id": "41"})
    assert created.status_code == 202
    task = created.json()
    assert task["status"] in ("queued", "running", "completed")

    foreign = client.get(f"/tasks/{task['id']}", headers={"X-User-Id": "42"})
    assert foreign.status_code == 404

    main.task_manager.run_rebuild(task["id"])
    status = client.get(f"/tasks/{task['id']}", headers={"X-User-Id": "41"})
    assert status.json()["status"] == "completed"

    second = client.post("/admin/aggregates/rebuild", headers={"X-User-Id": "41"}).json()
    assert second["id"] != task["id"]
    cancelled = client.post(
        f"/tasks/{second['id']}/cancel", headers={"X-User-Id": "41"}
    )
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
