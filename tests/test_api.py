import asyncio
import threading

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

import main
from ai import FAILED_ANSWER, FinancialAI
from auth import SESSION_COOKIE, issue_session_token
from cache import MemoryCache
from config import Settings
from database import Database
from main import app, get_ai, get_cache, get_db


def make_settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        cache_url="memory://",
        cache_password=None,
        session_secret="test-secret",
        session_max_age_hours=1,
        ai_api_key=None,
        ai_base_url="https://llm.example/v1/",
        ai_model="test-model",
        ai_timeout_secs=1,
        log_level="INFO",
    )


@pytest.fixture
def client():
    database = Database("sqlite://", poolclass=StaticPool)
    database.create_all()
    cache = MemoryCache()
    ai_client = FinancialAI(make_settings())

    def override_db():
        db = database.session()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_cache] = lambda: cache
    app.dependency_overrides[get_ai] = lambda: ai_client
    yield TestClient(app)
    app.dependency_overrides.clear()
    database.dispose()


def auth(user_id: str = "user_a") -> dict:
    return {"Authorization": f"Bearer {issue_session_token(user_id, f'{user_id}@example.com')}"}


def create_budget(client, name="Food", amount=500, user_id="user_a") -> dict:
    resp = client.post("/api/budgets", json={"name": name, "amount": amount}, headers=auth(user_id))
    assert resp.status_code == 201, resp.text
    return resp.json()


def create_expense(client, budget_id, amount, name="Lunch", user_id="user_a", **extra) -> dict:
    body = {"name": name, "amount": amount, "budgetId": budget_id, **extra}
    resp = client.post("/api/expenses", json=body, headers=auth(user_id))
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_requests_without_a_valid_session_are_rejected(client) -> None:
    assert client.get("/api/budgets").status_code == 401
    assert client.get("/api/dashboard").status_code == 401
    assert (
        client.get("/api/budgets", headers={"Authorization": "Bearer forged"}).status_code
        == 401
    )
    assert client.post("/api/ai/chat", json={"question": "hi"}).status_code == 401


def test_session_cookie_is_accepted(client) -> None:
    client.cookies.set(SESSION_COOKIE, issue_session_token("user_a"))
    resp = client.get("/api/budgets")
    assert resp.status_code == 200
    assert resp.json() == []


def test_budget_stats_reflect_expenses(client) -> None:
    food = create_budget(client, "Food", 500)
    assert food["spent"] == 0
    assert food["icon"] == "💰"

    expense = create_expense(client, food["id"], 50, description="Sandwich")
    assert expense["budget"]["name"] == "Food"
    assert expense["budgetId"] == food["id"]

    budgets = client.get("/api/budgets", headers=auth()).json()
    assert budgets[0]["spent"] == 50
    assert budgets[0]["percentage"] == 10
    assert budgets[0]["remaining"] == 450
    assert budgets[0]["isOverBudget"] is False

    create_expense(client, food["id"], 550, name="Party")
    detail = client.get(f"/api/budgets/{food['id']}", headers=auth()).json()
    assert detail["isOverBudget"] is True
    assert detail["remaining"] == -100
    assert len(detail["expenses"]) == 2


def test_duplicate_budget_names_conflict_per_user(client) -> None:
    create_budget(client, "Food")

    resp = client.post("/api/budgets", json={"name": "Food", "amount": 10}, headers=auth())
    assert resp.status_code == 409

    create_budget(client, "Food", user_id="user_b")


def test_invalid_budget_payloads(client) -> None:
    for body in (
        {"amount": 10},
        {"name": "Food", "amount": 0},
        {"name": "Food", "amount": -5},
        {"name": "", "amount": 5},
    ):
        resp = client.post("/api/budgets", json=body, headers=auth())
        assert resp.status_code == 400, body

    resp = client.post(
        "/api/budgets",
        content=b"{not json",
        headers={**auth(), "Content-Type": "application/json"},
    )
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Invalid JSON body"


def test_budget_delete_requires_no_expenses(client) -> None:
    food = create_budget(client)
    lunch = create_expense(client, food["id"], 12.5)

    resp = client.delete(f"/api/budgets/{food['id']}", headers=auth())
    assert resp.status_code == 409
    assert "Delete expenses first" in resp.json()["detail"]

    assert client.delete(f"/api/expenses/{lunch['id']}", headers=auth()).status_code == 200
    assert client.delete(f"/api/budgets/{food['id']}", headers=auth()).status_code == 200
    assert client.get("/api/budgets", headers=auth()).json() == []


def test_other_users_resources_are_not_found(client) -> None:
    food = create_budget(client)
    lunch = create_expense(client, food["id"], 10)

    other = auth("user_b")
    assert client.get(f"/api/budgets/{food['id']}", headers=other).status_code == 404
    assert client.get(f"/api/expenses/{lunch['id']}", headers=other).status_code == 404
    assert client.delete(f"/api/expenses/{lunch['id']}", headers=other).status_code == 404
    resp = client.post(
        "/api/expenses",
        json={"name": "Sneaky", "amount": 1, "budgetId": food["id"]},
        headers=other,
    )
    assert resp.status_code == 404
    assert client.get("/api/expenses", headers=other).json() == []


def test_expense_update(client) -> None:
    food = create_budget(client, "Food")
    fun = create_budget(client, "Fun", 100)
    movie = create_expense(client, food["id"], 12)

    resp = client.put(
        f"/api/expenses/{movie['id']}",
        json={"name": "Movie", "amount": 15, "budgetId": fun["id"]},
        headers=auth(),
    )
    assert resp.status_code == 200
    assert resp.json()["budget"]["name"] == "Fun"
    assert client.get("/api/expenses", headers=auth()).json()[0]["amount"] == 15


def test_current_month_report_is_invalidated_by_writes(client) -> None:
    food = create_budget(client)
    assert client.get("/api/reports/monthly", headers=auth()).json()["totalExpenses"] == 0

    create_expense(client, food["id"], 50)

    report = client.get("/api/reports/monthly", headers=auth()).json()
    assert report["totalExpenses"] == 50
    assert report["topCategories"][0]["category"] == "Food"
    assert client.get("/api/reports/yearly", headers=auth()).json()["totalExpenses"] == 50


def test_past_month_report_stays_cached_after_backdated_write(client) -> None:
    food = create_budget(client)
    create_expense(client, food["id"], 50, createdAt="2024-01-15T12:00:00")

    first = client.get("/api/reports/monthly?month=2024-01", headers=auth()).json()
    assert first["period"] == "January 2024"
    assert first["totalExpenses"] == 50

    create_expense(client, food["id"], 25, createdAt="2024-01-20T12:00:00")
    again = client.get("/api/reports/monthly?month=2024-01", headers=auth()).json()
    assert again == first


def test_report_parameters_are_validated(client) -> None:
    assert client.get("/api/reports/monthly?month=2024-13", headers=auth()).status_code == 400
    assert client.get("/api/reports/monthly?month=January", headers=auth()).status_code == 400
    assert client.get("/api/reports/yearly?year=soon", headers=auth()).status_code == 400
    assert client.get("/api/reports/monthly?month=0001-01", headers=auth()).status_code == 400
    assert client.get("/api/reports/monthly?month=9999-12", headers=auth()).status_code == 400
    resp = client.post(
        "/api/reports/export-pdf",
        json={"reportType": "monthly", "month": "9999-12"},
        headers=auth(),
    )
    assert resp.status_code == 400


def test_yearly_report_without_budgets(client) -> None:
    report = client.get("/api/reports/yearly?year=2024", headers=auth()).json()
    assert report["year"] == 2024
    assert report["budgetAnalysis"]["averageUtilization"] == 0
    assert len(report["monthlyBreakdown"]) == 12


def test_dashboard_refreshes_after_expense(client) -> None:
    food = create_budget(client)
    before = client.get("/api/dashboard", headers=auth()).json()
    assert before["totalSpent"] == 0
    assert before["totalBudget"] == 500

    create_expense(client, food["id"], 125)

    after = client.get("/api/dashboard", headers=auth()).json()
    assert after["totalSpent"] == 125
    assert after["spentPercentage"] == 25
    assert after["recentExpenses"][0]["name"] == "Lunch"


def test_analytics(client) -> None:
    food = create_budget(client)
    create_expense(client, food["id"], 80)

    data = client.get("/api/analytics?months=3", headers=auth()).json()
    assert set(data) == {
        "monthlySpending",
        "categoryBreakdown",
        "budgetComparison",
        "dailySpending",
        "metrics",
    }
    assert data["metrics"]["totalSpent"] == 80
    assert client.get("/api/analytics?months=abc", headers=auth()).status_code == 400


def test_export_pdf(client, monkeypatch) -> None:
    rendered = {}

    def fake_render(html, base_url):
        rendered["html"] = html
        return b"%PDF-1.4 fake"

    monkeypatch.setattr(main, "render_pdf", fake_render)
    food = create_budget(client, "Groceries")
    create_expense(client, food["id"], 1234, createdAt="2024-03-05T10:00:00")

    resp = client.post(
        "/api/reports/export-pdf",
        json={"reportType": "monthly", "month": "2024-03"},
        headers=auth(),
    )

    assert resp.status_code == 200
    assert resp.headers["content-type"] == "application/pdf"
    assert (
        resp.headers["content-disposition"]
        == 'attachment; filename="finansync-report-monthly-2024-03.pdf"'
    )
    assert resp.content == b"%PDF-1.4 fake"
    assert "March 2024" in rendered["html"]
    assert "Groceries" in rendered["html"]
    assert "$1,234.00" in rendered["html"]


def test_export_pdf_yearly_and_failures(client, monkeypatch) -> None:
    monkeypatch.setattr(main, "render_pdf", lambda html, base_url: b"%PDF yearly")
    resp = client.post(
        "/api/reports/export-pdf", json={"reportType": "yearly", "year": 2024}, headers=auth()
    )
    assert resp.status_code == 200
    assert "finansync-report-yearly-2024.pdf" in resp.headers["content-disposition"]

    resp = client.post(
        "/api/reports/export-pdf", json={"reportType": "weekly"}, headers=auth()
    )
    assert resp.status_code == 400

    def broken_render(html, base_url):
        raise OSError("no fonts")

    monkeypatch.setattr(main, "render_pdf", broken_render)
    resp = client.post("/api/reports/export-pdf", json={}, headers=auth())
    assert resp.status_code == 500
    assert resp.json()["detail"] == "Failed to generate PDF"


def test_ai_insights_fall_back_without_provider(client) -> None:
    food = create_budget(client, "Food", 100)
    create_expense(client, food["id"], 150)

    data = client.get("/api/ai/insights", headers=auth()).json()

    assert data["insights"][0]["type"] == "warning"
    assert data["insights"][0]["title"] == "Food Budget Exceeded"


def test_ai_chat(client) -> None:
    resp = client.post("/api/ai/chat", json={}, headers=auth())
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Question is required"

    resp = client.post("/api/ai/chat", json={"question": "   "}, headers=auth())
    assert resp.status_code == 400

    resp = client.post("/api/ai/chat", json={"question": "How am I doing?"}, headers=auth())
    assert resp.status_code == 200
    assert resp.json() == {"answer": FAILED_ANSWER}


def test_chat_does_not_block_other_requests(client) -> None:
    release = threading.Event()

    class SlowAI:
        def answer_financial_question(self, question, data):
            return "released" if release.wait(timeout=2) else "timed out"

    app.dependency_overrides[get_ai] = lambda: SlowAI()
    assert client.get("/api/budgets", headers=auth()).status_code == 200

    async def scenario():
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
            chat = asyncio.create_task(
                http.post("/api/ai/chat", json={"question": "Where?"}, headers=auth())
            )
            await asyncio.sleep(0.1)
            budgets = await http.get("/api/budgets", headers=auth())
            release.set()
            return budgets, await chat

    budgets, chat = asyncio.run(scenario())

    assert budgets.status_code == 200
    assert chat.json() == {"answer": "released"}
