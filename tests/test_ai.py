import json
from datetime import date, datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import ai
from ai import (
    EMPTY_ANSWER,
    FAILED_ANSWER,
    FinancialAI,
    clean_json_response,
    fallback_insights,
    parse_insights,
)
from cache import MemoryCache, user_key
from config import Settings
from database import Base
from schemas import BudgetIn, ExpenseIn, SpendingInsight
from services import BudgetService, ExpenseService, InsightsService, UserService


def make_settings(api_key="test-key") -> Settings:
    return Settings(
        database_url="sqlite://",
        cache_url="memory://",
        cache_password=None,
        session_secret="test-secret",
        session_max_age_hours=1,
        ai_api_key=api_key,
        ai_base_url="https://llm.example/v1/",
        ai_model="test-model",
        ai_timeout_secs=1,
        log_level="INFO",
    )


def completion(content) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


OVER_BUDGET_DATA = {
    "budgets": [
        {"name": "Food", "amount": 100, "spent": 150, "percentage": 150.0},
        {"name": "Rent", "amount": 1000, "spent": 900, "percentage": 90.0},
    ],
    "expenses": [],
    "monthlySpending": [],
}


def test_clean_json_response_strips_fences() -> None:
    assert clean_json_response('```json\n[{"a": 1}]\n```') == '[{"a": 1}]'
    assert clean_json_response("```\n[]\n```") == "[]"
    assert clean_json_response("  [1, 2]  ") == "[1, 2]"
    assert clean_json_response("") == "[]"
    assert clean_json_response(None) == "[]"


def test_clean_json_response_extracts_embedded_array() -> None:
    content = 'Sure, here you go:\n```json\n[{"title": "x"}]\n```'
    assert clean_json_response(content) == '[{"title": "x"}]'


def test_parse_insights_drops_invalid_items() -> None:
    content = json.dumps(
        [
            {
                "type": "warning",
                "title": "Dining out",
                "description": "Restaurants doubled this month.",
                "actionable": "Cook twice a week.",
                "savings": 80,
                "category": "Food",
            },
            {"type": "warning", "title": "No description"},
            {
                "type": "prophecy",
                "title": "Bad type",
                "description": "d",
                "actionable": "a",
            },
            "not an object",
        ]
    )

    insights = parse_insights(content)

    assert len(insights) == 1
    assert insights[0].title == "Dining out"
    assert insights[0].savings == 80


def test_parse_insights_wraps_single_object() -> None:
    content = json.dumps(
        {"title": "Nice", "description": "Under budget.", "actionable": "Keep going."}
    )
    insights = parse_insights(content)
    assert len(insights) == 1
    assert insights[0].type == "suggestion"


def test_parse_insights_keeps_items_with_loose_savings() -> None:
    base = {
        "type": "suggestion",
        "title": "Cook at home",
        "description": "Dining out doubled.",
        "actionable": "Cook twice a week.",
    }
    content = json.dumps(
        [
            {**base, "savings": "about $50"},
            {**base, "savings": "$1,250.50", "category": 7},
            {**base, "savings": True},
        ]
    )

    insights = parse_insights(content)

    assert len(insights) == 3
    assert insights[0].savings is None
    assert insights[1].savings == 1250.5
    assert insights[1].category is None
    assert insights[2].savings is None


def test_generate_insights_keeps_insight_with_text_savings(monkeypatch) -> None:
    monkeypatch.setattr(
        ai,
        "_post_chat_completion",
        lambda *a, **kw: completion(
            '[{"type":"suggestion","title":"Cook at home",'
            '"description":"Dining out doubled.","actionable":"Cook twice a week.",'
            '"savings":"about $50"}]'
        ),
    )

    insights = FinancialAI(make_settings()).generate_spending_insights(OVER_BUDGET_DATA)

    assert [i.title for i in insights] == ["Cook at home"]


def test_parse_insights_rejects_non_json() -> None:
    with pytest.raises(ValueError):
        parse_insights("this is not json")


def test_fallback_insights_warn_about_exceeded_budgets() -> None:
    insights = fallback_insights(OVER_BUDGET_DATA)
    assert len(insights) == 1
    assert insights[0].type == "warning"
    assert insights[0].title == "Food Budget Exceeded"
    assert "150%" in insights[0].description
    assert insights[0].category == "Food"


def test_fallback_insights_without_overspending() -> None:
    insights = fallback_insights({"budgets": [], "expenses": []})
    assert [i.title for i in insights] == ["Start Tracking Expenses"]
    assert insights[0].type == "suggestion"


def test_generate_insights_uses_model_output(monkeypatch) -> None:
    calls = []

    def fake_post(url, api_key, payload, *, timeout):
        calls.append((url, api_key, payload))
        return completion(
            '```json\n[{"type": "achievement", "title": "Rent on track", '
            '"description": "Rent stayed at 90%.", "actionable": "Keep it up."}]\n```'
        )

    monkeypatch.setattr(ai, "_post_chat_completion", fake_post)

    insights = FinancialAI(make_settings()).generate_spending_insights(OVER_BUDGET_DATA)

    assert [i.title for i in insights] == ["Rent on track"]
    url, api_key, payload = calls[0]
    assert url == "https://llm.example/v1/chat/completions"
    assert api_key == "test-key"
    assert payload["model"] == "test-model"
    assert payload["max_tokens"] == 1500
    assert payload["messages"][0]["role"] == "system"
    assert '"Food"' in payload["messages"][1]["content"]


@pytest.mark.parametrize(
    "response",
    [
        completion("definitely not json"),
        completion(""),
        completion(None),
        completion('[{"title": "missing fields"}]'),
        {"error": {"message": "quota exceeded"}},
    ],
)
def test_generate_insights_falls_back_on_bad_output(monkeypatch, response) -> None:
    monkeypatch.setattr(ai, "_post_chat_completion", lambda *a, **kw: response)

    insights = FinancialAI(make_settings()).generate_spending_insights(OVER_BUDGET_DATA)

    assert [i.title for i in insights] == ["Food Budget Exceeded"]


def test_generate_insights_falls_back_when_request_fails(monkeypatch) -> None:
    def failing_post(*args, **kwargs):
        raise RuntimeError("Chat completion request failed")

    monkeypatch.setattr(ai, "_post_chat_completion", failing_post)

    insights = FinancialAI(make_settings()).generate_spending_insights({"budgets": []})

    assert [i.title for i in insights] == ["Start Tracking Expenses"]


def test_disabled_client_never_calls_the_provider(monkeypatch) -> None:
    def unexpected(*args, **kwargs):
        raise AssertionError("provider should not be called")

    monkeypatch.setattr(ai, "_post_chat_completion", unexpected)
    client = FinancialAI(make_settings(api_key=None))

    assert client.enabled is False
    assert client.generate_spending_insights(OVER_BUDGET_DATA)[0].type == "warning"
    assert client.answer_financial_question("How am I doing?", OVER_BUDGET_DATA) == FAILED_ANSWER


def test_answer_financial_question(monkeypatch) -> None:
    seen = {}

    def fake_post(url, api_key, payload, *, timeout):
        seen.update(payload)
        return completion("  You spent most on Food.  ")

    monkeypatch.setattr(ai, "_post_chat_completion", fake_post)

    answer = FinancialAI(make_settings()).answer_financial_question(
        "Where does my money go?", OVER_BUDGET_DATA
    )

    assert answer == "You spent most on Food."
    assert seen["max_tokens"] == 300
    assert "Where does my money go?" in seen["messages"][1]["content"]


def test_answer_apologises_on_empty_or_failed_response(monkeypatch) -> None:
    monkeypatch.setattr(ai, "_post_chat_completion", lambda *a, **kw: completion(""))
    assert FinancialAI(make_settings()).answer_financial_question("q", {}) == EMPTY_ANSWER

    def failing_post(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(ai, "_post_chat_completion", failing_post)
    assert FinancialAI(make_settings()).answer_financial_question("q", {}) == FAILED_ANSWER


class CountingAI:
    def __init__(self) -> None:
        self.calls = []

    def generate_spending_insights(self, data):
        self.calls.append(data)
        return [
            SpendingInsight(
                type="trend",
                title="Steady spending",
                description="Spending is flat.",
                actionable="Nothing to change.",
            )
        ]


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = SessionLocal()
    UserService(session).ensure("user_a")
    return session


def test_financial_data_shape() -> None:
    session = make_session()
    food = BudgetService(session, "user_a").create(BudgetIn(name="Food", amount=200))
    ExpenseService(session, "user_a").create(
        ExpenseIn(
            name="Groceries",
            amount=50,
            budget_id=food["id"],
            created_at=datetime(2025, 2, 3, 10, 0),
        )
    )

    data = InsightsService(session, MemoryCache(), CountingAI(), "user_a").financial_data()

    assert data["budgets"] == [
        {"name": "Food", "amount": 200, "spent": 50, "percentage": 25}
    ]
    assert data["expenses"] == [
        {
            "name": "Groceries",
            "amount": 50,
            "category": "Food",
            "date": "2025-02-03T10:00:00",
        }
    ]
    assert data["monthlySpending"] == [{"month": "2025-02", "amount": 50}]


def test_spending_insights_are_cached_per_month() -> None:
    session = make_session()
    cache = MemoryCache()
    counting = CountingAI()
    service = InsightsService(session, cache, counting, "user_a")

    first = service.spending_insights(today=date(2025, 2, 10))
    second = service.spending_insights(today=date(2025, 2, 11))

    assert first == second == [
        {
            "type": "trend",
            "title": "Steady spending",
            "description": "Spending is flat.",
            "actionable": "Nothing to change.",
        }
    ]
    assert len(counting.calls) == 1
    assert cache.get(user_key("user_a", "ai-insights", "2025-02")) == first

    service.spending_insights(today=date(2025, 3, 1))
    assert len(counting.calls) == 2
