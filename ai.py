from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional
from urllib.error import URLError
from urllib.request import Request, urlopen

from pydantic import ValidationError

from config import Settings, get_settings
from schemas import SpendingInsight


logger = logging.getLogger(__name__)

EMPTY_ANSWER = (
    "I apologize, but I cannot analyze your finances right now. "
    "Please try again later."
)
FAILED_ANSWER = (
    "I apologize, but I cannot process your question right now. "
    "Please check your spending data and try again."
)

INSIGHTS_SYSTEM_PROMPT = (
    "You are an expert personal financial advisor. Always respond with valid "
    "JSON array only. No markdown formatting, no code blocks, no additional text."
)
CHAT_SYSTEM_PROMPT = (
    "You are a friendly personal financial advisor. "
    "Be helpful, encouraging, and specific."
)

_LEADING_FENCE = re.compile(r"^```[a-zA-Z]*\n?")
_TRAILING_FENCE = re.compile(r"\n?```\s*$")


def _insights_prompt(data: dict[str, Any]) -> str:
    return f"""You are a personal financial advisor AI. Analyze this spending data and provide 3-5 actionable insights.

SPENDING DATA:
{json.dumps(data, indent=2, default=str)}

IMPORTANT: Respond with ONLY a valid JSON array. No markdown, no code blocks, no explanations. Just the JSON array.

Format:
[
  {{
    "type": "warning",
    "title": "Brief insight title",
    "description": "Detailed explanation of the pattern/issue",
    "actionable": "Specific action the user can take",
    "savings": 50,
    "category": "budget_category_if_relevant"
  }}
]

Focus on budget overruns, spending patterns, money-saving opportunities, and achievements."""


def _question_prompt(question: str, data: dict[str, Any]) -> str:
    return f"""You are a helpful personal financial advisor. Answer this question about the user's finances.

QUESTION: "{question}"

FINANCIAL DATA:
{json.dumps(data, indent=2, default=str)}

Provide a helpful, conversational answer with specific insights from their data. Include numbers, trends, and actionable advice when relevant. Keep the response under 200 words and friendly in tone."""


def clean_json_response(content: Optional[str]) -> str:
    """Strip markdown fences a model may wrap around its JSON output."""
    if not content:
        return "[]"

    cleaned = content.strip()
    cleaned = _LEADING_FENCE.sub("", cleaned, count=1)
    cleaned = _TRAILING_FENCE.sub("", cleaned, count=1)

    if "```" in cleaned:
        start = cleaned.find("[")
        end = cleaned.rfind("]")
        if start != -1 and end != -1 and end > start:
            cleaned = cleaned[start : end + 1]

    return cleaned.strip()


def parse_insights(content: str) -> list[SpendingInsight]:
    """Parse cleaned model output, keeping only well-formed insights.

    Raises ``ValueError`` when the text is not JSON at all.
    """
    try:
        payload = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ValueError("Model response is not valid JSON") from exc

    if isinstance(payload, dict):
        payload = [payload]
    if not isinstance(payload, list):
        return []

    insights: list[SpendingInsight] = []
    for item in payload:
        if not isinstance(item, dict):
            continue
        try:
            insights.append(SpendingInsight.model_validate(item))
        except ValidationError:
            logger.debug(f"ai_insights: dropped invalid item keys={sorted(item)}")
    return insights


def fallback_insights(data: dict[str, Any]) -> list[SpendingInsight]:
    insights: list[SpendingInsight] = []
    for budget in data.get("budgets") or []:
        percentage = float(budget.get("percentage") or 0)
        if percentage > 100:
            name = budget.get("name", "")
            insights.append(
                SpendingInsight(
                    type="warning",
                    title=f"{name} Budget Exceeded",
                    description=(
                        f"You've spent {percentage:.0f}% of your {name} budget "
                        "this month."
                    ),
                    actionable=(
                        f"Review recent {name} expenses and look for areas to "
                        "cut back."
                    ),
                    category=name,
                )
            )

    if not insights:
        insights.append(
            SpendingInsight(
                type="suggestion",
                title="Start Tracking Expenses",
                description="Add more expenses to get personalized financial insights.",
                actionable="Create budgets and log your daily expenses consistently.",
            )
        )
    return insights


def _post_chat_completion(
    url: str, api_key: str, payload: dict[str, Any], *, timeout: float
) -> dict[str, Any]:
    body = json.dumps(payload).encode("utf-8")
    req = Request(
        url,
        data=body,
        method="POST",
        headers={
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
        },
    )
    try:
        with urlopen(req, timeout=timeout) as resp:
            return json.loads(resp.read().decode("utf-8"))
    except (URLError, TimeoutError, json.JSONDecodeError) as exc:
        raise RuntimeError("Chat completion request failed") from exc


class FinancialAI:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    @property
    def enabled(self) -> bool:
        return bool(self.settings.ai_api_key)

    def _complete(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float,
        max_tokens: int,
    ) -> Optional[str]:
        if not self.enabled:
            raise RuntimeError("AI provider API key is not configured")
        response = _post_chat_completion(
            f"{self.settings.ai_base_url}chat/completions",
            self.settings.ai_api_key or "",
            {
                "model": self.settings.ai_model,
                "messages": messages,
                "temperature": temperature,
                "max_tokens": max_tokens,
            },
            timeout=self.settings.ai_timeout_secs,
        )
        try:
            content = response["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            return None
        return content if isinstance(content, str) else None

    def generate_spending_insights(
        self, data: dict[str, Any]
    ) -> list[SpendingInsight]:
        """Ask the model for insights; degrade to rule-based ones on any failure."""
        try:
            content = self._complete(
                [
                    {"role": "system", "content": INSIGHTS_SYSTEM_PROMPT},
                    {"role": "user", "content": _insights_prompt(data)},
                ],
                temperature=0.7,
                max_tokens=1500,
            )
        except Exception as exc:
            logger.warning(f"ai_insights: fallback reason=request_failed error={exc}")
            return fallback_insights(data)

        if not content:
            logger.warning("ai_insights: fallback reason=empty_response")
            return fallback_insights(data)

        cleaned = clean_json_response(content)
        try:
            insights = parse_insights(cleaned)
        except ValueError:
            logger.warning(
                f"ai_insights: fallback reason=parse_error content={cleaned[:200]!r}"
            )
            return fallback_insights(data)

        if not insights:
            logger.warning("ai_insights: fallback reason=no_valid_insights")
            return fallback_insights(data)

        logger.info(f"ai_insights: parsed count={len(insights)}")
        return insights

    def answer_financial_question(self, question: str, data: dict[str, Any]) -> str:
        try:
            content = self._complete(
                [
                    {"role": "system", "content": CHAT_SYSTEM_PROMPT},
                    {"role": "user", "content": _question_prompt(question, data)},
                ],
                temperature=0.8,
                max_tokens=300,
            )
        except Exception as exc:
            logger.warning(f"ai_chat: request_failed error={exc}")
            return FAILED_ANSWER

        answer = (content or "").strip()
        return answer or EMPTY_ANSWER
