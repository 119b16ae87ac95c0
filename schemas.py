import math
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _round_to_cents(value: Decimal) -> Decimal:
    rounded = value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    if rounded <= 0:
        raise ValueError("Amount must be greater than 0")
    return rounded


class BudgetIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=100)
    amount: Decimal = Field(..., gt=0, max_digits=12)
    icon: Optional[str] = Field(default=None, max_length=16)
    color: Optional[str] = Field(default=None, max_length=9)

    @field_validator("amount")
    @classmethod
    def _amount_in_cents(cls, value: Decimal) -> Decimal:
        return _round_to_cents(value)


class ExpenseIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=120)
    amount: Decimal = Field(..., gt=0, max_digits=12)
    budget_id: int = Field(..., alias="budgetId")
    description: Optional[str] = Field(default=None, max_length=500)
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")

    @field_validator("amount")
    @classmethod
    def _amount_in_cents(cls, value: Decimal) -> Decimal:
        return _round_to_cents(value)


class ChatQuestionIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    question: str = Field(..., min_length=1, max_length=1000)


class ReportExportIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    report_type: Literal["monthly", "yearly"] = Field(
        default="monthly", alias="reportType"
    )
    month: Optional[str] = Field(default=None, pattern=r"^\d{4}-\d{2}$")
    year: Optional[int] = Field(default=None, ge=1970, le=3000)


class SpendingInsight(BaseModel):
    """One model-generated insight, validated before it reaches a client."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    type: Literal["warning", "suggestion", "achievement", "trend"] = "suggestion"
    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    actionable: str = Field(..., min_length=1)
    savings: Optional[float] = None
    category: Optional[str] = None

    @field_validator("savings", mode="before")
    @classmethod
    def _lenient_savings(cls, value: Any) -> Optional[float]:
        # unparseable figures become None
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, str):
            value = value.strip().lstrip("$").replace(",", "")
        try:
            amount = float(value)
        except (TypeError, ValueError):
            return None
        return amount if math.isfinite(amount) else None

    @field_validator("category", mode="before")
    @classmethod
    def _category_text(cls, value: Any) -> Optional[str]:
        return value if isinstance(value, str) and value.strip() else None
