from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


DEFAULT_BUDGET_ICON = "💰"
DEFAULT_BUDGET_COLOR = "#3b82f6"


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    name: Mapped[Optional[str]] = mapped_column(String(120))

    budgets: Mapped[list["Budget"]] = relationship("Budget", back_populates="user")
    expenses: Mapped[list["Expense"]] = relationship("Expense", back_populates="user")


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    icon: Mapped[str] = mapped_column(
        String(16), default=DEFAULT_BUDGET_ICON, nullable=False
    )
    color: Mapped[str] = mapped_column(
        String(9), default=DEFAULT_BUDGET_COLOR, nullable=False
    )

    user: Mapped["User"] = relationship("User", back_populates="budgets")
    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", back_populates="budget", order_by="Expense.created_at.desc()"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_budget_user_name"),
        CheckConstraint("amount_cents > 0", name="ck_budget_amount_positive"),
        Index("ix_budgets_user_created", "user_id", "created_at"),
    )


class Expense(Base, TimestampMixin):
    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)

    user: Mapped["User"] = relationship("User", back_populates="expenses")
    budget: Mapped["Budget"] = relationship("Budget", back_populates="expenses")

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_expense_amount_positive"),
        Index("ix_expenses_user_created", "user_id", "created_at"),
        Index("ix_expenses_budget", "budget_id"),
    )
