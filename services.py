from __future__ import annotations

import logging
import math
from collections import defaultdict
from datetime import date, datetime, time, timezone
from decimal import ROUND_DOWN, Decimal
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from ai import FinancialAI
from cache import (
    AI_INSIGHTS_TTL_SECS,
    DASHBOARD_TTL_SECS,
    REPORT_MONTHLY_TTL_SECS,
    REPORT_YEARLY_TTL_SECS,
    Cache,
    dashboard_key,
    user_key,
)
from models import (
    DEFAULT_BUDGET_COLOR,
    DEFAULT_BUDGET_ICON,
    Budget,
    Expense,
    User,
    utcnow,
)
from periods import (
    Period,
    month_key,
    month_period,
    previous_month_period,
    shift_months,
    year_period,
)
from schemas import BudgetIn, ExpenseIn


logger = logging.getLogger(__name__)


class NotFoundError(ValueError):
    pass


class ConflictError(ValueError):
    pass


def amount_to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1")))


def cents_to_amount(cents: int) -> float:
    return cents / 100


def percent_of(part: float, whole: float) -> float:
    """``part`` as a percentage of ``whole``; 0 when ``whole`` is 0."""
    if not whole:
        return 0.0
    return (part / whole) * 100


def share_of(part_cents: int, total_cents: int) -> float:
    """Percentage share truncated to 2 places, so shares never sum past 100."""
    if not total_cents:
        return 0.0
    share = Decimal(part_cents) * 100 / Decimal(total_cents)
    return float(share.quantize(Decimal("0.01"), rounding=ROUND_DOWN))


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _to_naive_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def _isoformat(moment: Optional[datetime]) -> Optional[str]:
    return moment.isoformat() if moment else None


def budget_summary(budget: Budget) -> dict[str, Any]:
    return {"id": budget.id, "name": budget.name, "icon": budget.icon, "color": budget.color}


def budget_with_stats(budget: Budget, spent_cents: int) -> dict[str, Any]:
    return {
        "id": budget.id,
        "name": budget.name,
        "amount": cents_to_amount(budget.amount_cents),
        "icon": budget.icon,
        "color": budget.color,
        "userId": budget.user_id,
        "createdAt": _isoformat(budget.created_at),
        "updatedAt": _isoformat(budget.updated_at),
        "spent": cents_to_amount(spent_cents),
        "percentage": percent_of(spent_cents, budget.amount_cents),
        "remaining": cents_to_amount(budget.amount_cents - spent_cents),
        "isOverBudget": spent_cents > budget.amount_cents,
    }


def expense_to_dict(expense: Expense) -> dict[str, Any]:
    return {
        "id": expense.id,
        "name": expense.name,
        "amount": cents_to_amount(expense.amount_cents),
        "description": expense.description,
        "budgetId": expense.budget_id,
        "userId": expense.user_id,
        "createdAt": _isoformat(expense.created_at),
        "updatedAt": _isoformat(expense.updated_at),
        "budget": budget_summary(expense.budget),
    }


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def ensure(
        self, user_id: str, email: Optional[str] = None, name: Optional[str] = None
    ) -> User:
        """Mirror an identity from the session provider into the users table."""
        user = self.session.get(User, user_id)
        if user is None:
            user = User(id=user_id, email=email, name=name)
            self.session.add(user)
            try:
                self.session.commit()
            except IntegrityError:
                # another request created the row first
                self.session.rollback()
                user = self.session.get(User, user_id)
                if user is None:
                    raise
            return user

        changed = False
        if email and user.email != email:
            user.email = email
            changed = True
        if name and user.name != name:
            user.name = name
            changed = True
        if changed:
            self.session.commit()
        return user


class BudgetService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _get_owned(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise NotFoundError("Budget not found")
        return budget

    def _name_taken(self, name: str, *, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Budget.id).where(
            Budget.user_id == self.user_id, Budget.name == name
        )
        if exclude_id is not None:
            stmt = stmt.where(Budget.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def spent_by_budget(self) -> dict[int, int]:
        stmt = (
            select(
                Expense.budget_id,
                func.coalesce(func.sum(Expense.amount_cents), 0).label("spent"),
            )
            .where(Expense.user_id == self.user_id)
            .group_by(Expense.budget_id)
        )
        return {
            row.budget_id: int(row.spent or 0) for row in self.session.execute(stmt)
        }

    def list(self) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.created_at.desc(), Budget.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def list_with_stats(self) -> list[dict[str, Any]]:
        spent = self.spent_by_budget()
        return [budget_with_stats(b, spent.get(b.id, 0)) for b in self.list()]

    def get_with_stats(self, budget_id: int) -> dict[str, Any]:
        budget = self._get_owned(budget_id)
        spent_cents = sum(e.amount_cents for e in budget.expenses)
        data = budget_with_stats(budget, spent_cents)
        data["expenses"] = [
            {
                "id": e.id,
                "name": e.name,
                "amount": cents_to_amount(e.amount_cents),
                "createdAt": _isoformat(e.created_at),
            }
            for e in budget.expenses
        ]
        return data

    def create(self, data: BudgetIn) -> dict[str, Any]:
        if self._name_taken(data.name):
            raise ConflictError("Budget with this name already exists")
        budget = Budget(
            user_id=self.user_id,
            name=data.name,
            amount_cents=amount_to_cents(data.amount),
            icon=data.icon or DEFAULT_BUDGET_ICON,
            color=data.color or DEFAULT_BUDGET_COLOR,
        )
        self.session.add(budget)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError("Budget with this name already exists") from exc
        self.session.refresh(budget)
        logger.info(f"budget_created: user={self.user_id} budget={budget.id}")
        return budget_with_stats(budget, 0)

    def update(self, budget_id: int, data: BudgetIn) -> dict[str, Any]:
        budget = self._get_owned(budget_id)
        if data.name != budget.name and self._name_taken(
            data.name, exclude_id=budget.id
        ):
            raise ConflictError("Budget with this name already exists")
        budget.name = data.name
        budget.amount_cents = amount_to_cents(data.amount)
        budget.icon = data.icon or budget.icon
        budget.color = data.color or budget.color
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError("Budget with this name already exists") from exc
        self.session.refresh(budget)
        spent_cents = sum(e.amount_cents for e in budget.expenses)
        return budget_with_stats(budget, spent_cents)

    def delete(self, budget_id: int) -> None:
        budget = self._get_owned(budget_id)
        expense_count = self.session.scalar(
            select(func.count(Expense.id)).where(Expense.budget_id == budget.id)
        )
        if expense_count:
            raise ConflictError(
                "Cannot delete budget with existing expenses. Delete expenses first."
            )
        self.session.delete(budget)
        self.session.commit()
        logger.info(f"budget_deleted: user={self.user_id} budget={budget_id}")


class ExpenseService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _owned_budget(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise NotFoundError("Budget not found")
        return budget

    def _get_owned(self, expense_id: int) -> Expense:
        stmt = (
            select(Expense)
            .options(joinedload(Expense.budget))
            .where(Expense.user_id == self.user_id, Expense.id == expense_id)
        )
        expense = self.session.scalar(stmt)
        if not expense:
            raise NotFoundError("Expense not found")
        return expense

    def list(self, limit: Optional[int] = None) -> list[Expense]:
        stmt = (
            select(Expense)
            .options(joinedload(Expense.budget))
            .where(Expense.user_id == self.user_id)
            .order_by(Expense.created_at.desc(), Expense.id.desc())
        )
        if limit:
            stmt = stmt.limit(limit)
        return list(self.session.scalars(stmt).all())

    def get(self, expense_id: int) -> dict[str, Any]:
        return expense_to_dict(self._get_owned(expense_id))

    def create(self, data: ExpenseIn) -> dict[str, Any]:
        budget = self._owned_budget(data.budget_id)
        expense = Expense(
            user_id=self.user_id,
            budget_id=budget.id,
            name=data.name,
            amount_cents=amount_to_cents(data.amount),
            description=data.description or None,
            created_at=_to_naive_utc(data.created_at) if data.created_at else utcnow(),
        )
        self.session.add(expense)
        self.session.commit()
        self.session.refresh(expense)
        logger.info(
            f"expense_created: user={self.user_id} expense={expense.id} "
            f"budget={budget.id} amount_cents={expense.amount_cents}"
        )
        return expense_to_dict(expense)

    def update(self, expense_id: int, data: ExpenseIn) -> dict[str, Any]:
        expense = self._get_owned(expense_id)
        budget = self._owned_budget(data.budget_id)
        expense.name = data.name
        expense.amount_cents = amount_to_cents(data.amount)
        expense.budget_id = budget.id
        expense.budget = budget
        expense.description = data.description or None
        if data.created_at:
            expense.created_at = _to_naive_utc(data.created_at)
        self.session.commit()
        self.session.refresh(expense)
        return expense_to_dict(expense)

    def delete(self, expense_id: int) -> None:
        expense = self._get_owned(expense_id)
        self.session.delete(expense)
        self.session.commit()
        logger.info(f"expense_deleted: user={self.user_id} expense={expense_id}")


class ReportsService:
    """Monthly and yearly summaries, cached per user and period.

    Reports are derived purely from budgets and expenses at call time, so two
    concurrent recomputations for the same key write the same document.
    """

    def __init__(self, session: Session, cache: Cache, user_id: str) -> None:
        self.session = session
        self.cache = cache
        self.user_id = user_id

    def _expenses_in(self, period: Period) -> list[Expense]:
        stmt = (
            select(Expense)
            .options(joinedload(Expense.budget))
            .where(
                Expense.user_id == self.user_id,
                Expense.created_at >= period.start_at,
                Expense.created_at <= period.end_at,
            )
            .order_by(Expense.created_at, Expense.id)
        )
        return list(self.session.scalars(stmt).all())

    def _budgets(self) -> list[Budget]:
        stmt = select(Budget).where(Budget.user_id == self.user_id).order_by(Budget.id)
        return list(self.session.scalars(stmt).all())

    @staticmethod
    def _totals_by_category(
        expenses: list[Expense],
    ) -> tuple[dict[str, int], dict[str, int]]:
        totals: dict[str, int] = {}
        first_budget_id: dict[str, int] = {}
        for expense in expenses:
            category = expense.budget.name
            totals[category] = totals.get(category, 0) + expense.amount_cents
            first_budget_id.setdefault(category, expense.budget_id)
        return totals, first_budget_id

    def generate_monthly_report(
        self, report_date: Optional[date] = None
    ) -> dict[str, Any]:
        report_date = report_date or utcnow().date()
        period = month_period(report_date)
        cache_key = user_key(self.user_id, "monthly-report", month_key(report_date))

        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.info(f"report_cache: hit key={cache_key}")
            return cached

        start_time = datetime.now()
        expenses = self._expenses_in(period)
        budgets = self._budgets()
        prev_expenses = self._expenses_in(previous_month_period(report_date))

        total_cents = sum(e.amount_cents for e in expenses)
        prev_total_cents = sum(e.amount_cents for e in prev_expenses)
        # income is not tracked; savings are the negated spend
        income_cents = 0
        net_cents = income_cents - total_cents
        prev_net_cents = 0 - prev_total_cents

        totals, first_budget_id = self._totals_by_category(expenses)
        top_categories = sorted(
            (
                {
                    "category": category,
                    "amount": cents_to_amount(cents),
                    "percentage": share_of(cents, total_cents),
                    "budgetId": first_budget_id[category],
                }
                for category, cents in totals.items()
            ),
            key=lambda row: row["amount"],
            reverse=True,
        )[:5]

        spent_by_budget: dict[int, int] = defaultdict(int)
        for expense in expenses:
            spent_by_budget[expense.budget_id] += expense.amount_cents

        budget_performance = []
        for budget in budgets:
            spent_cents = spent_by_budget.get(budget.id, 0)
            percentage = percent_of(spent_cents, budget.amount_cents)
            status = "on-track"
            if percentage > 100:
                status = "over"
            elif percentage < 80:
                status = "under"
            budget_performance.append(
                {
                    "name": budget.name,
                    "budgetAmount": cents_to_amount(budget.amount_cents),
                    "spent": cents_to_amount(spent_cents),
                    "percentage": percentage,
                    "status": status,
                }
            )

        expenses_trend = (
            percent_of(total_cents - prev_total_cents, prev_total_cents)
            if prev_total_cents > 0
            else 0.0
        )
        savings_trend = (
            percent_of(net_cents - prev_net_cents, abs(prev_net_cents))
            if prev_net_cents != 0
            else 0.0
        )

        report = {
            "period": report_date.strftime("%B %Y"),
            "totalIncome": cents_to_amount(income_cents),
            "totalExpenses": cents_to_amount(total_cents),
            "netSavings": cents_to_amount(net_cents),
            "topCategories": top_categories,
            "budgetPerformance": budget_performance,
            "trends": {
                "expensesTrend": expenses_trend,
                "savingsTrend": savings_trend,
            },
        }

        self.cache.set(cache_key, report, REPORT_MONTHLY_TTL_SECS)
        duration = (datetime.now() - start_time).total_seconds()
        logger.info(
            f"report_generated: kind=monthly user={self.user_id} "
            f"period={period.slug} expenses={len(expenses)} duration={duration:.3f}s"
        )
        return report

    def generate_yearly_report(self, year: Optional[int] = None) -> dict[str, Any]:
        year = year or utcnow().year
        period = year_period(year)
        cache_key = user_key(self.user_id, "yearly-report", str(year))

        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.info(f"report_cache: hit key={cache_key}")
            return cached

        start_time = datetime.now()
        expenses = self._expenses_in(period)
        budgets = self._budgets()

        total_cents = sum(e.amount_cents for e in expenses)
        income_cents = 0
        net_cents = income_cents - total_cents

        by_month = [0] * 12
        for expense in expenses:
            by_month[expense.created_at.month - 1] += expense.amount_cents
        monthly_breakdown = [
            {
                "month": date(year, index + 1, 1).strftime("%b"),
                "expenses": cents_to_amount(cents),
                "income": 0,
                "savings": cents_to_amount(0 - cents),
            }
            for index, cents in enumerate(by_month)
        ]

        totals, _ = self._totals_by_category(expenses)
        category_totals = sorted(
            (
                {
                    "category": category,
                    "amount": cents_to_amount(cents),
                    "percentage": share_of(cents, total_cents),
                }
                for category, cents in totals.items()
            ),
            key=lambda row: row["amount"],
            reverse=True,
        )

        spent_by_budget: dict[int, int] = defaultdict(int)
        for expense in expenses:
            spent_by_budget[expense.budget_id] += expense.amount_cents
        utilizations = [
            (
                budget.name,
                percent_of(spent_by_budget.get(budget.id, 0), budget.amount_cents * 12),
            )
            for budget in budgets
        ]
        average_utilization = (
            sum(u for _, u in utilizations) / len(utilizations) if utilizations else 0.0
        )
        overspent = [row for row in utilizations if row[1] > 100]
        underspent = [row for row in utilizations if row[1] < 50]
        most_overspent = max(overspent, key=lambda row: row[1])[0] if overspent else "None"
        most_underspent = (
            min(underspent, key=lambda row: row[1])[0] if underspent else "None"
        )

        report = {
            "year": year,
            "totalIncome": cents_to_amount(income_cents),
            "totalExpenses": cents_to_amount(total_cents),
            "netSavings": cents_to_amount(net_cents),
            "monthlyBreakdown": monthly_breakdown,
            "categoryTotals": category_totals,
            "budgetAnalysis": {
                "averageUtilization": average_utilization,
                "mostOverspent": most_overspent,
                "mostUnderspent": most_underspent,
            },
        }

        self.cache.set(cache_key, report, REPORT_YEARLY_TTL_SECS)
        duration = (datetime.now() - start_time).total_seconds()
        logger.info(
            f"report_generated: kind=yearly user={self.user_id} "
            f"period={period.slug} expenses={len(expenses)} duration={duration:.3f}s"
        )
        return report

    def clear_user_reports_cache(self, today: Optional[date] = None) -> list[str]:
        """Drop the current month's and current year's cached reports.

        Reports cached for earlier periods are left to expire on their TTL.
        """
        today = today or utcnow().date()
        keys = [
            user_key(self.user_id, "monthly-report", month_key(today)),
            user_key(self.user_id, "yearly-report", str(today.year)),
        ]
        self.cache.delete(*keys)
        logger.info(f"cache_invalidated: user={self.user_id} keys={keys}")
        return keys


def invalidate_user_caches(
    session: Session, cache: Cache, user_id: str, today: Optional[date] = None
) -> None:
    """Run after any budget or expense write."""
    today = today or utcnow().date()
    ReportsService(session, cache, user_id).clear_user_reports_cache(today)
    cache.delete(
        dashboard_key(user_id),
        user_key(user_id, "ai-insights", month_key(today)),
    )


class DashboardService:
    def __init__(self, session: Session, cache: Cache, user_id: str) -> None:
        self.session = session
        self.cache = cache
        self.user_id = user_id

    def snapshot(self, today: Optional[date] = None) -> dict[str, Any]:
        cache_key = dashboard_key(self.user_id)
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.info(f"dashboard_cache: hit user={self.user_id}")
            return cached
        logger.info(f"dashboard_cache: miss user={self.user_id}")

        today = today or utcnow().date()
        month_start = datetime.combine(today.replace(day=1), time.min)

        budget_service = BudgetService(self.session, self.user_id)
        budgets = budget_service.list()
        spent_by_budget = budget_service.spent_by_budget()
        month_amounts = list(
            self.session.scalars(
                select(Expense.amount_cents).where(
                    Expense.user_id == self.user_id,
                    Expense.created_at >= month_start,
                )
            ).all()
        )
        recent = ExpenseService(self.session, self.user_id).list(limit=10)

        total_budget_cents = sum(b.amount_cents for b in budgets)
        total_spent_cents = sum(month_amounts)

        budget_progress = []
        for budget in budgets:
            spent_cents = spent_by_budget.get(budget.id, 0)
            budget_progress.append(
                {
                    "id": budget.id,
                    "name": budget.name,
                    "amount": cents_to_amount(budget.amount_cents),
                    "spent": cents_to_amount(spent_cents),
                    "percentage": round_half_up(
                        percent_of(spent_cents, budget.amount_cents)
                    ),
                    "icon": budget.icon,
                    "color": budget.color,
                    "remaining": cents_to_amount(budget.amount_cents - spent_cents),
                }
            )

        expense_count = len(month_amounts)
        data = {
            "totalBudget": cents_to_amount(total_budget_cents),
            "totalSpent": cents_to_amount(total_spent_cents),
            "totalRemaining": cents_to_amount(total_budget_cents - total_spent_cents),
            "spentPercentage": round_half_up(
                percent_of(total_spent_cents, total_budget_cents)
            ),
            "budgetProgress": budget_progress,
            "recentExpenses": [
                {
                    "id": e.id,
                    "name": e.name,
                    "amount": cents_to_amount(e.amount_cents),
                    "description": e.description,
                    "createdAt": _isoformat(e.created_at),
                    "budget": {
                        "name": e.budget.name,
                        "icon": e.budget.icon,
                        "color": e.budget.color,
                    },
                }
                for e in recent
            ],
            "summary": {
                "budgetCount": len(budgets),
                "expenseCount": expense_count,
                "averageExpense": (
                    cents_to_amount(total_spent_cents) / expense_count
                    if expense_count
                    else 0
                ),
            },
        }
        self.cache.set(cache_key, data, DASHBOARD_TTL_SECS)
        return data


class AnalyticsService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _expenses_since(self, start: datetime) -> list[Expense]:
        stmt = (
            select(Expense)
            .options(joinedload(Expense.budget))
            .where(Expense.user_id == self.user_id, Expense.created_at >= start)
            .order_by(Expense.created_at, Expense.id)
        )
        return list(self.session.scalars(stmt).all())

    def _sum_between(self, start: datetime, end: Optional[datetime] = None) -> int:
        stmt = select(func.coalesce(func.sum(Expense.amount_cents), 0)).where(
            Expense.user_id == self.user_id, Expense.created_at >= start
        )
        if end is not None:
            stmt = stmt.where(Expense.created_at < end)
        return int(self.session.execute(stmt).scalar_one() or 0)

    def monthly_spending(self, expenses: list[Expense]) -> list[dict[str, Any]]:
        totals: dict[str, int] = {}
        counts: dict[str, int] = {}
        for expense in expenses:
            label = expense.created_at.strftime("%b %Y")
            totals[label] = totals.get(label, 0) + expense.amount_cents
            counts[label] = counts.get(label, 0) + 1
        return [
            {
                "month": label,
                "amount": round(cents_to_amount(cents), 2),
                "expenses": counts[label],
            }
            for label, cents in totals.items()
        ]

    def category_breakdown(self, start: datetime) -> list[dict[str, Any]]:
        stmt = (
            select(
                Budget.name,
                Budget.color,
                Budget.icon,
                func.coalesce(func.sum(Expense.amount_cents), 0).label("spent"),
                func.count(Expense.id).label("count"),
            )
            .join(Expense.budget)
            .where(Expense.user_id == self.user_id, Expense.created_at >= start)
            .group_by(Budget.id, Budget.name, Budget.color, Budget.icon)
            .order_by(Budget.id)
        )
        rows = []
        for row in self.session.execute(stmt):
            amount = round(cents_to_amount(int(row.spent or 0)), 2)
            if amount <= 0:
                continue
            rows.append(
                {
                    "category": row.name or "Unknown",
                    "amount": amount,
                    "count": int(row.count),
                    "color": row.color or "#8884d8",
                    "icon": row.icon or DEFAULT_BUDGET_ICON,
                }
            )
        return rows

    def budget_comparison(self) -> list[dict[str, Any]]:
        budget_service = BudgetService(self.session, self.user_id)
        spent_by_budget = budget_service.spent_by_budget()
        rows = []
        for budget in reversed(budget_service.list()):
            spent_cents = spent_by_budget.get(budget.id, 0)
            if spent_cents > budget.amount_cents:
                status = "over"
            elif spent_cents > budget.amount_cents * 0.8:
                status = "warning"
            else:
                status = "good"
            rows.append(
                {
                    "category": budget.name,
                    "budgeted": round(cents_to_amount(budget.amount_cents), 2),
                    "spent": round(cents_to_amount(spent_cents), 2),
                    "remaining": round(
                        cents_to_amount(budget.amount_cents - spent_cents), 2
                    ),
                    "percentage": round(percent_of(spent_cents, budget.amount_cents), 1),
                    "status": status,
                    "color": budget.color or "#8884d8",
                    "icon": budget.icon or DEFAULT_BUDGET_ICON,
                }
            )
        return rows

    def daily_spending(self, today: date) -> list[dict[str, Any]]:
        period = month_period(today)
        stmt = (
            select(Expense)
            .where(
                Expense.user_id == self.user_id,
                Expense.created_at >= period.start_at,
                Expense.created_at <= period.end_at,
            )
            .order_by(Expense.created_at, Expense.id)
        )
        totals: dict[str, int] = {}
        for expense in self.session.scalars(stmt):
            label = expense.created_at.strftime("%b %d")
            totals[label] = totals.get(label, 0) + expense.amount_cents
        return [
            {"day": label, "amount": round(cents_to_amount(cents), 2)}
            for label, cents in totals.items()
        ]

    def metrics(self, start: datetime, today: date) -> dict[str, Any]:
        total_stmt = select(
            func.coalesce(func.sum(Expense.amount_cents), 0),
            func.count(Expense.id),
        ).where(Expense.user_id == self.user_id, Expense.created_at >= start)
        total_spent_cents, total_count = self.session.execute(total_stmt).one()
        total_spent = cents_to_amount(int(total_spent_cents or 0))

        total_budget_cents = self.session.execute(
            select(func.coalesce(func.sum(Budget.amount_cents), 0)).where(
                Budget.user_id == self.user_id
            )
        ).scalar_one()
        total_budget = cents_to_amount(int(total_budget_cents or 0))

        this_month_start = month_period(today).start_at
        last_month_start = previous_month_period(today).start_at
        current_month = cents_to_amount(self._sum_between(this_month_start))
        last_month = cents_to_amount(
            self._sum_between(last_month_start, this_month_start)
        )
        monthly_change = (
            percent_of(current_month - last_month, last_month) if last_month > 0 else 0
        )

        return {
            "totalSpent": round(total_spent, 2),
            "totalBudget": round(total_budget, 2),
            "totalTransactions": int(total_count),
            "averageTransaction": (
                round(total_spent / total_count, 2) if total_count else 0
            ),
            "currentMonthSpending": round(current_month, 2),
            "lastMonthSpending": round(last_month, 2),
            "monthlyChangePercentage": round(monthly_change, 1),
            "budgetUtilization": (
                round(percent_of(total_spent, total_budget), 1) if total_budget else 0
            ),
        }

    def overview(self, months: int = 12, today: Optional[date] = None) -> dict[str, Any]:
        today = today or utcnow().date()
        start = datetime.combine(shift_months(today, -months), time.min)
        expenses = self._expenses_since(start)
        return {
            "monthlySpending": self.monthly_spending(expenses),
            "categoryBreakdown": self.category_breakdown(start),
            "budgetComparison": self.budget_comparison(),
            "dailySpending": self.daily_spending(today),
            "metrics": self.metrics(start, today),
        }


class InsightsService:
    """Shapes spending data for the AI advisor and caches its insights."""

    def __init__(
        self, session: Session, cache: Cache, ai: FinancialAI, user_id: str
    ) -> None:
        self.session = session
        self.cache = cache
        self.ai = ai
        self.user_id = user_id

    def financial_data(self, expense_limit: int = 50) -> dict[str, Any]:
        budget_service = BudgetService(self.session, self.user_id)
        spent_by_budget = budget_service.spent_by_budget()
        budgets = []
        for budget in reversed(budget_service.list()):
            spent_cents = spent_by_budget.get(budget.id, 0)
            budgets.append(
                {
                    "name": budget.name,
                    "amount": cents_to_amount(budget.amount_cents),
                    "spent": cents_to_amount(spent_cents),
                    "percentage": percent_of(spent_cents, budget.amount_cents),
                }
            )

        recent = ExpenseService(self.session, self.user_id).list(limit=expense_limit)
        expenses = [
            {
                "name": e.name,
                "amount": cents_to_amount(e.amount_cents),
                "category": e.budget.name,
                "date": e.created_at.isoformat(),
            }
            for e in recent
        ]

        by_month: dict[str, int] = {}
        for expense in recent:
            key = month_key(expense.created_at.date())
            by_month[key] = by_month.get(key, 0) + expense.amount_cents
        monthly_spending = [
            {"month": key, "amount": cents_to_amount(cents)}
            for key, cents in by_month.items()
        ]

        return {
            "budgets": budgets,
            "expenses": expenses,
            "monthlySpending": monthly_spending,
        }

    def spending_insights(self, today: Optional[date] = None) -> list[dict[str, Any]]:
        today = today or utcnow().date()
        cache_key = user_key(self.user_id, "ai-insights", month_key(today))
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.info(f"ai_insights_cache: hit key={cache_key}")
            return cached

        insights = self.ai.generate_spending_insights(self.financial_data())
        payload = [insight.model_dump(exclude_none=True) for insight in insights]
        self.cache.set(cache_key, payload, AI_INSIGHTS_TTL_SECS)
        return payload

    def answer(self, question: str) -> str:
        data = self.financial_data(expense_limit=100)
        return self.ai.answer_financial_question(question, data)
