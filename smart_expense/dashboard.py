from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from pydantic import BaseModel

from smart_expense.currency_conversion import round_money
from smart_expense.repository import (
    RECENT_EXPENSE_LIMIT,
    CategoryTotalRow,
    ExpenseRecord,
    ExpenseStore,
    month_bounds,
)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


class CategorySpending(BaseModel):
    category_id: int
    category_name: str
    category_icon: str
    category_color: str
    total: Decimal
    count: int
    percentage: float


class MonthlySummary(BaseModel):
    month: int
    year: int
    total: Decimal
    count: int
    avg_per_expense: Decimal
    category_breakdown: list[CategorySpending]


class DashboardSnapshot(BaseModel):
    base_currency: str
    summary: MonthlySummary
    recent_expenses: list[ExpenseRecord]


def summarize_month(rows: Iterable[CategoryTotalRow], month: int, year: int) -> MonthlySummary:
    """Totals in base currency, with every category sorted by spend."""
    rows = list(rows)
    total = round_money(sum((row.total for row in rows), ZERO))
    count = sum(row.count for row in rows)
    avg = round_money(total / count) if count else ZERO

    breakdown = [
        CategorySpending(
            category_id=row.category_id,
            category_name=row.category_name,
            category_icon=row.category_icon,
            category_color=row.category_color,
            total=round_money(row.total),
            count=row.count,
            percentage=_percentage(row.total, total),
        )
        for row in rows
    ]
    breakdown.sort(key=lambda item: (-item.total, item.category_name))
    return MonthlySummary(
        month=month,
        year=year,
        total=total,
        count=count,
        avg_per_expense=avg,
        category_breakdown=breakdown,
    )


def get_monthly_summary(store: ExpenseStore, user_id: int, month: int, year: int) -> MonthlySummary:
    start, end = month_bounds(year, month)
    return summarize_month(store.list_category_totals(user_id, start, end), month, year)


def get_dashboard_snapshot(
    store: ExpenseStore,
    user_id: int,
    month: int,
    year: int,
    base_currency: str,
    recent_limit: int = RECENT_EXPENSE_LIMIT,
) -> DashboardSnapshot:
    return DashboardSnapshot(
        base_currency=base_currency,
        summary=get_monthly_summary(store, user_id, month, year),
        recent_expenses=store.list_recent(user_id, recent_limit),
    )


def _percentage(part: Decimal, total: Decimal) -> float:
    if total <= 0:
        return 0.0
    return float((part / total * HUNDRED).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))
