from __future__ import annotations

import calendar
import math
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Literal

from pydantic import BaseModel

from smart_expense.currency_conversion import round_money
from smart_expense.repository import ExpenseStore, InsightExpenseRow

ZERO = Decimal("0")
HUNDRED = Decimal("100")
TREND_MONTHS = 6
TOP_CATEGORY_LIMIT = 6
TOP_EXPENSE_LIMIT = 5
MAX_SIMULATED_REDUCTION = Decimal("80")
WEEKS_PER_MONTH = Decimal("4.33")

# Sunday first, matching the weekday chart
WEEKDAY_LABELS = ("Dom", "Lun", "Mar", "Mié", "Jue", "Vie", "Sáb")
WEEKEND_INDEXES = (0, 6)
MONTH_LABELS = ("ene", "feb", "mar", "abr", "may", "jun", "jul", "ago", "sept", "oct", "nov", "dic")

Severity = Literal["info", "success", "warning"]


class MonthlyTrendPoint(BaseModel):
    month: str
    month_key: str
    total: Decimal
    count: int
    avg: Decimal


class CategoryInsightPoint(BaseModel):
    name: str
    icon: str
    color: str
    total: Decimal
    share: float
    count: int


class WeekdayInsightPoint(BaseModel):
    day: str
    total: Decimal
    count: int


class DailyTrendPoint(BaseModel):
    day: int
    total: Decimal
    count: int


class TopExpenseInsightPoint(BaseModel):
    label: str
    amount: Decimal
    category: str
    icon: str
    date: date


class ActionableInsight(BaseModel):
    title: str
    description: str
    severity: Severity


class HealthPillar(BaseModel):
    key: str
    label: str
    score: int
    weight: float
    explanation: str


class FinancialHealth(BaseModel):
    score: int
    label: str
    summary: str
    pillars: list[HealthPillar]


class InsightsSnapshot(BaseModel):
    month: int
    year: int
    base_currency: str
    current_month_total: Decimal
    previous_month_total: Decimal
    variation_vs_last_month: float
    projected_month_total: Decimal
    has_actionable_insights: bool
    monthly_trend: list[MonthlyTrendPoint]
    top_categories: list[CategoryInsightPoint]
    weekday_trend: list[WeekdayInsightPoint]
    daily_trend: list[DailyTrendPoint]
    top_single_expenses: list[TopExpenseInsightPoint]
    financial_health: FinancialHealth
    actionable_ideas: list[ActionableInsight]


class SavingsScenario(BaseModel):
    category: str | None
    reduction_pct: Decimal
    monthly_savings: Decimal
    annual_savings: Decimal
    weekly_savings: Decimal
    simulated_total: Decimal
    savings_impact_pct: float
    monthly_goal: Decimal
    goal_coverage_pct: float
    goal_gap: Decimal
    goal_reached: bool
    required_reduction_pct: int
    goal_reachable_with_category: bool


@dataclass
class _Bucket:
    total: Decimal = ZERO
    count: int = 0

    def add(self, amount: Decimal) -> None:
        self.total += amount
        self.count += 1


@dataclass
class _CategoryBucket(_Bucket):
    icon: str = ""
    color: str = ""


def build_insights_snapshot(
    rows: Iterable[InsightExpenseRow],
    month: int,
    year: int,
    base_currency: str,
    today: date,
) -> InsightsSnapshot:
    selected_start = date(year, month, 1)
    next_month_start = shift_month(selected_start, 1)
    previous_month_start = shift_month(selected_start, -1)
    trend_start = shift_month(selected_start, -(TREND_MONTHS - 1))
    days_in_month = calendar.monthrange(year, month)[1]

    month_buckets = {
        month_key(shift_month(trend_start, offset)): _Bucket() for offset in range(TREND_MONTHS)
    }
    weekday_buckets = [_Bucket() for _ in WEEKDAY_LABELS]
    daily_buckets = [_Bucket() for _ in range(days_in_month)]
    current_rows: list[InsightExpenseRow] = []

    for row in rows:
        amount = _to_decimal(row.amount_in_base)
        bucket = month_buckets.get(month_key(row.expense_date))
        if bucket is not None:
            bucket.add(amount)
        if selected_start <= row.expense_date < next_month_start:
            current_rows.append(row)
            weekday_buckets[weekday_index(row.expense_date)].add(amount)
            daily_buckets[row.expense_date.day - 1].add(amount)

    monthly_trend = [
        MonthlyTrendPoint(
            month=MONTH_LABELS[int(key[5:]) - 1],
            month_key=key,
            total=round_money(bucket.total),
            count=bucket.count,
            avg=round_money(bucket.total / bucket.count) if bucket.count else round_money(ZERO),
        )
        for key, bucket in month_buckets.items()
    ]

    current_total = sum((_to_decimal(row.amount_in_base) for row in current_rows), ZERO)
    previous_total = month_buckets[month_key(previous_month_start)].total
    variation = clamp_pct(
        float((current_total - previous_total) / previous_total * HUNDRED) if previous_total > 0 else 0.0
    )

    elapsed_days = elapsed_days_in_month(year, month, today)
    projected_total = current_total / elapsed_days * days_in_month

    top_categories = _top_categories(current_rows, current_total)
    weekday_trend = [
        WeekdayInsightPoint(day=label, total=round_money(bucket.total), count=bucket.count)
        for label, bucket in zip(WEEKDAY_LABELS, weekday_buckets)
    ]
    daily_trend = [
        DailyTrendPoint(day=index + 1, total=round_money(bucket.total), count=bucket.count)
        for index, bucket in enumerate(daily_buckets)
    ]
    top_single_expenses = [
        TopExpenseInsightPoint(
            label=(row.description or "").strip() or row.category_name,
            amount=round_money(_to_decimal(row.amount_in_base)),
            category=row.category_name,
            icon=row.category_icon,
            date=row.expense_date,
        )
        for row in sorted(current_rows, key=lambda item: _to_decimal(item.amount_in_base), reverse=True)[
            :TOP_EXPENSE_LIMIT
        ]
    ]

    weekend_total = sum((weekday_buckets[index].total for index in WEEKEND_INDEXES), ZERO)
    weekday_total = max(ZERO, current_total - weekend_total)
    weekend_share = float(weekend_total / current_total * HUNDRED) if current_total > 0 else 0.0
    active_days = len({row.expense_date for row in current_rows})

    has_actionable_insights = (
        len(current_rows) >= 8 and active_days >= 4 and len(top_categories) >= 2
    )

    financial_health = compute_financial_health(
        variation_pct=variation,
        top_category_share=top_categories[0].share if top_categories else 0.0,
        active_days=active_days,
        elapsed_days=elapsed_days,
        weekend_share=weekend_share,
    )

    actionable_ideas: list[ActionableInsight] = []
    if has_actionable_insights:
        actionable_ideas = _actionable_ideas(
            base_currency=base_currency,
            current_total=current_total,
            projected_total=projected_total,
            top_category=top_categories[0] if top_categories else None,
            weekend_total=weekend_total,
            weekday_total=weekday_total,
            top_expense=top_single_expenses[0] if top_single_expenses else None,
            active_days=active_days,
        )

    return InsightsSnapshot(
        month=month,
        year=year,
        base_currency=base_currency,
        current_month_total=round_money(current_total),
        previous_month_total=round_money(previous_total),
        variation_vs_last_month=variation,
        projected_month_total=round_money(projected_total),
        has_actionable_insights=has_actionable_insights,
        monthly_trend=monthly_trend,
        top_categories=top_categories,
        weekday_trend=weekday_trend,
        daily_trend=daily_trend,
        top_single_expenses=top_single_expenses,
        financial_health=financial_health,
        actionable_ideas=actionable_ideas,
    )


def get_insights_snapshot(
    store: ExpenseStore,
    user_id: int,
    month: int,
    year: int,
    base_currency: str,
    today: date,
) -> InsightsSnapshot:
    """Load the six-month window ending at ``month`` and aggregate it."""
    selected_start = date(year, month, 1)
    rows = store.list_for_insights(
        user_id,
        start_date=shift_month(selected_start, -(TREND_MONTHS - 1)),
        end_date=shift_month(selected_start, 1),
    )
    return build_insights_snapshot(rows, month, year, base_currency, today)


def compute_financial_health(
    *,
    variation_pct: float,
    top_category_share: float,
    active_days: int,
    elapsed_days: int,
    weekend_share: float,
) -> FinancialHealth:
    stability = clamp_score(100 - min(100.0, abs(variation_pct) * 1.25))
    diversification = clamp_score(100 - max(0.0, (top_category_share - 25) * 2.8))
    consistency = clamp_score(active_days / max(1, elapsed_days) * 100)
    weekend_control = clamp_score(100 - max(0.0, (weekend_share - 35) * 2))

    pillars = [
        HealthPillar(
            key="stability",
            label="Estabilidad",
            score=round_half_up(stability),
            weight=0.30,
            explanation=f"Variación de {variation_pct:.1f}% frente al mes anterior.",
        ),
        HealthPillar(
            key="diversification",
            label="Diversificación",
            score=round_half_up(diversification),
            weight=0.25,
            explanation=f"La categoría principal concentra el {top_category_share:.1f}% del gasto.",
        ),
        HealthPillar(
            key="consistency",
            label="Constancia",
            score=round_half_up(consistency),
            weight=0.20,
            explanation=f"Registraste gastos en {active_days} de {elapsed_days} días.",
        ),
        HealthPillar(
            key="weekend_control",
            label="Control fin de semana",
            score=round_half_up(weekend_control),
            weight=0.25,
            explanation=f"El {weekend_share:.1f}% del gasto ocurre en fin de semana.",
        ),
    ]

    composite = (
        stability * 0.30 + diversification * 0.25 + consistency * 0.20 + weekend_control * 0.25
    )
    score = int(clamp_score(round_half_up(composite)))
    if score >= 75:
        label, summary = "Sólida", "Tus hábitos de gasto están equilibrados este mes."
    elif score >= 55:
        label, summary = "Estable", "Vas bien, aunque hay margen para ajustar algunos hábitos."
    else:
        label, summary = "En riesgo", "Tu gasto muestra desequilibrios que conviene revisar."
    return FinancialHealth(score=score, label=label, summary=summary, pillars=pillars)


def simulate_savings(
    snapshot: InsightsSnapshot,
    category_name: str | None,
    reduction_pct: Decimal,
    monthly_goal: Decimal = ZERO,
) -> SavingsScenario:
    """What-if scenario: cut ``reduction_pct`` percent of one category's spend.

    Falls back to the month's top category when ``category_name`` is unknown.
    """
    if reduction_pct < 0 or reduction_pct > MAX_SIMULATED_REDUCTION:
        raise ValueError("La reducción debe estar entre 0% y 80%.")
    if monthly_goal < 0:
        raise ValueError("La meta de ahorro no puede ser negativa.")

    selected = next(
        (category for category in snapshot.top_categories if category.name == category_name),
        snapshot.top_categories[0] if snapshot.top_categories else None,
    )
    current_total = snapshot.current_month_total
    category_total = selected.total if selected else ZERO
    monthly_savings = category_total * reduction_pct / HUNDRED

    required_raw = monthly_goal / category_total * HUNDRED if category_total > 0 else ZERO
    return SavingsScenario(
        category=selected.name if selected else None,
        reduction_pct=reduction_pct,
        monthly_savings=round_money(monthly_savings),
        annual_savings=round_money(monthly_savings * 12),
        weekly_savings=round_money(monthly_savings / WEEKS_PER_MONTH),
        simulated_total=round_money(max(ZERO, current_total - monthly_savings)),
        savings_impact_pct=float(monthly_savings / current_total * HUNDRED) if current_total > 0 else 0.0,
        monthly_goal=round_money(monthly_goal),
        goal_coverage_pct=min(100.0, float(monthly_savings / monthly_goal * HUNDRED)) if monthly_goal > 0 else 0.0,
        goal_gap=round_money(max(ZERO, monthly_goal - monthly_savings)),
        goal_reached=monthly_goal > 0 and monthly_savings >= monthly_goal,
        required_reduction_pct=min(80, max(1, round_half_up(float(required_raw)))),
        goal_reachable_with_category=monthly_goal <= 0
        or (category_total > 0 and required_raw <= MAX_SIMULATED_REDUCTION),
    )


def elapsed_days_in_month(year: int, month: int, today: date) -> int:
    if today.year == year and today.month == month:
        return max(1, today.day)
    return calendar.monthrange(year, month)[1]


def clamp_pct(value: float) -> float:
    if not math.isfinite(value):
        return 0.0
    return max(-100.0, min(999.0, value))


def clamp_score(value: float) -> float:
    return max(0.0, min(100.0, value))


def round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    return date(month_index // 12, month_index % 12 + 1, 1)


def month_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def weekday_index(value: date) -> int:
    return (value.weekday() + 1) % 7


def _top_categories(rows: list[InsightExpenseRow], current_total: Decimal) -> list[CategoryInsightPoint]:
    buckets: dict[str, _CategoryBucket] = {}
    for row in rows:
        bucket = buckets.setdefault(
            row.category_name,
            _CategoryBucket(icon=row.category_icon, color=row.category_color),
        )
        bucket.add(_to_decimal(row.amount_in_base))

    ranked = sorted(buckets.items(), key=lambda item: item[1].total, reverse=True)
    return [
        CategoryInsightPoint(
            name=name,
            icon=bucket.icon,
            color=bucket.color,
            total=round_money(bucket.total),
            share=float((bucket.total / current_total * HUNDRED).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))
            if current_total > 0
            else 0.0,
            count=bucket.count,
        )
        for name, bucket in ranked[:TOP_CATEGORY_LIMIT]
    ]


def _actionable_ideas(
    *,
    base_currency: str,
    current_total: Decimal,
    projected_total: Decimal,
    top_category: CategoryInsightPoint | None,
    weekend_total: Decimal,
    weekday_total: Decimal,
    top_expense: TopExpenseInsightPoint | None,
    active_days: int,
) -> list[ActionableInsight]:
    has_spend = current_total > 0
    weekend_pct = float(weekend_total / current_total * HUNDRED) if has_spend else 0.0
    avg_per_active_day = current_total / active_days if active_days else ZERO

    return [
        ActionableInsight(
            title="Proyección de cierre mensual",
            description=(
                f"Si mantienes este ritmo, cerrarías en {_whole(projected_total)} {base_currency}."
                if has_spend
                else "Aún no hay gasto suficiente este mes para proyectar con precisión."
            ),
            severity="info" if has_spend else "warning",
        ),
        ActionableInsight(
            title="Concentración por categoría",
            description=(
                f"{top_category.icon} {top_category.name} representa {top_category.share:.1f}% del mes. "
                "Conviene fijar un tope específico."
                if top_category
                else "No hay categorías dominantes todavía este mes."
            ),
            severity="warning" if top_category and top_category.share >= 35 else "success",
        ),
        ActionableInsight(
            title="Patrón fin de semana",
            description=(
                f"El {weekend_pct:.1f}% del gasto sucede en fin de semana. Comparado con días hábiles: "
                f"{_whole(weekday_total)} vs {_whole(weekend_total)}."
                if has_spend
                else "No hay suficiente actividad para detectar patrón semanal."
            ),
            severity="warning" if has_spend and weekend_total > weekday_total * Decimal("0.45") else "info",
        ),
        ActionableInsight(
            title="Ticket más alto del mes",
            description=(
                f"{top_expense.icon} {top_expense.label} fue el mayor gasto unitario."
                if top_expense
                else "Todavía no hay gastos destacados este mes."
            ),
            severity="info",
        ),
        ActionableInsight(
            title="Pulso de hábito de gasto",
            description=(
                f"Registraste movimientos en {active_days} días del mes, con un promedio de "
                f"{_whole(avg_per_active_day)} {base_currency} por día activo."
                if active_days
                else "Empieza registrando algunos gastos para obtener hábito y tendencias."
            ),
            severity="success" if active_days >= 10 else "info",
        ),
    ]


def _whole(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _to_decimal(value: Decimal | float | int | str) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))
