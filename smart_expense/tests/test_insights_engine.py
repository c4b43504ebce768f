import unittest
from datetime import date
from decimal import Decimal

from smart_expense.insights_engine import (
    build_insights_snapshot,
    compute_financial_health,
    elapsed_days_in_month,
    shift_month,
    simulate_savings,
    weekday_index,
)
from smart_expense.repository import InsightExpenseRow


def expense(day: date, amount: str, category="Comida", description="", icon="🍔"):
    return InsightExpenseRow(
        amount_in_base=Decimal(amount),
        expense_date=day,
        source="manual",
        description=description,
        category_name=category,
        category_icon=icon,
        category_color="#FF0000",
    )


class FinancialHealthTests(unittest.TestCase):
    def test_score_is_bounded_integer_for_extreme_inputs(self) -> None:
        cases = [
            dict(variation_pct=5000.0, top_category_share=100.0, active_days=0, elapsed_days=31, weekend_share=100.0),
            dict(variation_pct=-100.0, top_category_share=0.0, active_days=40, elapsed_days=1, weekend_share=0.0),
            dict(variation_pct=0.0, top_category_share=25.0, active_days=10, elapsed_days=10, weekend_share=35.0),
        ]
        for case in cases:
            with self.subTest(case=case):
                health = compute_financial_health(**case)
                self.assertIsInstance(health.score, int)
                self.assertGreaterEqual(health.score, 0)
                self.assertLessEqual(health.score, 100)
                for pillar in health.pillars:
                    self.assertGreaterEqual(pillar.score, 0)
                    self.assertLessEqual(pillar.score, 100)

    def test_balanced_month_is_solid(self) -> None:
        health = compute_financial_health(
            variation_pct=0.0,
            top_category_share=20.0,
            active_days=20,
            elapsed_days=20,
            weekend_share=20.0,
        )

        self.assertEqual(health.score, 100)
        self.assertEqual(health.label, "Sólida")

    def test_weights_sum_to_one(self) -> None:
        health = compute_financial_health(
            variation_pct=10.0,
            top_category_share=40.0,
            active_days=5,
            elapsed_days=10,
            weekend_share=50.0,
        )

        self.assertAlmostEqual(sum(pillar.weight for pillar in health.pillars), 1.0)
        self.assertEqual(
            [pillar.key for pillar in health.pillars],
            ["stability", "diversification", "consistency", "weekend_control"],
        )

    def test_unbalanced_month_is_at_risk(self) -> None:
        health = compute_financial_health(
            variation_pct=200.0,
            top_category_share=90.0,
            active_days=1,
            elapsed_days=30,
            weekend_share=90.0,
        )

        self.assertEqual(health.label, "En riesgo")


class InsightsSnapshotTests(unittest.TestCase):
    today = date(2026, 3, 31)

    def test_empty_month_has_zero_filled_buckets(self) -> None:
        snapshot = build_insights_snapshot([], 2, 2026, "USD", today=self.today)

        self.assertEqual(len(snapshot.monthly_trend), 6)
        self.assertEqual(snapshot.monthly_trend[0].month_key, "2025-09")
        self.assertEqual(snapshot.monthly_trend[-1].month_key, "2026-02")
        self.assertEqual(len(snapshot.weekday_trend), 7)
        self.assertEqual(len(snapshot.daily_trend), 28)
        self.assertTrue(all(point.total == 0 and point.count == 0 for point in snapshot.daily_trend))
        self.assertEqual(snapshot.current_month_total, Decimal("0"))
        self.assertFalse(snapshot.has_actionable_insights)
        self.assertEqual(snapshot.actionable_ideas, [])

    def test_totals_variation_and_categories(self) -> None:
        rows = [
            expense(date(2026, 2, 10), "100"),
            expense(date(2026, 3, 2), "60", category="Comida"),
            expense(date(2026, 3, 3), "30", category="Ocio", icon="🎬"),
            expense(date(2026, 3, 4), "60", category="Transporte", icon="🚌"),
        ]

        snapshot = build_insights_snapshot(rows, 3, 2026, "EUR", today=self.today)

        self.assertEqual(snapshot.current_month_total, Decimal("150.00"))
        self.assertEqual(snapshot.previous_month_total, Decimal("100.00"))
        self.assertAlmostEqual(snapshot.variation_vs_last_month, 50.0)
        self.assertEqual(snapshot.projected_month_total, Decimal("150.00"))
        self.assertEqual([category.name for category in snapshot.top_categories][-1], "Ocio")
        self.assertEqual(snapshot.top_categories[-1].share, 20.0)

    def test_variation_is_clamped(self) -> None:
        rows = [expense(date(2026, 2, 1), "1"), expense(date(2026, 3, 1), "1000")]

        snapshot = build_insights_snapshot(rows, 3, 2026, "USD", today=self.today)

        self.assertEqual(snapshot.variation_vs_last_month, 999.0)

    def test_weekday_buckets_start_on_sunday(self) -> None:
        sunday = date(2026, 3, 1)
        saturday = date(2026, 3, 7)
        rows = [expense(sunday, "10"), expense(saturday, "5")]

        snapshot = build_insights_snapshot(rows, 3, 2026, "USD", today=self.today)

        self.assertEqual(weekday_index(sunday), 0)
        self.assertEqual(snapshot.weekday_trend[0].day, "Dom")
        self.assertEqual(snapshot.weekday_trend[0].total, Decimal("10.00"))
        self.assertEqual(snapshot.weekday_trend[6].total, Decimal("5.00"))

    def test_projection_uses_elapsed_days_of_current_month(self) -> None:
        rows = [expense(date(2026, 3, 1), "100")]

        snapshot = build_insights_snapshot(rows, 3, 2026, "USD", today=date(2026, 3, 10))

        self.assertEqual(snapshot.projected_month_total, Decimal("310.00"))

    def test_actionable_ideas_require_enough_activity(self) -> None:
        rows = [
            expense(date(2026, 3, day), "10", category="Comida" if day % 2 else "Ocio")
            for day in (2, 3, 4, 5, 6, 9, 10, 11)
        ]

        snapshot = build_insights_snapshot(rows, 3, 2026, "USD", today=self.today)

        self.assertTrue(snapshot.has_actionable_insights)
        self.assertEqual(len(snapshot.actionable_ideas), 5)

        sparse = build_insights_snapshot(rows[:7], 3, 2026, "USD", today=self.today)
        self.assertFalse(sparse.has_actionable_insights)
        self.assertEqual(sparse.actionable_ideas, [])

    def test_top_expenses_are_limited_and_sorted(self) -> None:
        rows = [expense(date(2026, 3, day), str(day), description=f"gasto {day}") for day in range(1, 10)]

        snapshot = build_insights_snapshot(rows, 3, 2026, "USD", today=self.today)

        self.assertEqual(len(snapshot.top_single_expenses), 5)
        self.assertEqual(snapshot.top_single_expenses[0].label, "gasto 9")


class SavingsSimulationTests(unittest.TestCase):
    def setUp(self) -> None:
        rows = [
            expense(date(2026, 3, 2), "300", category="Comida"),
            expense(date(2026, 3, 3), "100", category="Ocio"),
        ]
        self.snapshot = build_insights_snapshot(rows, 3, 2026, "USD", today=date(2026, 3, 31))

    def test_reduction_on_named_category(self) -> None:
        scenario = simulate_savings(self.snapshot, "Ocio", Decimal("50"), Decimal("100"))

        self.assertEqual(scenario.category, "Ocio")
        self.assertEqual(scenario.monthly_savings, Decimal("50.00"))
        self.assertEqual(scenario.annual_savings, Decimal("600.00"))
        self.assertEqual(scenario.simulated_total, Decimal("350.00"))
        self.assertEqual(scenario.goal_gap, Decimal("50.00"))
        self.assertFalse(scenario.goal_reached)
        self.assertEqual(scenario.goal_coverage_pct, 50.0)
        self.assertEqual(scenario.required_reduction_pct, 80)
        self.assertFalse(scenario.goal_reachable_with_category)

    def test_unknown_category_falls_back_to_top(self) -> None:
        scenario = simulate_savings(self.snapshot, "Desconocida", Decimal("10"))

        self.assertEqual(scenario.category, "Comida")
        self.assertEqual(scenario.monthly_savings, Decimal("30.00"))
        self.assertEqual(scenario.weekly_savings, Decimal("6.93"))

    def test_rejects_out_of_range_reduction(self) -> None:
        with self.assertRaises(ValueError):
            simulate_savings(self.snapshot, None, Decimal("90"))
        with self.assertRaises(ValueError):
            simulate_savings(self.snapshot, None, Decimal("10"), Decimal("-1"))


class CalendarHelperTests(unittest.TestCase):
    def test_shift_month_crosses_years(self) -> None:
        self.assertEqual(shift_month(date(2026, 1, 1), -1), date(2025, 12, 1))
        self.assertEqual(shift_month(date(2025, 12, 1), 1), date(2026, 1, 1))

    def test_elapsed_days(self) -> None:
        self.assertEqual(elapsed_days_in_month(2026, 3, date(2026, 3, 10)), 10)
        self.assertEqual(elapsed_days_in_month(2026, 2, date(2026, 3, 10)), 28)


if __name__ == "__main__":
    unittest.main()
