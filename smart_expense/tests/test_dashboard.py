import unittest
from datetime import date
from decimal import Decimal

from smart_expense.dashboard import get_dashboard_snapshot, get_monthly_summary, summarize_month
from smart_expense.db import create_db_engine, init_db
from smart_expense.repository import CategoryStore, CategoryTotalRow, ExpenseStore, NewExpense, UserStore


def spend(category_id: int, day: date, amount: str, description="Gasto") -> NewExpense:
    return NewExpense(
        category_id=category_id,
        description=description,
        amount=Decimal(amount),
        currency="USD",
        amount_in_base=Decimal(amount),
        exchange_rate_used=Decimal("1"),
        expense_date=day,
    )


class SummarizeMonthTests(unittest.TestCase):
    def test_empty_month(self) -> None:
        summary = summarize_month([], 3, 2026)

        self.assertEqual(summary.total, Decimal("0"))
        self.assertEqual(summary.count, 0)
        self.assertEqual(summary.avg_per_expense, Decimal("0"))
        self.assertEqual(summary.category_breakdown, [])

    def test_breakdown_is_sorted_with_percentages(self) -> None:
        rows = [
            CategoryTotalRow(1, "Ocio", "🎬", "#555555", Decimal("10.00"), 1),
            CategoryTotalRow(2, "Comida", "🍔", "#333333", Decimal("30.00"), 3),
        ]

        summary = summarize_month(rows, 3, 2026)

        self.assertEqual(summary.total, Decimal("40.00"))
        self.assertEqual(summary.count, 4)
        self.assertEqual(summary.avg_per_expense, Decimal("10.00"))
        self.assertEqual([item.category_name for item in summary.category_breakdown], ["Comida", "Ocio"])
        self.assertEqual([item.percentage for item in summary.category_breakdown], [75.0, 25.0])

    def test_every_category_is_kept(self) -> None:
        rows = [
            CategoryTotalRow(index, f"Cat {index}", "•", "#000000", Decimal(index), 1)
            for index in range(1, 10)
        ]

        summary = summarize_month(rows, 3, 2026)

        self.assertEqual(len(summary.category_breakdown), 9)
        self.assertEqual(summary.category_breakdown[0].category_name, "Cat 9")


class DashboardStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_db_engine("sqlite://")
        init_db(self.engine)
        users = UserStore(self.engine)
        self.user_id = users.create_user("ana@example.com", "USD")
        self.other_user = users.create_user("otro@example.com", "USD")
        categories = CategoryStore(self.engine)
        self.food = categories.create(self.user_id, "Comida", "🍔", "#333333")
        self.fun = categories.create(self.user_id, "Ocio", "🎬", "#555555")
        self.expenses = ExpenseStore(self.engine)

    def tearDown(self) -> None:
        self.engine.dispose()

    def test_monthly_summary_only_counts_the_month(self) -> None:
        self.expenses.create(self.user_id, spend(self.food.id, date(2026, 3, 1), "12.50"))
        self.expenses.create(self.user_id, spend(self.food.id, date(2026, 3, 31), "7.50"))
        self.expenses.create(self.user_id, spend(self.fun.id, date(2026, 3, 15), "5.00"))
        self.expenses.create(self.user_id, spend(self.fun.id, date(2026, 4, 1), "100.00"))
        self.expenses.create(self.user_id, spend(self.food.id, date(2026, 2, 28), "100.00"))

        summary = get_monthly_summary(self.expenses, self.user_id, 3, 2026)

        self.assertEqual(summary.total, Decimal("25.00"))
        self.assertEqual(summary.count, 3)
        self.assertEqual(summary.avg_per_expense, Decimal("8.33"))
        food, fun = summary.category_breakdown
        self.assertEqual((food.category_id, food.total, food.count, food.percentage), (self.food.id, Decimal("20.00"), 2, 80.0))
        self.assertEqual((fun.category_name, fun.total, fun.percentage), ("Ocio", Decimal("5.00"), 20.0))

    def test_recent_expenses_are_newest_first_and_capped(self) -> None:
        for day in range(1, 11):
            self.expenses.create(self.user_id, spend(self.food.id, date(2026, 3, day), "1.00", f"Día {day}"))
        foreign_category = CategoryStore(self.engine).create(self.other_user, "Ajena", "•", "#000000")
        self.expenses.create(self.other_user, spend(foreign_category.id, date(2026, 3, 30), "9.00"))

        snapshot = get_dashboard_snapshot(self.expenses, self.user_id, 3, 2026, "USD")

        recent = snapshot.recent_expenses
        self.assertEqual(len(recent), 7)
        self.assertEqual([record.expense_date.day for record in recent], [10, 9, 8, 7, 6, 5, 4])
        self.assertTrue(all(record.user_id == self.user_id for record in recent))
        self.assertEqual(snapshot.summary.count, 10)
        self.assertEqual(snapshot.base_currency, "USD")


if __name__ == "__main__":
    unittest.main()
