from __future__ import annotations

import math
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Iterator

from sqlalchemy import and_, func, insert, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from smart_expense.db import (
    PersistenceError,
    allows_concurrent_writes,
    categories,
    exchange_rates,
    expenses,
    to_persistence_error,
    users,
)

DEFAULT_PAGE_SIZE = 15
RECENT_EXPENSE_LIMIT = 7

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


@dataclass(frozen=True)
class UserRecord:
    id: int
    email: str
    display_name: str | None
    base_currency: str


@dataclass(frozen=True)
class CategoryRecord:
    id: int
    user_id: int | None
    name: str
    icon: str
    color: str


@dataclass(frozen=True)
class NewExpense:
    category_id: int
    description: str
    amount: Decimal
    currency: str
    amount_in_base: Decimal
    exchange_rate_used: Decimal
    expense_date: date
    source: str = "manual"


@dataclass(frozen=True)
class ExpenseRecord:
    id: int
    user_id: int
    category_id: int
    category_name: str
    category_icon: str
    category_color: str
    description: str
    amount: Decimal
    currency: str
    amount_in_base: Decimal
    exchange_rate_used: Decimal
    expense_date: date
    source: str
    created_at: datetime | None
    updated_at: datetime | None


@dataclass(frozen=True)
class ExpensePage:
    data: list[ExpenseRecord]
    count: int
    page: int
    page_size: int
    total_pages: int


@dataclass(frozen=True)
class ExpenseAmountRow:
    id: int
    amount: Decimal
    currency: str


@dataclass(frozen=True)
class CategoryTotalRow:
    category_id: int
    category_name: str
    category_icon: str
    category_color: str
    total: Decimal
    count: int


@dataclass(frozen=True)
class InsightExpenseRow:
    amount_in_base: Decimal
    expense_date: date
    source: str
    description: str
    category_name: str
    category_icon: str
    category_color: str


@contextmanager
def _begin(engine: Engine, action: str) -> Iterator[Connection]:
    try:
        with engine.begin() as conn:
            yield conn
    except SQLAlchemyError as exc:
        raise to_persistence_error(exc, action) from exc


class RateStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get_rate(self, base: str, target: str, fetched_at: date) -> Decimal | None:
        with _begin(self.engine, "fetching cached rate") as conn:
            return conn.execute(
                select(exchange_rates.c.rate).where(
                    exchange_rates.c.base == base,
                    exchange_rates.c.target == target,
                    exchange_rates.c.fetched_at == fetched_at,
                )
            ).scalar_one_or_none()

    def get_last_known_rate(self, base: str, target: str) -> Decimal | None:
        with _begin(self.engine, "fetching last known rate") as conn:
            return conn.execute(
                select(exchange_rates.c.rate)
                .where(exchange_rates.c.base == base, exchange_rates.c.target == target)
                .order_by(exchange_rates.c.fetched_at.desc())
                .limit(1)
            ).scalar_one_or_none()

    def save_rate(self, base: str, target: str, rate: Decimal, fetched_at: date) -> None:
        values = {"base": base, "target": target, "rate": rate, "fetched_at": fetched_at}
        with _begin(self.engine, "caching exchange rate") as conn:
            dialect_insert = _DIALECT_INSERTS.get(conn.dialect.name)
            if dialect_insert is None:
                updated = conn.execute(
                    update(exchange_rates)
                    .where(
                        exchange_rates.c.base == base,
                        exchange_rates.c.target == target,
                        exchange_rates.c.fetched_at == fetched_at,
                    )
                    .values(rate=rate)
                )
                if updated.rowcount == 0:
                    conn.execute(insert(exchange_rates).values(**values))
                return

            stmt = dialect_insert(exchange_rates).values(**values)
            conn.execute(
                stmt.on_conflict_do_update(
                    index_elements=["base", "target", "fetched_at"],
                    set_={"rate": stmt.excluded.rate},
                )
            )


class UserStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_user(self, email: str, base_currency: str, display_name: str | None = None) -> int:
        with _begin(self.engine, "creating user") as conn:
            result = conn.execute(
                insert(users).values(
                    email=email.strip().lower(),
                    display_name=display_name,
                    base_currency=base_currency,
                )
            )
            return result.inserted_primary_key[0]

    def get_user(self, user_id: int) -> UserRecord | None:
        with _begin(self.engine, "fetching user") as conn:
            row = conn.execute(select(users).where(users.c.id == user_id)).mappings().first()
        if not row:
            return None
        return UserRecord(
            id=row["id"],
            email=row["email"],
            display_name=row["display_name"],
            base_currency=row["base_currency"],
        )

    def exists(self, user_id: int) -> bool:
        with _begin(self.engine, "fetching user") as conn:
            return conn.execute(select(users.c.id).where(users.c.id == user_id)).first() is not None

    def get_base_currency(self, user_id: int) -> str | None:
        with _begin(self.engine, "fetching base currency") as conn:
            return conn.execute(
                select(users.c.base_currency).where(users.c.id == user_id)
            ).scalar_one_or_none()

    def set_base_currency(self, user_id: int, currency: str) -> bool:
        with _begin(self.engine, "updating base currency") as conn:
            result = conn.execute(
                update(users)
                .where(users.c.id == user_id)
                .values(base_currency=currency, updated_at=func.now())
            )
            return result.rowcount > 0

    def set_display_name(self, user_id: int, display_name: str) -> bool:
        with _begin(self.engine, "updating profile") as conn:
            result = conn.execute(
                update(users)
                .where(users.c.id == user_id)
                .values(display_name=display_name, updated_at=func.now())
            )
            return result.rowcount > 0


class CategoryStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def list_for_user(self, user_id: int) -> list[CategoryRecord]:
        with _begin(self.engine, "fetching categories") as conn:
            rows = conn.execute(
                select(categories)
                .where(_visible_to(user_id))
                .order_by(categories.c.user_id.is_not(None), categories.c.name.asc())
            ).mappings().all()
        return [_category_from_row(row) for row in rows]

    def get(self, user_id: int, category_id: int) -> CategoryRecord | None:
        with _begin(self.engine, "fetching category") as conn:
            row = conn.execute(
                select(categories).where(categories.c.id == category_id, _visible_to(user_id))
            ).mappings().first()
        return _category_from_row(row) if row else None

    def find_by_name(self, user_id: int, name: str) -> CategoryRecord | None:
        with _begin(self.engine, "fetching category") as conn:
            row = conn.execute(
                select(categories)
                .where(
                    func.lower(categories.c.name) == name.strip().lower(),
                    _visible_to(user_id),
                )
                .order_by(categories.c.id.asc())
                .limit(1)
            ).mappings().first()
        return _category_from_row(row) if row else None

    def create(self, user_id: int, name: str, icon: str, color: str) -> CategoryRecord:
        with _begin(self.engine, "creating category") as conn:
            result = conn.execute(
                insert(categories).values(user_id=user_id, name=name, icon=icon, color=color)
            )
            category_id = result.inserted_primary_key[0]
        return CategoryRecord(id=category_id, user_id=user_id, name=name, icon=icon, color=color)

    def update(self, user_id: int, category_id: int, name: str, icon: str, color: str) -> CategoryRecord | None:
        with _begin(self.engine, "updating category") as conn:
            result = conn.execute(
                update(categories)
                .where(categories.c.id == category_id, categories.c.user_id == user_id)
                .values(name=name, icon=icon, color=color)
            )
            if result.rowcount == 0:
                return None
        return CategoryRecord(id=category_id, user_id=user_id, name=name, icon=icon, color=color)

    def delete(self, user_id: int, category_id: int) -> bool:
        with _begin(self.engine, "deleting category") as conn:
            result = conn.execute(
                categories.delete().where(
                    categories.c.id == category_id, categories.c.user_id == user_id
                )
            )
            return result.rowcount > 0


class ExpenseStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self.concurrent_writes = allows_concurrent_writes(engine)

    def create(self, user_id: int, expense: NewExpense) -> ExpenseRecord:
        with _begin(self.engine, "creating expense") as conn:
            result = conn.execute(
                insert(expenses).values(user_id=user_id, **_expense_values(expense))
            )
            expense_id = result.inserted_primary_key[0]
            row = conn.execute(_expense_select().where(expenses.c.id == expense_id)).mappings().first()
        if not row:
            raise PersistenceError("Error creating expense: row not returned")
        return _expense_from_row(row)

    def update(self, user_id: int, expense_id: int, expense: NewExpense) -> ExpenseRecord | None:
        values = _expense_values(expense)
        values.pop("source")
        with _begin(self.engine, "updating expense") as conn:
            result = conn.execute(
                update(expenses)
                .where(expenses.c.id == expense_id, expenses.c.user_id == user_id)
                .values(**values, updated_at=func.now())
            )
            if result.rowcount == 0:
                return None
            row = conn.execute(_expense_select().where(expenses.c.id == expense_id)).mappings().first()
        return _expense_from_row(row) if row else None

    def delete(self, user_id: int, expense_id: int) -> bool:
        with _begin(self.engine, "deleting expense") as conn:
            result = conn.execute(
                expenses.delete().where(expenses.c.id == expense_id, expenses.c.user_id == user_id)
            )
            return result.rowcount > 0

    def get(self, user_id: int, expense_id: int) -> ExpenseRecord | None:
        with _begin(self.engine, "fetching expense") as conn:
            row = conn.execute(
                _expense_select().where(expenses.c.id == expense_id, expenses.c.user_id == user_id)
            ).mappings().first()
        return _expense_from_row(row) if row else None

    def list_page(
        self,
        user_id: int,
        *,
        month: int | None = None,
        year: int | None = None,
        category_id: int | None = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> ExpensePage:
        conditions = [expenses.c.user_id == user_id]
        if month and year:
            start, end = month_bounds(year, month)
            conditions.append(expenses.c.expense_date >= start)
            conditions.append(expenses.c.expense_date < end)
        if category_id is not None:
            conditions.append(expenses.c.category_id == category_id)

        page = max(1, page)
        with _begin(self.engine, "fetching expenses") as conn:
            total = conn.execute(
                select(func.count()).select_from(expenses).where(and_(*conditions))
            ).scalar_one()
            rows = conn.execute(
                _expense_select()
                .where(and_(*conditions))
                .order_by(expenses.c.expense_date.desc(), expenses.c.created_at.desc(), expenses.c.id.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            ).mappings().all()

        total_count = int(total or 0)
        return ExpensePage(
            data=[_expense_from_row(row) for row in rows],
            count=total_count,
            page=page,
            page_size=page_size,
            total_pages=math.ceil(total_count / page_size),
        )

    def list_amounts(self, user_id: int) -> list[ExpenseAmountRow]:
        with _begin(self.engine, "fetching expenses") as conn:
            rows = conn.execute(
                select(expenses.c.id, expenses.c.amount, expenses.c.currency)
                .where(expenses.c.user_id == user_id)
                .order_by(expenses.c.id.asc())
            ).mappings().all()
        return [
            ExpenseAmountRow(id=row["id"], amount=row["amount"], currency=row["currency"])
            for row in rows
        ]

    def update_conversion(
        self,
        user_id: int,
        expense_id: int,
        amount_in_base: Decimal,
        exchange_rate_used: Decimal,
    ) -> bool:
        with _begin(self.engine, f"updating expense {expense_id}") as conn:
            result = conn.execute(
                update(expenses)
                .where(expenses.c.id == expense_id, expenses.c.user_id == user_id)
                .values(
                    amount_in_base=amount_in_base,
                    exchange_rate_used=exchange_rate_used,
                    updated_at=func.now(),
                )
            )
            return result.rowcount > 0

    def list_for_insights(self, user_id: int, start_date: date, end_date: date) -> list[InsightExpenseRow]:
        """Rows with ``start_date <= expense_date < end_date``, oldest first."""
        with _begin(self.engine, "fetching insights data") as conn:
            rows = conn.execute(
                select(
                    expenses.c.amount_in_base,
                    expenses.c.expense_date,
                    expenses.c.source,
                    expenses.c.description,
                    categories.c.name.label("category_name"),
                    categories.c.icon.label("category_icon"),
                    categories.c.color.label("category_color"),
                )
                .select_from(expenses.join(categories, expenses.c.category_id == categories.c.id))
                .where(
                    expenses.c.user_id == user_id,
                    expenses.c.expense_date >= start_date,
                    expenses.c.expense_date < end_date,
                )
                .order_by(expenses.c.expense_date.asc(), expenses.c.id.asc())
            ).mappings().all()
        return [
            InsightExpenseRow(
                amount_in_base=row["amount_in_base"],
                expense_date=row["expense_date"],
                source=row["source"],
                description=row["description"],
                category_name=row["category_name"],
                category_icon=row["category_icon"],
                category_color=row["category_color"],
            )
            for row in rows
        ]

    def list_category_totals(self, user_id: int, start_date: date, end_date: date) -> list[CategoryTotalRow]:
        with _begin(self.engine, "fetching summary") as conn:
            rows = conn.execute(
                select(
                    categories.c.id.label("category_id"),
                    categories.c.name.label("category_name"),
                    categories.c.icon.label("category_icon"),
                    categories.c.color.label("category_color"),
                    func.coalesce(func.sum(expenses.c.amount_in_base), 0).label("total"),
                    func.count(expenses.c.id).label("count"),
                )
                .select_from(expenses.join(categories, expenses.c.category_id == categories.c.id))
                .where(
                    expenses.c.user_id == user_id,
                    expenses.c.expense_date >= start_date,
                    expenses.c.expense_date < end_date,
                )
                .group_by(categories.c.id, categories.c.name, categories.c.icon, categories.c.color)
            ).mappings().all()
        return [
            CategoryTotalRow(
                category_id=row["category_id"],
                category_name=row["category_name"],
                category_icon=row["category_icon"],
                category_color=row["category_color"],
                total=Decimal(str(row["total"])),
                count=int(row["count"]),
            )
            for row in rows
        ]

    def list_recent(self, user_id: int, limit: int = RECENT_EXPENSE_LIMIT) -> list[ExpenseRecord]:
        with _begin(self.engine, "fetching recent expenses") as conn:
            rows = conn.execute(
                _expense_select()
                .where(expenses.c.user_id == user_id)
                .order_by(expenses.c.expense_date.desc(), expenses.c.created_at.desc(), expenses.c.id.desc())
                .limit(limit)
            ).mappings().all()
        return [_expense_from_row(row) for row in rows]


def month_bounds(year: int, month: int) -> tuple[date, date]:
    start = date(year, month, 1)
    end = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
    return start, end


def _visible_to(user_id: int):
    return or_(categories.c.user_id.is_(None), categories.c.user_id == user_id)


def _category_from_row(row) -> CategoryRecord:
    return CategoryRecord(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        icon=row["icon"],
        color=row["color"],
    )


def _expense_values(expense: NewExpense) -> dict:
    return {
        "category_id": expense.category_id,
        "description": expense.description,
        "amount": expense.amount,
        "currency": expense.currency,
        "amount_in_base": expense.amount_in_base,
        "exchange_rate_used": expense.exchange_rate_used,
        "expense_date": expense.expense_date,
        "source": expense.source,
    }


def _expense_select():
    return select(
        expenses,
        categories.c.name.label("category_name"),
        categories.c.icon.label("category_icon"),
        categories.c.color.label("category_color"),
    ).select_from(expenses.join(categories, expenses.c.category_id == categories.c.id))


def _expense_from_row(row) -> ExpenseRecord:
    return ExpenseRecord(
        id=row["id"],
        user_id=row["user_id"],
        category_id=row["category_id"],
        category_name=row["category_name"],
        category_icon=row["category_icon"],
        category_color=row["category_color"],
        description=row["description"],
        amount=row["amount"],
        currency=row["currency"],
        amount_in_base=row["amount_in_base"],
        exchange_rate_used=row["exchange_rate_used"],
        expense_date=row["expense_date"],
        source=row["source"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
