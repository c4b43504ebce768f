from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from pydantic import BaseModel, Field

from smart_expense.category_service import find_or_create_category
from smart_expense.csv_parser import CsvValidatedRow
from smart_expense.currency_conversion import AmountConverter
from smart_expense.db import PersistenceError
from smart_expense.repository import CategoryStore, ExpenseStore, NewExpense

logger = logging.getLogger(__name__)

CSV_SOURCE = "csv"
UNKNOWN_IMPORT_ERROR = "Error desconocido al insertar"


class ImportedRowResult(BaseModel):
    row_index: int
    success: bool
    defaults_applied: list[str] = Field(default_factory=list)
    error: str | None = None


class DiscardedRowResult(BaseModel):
    row_index: int
    reason: str
    defaults_applied: list[str] = Field(default_factory=list)


class ImportResult(BaseModel):
    inserted: int = 0
    defaulted: int = 0
    errors: int = 0
    discarded: int = 0
    details: list[ImportedRowResult] = Field(default_factory=list)
    discarded_rows: list[DiscardedRowResult] = Field(default_factory=list)


@dataclass
class ExpenseImporter:
    categories: CategoryStore
    expenses: ExpenseStore
    converter: AmountConverter

    def import_batch(
        self,
        user_id: int,
        rows: Sequence[CsvValidatedRow],
        base_currency: str,
    ) -> ImportResult:
        """Persist validated rows one at a time, in input order.

        A failing row is recorded against its index and the batch carries on,
        so ``inserted + errors == len(rows)``. Discarded rows are the caller's
        to count.
        """
        category_cache: dict[str, int] = {}
        result = ImportResult()

        for index, row in enumerate(rows):
            try:
                category_id = self._resolve_category(user_id, row.category, category_cache)
                converted = self.converter.convert(row.amount, row.currency, base_currency)
                self.expenses.create(
                    user_id,
                    NewExpense(
                        category_id=category_id,
                        description=row.description,
                        amount=row.amount,
                        currency=row.currency,
                        amount_in_base=converted.amount_in_base,
                        exchange_rate_used=converted.exchange_rate_used,
                        expense_date=row.expense_date,
                        source=CSV_SOURCE,
                    ),
                )
            except (PersistenceError, ValueError, ArithmeticError) as exc:
                logger.warning("CSV row %s failed for user %s: %s", index, user_id, exc)
                result.errors += 1
                result.details.append(
                    ImportedRowResult(
                        row_index=index,
                        success=False,
                        defaults_applied=list(row.defaults_applied),
                        error=str(exc) or UNKNOWN_IMPORT_ERROR,
                    )
                )
                continue

            result.inserted += 1
            if row.defaults_applied:
                result.defaulted += 1
            result.details.append(
                ImportedRowResult(
                    row_index=index,
                    success=True,
                    defaults_applied=list(row.defaults_applied),
                )
            )

        logger.info(
            "CSV import for user %s: %s inserted, %s defaulted, %s errors",
            user_id,
            result.inserted,
            result.defaulted,
            result.errors,
        )
        return result

    def _resolve_category(self, user_id: int, name: str, cache: dict[str, int]) -> int:
        key = name.strip().lower()
        category_id = cache.get(key)
        if category_id is None:
            category_id = find_or_create_category(self.categories, user_id, name).id
            cache[key] = category_id
        return category_id
