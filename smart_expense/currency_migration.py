from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from decimal import Decimal

from smart_expense.currency_conversion import (
    AmountConverter,
    ConvertedAmount,
    ExchangeRateResolver,
    normalize_currency,
)
from smart_expense.db import PersistenceError, PersistenceErrorKind
from smart_expense.repository import ExpenseAmountRow, ExpenseStore, UserStore

logger = logging.getLogger(__name__)

MIGRATION_BATCH_SIZE = 50


class CurrencyMigrationError(RuntimeError):
    """Raised when re-converting expenses stops part way.

    Batches applied before the failure stay applied.
    """

    def __init__(self, message: str, updated: int, kind: PersistenceErrorKind = PersistenceErrorKind.OTHER) -> None:
        super().__init__(message)
        self.updated = updated
        self.kind = kind


@dataclass(frozen=True)
class CurrencyMigrationReport:
    updated: int
    currencies: list[str]
    batches: int


@dataclass
class BaseCurrencyMigrator:
    users: UserStore
    expenses: ExpenseStore
    resolver: ExchangeRateResolver
    converter: AmountConverter
    batch_size: int = MIGRATION_BATCH_SIZE

    def migrate_base_currency(
        self,
        user_id: int,
        old_currency: str,
        new_currency: str,
    ) -> CurrencyMigrationReport:
        old_code = normalize_currency(old_currency)
        new_code = normalize_currency(new_currency)

        if not self.users.set_base_currency(user_id, new_code):
            raise PersistenceError(
                f"No se pudo actualizar la moneda base del usuario {user_id}",
                kind=PersistenceErrorKind.NOT_FOUND,
            )
        if old_code == new_code:
            return CurrencyMigrationReport(updated=0, currencies=[], batches=0)

        rows = self.expenses.list_amounts(user_id)
        rates = self._resolve_rates(rows, new_code)
        updates = [
            (row.id, self.converter.apply_rate(row.amount, rates[normalize_currency(row.currency)]))
            for row in rows
        ]
        logger.info(
            "Migrating %s expenses for user %s from %s to %s",
            len(updates),
            user_id,
            old_code,
            new_code,
        )

        batches = self._apply_in_batches(user_id, updates)
        return CurrencyMigrationReport(updated=len(updates), currencies=sorted(rates), batches=batches)

    def _resolve_rates(self, rows: list[ExpenseAmountRow], new_code: str) -> dict[str, Decimal]:
        rates: dict[str, Decimal] = {}
        for row in rows:
            currency = normalize_currency(row.currency)
            if currency not in rates:
                rates[currency] = self.resolver.resolve(currency, new_code).rate
        return rates

    def _apply_in_batches(self, user_id: int, updates: list[tuple[int, ConvertedAmount]]) -> int:
        if not updates:
            return 0

        applied = 0
        batch_count = 0
        workers = min(self.batch_size, len(updates)) if self.expenses.concurrent_writes else 1
        with ThreadPoolExecutor(max_workers=workers) as executor:
            for start in range(0, len(updates), self.batch_size):
                batch = updates[start : start + self.batch_size]
                futures = [
                    executor.submit(
                        self.expenses.update_conversion,
                        user_id,
                        expense_id,
                        converted.amount_in_base,
                        converted.exchange_rate_used,
                    )
                    for expense_id, converted in batch
                ]
                wait(futures)
                batch_count += 1

                failures = [future.exception() for future in futures if future.exception() is not None]
                applied += len(batch) - len(failures)
                if failures:
                    error = failures[0]
                    kind = error.kind if isinstance(error, PersistenceError) else PersistenceErrorKind.OTHER
                    logger.error(
                        "Currency migration for user %s stopped at batch %s: %s",
                        user_id,
                        batch_count,
                        error,
                    )
                    raise CurrencyMigrationError(
                        f"Error actualizando gastos (lote {batch_count}, "
                        f"{applied} de {len(updates)} ya actualizados): {error}",
                        updated=applied,
                        kind=kind,
                    ) from error
                logger.debug("Batch %s applied for user %s (%s rows)", batch_count, user_id, len(batch))

        return batch_count
