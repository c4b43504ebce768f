from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Callable

from sqlalchemy.engine import Engine

from smart_expense.config import Settings
from smart_expense.csv_import import ExpenseImporter
from smart_expense.currency_conversion import (
    AmountConverter,
    ExchangeRateResolver,
    FrankfurterRateProvider,
    RateQuoteProvider,
    utc_today,
)
from smart_expense.currency_migration import BaseCurrencyMigrator
from smart_expense.db import create_db_engine
from smart_expense.rate_limit import PairRateLimiter
from smart_expense.repository import CategoryStore, ExpenseStore, RateStore, UserStore


@dataclass
class AppServices:
    settings: Settings
    engine: Engine
    users: UserStore
    categories: CategoryStore
    expenses: ExpenseStore
    rate_provider: RateQuoteProvider
    resolver: ExchangeRateResolver
    converter: AmountConverter
    importer: ExpenseImporter
    migrator: BaseCurrencyMigrator
    rate_limiter: PairRateLimiter
    today: Callable[[], date] = utc_today


def build_services(
    settings: Settings,
    *,
    engine: Engine | None = None,
    rate_provider: RateQuoteProvider | None = None,
    rate_limiter: PairRateLimiter | None = None,
    today: Callable[[], date] = utc_today,
) -> AppServices:
    engine = engine or create_db_engine(settings.database_url)
    rate_provider = rate_provider or FrankfurterRateProvider(
        base_url=settings.exchange_rate_api_url,
        timeout=settings.exchange_rate_timeout,
    )
    users = UserStore(engine)
    categories = CategoryStore(engine)
    expenses = ExpenseStore(engine)
    resolver = ExchangeRateResolver(store=RateStore(engine), provider=rate_provider, today=today)
    converter = AmountConverter(resolver)
    return AppServices(
        settings=settings,
        engine=engine,
        users=users,
        categories=categories,
        expenses=expenses,
        rate_provider=rate_provider,
        resolver=resolver,
        converter=converter,
        importer=ExpenseImporter(categories=categories, expenses=expenses, converter=converter),
        migrator=BaseCurrencyMigrator(
            users=users,
            expenses=expenses,
            resolver=resolver,
            converter=converter,
        ),
        rate_limiter=rate_limiter or PairRateLimiter(),
        today=today,
    )
