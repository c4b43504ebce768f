from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Callable, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import urlopen

from smart_expense.db import PersistenceError

logger = logging.getLogger(__name__)

ONE = Decimal("1")
CENT = Decimal("0.01")


@dataclass(frozen=True)
class SupportedCurrency:
    code: str
    name: str
    symbol: str


SUPPORTED_CURRENCIES: tuple[SupportedCurrency, ...] = (
    SupportedCurrency("USD", "Dólar estadounidense", "$"),
    SupportedCurrency("EUR", "Euro", "€"),
    SupportedCurrency("CZK", "Corona checa", "Kč"),
    SupportedCurrency("GBP", "Libra esterlina", "£"),
    SupportedCurrency("COP", "Peso colombiano", "$"),
    SupportedCurrency("MXN", "Peso mexicano", "$"),
    SupportedCurrency("ARS", "Peso argentino", "$"),
    SupportedCurrency("BRL", "Real brasileño", "R$"),
    SupportedCurrency("CLP", "Peso chileno", "$"),
    SupportedCurrency("PEN", "Sol peruano", "S/"),
    SupportedCurrency("JPY", "Yen japonés", "¥"),
    SupportedCurrency("CAD", "Dólar canadiense", "CA$"),
)
SUPPORTED_CURRENCY_CODES = frozenset(currency.code for currency in SUPPORTED_CURRENCIES)


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot fetch live rates."""


class RateSource(str, Enum):
    CACHE = "cache"
    API = "api"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class RateQuote:
    rate: Decimal
    date: date


@dataclass(frozen=True)
class ResolvedRate:
    rate: Decimal
    source: RateSource


@dataclass(frozen=True)
class ConvertedAmount:
    amount_in_base: Decimal
    exchange_rate_used: Decimal


class RateQuoteProvider(Protocol):
    def fetch_quote(self, base: str, target: str) -> RateQuote: ...


class RateCache(Protocol):
    def get_rate(self, base: str, target: str, fetched_at: date) -> Decimal | None: ...

    def get_last_known_rate(self, base: str, target: str) -> Decimal | None: ...

    def save_rate(self, base: str, target: str, rate: Decimal, fetched_at: date) -> None: ...


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


@dataclass
class FrankfurterRateProvider:
    base_url: str = "https://api.frankfurter.app"
    timeout: float = 8.0

    def fetch_quote(self, base: str, target: str) -> RateQuote:
        base_currency = normalize_currency(base)
        target_currency = normalize_currency(target)
        query = urlencode({"from": base_currency, "to": target_currency})
        url = f"{self.base_url.rstrip('/')}/latest?{query}"
        try:
            with urlopen(url, timeout=self.timeout) as response:
                payload = json.load(response)
        except (HTTPError, URLError, TimeoutError, OSError, json.JSONDecodeError) as exc:
            raise RateProviderUnavailable("Frankfurter API unavailable") from exc

        rates = payload.get("rates") if isinstance(payload, dict) else None
        if not isinstance(rates, dict):
            raise RateProviderUnavailable("Frankfurter response missing rates")

        value = rates.get(target_currency)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise RateProviderUnavailable(f"Frankfurter response missing {target_currency} rate")
        rate = Decimal(str(value))
        if not rate.is_finite() or rate <= 0:
            raise RateProviderUnavailable(f"Frankfurter returned an invalid {target_currency} rate")

        return RateQuote(rate=rate, date=_parse_quote_date(payload.get("date")))


@dataclass
class ExchangeRateResolver:
    """Resolves a rate through the cache -> provider -> last known -> identity ladder.

    Never raises for a missing rate; the identity fallback is logged so callers
    can tell unrelated currencies were treated as equal.
    """

    store: RateCache
    provider: RateQuoteProvider
    today: Callable[[], date] = utc_today

    def resolve(self, base: str, target: str, as_of: date | None = None) -> ResolvedRate:
        """Return the rate converting ``base`` into ``target``.

        ``as_of`` is accepted for callers that carry an expense date but is not
        used: rates are always resolved for today's date.
        """
        base_currency = normalize_currency(base)
        target_currency = normalize_currency(target)
        if base_currency == target_currency:
            return ResolvedRate(rate=ONE, source=RateSource.CACHE)

        today = self.today()
        cached = self._read(self.store.get_rate, base_currency, target_currency, today)
        if cached is not None:
            return ResolvedRate(rate=cached, source=RateSource.CACHE)

        try:
            quote = self.provider.fetch_quote(base_currency, target_currency)
        except RateProviderUnavailable as exc:
            logger.warning(
                "Rate fetch failed for %s->%s: %s", base_currency, target_currency, exc
            )
        else:
            try:
                self.store.save_rate(base_currency, target_currency, quote.rate, today)
            except PersistenceError as exc:
                logger.warning(
                    "Could not cache %s->%s rate: %s", base_currency, target_currency, exc
                )
            return ResolvedRate(rate=quote.rate, source=RateSource.API)

        last_known = self._read(self.store.get_last_known_rate, base_currency, target_currency)
        if last_known is not None:
            return ResolvedRate(rate=last_known, source=RateSource.FALLBACK)

        logger.warning(
            "No rate found for %s->%s, using identity rate 1.0", base_currency, target_currency
        )
        return ResolvedRate(rate=ONE, source=RateSource.FALLBACK)

    def _read(self, lookup: Callable[..., Decimal | None], *args) -> Decimal | None:
        try:
            return lookup(*args)
        except PersistenceError as exc:
            logger.warning("Rate cache lookup failed for %s: %s", args[:2], exc)
            return None


@dataclass
class AmountConverter:
    resolver: ExchangeRateResolver

    def convert(
        self,
        amount: Decimal | int | float | str,
        from_currency: str,
        to_currency: str,
    ) -> ConvertedAmount:
        resolved = self.resolver.resolve(from_currency, to_currency)
        return self.apply_rate(amount, resolved.rate)

    def apply_rate(self, amount: Decimal | int | float | str, rate: Decimal) -> ConvertedAmount:
        return ConvertedAmount(
            amount_in_base=round_money(_coerce_amount(amount) * rate),
            exchange_rate_used=rate,
        )


def round_money(value: Decimal) -> Decimal:
    try:
        return value.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValueError(f"Amount out of range: {value}") from exc


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def is_supported_currency(code: str) -> bool:
    return code.strip().upper() in SUPPORTED_CURRENCY_CODES


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    try:
        return Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {amount!r}") from exc


def _parse_quote_date(value: object) -> date:
    if isinstance(value, str):
        try:
            return datetime.strptime(value, "%Y-%m-%d").date()
        except ValueError:
            pass
    return utc_today()
