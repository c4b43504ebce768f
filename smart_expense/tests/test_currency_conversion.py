import io
import json
import unittest
from datetime import date
from decimal import Decimal
from unittest import mock
from urllib.error import URLError

from smart_expense.currency_conversion import (
    AmountConverter,
    ExchangeRateResolver,
    FrankfurterRateProvider,
    RateProviderUnavailable,
    RateQuote,
    RateSource,
    is_supported_currency,
    normalize_currency,
)
from smart_expense.db import PersistenceError, PersistenceErrorKind

TODAY = date(2026, 3, 10)


class FakeRateStore:
    def __init__(self, today_rates=None, last_known=None, fail_reads=False, fail_writes=False) -> None:
        self.today_rates = dict(today_rates or {})
        self.last_known = dict(last_known or {})
        self.fail_reads = fail_reads
        self.fail_writes = fail_writes
        self.saved = []
        self.reads = 0

    def get_rate(self, base, target, fetched_at):
        self.reads += 1
        if self.fail_reads:
            raise PersistenceError("Error fetching rate: boom", kind=PersistenceErrorKind.OTHER)
        return self.today_rates.get((base, target, fetched_at))

    def get_last_known_rate(self, base, target):
        self.reads += 1
        if self.fail_reads:
            raise PersistenceError("Error fetching rate: boom", kind=PersistenceErrorKind.OTHER)
        return self.last_known.get((base, target))

    def save_rate(self, base, target, rate, fetched_at):
        if self.fail_writes:
            raise PersistenceError("Error saving rate: read-only", kind=PersistenceErrorKind.PERMISSION_DENIED)
        self.saved.append((base, target, rate, fetched_at))


class FakeProvider:
    def __init__(self, rate=None) -> None:
        self.rate = rate
        self.calls = []

    def fetch_quote(self, base, target):
        self.calls.append((base, target))
        if self.rate is None:
            raise RateProviderUnavailable("Down")
        return RateQuote(rate=self.rate, date=TODAY)


class ExchangeRateResolverTests(unittest.TestCase):
    def build(self, store=None, provider=None) -> ExchangeRateResolver:
        return ExchangeRateResolver(
            store=store or FakeRateStore(),
            provider=provider or FakeProvider(),
            today=lambda: TODAY,
        )

    def test_same_currency_is_identity_without_io(self) -> None:
        store = FakeRateStore()
        provider = FakeProvider(Decimal("0.9"))

        resolved = self.build(store, provider).resolve(" usd ", "USD")

        self.assertEqual(resolved.rate, Decimal("1"))
        self.assertEqual(store.reads, 0)
        self.assertEqual(provider.calls, [])

    def test_cached_rate_for_today_skips_provider(self) -> None:
        store = FakeRateStore(today_rates={("USD", "EUR", TODAY): Decimal("0.91")})
        provider = FakeProvider(Decimal("0.5"))

        resolved = self.build(store, provider).resolve("USD", "EUR")

        self.assertEqual(resolved.rate, Decimal("0.91"))
        self.assertEqual(resolved.source, RateSource.CACHE)
        self.assertEqual(provider.calls, [])

    def test_fetched_rate_is_saved_for_today(self) -> None:
        store = FakeRateStore()
        provider = FakeProvider(Decimal("0.92"))

        resolved = self.build(store, provider).resolve("usd", "eur")

        self.assertEqual(resolved.rate, Decimal("0.92"))
        self.assertEqual(resolved.source, RateSource.API)
        self.assertEqual(store.saved, [("USD", "EUR", Decimal("0.92"), TODAY)])

    def test_failed_cache_write_still_returns_fetched_rate(self) -> None:
        store = FakeRateStore(fail_writes=True)

        with self.assertLogs("smart_expense.currency_conversion", level="WARNING"):
            resolved = self.build(store, FakeProvider(Decimal("4100"))).resolve("USD", "COP")

        self.assertEqual(resolved.rate, Decimal("4100"))

    def test_provider_failure_uses_last_known_rate(self) -> None:
        store = FakeRateStore(last_known={("EUR", "USD"): Decimal("1.08")})

        resolved = self.build(store).resolve("EUR", "USD")

        self.assertEqual(resolved.rate, Decimal("1.08"))
        self.assertEqual(resolved.source, RateSource.FALLBACK)

    def test_no_rate_anywhere_falls_back_to_identity_and_logs(self) -> None:
        with self.assertLogs("smart_expense.currency_conversion", level="WARNING") as logs:
            resolved = self.build().resolve("GBP", "JPY")

        self.assertEqual(resolved.rate, Decimal("1"))
        self.assertEqual(resolved.source, RateSource.FALLBACK)
        self.assertTrue(any("identity" in line for line in logs.output))

    def test_as_of_does_not_change_resolution(self) -> None:
        store = FakeRateStore(today_rates={("USD", "EUR", TODAY): Decimal("0.91")})
        resolver = self.build(store)

        resolved = resolver.resolve("USD", "EUR", as_of=date(2020, 1, 1))

        self.assertEqual(resolved.rate, Decimal("0.91"))

    def test_unreadable_cache_is_treated_as_miss(self) -> None:
        store = FakeRateStore(fail_reads=True)

        resolved = self.build(store, FakeProvider(Decimal("0.8"))).resolve("USD", "GBP")

        self.assertEqual(resolved.rate, Decimal("0.8"))


class AmountConverterTests(unittest.TestCase):
    def setUp(self) -> None:
        store = FakeRateStore(today_rates={("USD", "EUR", TODAY): Decimal("0.9")})
        resolver = ExchangeRateResolver(store=store, provider=FakeProvider(), today=lambda: TODAY)
        self.converter = AmountConverter(resolver)

    def test_same_currency_returns_original_amount(self) -> None:
        converted = self.converter.convert(Decimal("12.50"), "USD", "usd")

        self.assertEqual(converted.amount_in_base, Decimal("12.50"))
        self.assertEqual(converted.exchange_rate_used, Decimal("1"))

    def test_conversion_uses_resolved_rate(self) -> None:
        converted = self.converter.convert(Decimal("10"), "USD", "EUR")

        self.assertEqual(converted.amount_in_base, Decimal("9.00"))
        self.assertEqual(converted.exchange_rate_used, Decimal("0.9"))

    def test_rounds_half_up_to_cents(self) -> None:
        converted = self.converter.apply_rate(Decimal("0.05"), Decimal("0.5"))

        self.assertEqual(converted.amount_in_base, Decimal("0.03"))

    def test_amount_beyond_decimal_precision_raises_value_error(self) -> None:
        with self.assertRaises(ValueError):
            self.converter.apply_rate(Decimal("1e30"), Decimal("1"))

    def test_accepts_string_amounts(self) -> None:
        converted = self.converter.apply_rate("3.335", Decimal("1"))

        self.assertEqual(converted.amount_in_base, Decimal("3.34"))


class FrankfurterRateProviderTests(unittest.TestCase):
    def respond(self, payload):
        return io.BytesIO(json.dumps(payload).encode("utf-8"))

    def test_parses_rate_and_date(self) -> None:
        provider = FrankfurterRateProvider(base_url="https://rates.test")
        body = self.respond({"base": "USD", "date": "2026-03-09", "rates": {"EUR": 0.9123}})

        with mock.patch("smart_expense.currency_conversion.urlopen", return_value=body) as urlopen:
            quote = provider.fetch_quote("usd", "eur")

        self.assertEqual(quote.rate, Decimal("0.9123"))
        self.assertEqual(quote.date, date(2026, 3, 9))
        self.assertIn("from=USD", urlopen.call_args[0][0])
        self.assertIn("to=EUR", urlopen.call_args[0][0])

    def test_network_error_raises_unavailable(self) -> None:
        provider = FrankfurterRateProvider()

        with mock.patch("smart_expense.currency_conversion.urlopen", side_effect=URLError("down")):
            with self.assertRaises(RateProviderUnavailable):
                provider.fetch_quote("USD", "EUR")

    def test_missing_or_invalid_rate_raises_unavailable(self) -> None:
        provider = FrankfurterRateProvider()
        payloads = [
            {"rates": {}},
            {"rates": {"EUR": "abc"}},
            {"rates": {"EUR": 0}},
            {"date": "2026-03-09"},
        ]
        for payload in payloads:
            with self.subTest(payload=payload):
                with mock.patch(
                    "smart_expense.currency_conversion.urlopen",
                    return_value=self.respond(payload),
                ):
                    with self.assertRaises(RateProviderUnavailable):
                        provider.fetch_quote("USD", "EUR")


class CurrencyCodeTests(unittest.TestCase):
    def test_normalizes_currency_codes(self) -> None:
        self.assertEqual(normalize_currency(" eur "), "EUR")

    def test_rejects_malformed_codes(self) -> None:
        with self.assertRaises(ValueError):
            normalize_currency("EURO")

    def test_supported_currency_list(self) -> None:
        self.assertTrue(is_supported_currency("cop"))
        self.assertFalse(is_supported_currency("XYZ"))


if __name__ == "__main__":
    unittest.main()
