import os
import unittest
from unittest import mock

from smart_expense.config import get_system_default_currency, load_settings


class SettingsTests(unittest.TestCase):
    def test_defaults(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            settings = load_settings()

        self.assertEqual(settings.database_url, "sqlite:///./smart_expense.db")
        self.assertEqual(settings.exchange_rate_api_url, "https://api.frankfurter.app")
        self.assertEqual(settings.exchange_rate_timeout, 8.0)
        self.assertEqual(settings.default_currency, "USD")
        self.assertEqual(settings.log_level, "INFO")

    def test_environment_overrides(self) -> None:
        env = {
            "EXCHANGE_RATE_API_URL": "https://rates.test/",
            "EXCHANGE_RATE_TIMEOUT": "2.5",
            "DEFAULT_CURRENCY": " eur ",
            "LOG_LEVEL": "debug",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            settings = load_settings()

        self.assertEqual(settings.exchange_rate_api_url, "https://rates.test")
        self.assertEqual(settings.exchange_rate_timeout, 2.5)
        self.assertEqual(settings.default_currency, "EUR")
        self.assertEqual(settings.log_level, "DEBUG")

    def test_invalid_values_fall_back(self) -> None:
        with mock.patch.dict(os.environ, {"DEFAULT_CURRENCY": "XYZ", "EXCHANGE_RATE_TIMEOUT": "soon"}, clear=True):
            self.assertEqual(get_system_default_currency(), "USD")
            self.assertEqual(load_settings().exchange_rate_timeout, 8.0)


if __name__ == "__main__":
    unittest.main()
