from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass

from smart_expense.currency_conversion import is_supported_currency, normalize_currency

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./smart_expense.db"
    exchange_rate_api_url: str = "https://api.frankfurter.app"
    exchange_rate_timeout: float = 8.0
    default_currency: str = "USD"
    frontend_origin: str = "http://localhost:3000"
    log_level: str = "INFO"


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", Settings.database_url),
        exchange_rate_api_url=os.getenv("EXCHANGE_RATE_API_URL", Settings.exchange_rate_api_url).rstrip("/"),
        exchange_rate_timeout=_get_float("EXCHANGE_RATE_TIMEOUT", Settings.exchange_rate_timeout),
        default_currency=get_system_default_currency(),
        frontend_origin=os.getenv("FRONTEND_ORIGIN", Settings.frontend_origin),
        log_level=os.getenv("LOG_LEVEL", Settings.log_level).upper(),
    )


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", "USD")
    try:
        normalized = normalize_currency(raw)
    except ValueError:
        return "USD"
    return normalized if is_supported_currency(normalized) else "USD"


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if not any(getattr(handler, "_smart_expense", False) for handler in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._smart_expense = True
        root.addHandler(handler)
    numeric_level = logging.getLevelName(level.upper())
    root.setLevel(numeric_level if isinstance(numeric_level, int) else logging.INFO)


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default
