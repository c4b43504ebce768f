from __future__ import annotations

import csv
import io
import re
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation

from pydantic import BaseModel, Field

from smart_expense.currency_conversion import SUPPORTED_CURRENCY_CODES, utc_today

DEFAULT_CATEGORY_NAME = "Sin categoría"
DEFAULT_DESCRIPTION = "Sin descripción"
EXPECTED_HEADERS = ("date", "amount", "currency", "category", "description")

ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
# Leading numeric prefix, the way a lenient float parser reads "12.5abc" as 12.5
FLOAT_PREFIX_PATTERN = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")


class CsvRawRow(BaseModel):
    date: str = ""
    amount: str = ""
    currency: str = ""
    category: str = ""
    description: str = ""


class CsvValidatedRow(BaseModel):
    expense_date: date
    amount: Decimal
    currency: str
    category: str
    description: str
    defaults_applied: list[str] = Field(default_factory=list)
    discarded: bool = False
    discard_reason: str | None = None


class CsvDiscardedRow(BaseModel):
    row_index: int
    row: CsvValidatedRow


class CsvParseResult(BaseModel):
    valid_rows: list[CsvValidatedRow]
    discarded_rows: list[CsvDiscardedRow]
    total_rows: int
    defaults_count: int


def validate_csv_row(
    raw: CsvRawRow,
    base_currency: str,
    today: date | None = None,
) -> CsvValidatedRow:
    today = today or utc_today()
    defaults_applied: list[str] = []

    expense_date = parse_iso_date(raw.date)
    if expense_date is None:
        expense_date = today
        defaults_applied.append("date → hoy")
    elif is_future_date(expense_date, today):
        expense_date = today
        defaults_applied.append("date → hoy (era futura)")

    amount = parse_amount(raw.amount)
    if amount is None or amount == 0:
        return CsvValidatedRow(
            expense_date=expense_date,
            amount=Decimal("0"),
            currency=base_currency,
            category=raw.category.strip() or DEFAULT_CATEGORY_NAME,
            description=raw.description.strip() or DEFAULT_DESCRIPTION,
            defaults_applied=defaults_applied,
            discarded=True,
            discard_reason=f'Monto inválido: "{raw.amount}"',
        )
    if amount < 0:
        amount = abs(amount)
        defaults_applied.append("amount → abs()")

    raw_currency = raw.currency.strip()
    currency = raw_currency.upper()
    if not currency or currency not in SUPPORTED_CURRENCY_CODES:
        currency = base_currency
        if raw_currency:
            defaults_applied.append(f'currency → {base_currency} (no reconocido: "{raw_currency}")')
        else:
            defaults_applied.append(f"currency → {base_currency}")

    category = raw.category.strip()
    if not category:
        category = DEFAULT_CATEGORY_NAME
        defaults_applied.append(f"category → '{DEFAULT_CATEGORY_NAME}'")

    description = raw.description.strip()
    if not description:
        description = DEFAULT_DESCRIPTION
        defaults_applied.append(f"description → '{DEFAULT_DESCRIPTION}'")

    return CsvValidatedRow(
        expense_date=expense_date,
        amount=amount,
        currency=currency,
        category=category,
        description=description,
        defaults_applied=defaults_applied,
    )


def parse_expenses_csv(
    contents: str,
    base_currency: str,
    today: date | None = None,
) -> CsvParseResult:
    reader = csv.reader(io.StringIO(contents))
    rows = [row for row in reader if not is_blank_row(row)]
    if not rows:
        raise ValueError("CSV missing header row.")

    fieldnames = [normalize_header(name) for name in rows[0]]
    if not set(EXPECTED_HEADERS) & set(fieldnames):
        raise ValueError("CSV headers must include date, amount, currency, category, description.")

    today = today or utc_today()
    valid_rows: list[CsvValidatedRow] = []
    discarded_rows: list[CsvDiscardedRow] = []
    defaults_count = 0

    data_rows = rows[1:]
    for index, row in enumerate(data_rows):
        validated = validate_csv_row(row_to_raw(fieldnames, row), base_currency, today=today)
        if validated.discarded:
            discarded_rows.append(CsvDiscardedRow(row_index=index, row=validated))
            continue
        valid_rows.append(validated)
        if validated.defaults_applied:
            defaults_count += 1

    return CsvParseResult(
        valid_rows=valid_rows,
        discarded_rows=discarded_rows,
        total_rows=len(data_rows),
        defaults_count=defaults_count,
    )


def row_to_raw(fieldnames: list[str], row: list[str]) -> CsvRawRow:
    values = dict(zip(fieldnames, row))
    return CsvRawRow(**{name: values.get(name) or "" for name in EXPECTED_HEADERS})


def parse_iso_date(value: str | None) -> date | None:
    cleaned = clean_text(value)
    if not ISO_DATE_PATTERN.match(cleaned):
        return None
    try:
        return date.fromisoformat(cleaned)
    except ValueError:
        return None


def is_future_date(value: date, today: date) -> bool:
    return value > today + timedelta(days=1)


def parse_amount(value: str | None) -> Decimal | None:
    cleaned = clean_text(value).replace(",", ".", 1)
    match = FLOAT_PREFIX_PATTERN.match(cleaned)
    if not match:
        return None
    try:
        amount = Decimal(match.group(0))
    except InvalidOperation:
        return None
    return amount if amount.is_finite() else None


def normalize_header(value: str) -> str:
    return value.strip().lstrip("\ufeff").lower()


def clean_text(value: str | None) -> str:
    return value.strip() if value else ""


def is_blank_row(row: list[str]) -> bool:
    return all(not clean_text(value) for value in row)
