from __future__ import annotations

import logging
import re
from datetime import date
from decimal import Decimal
from typing import Any, Mapping

from pydantic import BaseModel, ValidationError, field_validator

from smart_expense.csv_import import DiscardedRowResult, ImportResult
from smart_expense.csv_parser import CsvParseResult, parse_expenses_csv
from smart_expense.currency_conversion import (
    SUPPORTED_CURRENCY_CODES,
    RateProviderUnavailable,
    is_supported_currency,
    normalize_currency,
)
from smart_expense.currency_migration import CurrencyMigrationError, CurrencyMigrationReport
from smart_expense.dashboard import DashboardSnapshot, get_dashboard_snapshot
from smart_expense.db import PersistenceError, PersistenceErrorKind
from smart_expense.insights_engine import (
    InsightsSnapshot,
    SavingsScenario,
    get_insights_snapshot,
    simulate_savings,
)
from smart_expense.rate_limit import pair_key
from smart_expense.repository import (
    DEFAULT_PAGE_SIZE,
    CategoryRecord,
    ExpensePage,
    ExpenseRecord,
    NewExpense,
)
from smart_expense.results import (
    ActionResult,
    ErrorKind,
    Failure,
    FieldErrors,
    Success,
    failure_from_persistence,
    field_errors_from,
)
from smart_expense.services import AppServices

logger = logging.getLogger(__name__)

MAX_EXPENSE_AMOUNT = Decimal("999999999.99")
HEX_COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")

DUPLICATE_CATEGORY_MESSAGE = "Ya existe una categoría con ese nombre"
CATEGORY_IN_USE_MESSAGE = "No se puede eliminar: hay gastos asociados a esta categoría"


class ExpensePayload(BaseModel):
    category_id: int
    description: str = ""
    amount: Decimal
    currency: str
    expense_date: date

    @field_validator("description")
    @classmethod
    def validate_description(cls, value: str) -> str:
        value = value.strip()
        if len(value) > 200:
            raise ValueError("La descripción no puede exceder 200 caracteres")
        return value

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, value: Decimal) -> Decimal:
        if value <= 0:
            raise ValueError("El monto debe ser mayor a 0")
        if value > MAX_EXPENSE_AMOUNT:
            raise ValueError("El monto excede el límite permitido")
        return value

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, value: str) -> str:
        try:
            return normalize_currency(value)
        except ValueError as exc:
            raise ValueError("Código de moneda inválido (debe ser 3 caracteres, ej: USD)") from exc


class CategoryPayload(BaseModel):
    name: str
    icon: str
    color: str

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("El nombre es obligatorio")
        if len(value) > 50:
            raise ValueError("El nombre no puede exceder 50 caracteres")
        return value

    @field_validator("icon")
    @classmethod
    def validate_icon(cls, value: str) -> str:
        if not value:
            raise ValueError("El ícono es obligatorio")
        if len(value) > 10:
            raise ValueError("Ícono demasiado largo")
        return value

    @field_validator("color")
    @classmethod
    def validate_color(cls, value: str) -> str:
        if not HEX_COLOR_PATTERN.match(value):
            raise ValueError("Color hexadecimal inválido (ej: #FF5733)")
        return value


class BaseCurrencyPayload(BaseModel):
    base_currency: str

    @field_validator("base_currency")
    @classmethod
    def validate_base_currency(cls, value: str) -> str:
        return _supported_currency(value)


class ProfilePayload(BaseModel):
    display_name: str

    @field_validator("display_name")
    @classmethod
    def validate_display_name(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 2:
            raise ValueError("El nombre debe tener al menos 2 caracteres")
        if len(value) > 50:
            raise ValueError("El nombre no puede exceder 50 caracteres")
        return value


class NewUserPayload(BaseModel):
    email: str
    display_name: str | None = None
    base_currency: str | None = None

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        value = value.strip().lower()
        if "@" not in value or len(value) > 255:
            raise ValueError("Email inválido")
        return value

    @field_validator("base_currency")
    @classmethod
    def validate_base_currency(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return _supported_currency(value)


class UserSettings(BaseModel):
    id: int
    email: str
    display_name: str | None = None
    base_currency: str


class BaseCurrencyChange(BaseModel):
    settings: UserSettings
    migrated_expenses: int
    source_currencies: list[str]


class ExchangeRateLookup(BaseModel):
    from_currency: str
    to_currency: str
    rate: Decimal
    date: date


def resolve_base_currency(services: AppServices, user_id: int) -> str:
    stored = services.users.get_base_currency(user_id)
    if stored and is_supported_currency(stored):
        return stored.strip().upper()
    return services.settings.default_currency


def create_user(services: AppServices, data: Mapping[str, Any]) -> ActionResult[UserSettings]:
    try:
        payload = NewUserPayload.model_validate(data)
    except ValidationError as exc:
        return field_errors_from(exc)
    try:
        user_id = services.users.create_user(
            payload.email,
            base_currency=payload.base_currency or services.settings.default_currency,
            display_name=payload.display_name,
        )
        user = services.users.get_user(user_id)
    except PersistenceError as exc:
        return failure_from_persistence(exc, unique_message="Ya existe un usuario con ese email")
    logger.info("Created user %s", user_id)
    return Success(_user_settings(user))


def get_settings(services: AppServices, user_id: int) -> ActionResult[UserSettings]:
    try:
        user = services.users.get_user(user_id)
    except PersistenceError as exc:
        return failure_from_persistence(exc)
    if user is None:
        return Failure(ErrorKind.NOT_FOUND, "Usuario no encontrado")
    return Success(_user_settings(user))


def update_profile(services: AppServices, user_id: int, data: Mapping[str, Any]) -> ActionResult[UserSettings]:
    try:
        payload = ProfilePayload.model_validate(data)
    except ValidationError as exc:
        return field_errors_from(exc)
    try:
        if not services.users.set_display_name(user_id, payload.display_name):
            return Failure(ErrorKind.NOT_FOUND, "No se pudo actualizar el perfil")
        user = services.users.get_user(user_id)
    except PersistenceError as exc:
        return failure_from_persistence(exc)
    return Success(_user_settings(user))


def update_base_currency(
    services: AppServices, user_id: int, data: Mapping[str, Any]
) -> ActionResult[BaseCurrencyChange]:
    """Store the new base currency, then re-convert every existing expense.

    The preference is saved before any expense is rewritten; a failure part way
    through leaves earlier batches in the new currency.
    """
    try:
        payload = BaseCurrencyPayload.model_validate(data)
    except ValidationError as exc:
        return field_errors_from(exc)

    try:
        old_currency = resolve_base_currency(services, user_id)
        report: CurrencyMigrationReport = services.migrator.migrate_base_currency(
            user_id, old_currency, payload.base_currency
        )
        user = services.users.get_user(user_id)
    except CurrencyMigrationError as exc:
        if exc.kind is PersistenceErrorKind.PERMISSION_DENIED:
            return Failure(
                ErrorKind.PERMISSION,
                "No se pudo convertir los gastos a la nueva moneda por falta de permisos en la base de datos.",
            )
        return Failure(ErrorKind.INTERNAL, str(exc))
    except PersistenceError as exc:
        return failure_from_persistence(exc)

    if user is None:
        return Failure(ErrorKind.NOT_FOUND, "No se pudo actualizar la moneda base")
    return Success(
        BaseCurrencyChange(
            settings=_user_settings(user),
            migrated_expenses=report.updated,
            source_currencies=report.currencies,
        )
    )


def list_categories(services: AppServices, user_id: int) -> ActionResult[list[CategoryRecord]]:
    try:
        return Success(services.categories.list_for_user(user_id))
    except PersistenceError as exc:
        return failure_from_persistence(exc)


def create_category(services: AppServices, user_id: int, data: Mapping[str, Any]) -> ActionResult[CategoryRecord]:
    try:
        payload = CategoryPayload.model_validate(data)
    except ValidationError as exc:
        return field_errors_from(exc)
    try:
        return Success(services.categories.create(user_id, payload.name, payload.icon, payload.color))
    except PersistenceError as exc:
        return failure_from_persistence(exc, unique_message=DUPLICATE_CATEGORY_MESSAGE)


def update_category(
    services: AppServices, user_id: int, category_id: int, data: Mapping[str, Any]
) -> ActionResult[CategoryRecord]:
    try:
        payload = CategoryPayload.model_validate(data)
    except ValidationError as exc:
        return field_errors_from(exc)
    try:
        updated = services.categories.update(user_id, category_id, payload.name, payload.icon, payload.color)
    except PersistenceError as exc:
        return failure_from_persistence(exc, unique_message=DUPLICATE_CATEGORY_MESSAGE)
    if updated is None:
        return Failure(ErrorKind.NOT_FOUND, "Categoría no encontrada")
    return Success(updated)


def delete_category(services: AppServices, user_id: int, category_id: int) -> ActionResult[None]:
    try:
        deleted = services.categories.delete(user_id, category_id)
    except PersistenceError as exc:
        return failure_from_persistence(exc, foreign_key_message=CATEGORY_IN_USE_MESSAGE)
    if not deleted:
        return Failure(ErrorKind.NOT_FOUND, "Categoría no encontrada")
    return Success(None)


def list_expenses(
    services: AppServices,
    user_id: int,
    *,
    month: int | None = None,
    year: int | None = None,
    category_id: int | None = None,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> ActionResult[ExpensePage]:
    if month is not None and not 1 <= month <= 12:
        return FieldErrors({"month": ["Mes inválido"]})
    try:
        return Success(
            services.expenses.list_page(
                user_id,
                month=month,
                year=year,
                category_id=category_id,
                page=page,
                page_size=page_size,
            )
        )
    except PersistenceError as exc:
        return failure_from_persistence(exc)


def create_expense(services: AppServices, user_id: int, data: Mapping[str, Any]) -> ActionResult[ExpenseRecord]:
    prepared = _prepare_expense(services, user_id, data)
    if not isinstance(prepared, NewExpense):
        return prepared
    try:
        return Success(services.expenses.create(user_id, prepared))
    except PersistenceError as exc:
        return failure_from_persistence(exc)


def update_expense(
    services: AppServices, user_id: int, expense_id: int, data: Mapping[str, Any]
) -> ActionResult[ExpenseRecord]:
    prepared = _prepare_expense(services, user_id, data)
    if not isinstance(prepared, NewExpense):
        return prepared
    try:
        updated = services.expenses.update(user_id, expense_id, prepared)
    except PersistenceError as exc:
        return failure_from_persistence(exc)
    if updated is None:
        return Failure(ErrorKind.NOT_FOUND, "Gasto no encontrado")
    return Success(updated)


def delete_expense(services: AppServices, user_id: int, expense_id: int) -> ActionResult[None]:
    try:
        deleted = services.expenses.delete(user_id, expense_id)
    except PersistenceError as exc:
        return failure_from_persistence(exc)
    if not deleted:
        return Failure(ErrorKind.NOT_FOUND, "Gasto no encontrado")
    return Success(None)


def preview_csv_import(services: AppServices, user_id: int, contents: str) -> ActionResult[CsvParseResult]:
    try:
        base_currency = resolve_base_currency(services, user_id)
        return Success(parse_expenses_csv(contents, base_currency, today=services.today()))
    except ValueError as exc:
        return Failure(ErrorKind.VALIDATION, str(exc))
    except PersistenceError as exc:
        return failure_from_persistence(exc)


def import_csv(services: AppServices, user_id: int, contents: str) -> ActionResult[ImportResult]:
    """Validate every CSV row, then import the survivors.

    Discarded rows are tallied here; the importer only sees valid rows.
    """
    try:
        base_currency = resolve_base_currency(services, user_id)
        parsed = parse_expenses_csv(contents, base_currency, today=services.today())
    except ValueError as exc:
        return Failure(ErrorKind.VALIDATION, str(exc))
    except PersistenceError as exc:
        return failure_from_persistence(exc)

    if not parsed.valid_rows and not parsed.discarded_rows:
        return Failure(ErrorKind.VALIDATION, "El archivo no contiene filas para importar.")

    result = services.importer.import_batch(user_id, parsed.valid_rows, base_currency)
    result.discarded = len(parsed.discarded_rows)
    result.discarded_rows = [
        DiscardedRowResult(
            row_index=discarded.row_index,
            reason=discarded.row.discard_reason or "Fila descartada",
            defaults_applied=list(discarded.row.defaults_applied),
        )
        for discarded in parsed.discarded_rows
    ]
    return Success(result)


def load_insights(
    services: AppServices,
    user_id: int,
    month: int,
    year: int,
) -> ActionResult[InsightsSnapshot]:
    if not 1 <= month <= 12:
        return FieldErrors({"month": ["Mes inválido"]})
    try:
        base_currency = resolve_base_currency(services, user_id)
        return Success(
            get_insights_snapshot(
                services.expenses,
                user_id,
                month,
                year,
                base_currency,
                today=services.today(),
            )
        )
    except PersistenceError as exc:
        return failure_from_persistence(exc)


def load_dashboard(
    services: AppServices,
    user_id: int,
    month: int,
    year: int,
) -> ActionResult[DashboardSnapshot]:
    if not 1 <= month <= 12:
        return FieldErrors({"month": ["Mes inválido"]})
    try:
        return Success(
            get_dashboard_snapshot(
                services.expenses,
                user_id,
                month,
                year,
                resolve_base_currency(services, user_id),
            )
        )
    except PersistenceError as exc:
        return failure_from_persistence(exc)


def simulate_what_if(
    services: AppServices,
    user_id: int,
    month: int,
    year: int,
    *,
    category: str | None,
    reduction_pct: Decimal,
    monthly_goal: Decimal = Decimal("0"),
) -> ActionResult[SavingsScenario]:
    snapshot = load_insights(services, user_id, month, year)
    if not isinstance(snapshot, Success):
        return snapshot
    try:
        return Success(simulate_savings(snapshot.data, category, reduction_pct, monthly_goal))
    except ValueError as exc:
        return Failure(ErrorKind.VALIDATION, str(exc))


def lookup_exchange_rate(
    services: AppServices,
    from_currency: str | None,
    to_currency: str | None,
) -> ActionResult[ExchangeRateLookup]:
    base = (from_currency or "").strip().upper()
    target = (to_currency or "").strip().upper()
    if not base or not target:
        return Failure(ErrorKind.VALIDATION, "Missing 'from' and 'to' query parameters")
    if not is_supported_currency(base) or not is_supported_currency(target):
        return Failure(
            ErrorKind.VALIDATION,
            f"Unsupported currency. Supported: {', '.join(sorted(SUPPORTED_CURRENCY_CODES))}",
        )

    if base == target:
        return Success(ExchangeRateLookup(from_currency=base, to_currency=target, rate=Decimal("1"), date=services.today()))

    key = pair_key(base, target)
    if services.rate_limiter.is_limited(key):
        return Failure(ErrorKind.RATE_LIMITED, "Rate limited. Max 1 request per currency pair per day.")

    try:
        quote = services.rate_provider.fetch_quote(base, target)
    except RateProviderUnavailable as exc:
        logger.error("Exchange rate lookup failed for %s: %s", key, exc)
        return Failure(ErrorKind.UPSTREAM_UNAVAILABLE, "Failed to fetch exchange rate")

    services.rate_limiter.record(key)
    return Success(ExchangeRateLookup(from_currency=base, to_currency=target, rate=quote.rate, date=quote.date))


def _prepare_expense(
    services: AppServices, user_id: int, data: Mapping[str, Any]
) -> NewExpense | FieldErrors | Failure:
    try:
        payload = ExpensePayload.model_validate(data)
    except ValidationError as exc:
        return field_errors_from(exc)

    try:
        if services.categories.get(user_id, payload.category_id) is None:
            return FieldErrors({"category_id": ["Categoría inválida"]})
        base_currency = resolve_base_currency(services, user_id)
        converted = services.converter.convert(payload.amount, payload.currency, base_currency)
    except PersistenceError as exc:
        return failure_from_persistence(exc)

    return NewExpense(
        category_id=payload.category_id,
        description=payload.description,
        amount=payload.amount,
        currency=payload.currency,
        amount_in_base=converted.amount_in_base,
        exchange_rate_used=converted.exchange_rate_used,
        expense_date=payload.expense_date,
    )


def _supported_currency(value: str) -> str:
    code = value.strip().upper()
    if len(code) != 3:
        raise ValueError("Código de moneda inválido")
    if not is_supported_currency(code):
        raise ValueError(f"Moneda no soportada. Soportadas: {', '.join(sorted(SUPPORTED_CURRENCY_CODES))}")
    return code


def _user_settings(user) -> UserSettings:
    return UserSettings(
        id=user.id,
        email=user.email,
        display_name=user.display_name,
        base_currency=user.base_currency,
    )
