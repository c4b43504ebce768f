import logging
from decimal import Decimal

from fastapi import FastAPI, File, Header, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from smart_expense import actions
from smart_expense.config import configure_logging, load_settings
from smart_expense.csv_import import ImportResult
from smart_expense.csv_parser import CsvParseResult
from smart_expense.currency_conversion import SUPPORTED_CURRENCIES
from smart_expense.dashboard import DashboardSnapshot
from smart_expense.db import PersistenceError, init_db
from smart_expense.insights_engine import InsightsSnapshot, SavingsScenario
from smart_expense.results import ErrorKind, Failure, FieldErrors, Success
from smart_expense.services import AppServices, build_services

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.CONFLICT: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.UPSTREAM_UNAVAILABLE: 502,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.PERMISSION: 403,
    ErrorKind.INTERNAL: 500,
}


class CurrencyResponse(BaseModel):
    code: str
    name: str
    symbol: str


class SettingsUpdatePayload(BaseModel):
    base_currency: str | None = None
    display_name: str | None = None


def unwrap(result):
    if isinstance(result, Success):
        return result.data
    if isinstance(result, FieldErrors):
        raise HTTPException(status_code=422, detail={"errors": result.errors})
    if isinstance(result, Failure):
        status_code = STATUS_BY_KIND.get(result.kind, 500)
        if status_code >= 500:
            logger.error("Request failed (%s): %s", result.kind.value, result.message)
        raise HTTPException(status_code=status_code, detail=result.message)
    raise TypeError(f"Unexpected action result: {result!r}")


async def read_csv_upload(file: UploadFile) -> str:
    if not file.filename or not file.filename.lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="Se requiere un archivo CSV.")

    contents = await file.read()
    try:
        return contents.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="El CSV debe estar codificado en UTF-8.") from exc


def create_app(services: AppServices | None = None) -> FastAPI:
    if services is None:
        settings = load_settings()
        configure_logging(settings.log_level)
        services = build_services(settings)

    app = FastAPI(title="Smart Expense")
    app.state.services = services
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[services.settings.frontend_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def create_tables() -> None:
        init_db(services.engine)

    def get_user_id(x_user_id: str | None) -> int:
        if not x_user_id:
            raise HTTPException(status_code=401, detail="Missing user identity.")
        try:
            user_id = int(x_user_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
        try:
            found = services.users.exists(user_id)
        except PersistenceError as exc:
            logger.error("User lookup failed: %s", exc)
            raise HTTPException(status_code=500, detail="Failed to load user.") from exc
        if not found:
            raise HTTPException(status_code=404, detail="User not found.")
        return user_id

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.get("/currencies", response_model=list[CurrencyResponse])
    def list_currencies() -> list[CurrencyResponse]:
        return [
            CurrencyResponse(code=currency.code, name=currency.name, symbol=currency.symbol)
            for currency in SUPPORTED_CURRENCIES
        ]

    @app.get("/exchange-rate")
    def get_exchange_rate(
        from_currency: str | None = Query(None, alias="from"),
        to_currency: str | None = Query(None, alias="to"),
    ) -> dict:
        lookup = unwrap(actions.lookup_exchange_rate(services, from_currency, to_currency))
        return {
            "from": lookup.from_currency,
            "to": lookup.to_currency,
            "rate": lookup.rate,
            "date": lookup.date,
        }

    @app.post("/users", response_model=actions.UserSettings)
    def create_user(payload: dict) -> actions.UserSettings:
        return unwrap(actions.create_user(services, payload))

    @app.get("/users/me/settings", response_model=actions.UserSettings)
    def get_user_settings(
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> actions.UserSettings:
        user_id = get_user_id(x_user_id)
        return unwrap(actions.get_settings(services, user_id))

    @app.put("/users/me/settings")
    def update_user_settings(
        payload: SettingsUpdatePayload,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> dict:
        user_id = get_user_id(x_user_id)
        if payload.base_currency is None and payload.display_name is None:
            raise HTTPException(status_code=400, detail="Nada que actualizar.")

        response: dict = {"migrated_expenses": 0, "source_currencies": []}
        if payload.display_name is not None:
            response["settings"] = unwrap(
                actions.update_profile(services, user_id, {"display_name": payload.display_name})
            )
        if payload.base_currency is not None:
            change = unwrap(
                actions.update_base_currency(services, user_id, {"base_currency": payload.base_currency})
            )
            response.update(change.model_dump())
        return response

    @app.get("/categories")
    def list_categories(x_user_id: str | None = Header(None, alias="x-user-id")):
        user_id = get_user_id(x_user_id)
        return unwrap(actions.list_categories(services, user_id))

    @app.post("/categories", status_code=201)
    def create_category(
        payload: dict,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ):
        user_id = get_user_id(x_user_id)
        return unwrap(actions.create_category(services, user_id, payload))

    @app.put("/categories/{category_id}")
    def update_category(
        category_id: int,
        payload: dict,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ):
        user_id = get_user_id(x_user_id)
        return unwrap(actions.update_category(services, user_id, category_id, payload))

    @app.delete("/categories/{category_id}")
    def delete_category(
        category_id: int,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> dict:
        user_id = get_user_id(x_user_id)
        unwrap(actions.delete_category(services, user_id, category_id))
        return {"status": "deleted"}

    @app.get("/expenses")
    def list_expenses(
        month: int | None = Query(None),
        year: int | None = Query(None),
        category_id: int | None = Query(None, alias="category"),
        page: int = Query(1, ge=1),
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ):
        user_id = get_user_id(x_user_id)
        return unwrap(
            actions.list_expenses(
                services,
                user_id,
                month=month,
                year=year,
                category_id=category_id,
                page=page,
            )
        )

    @app.post("/expenses", status_code=201)
    def create_expense(
        payload: dict,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ):
        user_id = get_user_id(x_user_id)
        return unwrap(actions.create_expense(services, user_id, payload))

    @app.put("/expenses/{expense_id}")
    def update_expense(
        expense_id: int,
        payload: dict,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ):
        user_id = get_user_id(x_user_id)
        return unwrap(actions.update_expense(services, user_id, expense_id, payload))

    @app.delete("/expenses/{expense_id}")
    def delete_expense(
        expense_id: int,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> dict:
        user_id = get_user_id(x_user_id)
        unwrap(actions.delete_expense(services, user_id, expense_id))
        return {"status": "deleted"}

    @app.post("/expenses/import/preview", response_model=CsvParseResult)
    async def preview_expense_import(
        file: UploadFile = File(...),
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> CsvParseResult:
        user_id = get_user_id(x_user_id)
        decoded = await read_csv_upload(file)
        return unwrap(actions.preview_csv_import(services, user_id, decoded))

    @app.post("/expenses/import", response_model=ImportResult)
    async def import_expenses(
        file: UploadFile = File(...),
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> ImportResult:
        user_id = get_user_id(x_user_id)
        decoded = await read_csv_upload(file)
        return unwrap(actions.import_csv(services, user_id, decoded))

    @app.get("/dashboard", response_model=DashboardSnapshot)
    def get_dashboard(
        month: int | None = Query(None),
        year: int | None = Query(None),
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> DashboardSnapshot:
        user_id = get_user_id(x_user_id)
        today = services.today()
        return unwrap(actions.load_dashboard(services, user_id, month or today.month, year or today.year))

    @app.get("/insights", response_model=InsightsSnapshot)
    def get_insights(
        month: int | None = Query(None),
        year: int | None = Query(None),
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> InsightsSnapshot:
        user_id = get_user_id(x_user_id)
        today = services.today()
        return unwrap(actions.load_insights(services, user_id, month or today.month, year or today.year))

    @app.get("/insights/what-if", response_model=SavingsScenario)
    def get_what_if(
        month: int | None = Query(None),
        year: int | None = Query(None),
        category: str | None = Query(None),
        reduction_pct: Decimal = Query(Decimal("20")),
        goal: Decimal = Query(Decimal("0")),
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> SavingsScenario:
        user_id = get_user_id(x_user_id)
        today = services.today()
        return unwrap(
            actions.simulate_what_if(
                services,
                user_id,
                month or today.month,
                year or today.year,
                category=category,
                reduction_pct=reduction_pct,
                monthly_goal=goal,
            )
        )

    return app


app = create_app()
