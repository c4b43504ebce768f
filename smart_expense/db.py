from __future__ import annotations

from enum import Enum

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    event,
    func,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("display_name", String(50)),
    Column("base_currency", String(3), nullable=False, server_default="USD"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE")),
    Column("name", String(50), nullable=False),
    Column("icon", String(10), nullable=False),
    Column("color", String(7), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "name", name="uq_categories_user_name"),
)

expenses = Table(
    "expenses",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id", ondelete="RESTRICT"), nullable=False),
    Column("description", String(200), nullable=False, server_default=""),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("amount_in_base", Numeric(14, 2), nullable=False),
    Column("exchange_rate_used", Numeric(20, 10), nullable=False),
    Column("expense_date", Date, nullable=False),
    Column("source", String(10), nullable=False, server_default="manual"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

exchange_rates = Table(
    "exchange_rates",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("base", String(3), nullable=False),
    Column("target", String(3), nullable=False),
    Column("rate", Numeric(20, 10), nullable=False),
    Column("fetched_at", Date, nullable=False),
    UniqueConstraint("base", "target", "fetched_at", name="uq_exchange_rates_pair_day"),
)


class PersistenceErrorKind(str, Enum):
    UNIQUE_VIOLATION = "unique_violation"
    FOREIGN_KEY_VIOLATION = "foreign_key_violation"
    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"
    OTHER = "other"


class PersistenceError(RuntimeError):
    """Raised by the stores when the database rejects an operation."""

    def __init__(self, message: str, kind: PersistenceErrorKind = PersistenceErrorKind.OTHER) -> None:
        super().__init__(message)
        self.kind = kind


_SQLSTATE_KINDS = {
    "23505": PersistenceErrorKind.UNIQUE_VIOLATION,
    "23503": PersistenceErrorKind.FOREIGN_KEY_VIOLATION,
    "42501": PersistenceErrorKind.PERMISSION_DENIED,
}


def classify_database_error(exc: SQLAlchemyError) -> PersistenceErrorKind:
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate in _SQLSTATE_KINDS:
        return _SQLSTATE_KINDS[sqlstate]
    if isinstance(exc, IntegrityError):
        # sqlite3 exposes no SQLSTATE, only the constraint message
        detail = str(orig or exc).upper()
        if "UNIQUE CONSTRAINT" in detail:
            return PersistenceErrorKind.UNIQUE_VIOLATION
        if "FOREIGN KEY CONSTRAINT" in detail:
            return PersistenceErrorKind.FOREIGN_KEY_VIOLATION
    return PersistenceErrorKind.OTHER


def to_persistence_error(exc: SQLAlchemyError, action: str) -> PersistenceError:
    detail = getattr(exc, "orig", None) or exc
    return PersistenceError(f"Error {action}: {detail}", kind=classify_database_error(exc))


def create_db_engine(database_url: str) -> Engine:
    connect_args = {}
    engine_kwargs = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            engine_kwargs["poolclass"] = StaticPool

    engine = create_engine(database_url, connect_args=connect_args, **engine_kwargs)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def allows_concurrent_writes(engine: Engine) -> bool:
    # StaticPool hands every checkout the same DBAPI connection
    return not isinstance(engine.pool, StaticPool)


def init_db(engine: Engine) -> None:
    metadata.create_all(engine)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
