from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, TypeVar, Union

from pydantic import ValidationError

from smart_expense.db import PersistenceError, PersistenceErrorKind

T = TypeVar("T")


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    RATE_LIMITED = "rate_limited"
    PERMISSION = "permission"
    INTERNAL = "internal"


@dataclass(frozen=True)
class Success(Generic[T]):
    data: T


@dataclass(frozen=True)
class FieldErrors:
    errors: dict[str, list[str]] = field(default_factory=dict)


@dataclass(frozen=True)
class Failure:
    kind: ErrorKind
    message: str


ActionResult = Union[Success[T], FieldErrors, Failure]


def field_errors_from(exc: ValidationError) -> FieldErrors:
    errors: dict[str, list[str]] = {}
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "__root__"
        message = error.get("msg", "Valor inválido")
        # pydantic prefixes messages raised from validators
        errors.setdefault(location, []).append(message.removeprefix("Value error, "))
    return FieldErrors(errors=errors)


def failure_from_persistence(
    exc: PersistenceError,
    *,
    unique_message: str | None = None,
    foreign_key_message: str | None = None,
) -> Failure:
    if exc.kind is PersistenceErrorKind.UNIQUE_VIOLATION and unique_message:
        return Failure(ErrorKind.CONFLICT, unique_message)
    if exc.kind is PersistenceErrorKind.FOREIGN_KEY_VIOLATION and foreign_key_message:
        return Failure(ErrorKind.CONFLICT, foreign_key_message)
    if exc.kind is PersistenceErrorKind.PERMISSION_DENIED:
        return Failure(ErrorKind.PERMISSION, "No tienes permiso para realizar esta operación.")
    if exc.kind is PersistenceErrorKind.NOT_FOUND:
        return Failure(ErrorKind.NOT_FOUND, str(exc))
    return Failure(ErrorKind.INTERNAL, str(exc))
