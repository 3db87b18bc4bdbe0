"""Error types raised by the tracker services.

Every failure that leaves the database boundary is one of these kinds; raw
``sqlite3`` errors are translated by :func:`parse_sqlite_error` before they
reach a caller.
"""

import re
import sqlite3
from typing import Any, Optional, Sequence


class AppError(Exception):
    """Base class for all application errors."""

    def __init__(self, message: str, code: str, status_code: int = 500) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class NotFoundError(AppError, LookupError):
    def __init__(self, resource: str, identifier: Any = None) -> None:
        if identifier is not None:
            message = f"{resource} with ID {identifier} not found"
        else:
            message = f"{resource} not found"
        super().__init__(message, "NOT_FOUND", 404)
        self.resource = resource
        self.identifier = identifier


class ValidationError(AppError, ValueError):
    def __init__(
        self, message: str, field: Optional[str] = None, value: Any = None
    ) -> None:
        super().__init__(message, "VALIDATION_ERROR", 400)
        self.field = field
        self.value = value


class DuplicateError(AppError):
    def __init__(self, resource: str, field: str, value: Any = None) -> None:
        if value is not None:
            message = f'{resource} with {field} "{value}" already exists'
        else:
            message = f"{resource} with this {field} already exists"
        super().__init__(message, "DUPLICATE_ERROR", 409)
        self.resource = resource
        self.field = field
        self.value = value


class ConstraintError(AppError):
    def __init__(self, message: str, constraint: str) -> None:
        super().__init__(message, "CONSTRAINT_ERROR", 400)
        self.constraint = constraint


class DatabaseError(AppError):
    """Storage failure not covered by a more specific kind."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        query: Optional[str] = None,
        params: Optional[Sequence[Any]] = None,
    ) -> None:
        super().__init__(message, "DATABASE_ERROR", 500)
        self.operation = operation
        self.query = query
        self.params = list(params) if params is not None else None

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.operation:
            data["operation"] = self.operation
        return data


class TransactionError(AppError):
    def __init__(self, message: str) -> None:
        super().__init__(message, "TRANSACTION_ERROR", 500)


class FileError(AppError):
    def __init__(self, message: str, operation: str, path: Optional[str] = None) -> None:
        super().__init__(message, "FILE_ERROR", 500)
        self.operation = operation
        self.path = path


_UNIQUE_RE = re.compile(r"UNIQUE constraint failed: (\w+)\.(\w+)")
_NOT_NULL_RE = re.compile(r"NOT NULL constraint failed: (\w+)\.(\w+)")


def parse_sqlite_error(
    error: BaseException,
    operation: Optional[str] = None,
    query: Optional[str] = None,
    params: Optional[Sequence[Any]] = None,
) -> AppError:
    """Classify a raw engine error into the application taxonomy."""
    if isinstance(error, AppError):
        return error
    message = str(error)

    if "UNIQUE constraint failed" in message:
        match = _UNIQUE_RE.search(message)
        if match:
            table, field = match.groups()
            return DuplicateError(table, field)
        return DuplicateError("Resource", "field")

    if "FOREIGN KEY constraint failed" in message:
        return ConstraintError("Invalid reference to related data", "FOREIGN_KEY")

    if "CHECK constraint failed" in message:
        return ConstraintError("Value does not meet validation criteria", "CHECK")

    if "NOT NULL constraint failed" in message:
        match = _NOT_NULL_RE.search(message)
        if match:
            field = match.group(2)
            return ValidationError(f'Field "{field}" is required', field)
        return ValidationError("Required field is missing")

    if isinstance(error, sqlite3.Error):
        return DatabaseError(message, operation, query, params)
    return DatabaseError(f"{operation or 'operation'} failed: {message}", operation, query, params)


def first_validation_error(exc) -> ValidationError:
    """Convert a pydantic ``ValidationError`` into the application kind."""
    errors = exc.errors()
    if not errors:
        return ValidationError(str(exc))
    err = errors[0]
    field = ".".join(str(p) for p in err.get("loc", ())) or None
    value = err.get("input")
    msg = err.get("msg", "invalid value")
    if field:
        return ValidationError(f"{field}: {msg}", field, value)
    return ValidationError(msg, None, value)


def get_user_message(error: BaseException) -> str:
    if isinstance(error, AppError):
        return error.message
    if isinstance(error, Exception) and str(error):
        return str(error)
    return "An unexpected error occurred"
