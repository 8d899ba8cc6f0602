from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.context import get_correlation_id


logger = logging.getLogger("app.errors")


class ErrorKind(StrEnum):
    UNAUTHENTICATED = "unauthenticated"
    INVALID_CREDENTIAL = "invalid_credential"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_INVALID = "token_invalid"
    FORBIDDEN = "forbidden"
    VALIDATION_ERROR = "validation_error"
    MISSING_PARAMETER = "missing_parameter"
    TYPE_MISMATCH = "type_mismatch"
    DISABLED = "disabled"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    METHOD_NOT_ALLOWED = "method_not_allowed"
    STORAGE_ERROR = "storage_error"


_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.UNAUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.INVALID_CREDENTIAL: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.TOKEN_EXPIRED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.TOKEN_INVALID: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    ErrorKind.MISSING_PARAMETER: status.HTTP_400_BAD_REQUEST,
    ErrorKind.TYPE_MISMATCH: status.HTTP_400_BAD_REQUEST,
    ErrorKind.DISABLED: status.HTTP_403_FORBIDDEN,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.METHOD_NOT_ALLOWED: status.HTTP_405_METHOD_NOT_ALLOWED,
    ErrorKind.STORAGE_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class ServiceError(Exception):
    """Typed failure raised by services and rendered as an error envelope."""

    default_kind = ErrorKind.STORAGE_ERROR

    def __init__(self, message: str, *, kind: ErrorKind | None = None, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind or self.default_kind
        self.details = details

    @property
    def status_code(self) -> int:
        return _STATUS_BY_KIND[self.kind]


class ValidationFailedError(ServiceError):
    default_kind = ErrorKind.VALIDATION_ERROR


class ParameterError(ServiceError):
    """Execution-time parameter failure naming the offending parameter."""

    default_kind = ErrorKind.MISSING_PARAMETER

    def __init__(self, parameter: str, message: str, *, kind: ErrorKind | None = None) -> None:
        super().__init__(message, kind=kind, details={"parameter": parameter})
        self.parameter = parameter


class DisabledError(ServiceError):
    default_kind = ErrorKind.DISABLED


class NotFoundError(ServiceError):
    default_kind = ErrorKind.NOT_FOUND


class ConflictError(ServiceError):
    default_kind = ErrorKind.CONFLICT


class MethodNotAllowedError(ServiceError):
    default_kind = ErrorKind.METHOD_NOT_ALLOWED


class StorageError(ServiceError):
    default_kind = ErrorKind.STORAGE_ERROR

    def __init__(self, message: str = "internal storage error") -> None:
        super().__init__(message)


@contextmanager
def storage_errors(operation: str, session: Session | None = None) -> Iterator[None]:
    """Log backing store failures and surface them as a generic StorageError."""

    try:
        yield
    except SQLAlchemyError as exc:
        if session is not None:
            session.rollback()
        logger.exception("storage.error", extra={"operation": operation, "error": str(exc)[:500]})
        raise StorageError() from exc


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


async def _service_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, ServiceError)
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.kind.value,
        message=exc.message,
        details=exc.details,
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServiceError, _service_error_handler)
