"""Error taxonomy shared by every helpdesk service.

Services raise these instead of store-native exceptions; the HTTP layer renders
them as ``{"error": <title>, "details": <message>}``.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from http import HTTPStatus
from typing import Any, Iterator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import DataError, DBAPIError, IntegrityError, SQLAlchemyError, StatementError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class HelpdeskError(RuntimeError):
    """Base error for helpdesk service failures."""

    title = "Server Error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details if details is not None else message


class ValidationError(HelpdeskError):
    """Raised when input is malformed or out of range."""

    title = "Validation Error"
    status_code = status.HTTP_400_BAD_REQUEST


class AgeRestrictionError(ValidationError):
    """Raised when a registrant is younger than the minimum age."""

    title = "Age Restriction"


class InvalidReferenceError(HelpdeskError):
    """Raised when a referenced user, department or topic does not exist."""

    title = "Invalid Reference"
    status_code = status.HTTP_400_BAD_REQUEST


class AuthenticationError(HelpdeskError):
    """Raised when credentials or access tokens are rejected."""

    title = "Authentication Failed"
    status_code = status.HTTP_401_UNAUTHORIZED


class PermissionDeniedError(HelpdeskError):
    """Raised when the caller's role does not allow the operation."""

    title = "Forbidden"
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(HelpdeskError):
    """Raised when the primary entity of an operation does not exist."""

    title = "Not Found"
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(HelpdeskError):
    """Raised on uniqueness violations or deletes blocked by dependents."""

    title = "Conflict"
    status_code = status.HTTP_409_CONFLICT


class InvalidTokenError(HelpdeskError):
    """Raised when an email verification token does not match."""

    title = "Invalid Token"
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidStateError(HelpdeskError):
    """Raised when an entity is not in the state an operation requires."""

    title = "Invalid State"
    status_code = status.HTTP_409_CONFLICT


class ServerError(HelpdeskError):
    """Unclassified failure."""


class ServiceUnavailableError(HelpdeskError):
    """Raised when a backing service was not initialised."""

    title = "Service Unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


def classify_store_error(exc: Exception, entity: str) -> HelpdeskError:
    """Map a SQLAlchemy exception onto the helpdesk taxonomy."""

    if isinstance(exc, HelpdeskError):
        return exc
    if isinstance(exc, IntegrityError):
        return ConflictError(f"A {entity} with the same unique value already exists")
    if isinstance(exc, DataError):
        return ValidationError(f"Invalid value for {entity}")
    if isinstance(exc, StatementError) and not isinstance(exc, DBAPIError):
        return ValidationError(f"Malformed {entity} data")
    return ServerError(f"Unexpected storage failure while handling {entity}")


@contextmanager
def translate_store_errors(entity: str) -> Iterator[None]:
    """Re-raise store-native exceptions as helpdesk errors."""

    try:
        yield
    except HelpdeskError:
        raise
    except SQLAlchemyError as exc:
        error = classify_store_error(exc, entity)
        if isinstance(error, ServerError):
            logger.exception("Storage failure while handling %s", entity)
        raise error from exc


def _render(error: HelpdeskError) -> JSONResponse:
    return JSONResponse(
        status_code=error.status_code,
        content={"error": error.title, "details": error.details},
    )


def register_exception_handlers(app: FastAPI, *, production: bool = False) -> None:
    """Install handlers translating helpdesk errors into JSON responses."""

    async def handle_helpdesk_error(_: Request, exc: HelpdeskError) -> JSONResponse:
        if isinstance(exc, ServerError):
            logger.error("Server error: %s", exc.message)
        return _render(exc)

    async def handle_request_validation(_: Request, exc: RequestValidationError) -> JSONResponse:
        details = [
            {"field": ".".join(str(part) for part in error.get("loc", ())), "message": error.get("msg", "")}
            for error in exc.errors()
        ]
        return _render(ValidationError("Request validation failed", details=details))

    async def handle_http_error(_: Request, exc: StarletteHTTPException) -> JSONResponse:
        try:
            title = HTTPStatus(exc.status_code).phrase
        except ValueError:
            title = "Error"
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": title, "details": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    async def handle_unexpected(_: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error", exc_info=exc)
        message = "Something went wrong" if production else str(exc)
        return _render(ServerError(message))

    app.add_exception_handler(HelpdeskError, handle_helpdesk_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(Exception, handle_unexpected)
