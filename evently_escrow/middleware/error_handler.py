"""
Error handling middleware for the escrow API.
"""

import logging
import traceback
from datetime import datetime, timezone
from uuid import uuid4

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from sqlalchemy.exc import IntegrityError, OperationalError, TimeoutError as SQLTimeoutError
from pydantic import ValidationError as PydanticValidationError

from ..utils.exceptions import (
    EventlyError,
    ErrorCode,
    ValidationError,
    NotFoundError,
    AuthenticationError,
    AuthorizationError,
    ConcurrencyError,
    ExternalServiceError,
)

logger = logging.getLogger(__name__)

STATUS_MAP = {
    ErrorCode.VALIDATION_ERROR: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.INVALID_PRICE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.INVALID_PERCENTAGE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.INVALID_END_TIME: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.INVALID_AMOUNT: status.HTTP_400_BAD_REQUEST,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorCode.NOT_ORGANIZER: status.HTTP_403_FORBIDDEN,
    ErrorCode.DUPLICATE_EVENT: status.HTTP_409_CONFLICT,
    ErrorCode.ALREADY_PAID: status.HTTP_409_CONFLICT,
    ErrorCode.EVENT_CLOSED: status.HTTP_409_CONFLICT,
    ErrorCode.FREE_EVENT: status.HTTP_400_BAD_REQUEST,
    ErrorCode.PAID_EVENT: status.HTTP_400_BAD_REQUEST,
    ErrorCode.NOT_PAID: status.HTTP_409_CONFLICT,
    ErrorCode.ALREADY_FINALIZED: status.HTTP_409_CONFLICT,
    ErrorCode.ALREADY_CANCELLED: status.HTTP_409_CONFLICT,
    ErrorCode.ALREADY_WITHDRAWN: status.HTTP_409_CONFLICT,
    ErrorCode.ALREADY_REFUNDED: status.HTTP_409_CONFLICT,
    ErrorCode.ALREADY_REGISTERED: status.HTTP_409_CONFLICT,
    ErrorCode.NOT_FINALIZED: status.HTTP_409_CONFLICT,
    ErrorCode.NOT_ATTENDED: status.HTTP_409_CONFLICT,
    ErrorCode.EVENT_NOT_YET_ENDED: status.HTTP_409_CONFLICT,
    ErrorCode.BATCH_REJECTED: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.CANCELLATION_INCOMPLETE: status.HTTP_409_CONFLICT,
    ErrorCode.INVALID_CHECKIN_TOKEN: status.HTTP_400_BAD_REQUEST,
    ErrorCode.CONCURRENCY_CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCode.INSUFFICIENT_FUNDS: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorCode.TRANSFER_FAILED: status.HTTP_502_BAD_GATEWAY,
    ErrorCode.PAYMENT_SERVICE_ERROR: status.HTTP_502_BAD_GATEWAY,
    ErrorCode.EXTERNAL_SERVICE_ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def status_code_for(exc: EventlyError) -> int:
    """Map error codes to HTTP status codes."""
    return STATUS_MAP.get(exc.error_code, status.HTTP_500_INTERNAL_SERVER_ERROR)


def error_response(exc: EventlyError, error_id: str) -> JSONResponse:
    """Structured JSON response for a service error."""
    headers = {}
    if exc.retry_after:
        headers["Retry-After"] = str(exc.retry_after)

    return JSONResponse(
        status_code=status_code_for(exc),
        content={
            "error": exc.to_dict(),
            "error_id": error_id,
            "timestamp": _timestamp()
        },
        headers=headers
    )


def _field_errors(errors) -> dict:
    field_errors = {}
    for error in errors:
        field_path = ".".join(str(loc) for loc in error["loc"])
        field_errors.setdefault(field_path, []).append(error["msg"])
    return field_errors


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render FastAPI request validation failures in the service error format."""
    error_id = str(uuid4())
    logger.warning(f"Client error [{error_id}]: request validation failed for {request.url.path}")
    return error_response(
        ValidationError("Request validation failed", field_errors=_field_errors(exc.errors())),
        error_id
    )


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Middleware turning every raised error into a structured response."""

    def __init__(self, app, debug: bool = False):
        super().__init__(app)
        self.debug = debug

    async def dispatch(self, request: Request, call_next):
        """Process request and handle any exceptions."""
        error_id = str(uuid4())

        try:
            return await call_next(request)
        except Exception as exc:
            return self._handle_exception(request, exc, error_id)

    def _handle_exception(self, request: Request, exc: Exception, error_id: str) -> JSONResponse:
        """Handle different types of exceptions and return appropriate responses."""
        self._log_error(request, exc, error_id)

        if isinstance(exc, EventlyError):
            return error_response(exc, error_id)
        elif isinstance(exc, PydanticValidationError):
            return error_response(
                ValidationError("Request validation failed", field_errors=_field_errors(exc.errors())),
                error_id
            )
        elif isinstance(exc, IntegrityError):
            return self._handle_integrity_error(exc, error_id)
        elif isinstance(exc, (OperationalError, SQLTimeoutError)):
            return self._handle_database_error(exc, error_id)
        else:
            return self._handle_unexpected_error(exc, error_id)

    def _handle_integrity_error(self, exc: IntegrityError, error_id: str) -> JSONResponse:
        """Handle database integrity constraint violations the ledger did not translate."""
        error_message = str(exc.orig) if hasattr(exc, 'orig') else str(exc)

        if "unique" in error_message.lower():
            evently_error = ConcurrencyError(
                "A conflicting change was committed concurrently",
                details={"constraint_type": "unique"}
            )
        else:
            evently_error = ConcurrencyError(
                "Data integrity constraint violation",
                details={"constraint_type": "unknown"}
            )
        return error_response(evently_error, error_id)

    def _handle_database_error(self, exc: Exception, error_id: str) -> JSONResponse:
        """Handle database connection and operational errors."""
        evently_error = ExternalServiceError(
            "database",
            "Database service temporarily unavailable",
            details={"error_type": type(exc).__name__},
            retry_after=30
        )
        return error_response(evently_error, error_id)

    def _handle_unexpected_error(self, exc: Exception, error_id: str) -> JSONResponse:
        """Handle unexpected errors."""
        evently_error = EventlyError(
            "An unexpected error occurred",
            error_code=ErrorCode.INTERNAL_ERROR,
            details={"error_type": type(exc).__name__} if self.debug else None
        )

        response_data = {
            "error": evently_error.to_dict(),
            "error_id": error_id,
            "timestamp": _timestamp()
        }

        # Include stack trace in debug mode
        if self.debug:
            response_data["debug"] = {
                "exception": str(exc),
                "traceback": traceback.format_exc()
            }

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=response_data
        )

    def _log_error(self, request: Request, exc: Exception, error_id: str):
        """Log error with request context, by severity."""
        context = {
            "error_id": error_id,
            "method": request.method,
            "path": request.url.path,
            "client_ip": request.client.host if request.client else None,
            "account": getattr(request.state, "account", None),
        }

        if isinstance(exc, EventlyError):
            context["error_code"] = exc.error_code.value
            context["details"] = exc.details
            if isinstance(exc, (ValidationError, NotFoundError, AuthenticationError, AuthorizationError)):
                logger.warning(f"Client error [{error_id}]: {exc.message}", extra=context)
            elif isinstance(exc, (ConcurrencyError, ExternalServiceError)):
                logger.error(f"System error [{error_id}]: {exc.message}", extra=context)
            else:
                logger.info(f"Business rule rejected request [{error_id}]: {exc.message}", extra=context)
        else:
            context["error_type"] = type(exc).__name__
            logger.error(f"Unexpected error [{error_id}]: {exc}", extra=context, exc_info=exc)
