"""Middleware components for the escrow API."""

from .error_handler import ErrorHandlerMiddleware, request_validation_handler
from .logging import LoggingMiddleware

__all__ = [
    "ErrorHandlerMiddleware",
    "LoggingMiddleware",
    "request_validation_handler",
]
