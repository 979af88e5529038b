"""
Custom exceptions for the Evently escrow settlement service.
"""

from typing import Any, Dict, Optional, List
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for the platform."""

    # General errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"

    # Input validation errors
    INVALID_PRICE = "INVALID_PRICE"
    INVALID_PERCENTAGE = "INVALID_PERCENTAGE"
    INVALID_END_TIME = "INVALID_END_TIME"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    DUPLICATE_EVENT = "DUPLICATE_EVENT"

    # Escrow state errors
    ALREADY_PAID = "ALREADY_PAID"
    EVENT_CLOSED = "EVENT_CLOSED"
    FREE_EVENT = "FREE_EVENT"
    PAID_EVENT = "PAID_EVENT"
    NOT_PAID = "NOT_PAID"
    ALREADY_FINALIZED = "ALREADY_FINALIZED"
    ALREADY_CANCELLED = "ALREADY_CANCELLED"
    ALREADY_WITHDRAWN = "ALREADY_WITHDRAWN"
    ALREADY_REFUNDED = "ALREADY_REFUNDED"
    ALREADY_REGISTERED = "ALREADY_REGISTERED"
    NOT_FINALIZED = "NOT_FINALIZED"
    NOT_ATTENDED = "NOT_ATTENDED"
    NOT_ORGANIZER = "NOT_ORGANIZER"
    EVENT_NOT_YET_ENDED = "EVENT_NOT_YET_ENDED"
    BATCH_REJECTED = "BATCH_REJECTED"
    CANCELLATION_INCOMPLETE = "CANCELLATION_INCOMPLETE"
    INVALID_CHECKIN_TOKEN = "INVALID_CHECKIN_TOKEN"

    # Concurrency errors
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"

    # External service errors
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    PAYMENT_SERVICE_ERROR = "PAYMENT_SERVICE_ERROR"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    TRANSFER_FAILED = "TRANSFER_FAILED"


class EventlyError(Exception):
    """Base exception class for the escrow service."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None,
        suggestions: Optional[List[str]] = None,
        retry_after: Optional[int] = None
    ):
        """Initialize the exception with comprehensive error information."""
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.suggestions = suggestions or []
        self.retry_after = retry_after
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        result = {
            "error_code": self.error_code.value,
            "message": self.message,
        }

        if self.details:
            result["details"] = self.details

        if self.suggestions:
            result["suggestions"] = self.suggestions

        if self.retry_after:
            result["retry_after"] = self.retry_after

        return result


class ValidationError(EventlyError):
    """Exception raised for validation errors."""

    def __init__(
        self,
        message: str,
        field_errors: Optional[Dict[str, List[str]]] = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
        **kwargs
    ):
        if field_errors and "details" not in kwargs:
            kwargs["details"] = {"field_errors": field_errors}
        super().__init__(message, error_code=error_code, **kwargs)
        self.field_errors = field_errors or {}


class InvalidPriceError(ValidationError):
    """Exception raised when a ticket price is not a valid amount."""

    def __init__(self, price: Any, **kwargs):
        super().__init__(
            f"Invalid ticket price: {price!r}",
            field_errors={"ticket_price": ["must be a non-negative integer amount in minor units"]},
            error_code=ErrorCode.INVALID_PRICE,
            **kwargs
        )


class InvalidPercentageError(ValidationError):
    """Exception raised when a redistribution percentage is out of range."""

    def __init__(self, percentage: Any, **kwargs):
        super().__init__(
            f"Invalid redistribution percentage: {percentage!r}",
            field_errors={"redistribution_percentage": ["must be an integer between 0 and 100"]},
            error_code=ErrorCode.INVALID_PERCENTAGE,
            **kwargs
        )


class InvalidEndTimeError(ValidationError):
    """Exception raised when an event end time is not far enough in the future."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            field_errors={"event_end_time": [message]},
            error_code=ErrorCode.INVALID_END_TIME,
            **kwargs
        )


class InvalidAmountError(ValidationError):
    """Exception raised when a monetary amount is out of range."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code=ErrorCode.INVALID_AMOUNT, **kwargs)


class NegativeAmountError(InvalidAmountError):
    """Exception raised when an arithmetic result would be negative."""
    pass


class AmountOverflowError(InvalidAmountError):
    """Exception raised when an amount exceeds the storable range."""
    pass


class DuplicateEventError(EventlyError):
    """Exception raised when an event ID is already taken."""

    def __init__(self, event_id: str, **kwargs):
        super().__init__(
            f"Event {event_id} already exists",
            error_code=ErrorCode.DUPLICATE_EVENT,
            details={"event_id": event_id},
            suggestions=["Use a different event ID", "Omit the event ID to have one generated"],
            **kwargs
        )


class NotFoundError(EventlyError):
    """Base exception for resource not found errors."""

    def __init__(self, message: str, resource_type: Optional[str] = None, resource_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": resource_id} if resource_type else None,
            **kwargs
        )


class EventNotFoundError(NotFoundError):
    """Exception raised when an event is not found."""

    def __init__(self, event_id: str, **kwargs):
        super().__init__(
            f"Event {event_id} not found",
            resource_type="event",
            resource_id=event_id,
            suggestions=["Check the event ID"],
            **kwargs
        )


class RegistrationNotFoundError(NotFoundError):
    """Exception raised when a free-event registration is not found."""

    def __init__(self, event_id: str, account: str, **kwargs):
        super().__init__(
            f"No registration for {account} on event {event_id}",
            resource_type="registration",
            resource_id=f"{event_id}:{account}",
            suggestions=["Register for the event first"],
            **kwargs
        )


class AuthenticationError(EventlyError):
    """Exception raised for authentication failures."""

    def __init__(self, message: str = "Authentication failed", **kwargs):
        kwargs.setdefault("suggestions", ["Check your credentials", "Request a new token"])
        super().__init__(message, error_code=ErrorCode.UNAUTHORIZED, **kwargs)


class AuthorizationError(EventlyError):
    """Exception raised for authorization failures."""

    def __init__(self, message: str = "Access denied", required_permission: Optional[str] = None, **kwargs):
        kwargs.setdefault("error_code", ErrorCode.FORBIDDEN)
        if required_permission and "details" not in kwargs:
            kwargs["details"] = {"required_permission": required_permission}
        super().__init__(message, **kwargs)


class NotOrganizerError(AuthorizationError):
    """Exception raised when a caller other than the organizer performs an organizer action."""

    def __init__(self, event_id: str, caller: str, **kwargs):
        super().__init__(
            f"Account {caller} is not the organizer of event {event_id}",
            error_code=ErrorCode.NOT_ORGANIZER,
            details={"event_id": event_id, "caller": caller},
            suggestions=["Sign in with the organizer account"],
            **kwargs
        )


class BusinessLogicError(EventlyError):
    """Base exception for escrow state violations."""
    pass


class AlreadyPaidError(BusinessLogicError):
    """Exception raised when an account tries to pay a second deposit."""

    def __init__(self, event_id: str, account: str, **kwargs):
        super().__init__(
            f"Account {account} has already paid for event {event_id}",
            error_code=ErrorCode.ALREADY_PAID,
            details={"event_id": event_id, "account": account},
            **kwargs
        )


class EventClosedError(BusinessLogicError):
    """Exception raised when an event no longer accepts purchases or attendance marks."""

    def __init__(self, event_id: str, state: str, **kwargs):
        super().__init__(
            f"Event {event_id} is closed ({state})",
            error_code=ErrorCode.EVENT_CLOSED,
            details={"event_id": event_id, "state": state},
            **kwargs
        )


class FreeEventError(BusinessLogicError):
    """Exception raised when a free event is routed through escrow."""

    def __init__(self, event_id: str, **kwargs):
        super().__init__(
            f"Event {event_id} is free and takes no deposit",
            error_code=ErrorCode.FREE_EVENT,
            details={"event_id": event_id},
            suggestions=["Register for the event instead of buying a ticket"],
            **kwargs
        )


class PaidEventError(BusinessLogicError):
    """Exception raised when a paid event is registered for without a deposit."""

    def __init__(self, event_id: str, **kwargs):
        super().__init__(
            f"Event {event_id} requires a ticket deposit",
            error_code=ErrorCode.PAID_EVENT,
            details={"event_id": event_id},
            suggestions=["Purchase a ticket instead"],
            **kwargs
        )


class NotPaidError(BusinessLogicError):
    """Exception raised when an account without a deposit is treated as a participant."""

    def __init__(self, event_id: str, account: str, **kwargs):
        super().__init__(
            f"Account {account} has not paid for event {event_id}",
            error_code=ErrorCode.NOT_PAID,
            details={"event_id": event_id, "account": account},
            **kwargs
        )


class AlreadyFinalizedError(BusinessLogicError):
    """Exception raised when an event has already been finalized."""

    def __init__(self, event_id: str, **kwargs):
        super().__init__(
            f"Event {event_id} is already finalized",
            error_code=ErrorCode.ALREADY_FINALIZED,
            details={"event_id": event_id},
            **kwargs
        )


class AlreadyCancelledError(BusinessLogicError):
    """Exception raised when an event has already been cancelled."""

    def __init__(self, event_id: str, **kwargs):
        super().__init__(
            f"Event {event_id} is already cancelled",
            error_code=ErrorCode.ALREADY_CANCELLED,
            details={"event_id": event_id},
            **kwargs
        )


class AlreadyWithdrawnError(BusinessLogicError):
    """Exception raised on a second redistribution withdrawal."""

    def __init__(self, event_id: str, account: str, **kwargs):
        super().__init__(
            f"Account {account} has already withdrawn from event {event_id}",
            error_code=ErrorCode.ALREADY_WITHDRAWN,
            details={"event_id": event_id, "account": account},
            **kwargs
        )


class AlreadyRefundedError(BusinessLogicError):
    """Exception raised when a refund is recorded twice."""

    def __init__(self, event_id: str, account: str, **kwargs):
        super().__init__(
            f"Account {account} has already been refunded for event {event_id}",
            error_code=ErrorCode.ALREADY_REFUNDED,
            details={"event_id": event_id, "account": account},
            **kwargs
        )


class AlreadyRegisteredError(BusinessLogicError):
    """Exception raised when an account registers twice for a free event."""

    def __init__(self, event_id: str, account: str, **kwargs):
        super().__init__(
            f"Account {account} is already registered for event {event_id}",
            error_code=ErrorCode.ALREADY_REGISTERED,
            details={"event_id": event_id, "account": account},
            **kwargs
        )


class NotFinalizedError(BusinessLogicError):
    """Exception raised when a withdrawal is attempted before finalization."""

    def __init__(self, event_id: str, **kwargs):
        super().__init__(
            f"Event {event_id} is not finalized",
            error_code=ErrorCode.NOT_FINALIZED,
            details={"event_id": event_id},
            suggestions=["Wait for the organizer to finalize the event"],
            **kwargs
        )


class NotAttendedError(BusinessLogicError):
    """Exception raised when a non-attendee claims a redistribution."""

    def __init__(self, event_id: str, account: str, **kwargs):
        super().__init__(
            f"Account {account} did not attend event {event_id}",
            error_code=ErrorCode.NOT_ATTENDED,
            details={"event_id": event_id, "account": account},
            **kwargs
        )


class EventNotYetEndedError(BusinessLogicError):
    """Exception raised when finalization is attempted too early."""

    def __init__(self, event_id: str, finalizable_at: str, **kwargs):
        super().__init__(
            f"Event {event_id} cannot be finalized before {finalizable_at}",
            error_code=ErrorCode.EVENT_NOT_YET_ENDED,
            details={"event_id": event_id, "finalizable_at": finalizable_at},
            suggestions=["Finalize the event after it has ended"],
            **kwargs
        )


class BatchAttendanceRejectedError(BusinessLogicError):
    """Exception raised when a batch attendance mark contains invalid entries.

    No entry of a rejected batch is applied. ``details["rejected"]`` lists
    every offending account together with the reason.
    """

    def __init__(self, event_id: str, rejected: List[Dict[str, str]], **kwargs):
        super().__init__(
            f"Attendance batch for event {event_id} rejected: {len(rejected)} invalid entries",
            error_code=ErrorCode.BATCH_REJECTED,
            details={"event_id": event_id, "rejected": rejected},
            suggestions=["Remove the rejected entries and submit the batch again"],
            **kwargs
        )
        self.rejected = rejected


class CancellationIncompleteError(BusinessLogicError):
    """Exception raised when some refunds of a cancellation are still outstanding."""

    def __init__(
        self,
        event_id: str,
        pending: List[str],
        failures: Optional[Dict[str, str]] = None,
        refunded: Optional[List[str]] = None,
        **kwargs
    ):
        super().__init__(
            f"Cancellation of event {event_id} is incomplete: {len(pending)} refunds outstanding",
            error_code=ErrorCode.CANCELLATION_INCOMPLETE,
            details={
                "event_id": event_id,
                "pending": pending,
                "refunded": refunded or [],
                "failures": failures or {},
            },
            suggestions=["Retry the cancellation to refund the remaining participants"],
            retry_after=kwargs.pop("retry_after", 30),
            **kwargs
        )
        self.pending = pending
        self.failures = failures or {}
        self.refunded = refunded or []


class InvalidCheckinTokenError(BusinessLogicError):
    """Exception raised when a scanned check-in token cannot be accepted."""

    def __init__(self, reason: str, **kwargs):
        super().__init__(
            f"Invalid check-in token: {reason}",
            error_code=ErrorCode.INVALID_CHECKIN_TOKEN,
            details={"reason": reason},
            suggestions=["Ask the attendee to refresh their ticket QR code"],
            **kwargs
        )


class ConcurrencyError(EventlyError):
    """Exception raised for concurrency-related issues."""

    def __init__(self, message: str, retry_after: int = 1, **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.CONCURRENCY_CONFLICT,
            retry_after=retry_after,
            suggestions=["Please try again", "Wait a moment and retry"],
            **kwargs
        )


class ExternalServiceError(EventlyError):
    """Exception raised for external service failures."""

    def __init__(self, service_name: str, message: str, status_code: Optional[int] = None, **kwargs):
        kwargs.setdefault("error_code", ErrorCode.EXTERNAL_SERVICE_ERROR)
        kwargs.setdefault("suggestions", ["Try again later", "Contact support if problem persists"])
        details = {"service_name": service_name, "status_code": status_code}
        details.update(kwargs.pop("details", None) or {})
        super().__init__(
            f"{service_name} service error: {message}",
            details=details,
            **kwargs
        )


class PaymentServiceError(ExternalServiceError):
    """Exception raised for payment rail failures."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", ErrorCode.PAYMENT_SERVICE_ERROR)
        super().__init__("payment", message, **kwargs)

