"""
Payment rail contract.

A rail moves value between accounts. Every transfer carries a caller-chosen
idempotency key: repeating a transfer with the same key and parameters
returns the original receipt instead of moving money twice, so a caller
that saw a timeout can always retry safely.
"""

import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Protocol, Union, runtime_checkable

from ..config import get_settings
from ..utils.exceptions import ErrorCode, PaymentServiceError


class PaymentRailError(PaymentServiceError):
    """Base class for payment rail failures."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, **kwargs)
        self.reason = message


class InsufficientFundsError(PaymentRailError):
    """The payer cannot cover the transfer. Retrying will not help."""

    def __init__(self, account: str, required: int, available: int, **kwargs):
        super().__init__(
            f"Insufficient funds in {account}: required {required}, available {available}",
            error_code=ErrorCode.INSUFFICIENT_FUNDS,
            details={"account": account, "required": required, "available": available},
            suggestions=["Top up the account and try again"],
            **kwargs
        )


class TransferFailedError(PaymentRailError):
    """The transfer did not go through. The whole operation may be retried."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", ErrorCode.TRANSFER_FAILED)
        kwargs.setdefault("suggestions", ["Retry the operation; no funds were committed"])
        super().__init__(message, **kwargs)


class TransferRejectedError(TransferFailedError):
    """The rail declined the transfer."""
    pass


class TransferTimeoutError(TransferFailedError):
    """No answer from the rail in time. The transfer may still have happened."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("retry_after", 5)
        super().__init__(message, **kwargs)


class RailUnavailableError(TransferFailedError):
    """The rail is failing fast because its circuit breaker is open."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("retry_after", 30)
        super().__init__(message, **kwargs)


@dataclass(frozen=True)
class TransferReceipt:
    """Proof of a completed transfer."""
    transfer_id: str
    idempotency_key: str
    from_account: str
    to_account: str
    amount: int
    created_at: datetime
    replayed: bool = False


@runtime_checkable
class PaymentRail(Protocol):
    """Anything that can move minor units between two accounts."""

    async def transfer(
        self,
        from_account: str,
        to_account: str,
        amount: int,
        idempotency_key: str
    ) -> TransferReceipt:
        """
        Move ``amount`` from one account to another.

        Raises:
            InsufficientFundsError: The payer balance is too low
            TransferRejectedError: The rail declined the transfer
            TransferTimeoutError: The outcome is unknown
        """
        ...


def escrow_account_for(event_id: Union[uuid.UUID, str], prefix: Optional[str] = None) -> str:
    """Name of the account holding one event's escrow."""
    if prefix is None:
        prefix = get_settings().escrow_account_prefix
    return f"{prefix}:{event_id}"


def check_replay(receipt: TransferReceipt, from_account: str, to_account: str, amount: int) -> TransferReceipt:
    """
    Validate a repeated idempotency key against the stored receipt.

    Raises:
        TransferRejectedError: If the key was used for a different transfer
    """
    if (receipt.from_account, receipt.to_account, receipt.amount) != (from_account, to_account, amount):
        raise TransferRejectedError(
            f"Idempotency key {receipt.idempotency_key} was already used for a different transfer",
            details={"idempotency_key": receipt.idempotency_key}
        )
    return replace(receipt, replayed=True)
