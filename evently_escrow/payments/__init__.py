"""
Payment rails moving value between payer, escrow and payee accounts.
"""

from .rail import (
    PaymentRail,
    PaymentRailError,
    InsufficientFundsError,
    TransferFailedError,
    TransferRejectedError,
    TransferTimeoutError,
    RailUnavailableError,
    TransferReceipt,
    escrow_account_for,
)
from .memory import InMemoryRail
from .ledger_rail import LedgerBalanceRail
from .gateway import RailGateway, worst_case_transfer_seconds

__all__ = [
    "PaymentRail",
    "PaymentRailError",
    "InsufficientFundsError",
    "TransferFailedError",
    "TransferRejectedError",
    "TransferTimeoutError",
    "RailUnavailableError",
    "TransferReceipt",
    "escrow_account_for",
    "InMemoryRail",
    "LedgerBalanceRail",
    "RailGateway",
    "worst_case_transfer_seconds",
]
