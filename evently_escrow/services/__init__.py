"""Business logic services for Evently Escrow."""

from .settlement_service import SettlementService, WithdrawalResult
from .query_service import EscrowQueryService, EventInfo, EventStats, RedistributionPreview
from .registration_service import RegistrationService
from .checkin_service import CheckinService

__all__ = [
    "SettlementService",
    "WithdrawalResult",
    "EscrowQueryService",
    "EventInfo",
    "EventStats",
    "RedistributionPreview",
    "RegistrationService",
    "CheckinService",
]
