"""
Database models for the Evently escrow service.
"""

from .base import Base
from .escrow_event import EscrowEvent, EventStatus
from .participant import Participant
from .registration import Registration
from .settlement_history import SettlementHistory, SettlementAction
from .account import AccountBalance, TransferRecord

__all__ = [
    "Base",
    "EscrowEvent",
    "EventStatus",
    "Participant",
    "Registration",
    "SettlementHistory",
    "SettlementAction",
    "AccountBalance",
    "TransferRecord",
]
