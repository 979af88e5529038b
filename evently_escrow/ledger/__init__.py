"""
Ledger adapters: the authoritative store of escrow facts.
"""

from .base import (
    Ledger,
    NewEvent,
    EventRecord,
    ParticipantRecord,
    ParticipantTally,
    RegistrationRecord,
    HistoryEntry,
    normalize_account,
    coerce_event_id,
)
from .memory import InMemoryLedger
from .sql import SqlAlchemyLedger

__all__ = [
    "Ledger",
    "NewEvent",
    "EventRecord",
    "ParticipantRecord",
    "ParticipantTally",
    "RegistrationRecord",
    "HistoryEntry",
    "normalize_account",
    "coerce_event_id",
    "InMemoryLedger",
    "SqlAlchemyLedger",
]
