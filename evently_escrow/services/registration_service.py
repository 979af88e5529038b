"""
Free-event registration and check-in.

Free events (ticket price 0) never touch the payment rail. Accounts
register for a code and are checked in at the door instead of buying a
ticket.
"""

import logging
import secrets
import time
import uuid
from typing import List, Optional, Tuple

from ..ledger.base import EventRecord, Ledger, RegistrationRecord, coerce_event_id, normalize_account
from ..locks import LockKeyBuilder, LockProvider
from ..config import Settings, get_settings
from ..utils.exceptions import NotOrganizerError
from ..utils.logging_config import log_business_event

logger = logging.getLogger(__name__)


def generate_registration_code() -> str:
    """Registration code of the form ``REG-<epoch ms>-<random>``."""
    return f"REG-{int(time.time() * 1000)}-{secrets.token_hex(4).upper()}"


class RegistrationService:
    """Service for free-event registrations."""

    def __init__(self, ledger: Ledger, locks: LockProvider, settings: Optional[Settings] = None):
        self.ledger = ledger
        self.locks = locks
        self.settings = settings or get_settings()

    async def register(self, event_id, account: str) -> RegistrationRecord:
        """
        Register an account for a free event.

        Args:
            event_id: Free event to register for
            account: Registering account

        Returns:
            The registration with its code

        Raises:
            EventNotFoundError: Unknown event
            PaidEventError: The event has a ticket price
            EventClosedError: Event finalized, cancelled or being cancelled
            AlreadyRegisteredError: Account already registered
        """
        eid = coerce_event_id(event_id)
        account = normalize_account(account)

        async with self.locks.lock(LockKeyBuilder.event(eid), self.settings.lock_timeout_seconds):
            registration = await self.ledger.register(eid, account, generate_registration_code())

        logger.info(f"Account {account} registered for event {eid}")
        log_business_event("Registered", {
            "event_id": str(eid),
            "registration_code": registration.registration_code,
        }, account=account)
        return registration

    async def check_in(self, event_id, account: str, caller: Optional[str] = None) -> Tuple[RegistrationRecord, bool]:
        """
        Check a registered account in. Checking in twice is not an error.

        Returns:
            (registration, newly_checked_in)

        Raises:
            RegistrationNotFoundError: Account never registered
            NotOrganizerError: Caller is not the organizer
            EventClosedError: Event no longer accepts changes
        """
        eid = coerce_event_id(event_id)
        account = normalize_account(account)

        async with self.locks.lock(LockKeyBuilder.event(eid), self.settings.lock_timeout_seconds):
            event = await self.ledger.get_event(eid)
            if caller is not None:
                self._require_organizer(event, caller)
            registration, newly = await self.ledger.check_in_registration(eid, account)

        if newly:
            log_business_event("CheckedIn", {"event_id": str(eid)}, account=account)
        return registration, newly

    async def get_registration(self, event_id, account: str) -> RegistrationRecord:
        return await self.ledger.get_registration(event_id, normalize_account(account))

    async def list_registrations(self, event_id) -> List[RegistrationRecord]:
        return await self.ledger.list_registrations(event_id)

    @staticmethod
    def _require_organizer(event: EventRecord, caller: str) -> None:
        if normalize_account(caller, "caller") != event.organizer:
            raise NotOrganizerError(str(event.event_id), caller)
