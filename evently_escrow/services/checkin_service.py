"""
QR check-in: signed tokens handed to attendees and scanned at the door.
"""

import logging
from datetime import timedelta
from typing import Optional

from jose import JWTError

from ..config import Settings, get_settings
from ..ledger.base import Ledger, coerce_event_id, normalize_account
from ..utils.auth import decode_token, encode_token
from ..utils.exceptions import InvalidCheckinTokenError, NotPaidError
from .registration_service import RegistrationService
from .settlement_service import SettlementService

logger = logging.getLogger(__name__)

CHECKIN_TOKEN_TYPE = "checkin"


class CheckinService:
    """Issues and scans check-in tokens for paid and free events."""

    def __init__(
        self,
        ledger: Ledger,
        engine: SettlementService,
        registrations: RegistrationService,
        settings: Optional[Settings] = None
    ):
        self.ledger = ledger
        self.engine = engine
        self.registrations = registrations
        self.settings = settings or get_settings()

    async def issue_token(self, event_id, account: str) -> str:
        """
        Issue a check-in token for a ticket holder or a registered attendee.

        Args:
            event_id: Event the token admits to
            account: Token holder

        Returns:
            Signed JWT carrying ``sub``, ``evt`` and ``typ`` claims

        Raises:
            EventNotFoundError: Unknown event
            NotPaidError: Paid event and the account holds no ticket
            RegistrationNotFoundError: Free event and the account never registered
        """
        eid = coerce_event_id(event_id)
        account = normalize_account(account)
        event = await self.ledger.get_event(eid)

        if event.is_free:
            await self.ledger.get_registration(eid, account)
        else:
            participant = await self.ledger.get_participant(eid, account)
            if not participant.has_paid:
                raise NotPaidError(str(eid), account)

        token = encode_token(
            {"sub": account, "evt": str(eid), "typ": CHECKIN_TOKEN_TYPE},
            timedelta(hours=self.settings.checkin_token_ttl_hours)
        )
        logger.debug(f"Issued check-in token for {account} on event {eid}")
        return token

    async def scan(self, event_id, token: str, caller: str) -> dict:
        """
        Verify a scanned token and mark its holder present.

        Returns:
            Dict with the ``account`` admitted and whether the mark was new

        Raises:
            InvalidCheckinTokenError: Bad signature, expired, wrong type or other event
            NotOrganizerError: Caller is not the organizer
        """
        eid = coerce_event_id(event_id)
        try:
            claims = decode_token(token)
        except JWTError as e:
            raise InvalidCheckinTokenError(str(e))

        if claims.get("typ") != CHECKIN_TOKEN_TYPE:
            raise InvalidCheckinTokenError("not a check-in token")
        if claims.get("evt") != str(eid):
            raise InvalidCheckinTokenError("token was issued for another event")
        account = claims.get("sub")
        if not account:
            raise InvalidCheckinTokenError("token has no subject")

        event = await self.ledger.get_event(eid)
        if event.is_free:
            _, newly = await self.registrations.check_in(eid, account, caller=caller)
        else:
            newly = await self.engine.mark_attendance(eid, account, caller=caller)

        logger.info(f"Check-in scan for event {eid}: {account} (new={newly})")
        return {"account": normalize_account(account), "newly_marked": newly}
