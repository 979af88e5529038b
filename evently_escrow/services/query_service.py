"""
Read model over the escrow ledger.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from ..config import Settings, get_settings
from ..ledger.base import (
    EventRecord,
    HistoryEntry,
    Ledger,
    ParticipantRecord,
    coerce_event_id,
    normalize_account,
    tally_participants,
)
from ..payments.rail import escrow_account_for
from ..settlement import claim_breakdown, compute_settlement, unclaimed_remainder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventInfo:
    event: EventRecord
    registration_count: int
    escrow_account: str


@dataclass(frozen=True)
class EventStats:
    """
    Fund figures of one event.

    While the event is open the redistribution figures are a projection
    from the current attendance (``is_projection`` is True). Once
    finalization begins they come from the frozen settlement. A cancelled
    event redistributes nothing and pays the organizer nothing.
    """
    total_funds: int
    total_participants: int
    attendee_count: int
    absentee_count: int
    total_absentee_funds: int
    redistribution_amount: int
    attendee_refund_total: int
    organizer_share: int
    total_withdrawn: int
    total_refunded: int
    unclaimed_remainder: int
    is_projection: bool


@dataclass(frozen=True)
class RedistributionPreview:
    principal: int = 0
    bonus: int = 0

    @property
    def total(self) -> int:
        return self.principal + self.bonus


class EscrowQueryService:
    """Read-only queries for events, participants and their funds."""

    def __init__(self, ledger: Ledger, settings: Optional[Settings] = None):
        self.ledger = ledger
        self.settings = settings or get_settings()

    async def get_event_info(self, event_id) -> EventInfo:
        """
        Get an event together with its registration count.

        Raises:
            EventNotFoundError: Unknown event
        """
        event = await self.ledger.get_event(event_id)
        registrations = []
        if event.is_free:
            registrations = await self.ledger.list_registrations(event.event_id)
        return EventInfo(
            event=event,
            registration_count=len(registrations),
            escrow_account=escrow_account_for(event.event_id, self.settings.escrow_account_prefix),
        )

    async def get_participant_info(self, event_id, account: str) -> ParticipantRecord:
        """Unknown accounts read as a record with every flag False."""
        return await self.ledger.get_participant(event_id, normalize_account(account))

    async def list_participants(self, event_id) -> List[ParticipantRecord]:
        return await self.ledger.list_participants(event_id)

    async def get_event_stats(self, event_id) -> EventStats:
        """
        Compute the fund statistics of an event.

        Args:
            event_id: Event to summarize

        Returns:
            EventStats, projected or frozen depending on the event state

        Raises:
            EventNotFoundError: Unknown event
        """
        event = await self.ledger.get_event(event_id)
        participants = await self.ledger.list_participants(event.event_id)
        tally = tally_participants(participants)
        attendee_deposits = [p.amount_paid for p in participants if p.has_paid and p.has_attended]

        if event.settlement is not None:
            settlement = event.settlement
            is_projection = False
        else:
            settlement = compute_settlement(event, tally)
            is_projection = not event.is_cancelled

        if event.is_cancelled:
            return EventStats(
                total_funds=event.total_funds,
                total_participants=tally.total_participants,
                attendee_count=tally.attendee_count,
                absentee_count=tally.absentee_count,
                total_absentee_funds=tally.no_show_pool,
                redistribution_amount=0,
                attendee_refund_total=tally.attendee_refund_total,
                organizer_share=0,
                total_withdrawn=tally.total_withdrawn,
                total_refunded=tally.total_refunded,
                unclaimed_remainder=0,
                is_projection=False,
            )

        return EventStats(
            total_funds=settlement.total_funds,
            total_participants=settlement.participant_count,
            attendee_count=settlement.attendee_count,
            absentee_count=settlement.absentee_count,
            total_absentee_funds=settlement.no_show_pool,
            redistribution_amount=settlement.redistribution_amount,
            attendee_refund_total=settlement.attendee_refund_total,
            organizer_share=settlement.organizer_share,
            total_withdrawn=tally.total_withdrawn,
            total_refunded=tally.total_refunded,
            unclaimed_remainder=unclaimed_remainder(settlement, attendee_deposits),
            is_projection=is_projection,
        )

    async def preview_redistribution(self, event_id, account: str) -> RedistributionPreview:
        """
        What ``account`` could withdraw right now.

        All zero unless the event is finalized, the account attended and
        has not withdrawn yet. Always read fresh from the ledger.
        """
        event = await self.ledger.get_event(event_id)
        if not event.is_finalized or event.settlement is None:
            return RedistributionPreview()

        participant = await self.ledger.get_participant(event.event_id, normalize_account(account))
        if not participant.has_attended or participant.has_withdrawn:
            return RedistributionPreview()

        principal, bonus = claim_breakdown(event.settlement, participant.amount_paid)
        return RedistributionPreview(principal=principal, bonus=bonus)

    async def calculate_potential_redistribution(self, event_id, account: str) -> int:
        """Principal plus bonus ``account`` may withdraw; 0 when nothing is claimable."""
        preview = await self.preview_redistribution(event_id, account)
        return preview.total

    async def get_history(self, event_id) -> List[HistoryEntry]:
        eid = coerce_event_id(event_id)
        # Raise EventNotFoundError rather than return an empty trail
        await self.ledger.get_event(eid)
        return await self.ledger.list_history(eid)
