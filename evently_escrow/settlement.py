"""
Settlement arithmetic shared by the engine and the read model.
"""

from dataclasses import dataclass
from typing import Tuple, TYPE_CHECKING

from .money import apply_percentage, pro_rata, subtract

if TYPE_CHECKING:
    from .ledger.base import EventRecord, ParticipantTally


@dataclass(frozen=True)
class Settlement:
    """Fund split frozen at finalization."""
    total_funds: int
    participant_count: int
    attendee_count: int
    absentee_count: int
    attendee_refund_total: int
    no_show_pool: int
    redistribution_amount: int
    organizer_share: int


def compute_settlement(event: "EventRecord", tally: "ParticipantTally") -> Settlement:
    """
    Split an event's escrow between attendees and the organizer.

    Attendees are owed their own deposit back plus a pro-rata slice of the
    redistribution amount, which is ``redistribution_percentage`` of the
    no-show pool rounded down. With no attendees nobody could claim that
    slice, so it goes to the organizer with the rest.
    """
    redistribution = apply_percentage(tally.no_show_pool, event.redistribution_percentage)
    if tally.attendee_count == 0:
        redistribution = 0

    organizer_share = subtract(
        subtract(event.total_funds, tally.attendee_refund_total),
        redistribution
    )

    return Settlement(
        total_funds=event.total_funds,
        participant_count=event.participant_count,
        attendee_count=tally.attendee_count,
        absentee_count=tally.absentee_count,
        attendee_refund_total=tally.attendee_refund_total,
        no_show_pool=tally.no_show_pool,
        redistribution_amount=redistribution,
        organizer_share=organizer_share,
    )


def claim_breakdown(settlement: Settlement, amount_paid: int) -> Tuple[int, int]:
    """(principal, bonus) owed to an attendee who paid ``amount_paid``."""
    bonus = pro_rata(
        settlement.redistribution_amount,
        amount_paid,
        settlement.attendee_refund_total
    )
    return amount_paid, bonus


def unclaimed_remainder(settlement: Settlement, attendee_deposits) -> int:
    """Rounding dust of the redistribution that no attendee can claim."""
    claimed = sum(claim_breakdown(settlement, paid)[1] for paid in attendee_deposits)
    return settlement.redistribution_amount - claimed
