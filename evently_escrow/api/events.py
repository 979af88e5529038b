"""
FastAPI routes for escrow events: creation, settlement and cancellation.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, status

from ..config import get_settings
from ..money import to_minor_units
from ..schemas.common import Amount
from ..schemas.event import (
    CancellationResponse,
    EventCreate,
    EventResponse,
    EventStatsResponse,
    HistoryEntryResponse,
    HistoryResponse,
)
from ..services.query_service import EscrowQueryService
from ..services.settlement_service import SettlementService
from ..utils.dependencies import get_current_account, get_query_service, get_settlement_service
from ..utils.exceptions import InvalidAmountError, InvalidPriceError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/events", tags=["events"])


@router.post("", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
async def create_event(
    event_data: EventCreate,
    account: str = Depends(get_current_account),
    engine: SettlementService = Depends(get_settlement_service),
    queries: EscrowQueryService = Depends(get_query_service),
):
    """
    Create an escrow event organized by the calling account.

    The ticket price is given in the event currency (e.g. "12.50") and
    stored in minor units. A price of 0 creates a free event that takes
    registrations instead of tickets.
    """
    try:
        ticket_price = to_minor_units(event_data.ticket_price, get_settings().currency_decimals)
    except InvalidAmountError:
        raise InvalidPriceError(str(event_data.ticket_price))

    event = await engine.create_event(
        organizer=account,
        ticket_price=ticket_price,
        event_end_time=event_data.event_end_time,
        redistribution_percentage=event_data.redistribution_percentage,
        event_id=event_data.event_id,
        currency=event_data.currency,
    )
    info = await queries.get_event_info(event.event_id)
    return EventResponse.from_record(info.event, info.escrow_account, info.registration_count)


@router.get("/{event_id}", response_model=EventResponse)
async def get_event(
    event_id: UUID,
    queries: EscrowQueryService = Depends(get_query_service),
):
    """Get an event's terms, state and escrow totals."""
    info = await queries.get_event_info(event_id)
    return EventResponse.from_record(info.event, info.escrow_account, info.registration_count)


@router.get("/{event_id}/stats", response_model=EventStatsResponse)
async def get_event_stats(
    event_id: UUID,
    queries: EscrowQueryService = Depends(get_query_service),
):
    """
    Get fund statistics.

    While the event is open the redistribution figures are a projection
    from current attendance; after finalization they are the settled values.
    """
    info = await queries.get_event_info(event_id)
    stats = await queries.get_event_stats(event_id)
    currency = info.event.currency
    return EventStatsResponse(
        event_id=info.event.event_id,
        currency=currency,
        total_funds=Amount.of(stats.total_funds, currency),
        total_participants=stats.total_participants,
        attendee_count=stats.attendee_count,
        absentee_count=stats.absentee_count,
        total_absentee_funds=Amount.of(stats.total_absentee_funds, currency),
        redistribution_amount=Amount.of(stats.redistribution_amount, currency),
        attendee_refund_total=Amount.of(stats.attendee_refund_total, currency),
        organizer_share=Amount.of(stats.organizer_share, currency),
        total_withdrawn=Amount.of(stats.total_withdrawn, currency),
        total_refunded=Amount.of(stats.total_refunded, currency),
        unclaimed_remainder=Amount.of(stats.unclaimed_remainder, currency),
        is_projection=stats.is_projection,
    )


@router.get("/{event_id}/history", response_model=HistoryResponse)
async def get_event_history(
    event_id: UUID,
    queries: EscrowQueryService = Depends(get_query_service),
):
    """Audit trail of every committed change to the event."""
    entries = await queries.get_history(event_id)
    return HistoryResponse(
        event_id=event_id,
        entries=[HistoryEntryResponse.from_entry(entry) for entry in entries],
    )


@router.post("/{event_id}/finalize", response_model=EventResponse)
async def finalize_event(
    event_id: UUID,
    account: str = Depends(get_current_account),
    engine: SettlementService = Depends(get_settlement_service),
):
    """Settle the event and pay the organizer's share. Organizer only."""
    event = await engine.finalize_event(event_id, account)
    logger.info(f"Event {event_id} finalized via API by {account}")
    return EventResponse.from_record(event, engine.escrow_account(event_id))


@router.post("/{event_id}/cancel", response_model=CancellationResponse)
async def cancel_event(
    event_id: UUID,
    account: str = Depends(get_current_account),
    engine: SettlementService = Depends(get_settlement_service),
):
    """
    Cancel the event and refund every ticket holder. Organizer only.

    If some refunds fail the response is a CANCELLATION_INCOMPLETE error
    listing them; calling this endpoint again retries only those.
    """
    event = await engine.cancel_event(event_id, account)
    return CancellationResponse(
        event=EventResponse.from_record(event, engine.escrow_account(event_id)),
        refunded_total=Amount.of(event.total_funds, event.currency),
    )
