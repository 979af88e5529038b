"""
Event schemas for request/response validation.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from ..ledger.base import EventRecord, HistoryEntry
from .common import Amount


class EventCreate(BaseModel):
    """Schema for creating a new escrow event."""

    ticket_price: Decimal = Field(
        ...,
        ge=0,
        description="Deposit per ticket in the event currency, e.g. \"12.50\"; 0 creates a free event"
    )
    event_end_time: datetime = Field(..., description="Timezone-aware end of the event")
    redistribution_percentage: int = Field(
        ...,
        ge=0,
        le=100,
        description="Share of the no-show pool redistributed to attendees"
    )
    event_id: Optional[UUID] = Field(None, description="Optional caller-chosen event ID")
    currency: Optional[str] = Field(None, min_length=1, max_length=16, description="Event currency")

    @field_validator('event_end_time')
    @classmethod
    def end_time_must_be_aware(cls, v):
        """Validate that the end time carries a timezone."""
        if v.tzinfo is None:
            raise ValueError('event_end_time must include a timezone offset')
        return v


class SettlementResponse(BaseModel):
    """Fund split frozen at finalization."""

    total_funds: Amount
    participant_count: int
    attendee_count: int
    absentee_count: int
    attendee_refund_total: Amount
    no_show_pool: Amount
    redistribution_amount: Amount
    organizer_share: Amount


class EventResponse(BaseModel):
    """Schema for event response."""

    event_id: UUID
    organizer: str
    ticket_price: Amount
    currency: str
    event_end_time: datetime
    redistribution_percentage: int
    total_funds: Amount
    participant_count: int
    status: str
    cancellation_requested: bool
    finalization_requested: bool
    is_free: bool
    escrow_account: Optional[str] = None
    registration_count: Optional[int] = None
    settlement: Optional[SettlementResponse] = None
    organizer_payout_reference: Optional[str] = None
    finalized_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_record(
        cls,
        event: EventRecord,
        escrow_account: Optional[str] = None,
        registration_count: Optional[int] = None
    ) -> "EventResponse":
        currency = event.currency
        settlement = None
        if event.settlement is not None:
            s = event.settlement
            settlement = SettlementResponse(
                total_funds=Amount.of(s.total_funds, currency),
                participant_count=s.participant_count,
                attendee_count=s.attendee_count,
                absentee_count=s.absentee_count,
                attendee_refund_total=Amount.of(s.attendee_refund_total, currency),
                no_show_pool=Amount.of(s.no_show_pool, currency),
                redistribution_amount=Amount.of(s.redistribution_amount, currency),
                organizer_share=Amount.of(s.organizer_share, currency),
            )
        return cls(
            event_id=event.event_id,
            organizer=event.organizer,
            ticket_price=Amount.of(event.ticket_price, currency),
            currency=currency,
            event_end_time=event.event_end_time,
            redistribution_percentage=event.redistribution_percentage,
            total_funds=Amount.of(event.total_funds, currency),
            participant_count=event.participant_count,
            status=event.state_label,
            cancellation_requested=event.cancellation_requested,
            finalization_requested=event.finalization_requested,
            is_free=event.is_free,
            escrow_account=escrow_account,
            registration_count=registration_count,
            settlement=settlement,
            organizer_payout_reference=event.organizer_payout_reference,
            finalized_at=event.finalized_at,
            cancelled_at=event.cancelled_at,
            created_at=event.created_at,
        )


class EventStatsResponse(BaseModel):
    """Fund statistics; ``is_projection`` is True while the event is still open."""

    event_id: UUID
    currency: str
    total_funds: Amount
    total_participants: int
    attendee_count: int
    absentee_count: int
    total_absentee_funds: Amount
    redistribution_amount: Amount
    attendee_refund_total: Amount
    organizer_share: Amount
    total_withdrawn: Amount
    total_refunded: Amount
    unclaimed_remainder: Amount
    is_projection: bool


class HistoryEntryResponse(BaseModel):
    """One audit trail row."""

    action: str
    account: Optional[str] = None
    amount: Optional[int] = None
    reference: Optional[str] = None
    details: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_entry(cls, entry: HistoryEntry) -> "HistoryEntryResponse":
        return cls(
            action=entry.action.value,
            account=entry.account,
            amount=entry.amount,
            reference=entry.reference,
            details=entry.details,
            created_at=entry.created_at,
        )


class HistoryResponse(BaseModel):
    event_id: UUID
    entries: List[HistoryEntryResponse]


class CancellationResponse(BaseModel):
    event: EventResponse
    refunded_total: Amount
