"""
Participant schemas: tickets, attendance, withdrawals and check-in.
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from ..ledger.base import ParticipantRecord
from .common import Amount


class ParticipantResponse(BaseModel):
    """Schema for a participant's escrow position."""

    event_id: UUID
    account: str
    has_paid: bool
    amount_paid: Amount
    has_attended: bool
    has_withdrawn: bool
    withdrawn_amount: Amount
    is_refunded: bool
    payment_reference: Optional[str] = None
    purchased_at: Optional[datetime] = None
    attended_at: Optional[datetime] = None
    withdrawn_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, participant: ParticipantRecord, currency: str) -> "ParticipantResponse":
        return cls(
            event_id=participant.event_id,
            account=participant.account,
            has_paid=participant.has_paid,
            amount_paid=Amount.of(participant.amount_paid, currency),
            has_attended=participant.has_attended,
            has_withdrawn=participant.has_withdrawn,
            withdrawn_amount=Amount.of(participant.withdrawn_amount, currency),
            is_refunded=participant.is_refunded,
            payment_reference=participant.payment_reference,
            purchased_at=participant.purchased_at,
            attended_at=participant.attended_at,
            withdrawn_at=participant.withdrawn_at,
            refunded_at=participant.refunded_at,
        )


class ParticipantListResponse(BaseModel):
    event_id: UUID
    participants: List[ParticipantResponse]
    total: int


class AttendanceMark(BaseModel):
    """Schema for marking one participant present."""

    account: str = Field(..., min_length=1, max_length=255)


class AttendanceMarkResponse(BaseModel):
    account: str
    newly_marked: bool


class AttendanceBatch(BaseModel):
    """Schema for marking several participants present at once."""

    accounts: List[str] = Field(..., min_length=1, max_length=1000)


class AttendanceBatchResponse(BaseModel):
    marked: List[str]
    submitted: int


class RedistributionPreviewResponse(BaseModel):
    """What an account could withdraw right now."""

    event_id: UUID
    account: str
    principal: Amount
    bonus: Amount
    total: Amount


class WithdrawalResponse(BaseModel):
    event_id: UUID
    account: str
    principal: Amount
    bonus: Amount
    amount: Amount
    transfer_id: str


class CheckinTokenResponse(BaseModel):
    token: str
    token_type: str = "checkin"
    expires_in: int = Field(..., description="Token lifetime in seconds")


class CheckinScan(BaseModel):
    """Schema for a scanned check-in token."""

    token: str = Field(..., min_length=1)


class CheckinScanResponse(BaseModel):
    account: str
    newly_marked: bool
