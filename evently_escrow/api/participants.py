"""
FastAPI routes for ticket holders: purchases, attendance, withdrawals and check-in.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, status

from ..config import get_settings
from ..schemas.common import Amount
from ..schemas.participant import (
    AttendanceBatch,
    AttendanceBatchResponse,
    AttendanceMark,
    AttendanceMarkResponse,
    CheckinScan,
    CheckinScanResponse,
    CheckinTokenResponse,
    ParticipantListResponse,
    ParticipantResponse,
    RedistributionPreviewResponse,
    WithdrawalResponse,
)
from ..services.checkin_service import CheckinService
from ..services.query_service import EscrowQueryService
from ..services.settlement_service import SettlementService
from ..utils.dependencies import (
    get_checkin_service,
    get_current_account,
    get_query_service,
    get_settlement_service,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/events", tags=["participants"])


@router.post("/{event_id}/tickets", response_model=ParticipantResponse, status_code=status.HTTP_201_CREATED)
async def purchase_ticket(
    event_id: UUID,
    account: str = Depends(get_current_account),
    engine: SettlementService = Depends(get_settlement_service),
    queries: EscrowQueryService = Depends(get_query_service),
):
    """
    Buy a ticket: the deposit moves from the caller's account into escrow.

    Safe to retry after a timeout; the transfer is keyed by event and buyer.
    """
    participant = await engine.purchase_ticket(event_id, account)
    info = await queries.get_event_info(event_id)
    return ParticipantResponse.from_record(participant, info.event.currency)


@router.get("/{event_id}/participants", response_model=ParticipantListResponse)
async def list_participants(
    event_id: UUID,
    queries: EscrowQueryService = Depends(get_query_service),
):
    """List every ticket holder of an event."""
    info = await queries.get_event_info(event_id)
    participants = await queries.list_participants(event_id)
    return ParticipantListResponse(
        event_id=event_id,
        participants=[ParticipantResponse.from_record(p, info.event.currency) for p in participants],
        total=len(participants),
    )


@router.get("/{event_id}/participants/{account}", response_model=ParticipantResponse)
async def get_participant(
    event_id: UUID,
    account: str,
    queries: EscrowQueryService = Depends(get_query_service),
):
    """Get one account's position; accounts without a ticket read as all-false."""
    info = await queries.get_event_info(event_id)
    participant = await queries.get_participant_info(event_id, account)
    return ParticipantResponse.from_record(participant, info.event.currency)


@router.get(
    "/{event_id}/participants/{account}/redistribution",
    response_model=RedistributionPreviewResponse
)
async def preview_redistribution(
    event_id: UUID,
    account: str,
    queries: EscrowQueryService = Depends(get_query_service),
):
    """What the account could withdraw right now: deposit plus bonus."""
    info = await queries.get_event_info(event_id)
    preview = await queries.preview_redistribution(event_id, account)
    currency = info.event.currency
    return RedistributionPreviewResponse(
        event_id=event_id,
        account=account.strip().lower(),
        principal=Amount.of(preview.principal, currency),
        bonus=Amount.of(preview.bonus, currency),
        total=Amount.of(preview.total, currency),
    )


@router.post("/{event_id}/attendance", response_model=AttendanceMarkResponse)
async def mark_attendance(
    event_id: UUID,
    mark: AttendanceMark,
    account: str = Depends(get_current_account),
    engine: SettlementService = Depends(get_settlement_service),
):
    """Mark a ticket holder present. Organizer only; marking twice is harmless."""
    newly_marked = await engine.mark_attendance(event_id, mark.account, caller=account)
    return AttendanceMarkResponse(account=mark.account.strip().lower(), newly_marked=newly_marked)


@router.post("/{event_id}/attendance/batch", response_model=AttendanceBatchResponse)
async def mark_attendance_batch(
    event_id: UUID,
    batch: AttendanceBatch,
    account: str = Depends(get_current_account),
    engine: SettlementService = Depends(get_settlement_service),
):
    """
    Mark several ticket holders present at once. Organizer only.

    The batch is all or nothing: if any account is invalid nothing is
    marked and the error lists every rejected account with its reason.
    """
    marked = await engine.mark_attendance_batch(event_id, batch.accounts, caller=account)
    return AttendanceBatchResponse(marked=marked, submitted=len(batch.accounts))


@router.post("/{event_id}/withdrawals", response_model=WithdrawalResponse)
async def withdraw_redistribution(
    event_id: UUID,
    account: str = Depends(get_current_account),
    engine: SettlementService = Depends(get_settlement_service),
    queries: EscrowQueryService = Depends(get_query_service),
):
    """Withdraw the caller's deposit plus redistribution bonus after finalization."""
    result = await engine.withdraw_redistribution(event_id, account)
    info = await queries.get_event_info(event_id)
    currency = info.event.currency
    return WithdrawalResponse(
        event_id=event_id,
        account=result.account,
        principal=Amount.of(result.principal, currency),
        bonus=Amount.of(result.bonus, currency),
        amount=Amount.of(result.amount, currency),
        transfer_id=result.transfer_id,
    )


@router.get("/{event_id}/checkin-token", response_model=CheckinTokenResponse)
async def get_checkin_token(
    event_id: UUID,
    account: str = Depends(get_current_account),
    checkin: CheckinService = Depends(get_checkin_service),
):
    """Issue the caller's check-in token, to be shown as a QR code at the door."""
    token = await checkin.issue_token(event_id, account)
    return CheckinTokenResponse(
        token=token,
        expires_in=get_settings().checkin_token_ttl_hours * 3600,
    )


@router.post("/{event_id}/checkin", response_model=CheckinScanResponse)
async def scan_checkin_token(
    event_id: UUID,
    scan: CheckinScan,
    account: str = Depends(get_current_account),
    checkin: CheckinService = Depends(get_checkin_service),
):
    """Scan an attendee's check-in token and mark them present. Organizer only."""
    result = await checkin.scan(event_id, scan.token, account)
    return CheckinScanResponse(**result)
