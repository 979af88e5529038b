"""
FastAPI routes for free-event registrations.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, status

from ..schemas.registration import RegistrationListResponse, RegistrationResponse
from ..services.registration_service import RegistrationService
from ..utils.dependencies import get_current_account, get_registration_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/events", tags=["registrations"])


@router.post("/{event_id}/registrations", response_model=RegistrationResponse, status_code=status.HTTP_201_CREATED)
async def register(
    event_id: UUID,
    account: str = Depends(get_current_account),
    registrations: RegistrationService = Depends(get_registration_service),
):
    """Register the caller for a free event. No funds move."""
    registration = await registrations.register(event_id, account)
    return RegistrationResponse.from_record(registration)


@router.get("/{event_id}/registrations", response_model=RegistrationListResponse)
async def list_registrations(
    event_id: UUID,
    registrations: RegistrationService = Depends(get_registration_service),
):
    items = await registrations.list_registrations(event_id)
    return RegistrationListResponse(
        event_id=event_id,
        registrations=[RegistrationResponse.from_record(r) for r in items],
        total=len(items),
    )
