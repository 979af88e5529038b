"""
Free-event registration schemas.
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel

from ..ledger.base import RegistrationRecord


class RegistrationResponse(BaseModel):
    event_id: UUID
    account: str
    registration_code: str
    checked_in: bool
    registered_at: Optional[datetime] = None
    checked_in_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, registration: RegistrationRecord) -> "RegistrationResponse":
        return cls(
            event_id=registration.event_id,
            account=registration.account,
            registration_code=registration.registration_code,
            checked_in=registration.checked_in,
            registered_at=registration.registered_at,
            checked_in_at=registration.checked_in_at,
        )


class RegistrationListResponse(BaseModel):
    event_id: UUID
    registrations: List[RegistrationResponse]
    total: int
