"""
Registration model for free events, which never enter escrow.
"""

import uuid
from datetime import datetime
from typing import Optional, TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base

if TYPE_CHECKING:
    from .escrow_event import EscrowEvent


class Registration(Base):
    """Free-event registration of one account."""

    __tablename__ = "registrations"

    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("escrow_events.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    account: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    registration_code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    checked_in: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    checked_in_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    event: Mapped["EscrowEvent"] = relationship("EscrowEvent", back_populates="registrations")

    __table_args__ = (
        UniqueConstraint("event_id", "account", name="uq_registrations_event_account"),
    )

    def __repr__(self) -> str:
        return (
            f"<Registration(code='{self.registration_code}', event_id={self.event_id}, "
            f"account='{self.account}', checked_in={self.checked_in})>"
        )
