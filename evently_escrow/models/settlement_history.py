"""
SettlementHistory model for the escrow audit trail.
"""

import enum
import uuid
from typing import Optional, TYPE_CHECKING

from sqlalchemy import BigInteger, Enum, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base

if TYPE_CHECKING:
    from .escrow_event import EscrowEvent


class SettlementAction(enum.Enum):
    """Committed state changes recorded in the audit trail."""
    EVENT_CREATED = "event_created"
    TICKET_PURCHASED = "ticket_purchased"
    ATTENDANCE_MARKED = "attendance_marked"
    FINALIZATION_STARTED = "finalization_started"
    EVENT_FINALIZED = "event_finalized"
    ORGANIZER_PAID = "organizer_paid"
    REDISTRIBUTION_WITHDRAWN = "redistribution_withdrawn"
    CANCELLATION_REQUESTED = "cancellation_requested"
    REFUND_ISSUED = "refund_issued"
    EVENT_CANCELLED = "event_cancelled"
    REGISTERED = "registered"
    CHECKED_IN = "checked_in"


class SettlementHistory(Base):
    """One audit trail row, written in the same transaction as the change."""

    __tablename__ = "settlement_history"

    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("escrow_events.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    action: Mapped[SettlementAction] = mapped_column(
        Enum(SettlementAction),
        nullable=False,
        index=True
    )

    account: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    amount: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    event: Mapped["EscrowEvent"] = relationship("EscrowEvent", back_populates="history")

    def __repr__(self) -> str:
        return (
            f"<SettlementHistory(id={self.id}, event_id={self.event_id}, "
            f"action={self.action.value}, created_at={self.created_at})>"
        )
