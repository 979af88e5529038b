"""
EscrowEvent model holding one event's escrow state and settlement snapshot.
"""

import enum
from datetime import datetime
from typing import List, Optional, TYPE_CHECKING

from sqlalchemy import BigInteger, Boolean, CheckConstraint, DateTime, Enum, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base

if TYPE_CHECKING:
    from .participant import Participant
    from .registration import Registration
    from .settlement_history import SettlementHistory


class EventStatus(enum.Enum):
    """Lifecycle state of an escrow event. FINALIZED and CANCELLED are terminal."""
    OPEN = "open"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"


class EscrowEvent(Base):
    """An organized event whose ticket deposits are held in escrow."""

    __tablename__ = "escrow_events"

    organizer: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    # Terms, immutable after creation
    ticket_price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(16), nullable=False)
    event_end_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True
    )
    redistribution_percentage: Mapped[int] = mapped_column(Integer, nullable=False)

    # Running escrow totals
    total_funds: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    participant_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    status: Mapped[EventStatus] = mapped_column(
        Enum(EventStatus),
        default=EventStatus.OPEN,
        nullable=False,
        index=True
    )
    cancellation_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    finalization_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    finalized_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    organizer_payout_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Settlement snapshot, frozen when finalization begins
    settled_total_funds: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    settled_participant_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    attendee_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    absentee_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    attendee_refund_total: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    no_show_pool: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    redistribution_amount: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    organizer_share: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    # Optimistic locking for concurrency control
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    participants: Mapped[List["Participant"]] = relationship(
        "Participant",
        back_populates="event",
        cascade="all, delete-orphan"
    )

    registrations: Mapped[List["Registration"]] = relationship(
        "Registration",
        back_populates="event",
        cascade="all, delete-orphan"
    )

    history: Mapped[List["SettlementHistory"]] = relationship(
        "SettlementHistory",
        back_populates="event",
        cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("ticket_price >= 0", name="ck_escrow_events_price_non_negative"),
        CheckConstraint(
            "redistribution_percentage >= 0 AND redistribution_percentage <= 100",
            name="ck_escrow_events_percentage_range"
        ),
        CheckConstraint("total_funds >= 0", name="ck_escrow_events_total_funds_non_negative"),
        CheckConstraint("participant_count >= 0", name="ck_escrow_events_participant_count_non_negative"),
        CheckConstraint("version > 0", name="ck_escrow_events_version_positive"),
    )

    @property
    def is_settled(self) -> bool:
        return self.settled_total_funds is not None

    def __repr__(self) -> str:
        return (
            f"<EscrowEvent(id={self.id}, organizer='{self.organizer}', "
            f"status={self.status.value}, total_funds={self.total_funds})>"
        )
