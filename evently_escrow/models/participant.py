"""
Participant model: one paid deposit per (event, account).
"""

import uuid
from datetime import datetime
from typing import Optional, TYPE_CHECKING

from sqlalchemy import BigInteger, Boolean, CheckConstraint, DateTime, ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base

if TYPE_CHECKING:
    from .escrow_event import EscrowEvent


class Participant(Base):
    """A paying attendee of an escrow event."""

    __tablename__ = "participants"

    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("escrow_events.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    account: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    # Deposit
    has_paid: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    amount_paid: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payment_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Attendance
    has_attended: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    attended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Redistribution claim
    has_withdrawn: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    withdrawn_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    withdrawn_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    withdrawal_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Cancellation refund
    is_refunded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    event: Mapped["EscrowEvent"] = relationship("EscrowEvent", back_populates="participants")

    __table_args__ = (
        UniqueConstraint("event_id", "account", name="uq_participants_event_account"),
        CheckConstraint("amount_paid >= 0", name="ck_participants_amount_non_negative"),
        CheckConstraint("withdrawn_amount >= 0", name="ck_participants_withdrawn_non_negative"),
        CheckConstraint("NOT has_withdrawn OR has_attended", name="ck_participants_withdrawn_requires_attended"),
        CheckConstraint("NOT has_attended OR has_paid", name="ck_participants_attended_requires_paid"),
    )

    def __repr__(self) -> str:
        return (
            f"<Participant(event_id={self.event_id}, account='{self.account}', "
            f"attended={self.has_attended}, withdrawn={self.has_withdrawn})>"
        )
