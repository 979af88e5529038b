"""
Ledger contract: the authoritative store of per-event and per-participant
monetary facts.

The settlement engine never holds state of its own. It reads and writes
through a ``Ledger`` implementation, which is responsible for applying each
mutation atomically and for re-validating the preconditions inside that
atomic step.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, List, Optional, Tuple, Union

from ..models.escrow_event import EventStatus
from ..models.settlement_history import SettlementAction
from ..settlement import Settlement, claim_breakdown
from ..utils.exceptions import (
    AlreadyCancelledError,
    AlreadyFinalizedError,
    AlreadyPaidError,
    AlreadyRefundedError,
    AlreadyWithdrawnError,
    ConcurrencyError,
    EventClosedError,
    EventNotYetEndedError,
    FreeEventError,
    InvalidAmountError,
    NotAttendedError,
    NotFinalizedError,
    NotPaidError,
    PaidEventError,
    ValidationError,
)

EventId = Union[uuid.UUID, str]

MAX_ACCOUNT_LENGTH = 255


def normalize_account(account: Any, field_name: str = "account") -> str:
    """
    Canonical form of an account identifier: stripped and lower-cased.

    Raises:
        ValidationError: If the account is not a non-empty string
    """
    if not isinstance(account, str):
        raise ValidationError(
            f"Invalid {field_name}: {account!r}",
            field_errors={field_name: ["must be a string"]}
        )
    normalized = account.strip().lower()
    if not normalized or len(normalized) > MAX_ACCOUNT_LENGTH:
        raise ValidationError(
            f"Invalid {field_name}: {account!r}",
            field_errors={field_name: [f"must be 1-{MAX_ACCOUNT_LENGTH} characters"]}
        )
    return normalized


def coerce_event_id(event_id: EventId) -> uuid.UUID:
    """
    Canonical event identifier.

    Raises:
        ValidationError: If the value is not a UUID
    """
    if isinstance(event_id, uuid.UUID):
        return event_id
    try:
        return uuid.UUID(str(event_id))
    except (TypeError, ValueError):
        raise ValidationError(
            f"Invalid event ID: {event_id!r}",
            field_errors={"event_id": ["must be a UUID"]}
        )


@dataclass(frozen=True)
class NewEvent:
    """Validated terms of an event about to be created."""
    event_id: uuid.UUID
    organizer: str
    ticket_price: int
    currency: str
    event_end_time: datetime
    redistribution_percentage: int


@dataclass(frozen=True)
class EventRecord:
    event_id: uuid.UUID
    organizer: str
    ticket_price: int
    currency: str
    event_end_time: datetime
    redistribution_percentage: int
    total_funds: int = 0
    participant_count: int = 0
    status: EventStatus = EventStatus.OPEN
    cancellation_requested: bool = False
    finalization_requested: bool = False
    settlement: Optional[Settlement] = None
    organizer_payout_reference: Optional[str] = None
    finalized_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_finalized(self) -> bool:
        return self.status is EventStatus.FINALIZED

    @property
    def is_cancelled(self) -> bool:
        return self.status is EventStatus.CANCELLED

    @property
    def is_free(self) -> bool:
        return self.ticket_price == 0

    @property
    def is_closing(self) -> bool:
        """Cancellation started but refunds are still outstanding."""
        return self.status is EventStatus.OPEN and self.cancellation_requested

    @property
    def is_finalizing(self) -> bool:
        """Settlement frozen but the organizer payout has not been recorded."""
        return self.status is EventStatus.OPEN and self.finalization_requested

    @property
    def accepts_changes(self) -> bool:
        """Purchases, attendance marks and registrations are allowed."""
        return (
            self.status is EventStatus.OPEN
            and not self.cancellation_requested
            and not self.finalization_requested
        )

    @property
    def state_label(self) -> str:
        if self.is_closing:
            return "closing"
        if self.is_finalizing:
            return "finalizing"
        return self.status.value


@dataclass(frozen=True)
class ParticipantRecord:
    event_id: uuid.UUID
    account: str
    has_paid: bool = False
    amount_paid: int = 0
    has_attended: bool = False
    has_withdrawn: bool = False
    withdrawn_amount: int = 0
    is_refunded: bool = False
    payment_reference: Optional[str] = None
    purchased_at: Optional[datetime] = None
    attended_at: Optional[datetime] = None
    withdrawn_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    @classmethod
    def empty(cls, event_id: uuid.UUID, account: str) -> "ParticipantRecord":
        """Record of an account that never bought a ticket."""
        return cls(event_id=event_id, account=account)


@dataclass(frozen=True)
class ParticipantTally:
    total_participants: int = 0
    attendee_count: int = 0
    absentee_count: int = 0
    attendee_refund_total: int = 0
    no_show_pool: int = 0
    total_withdrawn: int = 0
    total_refunded: int = 0


@dataclass(frozen=True)
class RegistrationRecord:
    event_id: uuid.UUID
    account: str
    registration_code: str
    checked_in: bool = False
    registered_at: Optional[datetime] = None
    checked_in_at: Optional[datetime] = None


@dataclass(frozen=True)
class HistoryEntry:
    event_id: uuid.UUID
    action: SettlementAction
    account: Optional[str] = None
    amount: Optional[int] = None
    reference: Optional[str] = None
    details: Optional[str] = None
    created_at: Optional[datetime] = None


def tally_participants(participants: Iterable[ParticipantRecord]) -> ParticipantTally:
    """Partition paid participants into attendees and absentees."""
    total = attendees = absentees = 0
    refund_total = pool = withdrawn = refunded = 0
    for participant in participants:
        if not participant.has_paid:
            continue
        total += 1
        if participant.has_attended:
            attendees += 1
            refund_total += participant.amount_paid
        else:
            absentees += 1
            pool += participant.amount_paid
        withdrawn += participant.withdrawn_amount
        if participant.is_refunded:
            refunded += participant.amount_paid
    return ParticipantTally(
        total_participants=total,
        attendee_count=attendees,
        absentee_count=absentees,
        attendee_refund_total=refund_total,
        no_show_pool=pool,
        total_withdrawn=withdrawn,
        total_refunded=refunded,
    )


# Precondition checks shared by the ledger implementations. Each one runs
# inside the implementation's atomic step, against freshly loaded state.

def check_accepts_changes(event: EventRecord) -> None:
    if not event.accepts_changes:
        raise EventClosedError(str(event.event_id), event.state_label)


def check_purchase(event: EventRecord, existing: Optional[ParticipantRecord], amount: int) -> None:
    check_accepts_changes(event)
    if event.is_free:
        raise FreeEventError(str(event.event_id))
    if existing is not None and existing.has_paid:
        raise AlreadyPaidError(str(event.event_id), existing.account)
    if amount != event.ticket_price:
        raise InvalidAmountError(
            f"Deposit {amount} does not match ticket price {event.ticket_price}",
            details={"event_id": str(event.event_id)}
        )


def attendance_rejection(participant: Optional[ParticipantRecord]) -> Optional[str]:
    """Reason an account cannot be marked present, or None."""
    if participant is None or not participant.has_paid:
        return "not_paid"
    return None


def _check_finalizable(event: EventRecord, at: datetime) -> None:
    event_id = str(event.event_id)
    if event.is_finalized:
        raise AlreadyFinalizedError(event_id)
    if event.is_cancelled:
        raise AlreadyCancelledError(event_id)
    if event.cancellation_requested:
        raise EventClosedError(event_id, event.state_label)
    if at < event.event_end_time:
        raise EventNotYetEndedError(event_id, event.event_end_time.isoformat())


def _check_snapshot(event: EventRecord, settlement: Settlement, tally: ParticipantTally) -> None:
    event_id = str(event.event_id)
    if (
        settlement.total_funds != event.total_funds
        or settlement.participant_count != event.participant_count
        or settlement.attendee_count != tally.attendee_count
        or settlement.attendee_refund_total != tally.attendee_refund_total
    ):
        raise ConcurrencyError(
            f"Event {event_id} changed while its settlement was being computed",
            details={"event_id": event_id}
        )


def check_begin_finalization(
    event: EventRecord,
    settlement: Settlement,
    tally: ParticipantTally,
    requested_at: datetime
) -> None:
    _check_finalizable(event, requested_at)
    _check_snapshot(event, settlement, tally)


def check_finalize(
    event: EventRecord,
    settlement: Settlement,
    tally: ParticipantTally,
    finalized_at: datetime
) -> None:
    """
    A finalizing event only accepts the settlement frozen when
    finalization began; otherwise the settlement must match live totals.
    """
    _check_finalizable(event, finalized_at)
    if not event.is_finalizing:
        _check_snapshot(event, settlement, tally)
    elif settlement != event.settlement:
        raise ConcurrencyError(
            f"Settlement for event {event.event_id} differs from the one frozen at finalization",
            details={"event_id": str(event.event_id)}
        )


def check_cancellable(event: EventRecord) -> None:
    event_id = str(event.event_id)
    if event.is_finalized:
        raise AlreadyFinalizedError(event_id)
    if event.is_cancelled:
        raise AlreadyCancelledError(event_id)
    if event.finalization_requested:
        raise EventClosedError(event_id, event.state_label)


def check_refund(event: EventRecord, participant: Optional[ParticipantRecord], account: str) -> None:
    check_cancellable(event)
    if participant is None or not participant.has_paid:
        raise NotPaidError(str(event.event_id), account)
    if participant.is_refunded:
        raise AlreadyRefundedError(str(event.event_id), account)


def check_withdrawal(
    event: EventRecord,
    participant: Optional[ParticipantRecord],
    account: str,
    amount: int
) -> None:
    event_id = str(event.event_id)
    if not event.is_finalized or event.settlement is None:
        raise NotFinalizedError(event_id)
    if participant is None or not participant.has_attended:
        raise NotAttendedError(event_id, account)
    if participant.has_withdrawn:
        raise AlreadyWithdrawnError(event_id, account)
    principal, bonus = claim_breakdown(event.settlement, participant.amount_paid)
    if amount != principal + bonus:
        raise InvalidAmountError(
            f"Withdrawal amount {amount} does not match claim {principal + bonus}",
            details={"event_id": event_id, "account": account}
        )


def check_registration(event: EventRecord) -> None:
    check_accepts_changes(event)
    if not event.is_free:
        raise PaidEventError(str(event.event_id))


class Ledger(ABC):
    """Abstract ledger. Every mutating method is atomic per event."""

    @abstractmethod
    async def create_event(self, new_event: NewEvent) -> EventRecord:
        """Raises DuplicateEventError."""

    @abstractmethod
    async def get_event(self, event_id: EventId) -> EventRecord:
        """Raises EventNotFoundError."""

    @abstractmethod
    async def record_purchase(
        self,
        event_id: EventId,
        account: str,
        amount: int,
        reference: Optional[str] = None
    ) -> ParticipantRecord:
        """Add a paid participant and grow the escrow totals in one step."""

    @abstractmethod
    async def set_attendance(self, event_id: EventId, account: str) -> bool:
        """Mark a paid participant present. Returns False on a re-mark."""

    @abstractmethod
    async def set_attendance_batch(self, event_id: EventId, accounts: List[str]) -> List[str]:
        """Mark every account present, or none. Returns the newly marked accounts."""

    @abstractmethod
    async def begin_finalization(
        self,
        event_id: EventId,
        settlement: Settlement,
        requested_at: datetime
    ) -> EventRecord:
        """
        Freeze the settlement and close the event to changes ahead of the
        organizer payout. An event already finalizing is returned unchanged.
        """

    @abstractmethod
    async def finalize(
        self,
        event_id: EventId,
        settlement: Settlement,
        finalized_at: datetime,
        reference: Optional[str] = None
    ) -> EventRecord:
        """Freeze the settlement and move the event to FINALIZED."""

    @abstractmethod
    async def request_cancellation(self, event_id: EventId, requested_by: Optional[str] = None) -> EventRecord:
        """Close the event to changes ahead of refunds. Idempotent."""

    @abstractmethod
    async def record_refund(
        self,
        event_id: EventId,
        account: str,
        reference: Optional[str] = None
    ) -> ParticipantRecord:
        """Flag one participant's deposit as refunded."""

    @abstractmethod
    async def cancel(self, event_id: EventId) -> EventRecord:
        """Move the event to CANCELLED once every deposit is refunded."""

    @abstractmethod
    async def record_withdrawal(
        self,
        event_id: EventId,
        account: str,
        amount: int,
        reference: Optional[str] = None
    ) -> ParticipantRecord:
        """Flag an attendee's redistribution claim as paid out."""

    @abstractmethod
    async def get_participant(self, event_id: EventId, account: str) -> ParticipantRecord:
        """Unknown accounts read as an all-false record."""

    @abstractmethod
    async def list_participants(self, event_id: EventId) -> List[ParticipantRecord]:
        ...

    @abstractmethod
    async def stats(self, event_id: EventId) -> ParticipantTally:
        ...

    @abstractmethod
    async def list_history(self, event_id: EventId) -> List[HistoryEntry]:
        ...

    @abstractmethod
    async def list_events_pending_cancellation(self) -> List[EventRecord]:
        """Events whose cancellation started but did not complete."""

    @abstractmethod
    async def list_events_pending_finalization(self) -> List[EventRecord]:
        """Events whose settlement is frozen but not yet finalized."""

    @abstractmethod
    async def register(self, event_id: EventId, account: str, registration_code: str) -> RegistrationRecord:
        ...

    @abstractmethod
    async def check_in_registration(self, event_id: EventId, account: str) -> Tuple[RegistrationRecord, bool]:
        """Returns the registration and whether this check-in was new."""

    @abstractmethod
    async def get_registration(self, event_id: EventId, account: str) -> RegistrationRecord:
        """Raises RegistrationNotFoundError."""

    @abstractmethod
    async def list_registrations(self, event_id: EventId) -> List[RegistrationRecord]:
        ...
