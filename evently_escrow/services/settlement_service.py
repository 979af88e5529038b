"""
Escrow settlement engine.

Drives an event's funds from creation through ticket sales, attendance,
finalization, redistribution withdrawals and cancellation refunds. Every
operation follows the same shape: validate against the ledger, move money
on the payment rail, and only then commit the new state to the ledger. A
failed or abandoned call therefore leaves the ledger untouched and can be
retried with the same idempotency key.
"""

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from ..config import Settings, get_settings
from ..ledger.base import (
    EventRecord,
    Ledger,
    NewEvent,
    ParticipantRecord,
    coerce_event_id,
    normalize_account,
)
from ..locks import LockKeyBuilder, LockProvider
from ..money import MAX_AMOUNT
from ..payments.gateway import worst_case_transfer_seconds
from ..payments.rail import PaymentRail, PaymentRailError, escrow_account_for
from ..settlement import claim_breakdown, compute_settlement
from ..utils.clock import Clock, ensure_utc, utcnow
from ..utils.exceptions import (
    AlreadyCancelledError,
    AlreadyFinalizedError,
    AlreadyPaidError,
    AlreadyWithdrawnError,
    CancellationIncompleteError,
    EventClosedError,
    EventNotYetEndedError,
    FreeEventError,
    InvalidEndTimeError,
    InvalidPercentageError,
    InvalidPriceError,
    NotAttendedError,
    NotFinalizedError,
    NotOrganizerError,
)
from ..utils.logging_config import log_business_event

logger = logging.getLogger(__name__)

EventIdLike = Union[uuid.UUID, str]

LOCK_TTL_MARGIN_SECONDS = 10


@dataclass(frozen=True)
class WithdrawalResult:
    """Outcome of a redistribution withdrawal."""
    event_id: uuid.UUID
    account: str
    principal: int
    bonus: int
    amount: int
    transfer_id: str
    participant: ParticipantRecord


class SettlementService:
    """Service implementing the escrow state machine."""

    def __init__(
        self,
        ledger: Ledger,
        rail: PaymentRail,
        locks: LockProvider,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None
    ):
        self.ledger = ledger
        self.rail = rail
        self.locks = locks
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        # Outlives the slowest single transfer; distributed locks are also renewed while held
        self.lock_ttl = max(
            self.settings.lock_timeout_seconds,
            math.ceil(worst_case_transfer_seconds(self.settings)) + LOCK_TTL_MARGIN_SECONDS
        )

    def escrow_account(self, event_id: EventIdLike) -> str:
        return escrow_account_for(event_id, self.settings.escrow_account_prefix)

    def _event_lock(self, event_id: uuid.UUID):
        return self.locks.lock(LockKeyBuilder.event(event_id), self.lock_ttl)

    def _participant_lock(self, event_id: uuid.UUID, account: str):
        return self.locks.lock(
            LockKeyBuilder.participant(event_id, account),
            self.lock_ttl
        )

    @staticmethod
    def _require_organizer(event: EventRecord, caller: str) -> None:
        if normalize_account(caller, "caller") != event.organizer:
            raise NotOrganizerError(str(event.event_id), caller)

    @staticmethod
    def _require_accepts_changes(event: EventRecord) -> None:
        if not event.accepts_changes:
            raise EventClosedError(str(event.event_id), event.state_label)

    def _validate_terms(
        self,
        ticket_price: Any,
        event_end_time: Any,
        redistribution_percentage: Any
    ) -> datetime:
        if isinstance(ticket_price, bool) or not isinstance(ticket_price, int):
            raise InvalidPriceError(ticket_price)
        if not 0 <= ticket_price <= MAX_AMOUNT:
            raise InvalidPriceError(ticket_price)

        if isinstance(redistribution_percentage, bool) or not isinstance(redistribution_percentage, int):
            raise InvalidPercentageError(redistribution_percentage)
        if not 0 <= redistribution_percentage <= 100:
            raise InvalidPercentageError(redistribution_percentage)

        if not isinstance(event_end_time, datetime):
            raise InvalidEndTimeError(f"Event end time must be a datetime, got {event_end_time!r}")
        if event_end_time.tzinfo is None:
            raise InvalidEndTimeError("Event end time must be timezone-aware")

        end_time = ensure_utc(event_end_time)
        earliest = self.clock() + timedelta(seconds=self.settings.end_time_safety_margin_seconds)
        if end_time <= earliest:
            raise InvalidEndTimeError(
                f"Event end time must be after {earliest.isoformat()}",
                details={"earliest": earliest.isoformat()}
            )
        return end_time

    async def create_event(
        self,
        organizer: str,
        ticket_price: int,
        event_end_time: datetime,
        redistribution_percentage: int,
        *,
        event_id: Optional[EventIdLike] = None,
        currency: Optional[str] = None
    ) -> EventRecord:
        """
        Open a new escrow event.

        Args:
            organizer: Account receiving the organizer's share
            ticket_price: Deposit per ticket in minor units; 0 makes a free event
            event_end_time: Timezone-aware end of the event
            redistribution_percentage: Share of the no-show pool attendees may claim
            event_id: Optional caller-chosen identifier
            currency: Event currency, defaults to the configured one

        Returns:
            The created event

        Raises:
            InvalidPriceError: Price is not an integer in range
            InvalidPercentageError: Percentage is not an integer in [0, 100]
            InvalidEndTimeError: End time is naive or too close
            DuplicateEventError: The event ID is taken
        """
        organizer = normalize_account(organizer, "organizer")
        end_time = self._validate_terms(ticket_price, event_end_time, redistribution_percentage)
        eid = coerce_event_id(event_id) if event_id is not None else uuid.uuid4()

        event = await self.ledger.create_event(NewEvent(
            event_id=eid,
            organizer=organizer,
            ticket_price=ticket_price,
            currency=(currency or self.settings.default_currency).upper(),
            event_end_time=end_time,
            redistribution_percentage=redistribution_percentage,
        ))

        log_business_event("EventCreated", {
            "event_id": str(eid),
            "ticket_price": ticket_price,
            "event_end_time": end_time.isoformat(),
            "redistribution_percentage": redistribution_percentage,
        }, account=organizer)
        return event

    async def purchase_ticket(self, event_id: EventIdLike, buyer: str) -> ParticipantRecord:
        """
        Pay the ticket deposit into the event's escrow.

        Purchases stay possible after the event's end time, up to
        finalization.

        Args:
            event_id: Event to buy into
            buyer: Paying account

        Returns:
            The new participant record

        Raises:
            EventClosedError: Event finalized, cancelled, being cancelled or finalizing
            FreeEventError: Free events take registrations instead
            AlreadyPaidError: The buyer already holds a ticket
            InsufficientFundsError: The buyer cannot cover the deposit
            TransferFailedError: The rail did not confirm the transfer
        """
        eid = coerce_event_id(event_id)
        buyer = normalize_account(buyer, "buyer")

        async with self._event_lock(eid):
            event = await self.ledger.get_event(eid)
            self._require_accepts_changes(event)
            if event.is_free:
                raise FreeEventError(str(eid))

            existing = await self.ledger.get_participant(eid, buyer)
            if existing.has_paid:
                raise AlreadyPaidError(str(eid), buyer)

            receipt = await self.rail.transfer(
                buyer,
                self.escrow_account(eid),
                event.ticket_price,
                f"purchase:{eid}:{buyer}"
            )
            participant = await self.ledger.record_purchase(eid, buyer, event.ticket_price, receipt.transfer_id)

        logger.info(f"Ticket purchased for event {eid} by {buyer}")
        log_business_event("TicketPurchased", {
            "event_id": str(eid),
            "amount": event.ticket_price,
            "transfer_id": receipt.transfer_id,
        }, account=buyer)
        return participant

    async def mark_attendance(
        self,
        event_id: EventIdLike,
        participant: str,
        *,
        caller: Optional[str] = None
    ) -> bool:
        """
        Mark a paid participant as present. Marking twice is not an error.

        Args:
            event_id: Event being attended
            participant: Account to mark
            caller: When given, must be the organizer

        Returns:
            True if the participant was newly marked

        Raises:
            EventClosedError: Event finalized, cancelled, being cancelled or finalizing
            NotOrganizerError: Caller is not the organizer
            NotPaidError: The account holds no ticket
        """
        eid = coerce_event_id(event_id)
        account = normalize_account(participant, "participant")

        async with self._event_lock(eid):
            event = await self.ledger.get_event(eid)
            self._require_accepts_changes(event)
            if caller is not None:
                self._require_organizer(event, caller)
            newly_marked = await self.ledger.set_attendance(eid, account)

        if newly_marked:
            log_business_event("AttendanceMarked", {"event_id": str(eid)}, account=account)
        else:
            logger.debug(f"Attendance of {account} for event {eid} was already marked")
        return newly_marked

    async def mark_attendance_batch(
        self,
        event_id: EventIdLike,
        participants: List[str],
        *,
        caller: Optional[str] = None
    ) -> List[str]:
        """
        Mark several participants at once, all or nothing.

        Duplicates and already-present participants are accepted. If any
        entry is invalid nothing is applied.

        Returns:
            Accounts that were newly marked

        Raises:
            BatchAttendanceRejectedError: Lists every offending entry with its reason
            EventClosedError: Event finalized, cancelled, being cancelled or finalizing
            NotOrganizerError: Caller is not the organizer
        """
        eid = coerce_event_id(event_id)

        async with self._event_lock(eid):
            event = await self.ledger.get_event(eid)
            self._require_accepts_changes(event)
            if caller is not None:
                self._require_organizer(event, caller)
            marked = await self.ledger.set_attendance_batch(eid, list(participants))

        logger.info(f"Batch attendance for event {eid}: {len(marked)} of {len(participants)} newly marked")
        for account in marked:
            log_business_event("AttendanceMarked", {"event_id": str(eid)}, account=account)
        return marked

    async def finalize_event(self, event_id: EventIdLike, caller: str) -> EventRecord:
        """
        Settle the event: freeze the fund split and pay the organizer.

        Attendee refunds and bonuses are not pushed here; each attendee pulls
        them later through ``withdraw_redistribution``. The event only becomes
        FINALIZED after the organizer transfer is confirmed (no transfer is
        made when the organizer share is zero).

        The split is frozen in the ledger before the organizer transfer, which
        closes the event to purchases and attendance marks. A retry after a
        failed or unconfirmed payout reuses that frozen split, so the transfer
        is replayed with the same idempotency key and the same amount.

        Raises:
            AlreadyFinalizedError: Event already finalized
            AlreadyCancelledError: Event cancelled
            EventClosedError: Cancellation in progress
            NotOrganizerError: Caller is not the organizer
            EventNotYetEndedError: Too early to finalize
            TransferFailedError: Organizer payout failed; the event stays finalizing
        """
        eid = coerce_event_id(event_id)

        async with self._event_lock(eid):
            event = await self.ledger.get_event(eid)
            if event.is_finalized:
                raise AlreadyFinalizedError(str(eid))
            if event.is_cancelled:
                raise AlreadyCancelledError(str(eid))
            if event.cancellation_requested:
                raise EventClosedError(str(eid), event.state_label)
            self._require_organizer(event, caller)

            now = self.clock()
            finalizable_at = event.event_end_time + timedelta(seconds=self.settings.finalization_buffer_seconds)
            if now < finalizable_at:
                raise EventNotYetEndedError(str(eid), finalizable_at.isoformat())

            if event.is_finalizing:
                logger.info(f"Resuming finalization of event {eid} with its frozen settlement")
            else:
                tally = await self.ledger.stats(eid)
                event = await self.ledger.begin_finalization(eid, compute_settlement(event, tally), now)
            settlement = event.settlement

            reference = None
            if settlement.organizer_share > 0:
                receipt = await self.rail.transfer(
                    self.escrow_account(eid),
                    event.organizer,
                    settlement.organizer_share,
                    f"finalize:{eid}:organizer"
                )
                reference = receipt.transfer_id

            finalized = await self.ledger.finalize(eid, settlement, now, reference)

        logger.info(
            f"Event {eid} finalized: {settlement.attendee_count} attended, "
            f"{settlement.absentee_count} absent, redistribution {settlement.redistribution_amount}, "
            f"organizer share {settlement.organizer_share}"
        )
        log_business_event("FundsRedistributed", {
            "event_id": str(eid),
            "redistribution_amount": settlement.redistribution_amount,
            "attendee_count": settlement.attendee_count,
        })
        if settlement.organizer_share > 0:
            log_business_event("OrganizerPaid", {
                "event_id": str(eid),
                "amount": settlement.organizer_share,
                "transfer_id": reference,
            }, account=event.organizer)
        return finalized

    async def withdraw_redistribution(self, event_id: EventIdLike, claimant: str) -> WithdrawalResult:
        """
        Pay an attendee their deposit back plus their share of the redistribution.

        Raises:
            NotFinalizedError: Event not finalized
            NotAttendedError: Claimant did not attend
            AlreadyWithdrawnError: Claim already paid out
            TransferFailedError: The payout was not confirmed; nothing recorded
        """
        eid = coerce_event_id(event_id)
        account = normalize_account(claimant, "claimant")

        async with self._participant_lock(eid, account):
            event = await self.ledger.get_event(eid)
            if not event.is_finalized or event.settlement is None:
                raise NotFinalizedError(str(eid))

            participant = await self.ledger.get_participant(eid, account)
            if not participant.has_attended:
                raise NotAttendedError(str(eid), account)
            if participant.has_withdrawn:
                raise AlreadyWithdrawnError(str(eid), account)

            principal, bonus = claim_breakdown(event.settlement, participant.amount_paid)
            amount = principal + bonus
            receipt = await self.rail.transfer(
                self.escrow_account(eid),
                account,
                amount,
                f"withdraw:{eid}:{account}"
            )
            updated = await self.ledger.record_withdrawal(eid, account, amount, receipt.transfer_id)

        log_business_event("RedistributionWithdrawn", {
            "event_id": str(eid),
            "principal": principal,
            "bonus": bonus,
            "transfer_id": receipt.transfer_id,
        }, account=account)
        return WithdrawalResult(
            event_id=eid,
            account=account,
            principal=principal,
            bonus=bonus,
            amount=amount,
            transfer_id=receipt.transfer_id,
            participant=updated,
        )

    async def cancel_event(self, event_id: EventIdLike, caller: str) -> EventRecord:
        """
        Cancel the event and refund every deposit in full.

        The event is closed to changes first. Each refund is attempted on its
        own; one failing refund does not hold back the others. If any refund
        fails the event stays closing, and calling this again retries only
        the participants that are still unrefunded.

        Raises:
            AlreadyFinalizedError: Event already finalized
            AlreadyCancelledError: Event already cancelled
            EventClosedError: Finalization in progress
            NotOrganizerError: Caller is not the organizer
            CancellationIncompleteError: Some refunds failed; details list them
        """
        eid = coerce_event_id(event_id)

        async with self._event_lock(eid):
            event = await self.ledger.get_event(eid)
            if event.is_finalized:
                raise AlreadyFinalizedError(str(eid))
            if event.is_cancelled:
                raise AlreadyCancelledError(str(eid))
            if event.is_finalizing:
                raise EventClosedError(str(eid), event.state_label)
            self._require_organizer(event, caller)

            await self.ledger.request_cancellation(eid, requested_by=event.organizer)
            refunded, failures = await self._refund_outstanding(eid)
            if failures:
                logger.warning(
                    f"Cancellation of event {eid} incomplete: {len(failures)} refunds failed"
                )
                raise CancellationIncompleteError(
                    str(eid),
                    sorted(failures),
                    failures=failures,
                    refunded=refunded
                )

            cancelled = await self.ledger.cancel(eid)

        logger.info(f"Event {eid} cancelled, {len(refunded)} refunds issued in this pass")
        log_business_event("EventCancelled", {
            "event_id": str(eid),
            "total_refunded": cancelled.total_funds,
        }, account=event.organizer)
        return cancelled

    async def _refund_outstanding(self, event_id: uuid.UUID):
        """Refund every paid, unrefunded participant. Returns (refunded, failures)."""
        escrow = self.escrow_account(event_id)
        refunded: List[str] = []
        failures: Dict[str, str] = {}

        for participant in await self.ledger.list_participants(event_id):
            if not participant.has_paid or participant.is_refunded:
                continue
            try:
                receipt = await self.rail.transfer(
                    escrow,
                    participant.account,
                    participant.amount_paid,
                    f"refund:{event_id}:{participant.account}"
                )
            except PaymentRailError as e:
                logger.warning(f"Refund to {participant.account} for event {event_id} failed: {e.reason}")
                failures[participant.account] = e.reason
                continue

            await self.ledger.record_refund(event_id, participant.account, receipt.transfer_id)
            refunded.append(participant.account)
            log_business_event("RefundIssued", {
                "event_id": str(event_id),
                "amount": participant.amount_paid,
                "transfer_id": receipt.transfer_id,
            }, account=participant.account)

        return refunded, failures
