"""
In-memory ledger for tests and single-process runs.
"""

import asyncio
import logging
import uuid
import weakref
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from ..models.escrow_event import EventStatus
from ..models.settlement_history import SettlementAction
from ..money import add
from ..settlement import Settlement
from ..utils.clock import Clock, utcnow
from ..utils.exceptions import (
    AlreadyRegisteredError,
    BatchAttendanceRejectedError,
    CancellationIncompleteError,
    DuplicateEventError,
    EventNotFoundError,
    NotPaidError,
    RegistrationNotFoundError,
    ValidationError,
)
from .base import (
    EventId,
    EventRecord,
    HistoryEntry,
    Ledger,
    NewEvent,
    ParticipantRecord,
    ParticipantTally,
    RegistrationRecord,
    attendance_rejection,
    check_accepts_changes,
    check_begin_finalization,
    check_cancellable,
    check_finalize,
    check_purchase,
    check_refund,
    check_registration,
    check_withdrawal,
    coerce_event_id,
    normalize_account,
    tally_participants,
)

logger = logging.getLogger(__name__)


class InMemoryLedger(Ledger):
    """Dict-backed ledger guarded by one asyncio.Lock per event."""

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or utcnow
        self._events: Dict[uuid.UUID, EventRecord] = {}
        self._participants: Dict[uuid.UUID, Dict[str, ParticipantRecord]] = defaultdict(dict)
        self._registrations: Dict[uuid.UUID, Dict[str, RegistrationRecord]] = defaultdict(dict)
        self._history: Dict[uuid.UUID, List[HistoryEntry]] = defaultdict(list)
        self._locks: "weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._create_lock = asyncio.Lock()

    def _lock_for(self, event_id: uuid.UUID) -> asyncio.Lock:
        # Entries vanish once no coroutine holds or awaits the lock
        lock = self._locks.get(event_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[event_id] = lock
        return lock

    def _require_event(self, event_id: uuid.UUID) -> EventRecord:
        event = self._events.get(event_id)
        if event is None:
            raise EventNotFoundError(str(event_id))
        return event

    def _append(
        self,
        event_id: uuid.UUID,
        action: SettlementAction,
        account: Optional[str] = None,
        amount: Optional[int] = None,
        reference: Optional[str] = None,
        details: Optional[str] = None
    ) -> None:
        self._history[event_id].append(HistoryEntry(
            event_id=event_id,
            action=action,
            account=account,
            amount=amount,
            reference=reference,
            details=details,
            created_at=self._clock(),
        ))

    def _save_event(self, event: EventRecord, **changes) -> EventRecord:
        updated = replace(event, updated_at=self._clock(), **changes)
        self._events[event.event_id] = updated
        return updated

    async def create_event(self, new_event: NewEvent) -> EventRecord:
        async with self._create_lock:
            if new_event.event_id in self._events:
                raise DuplicateEventError(str(new_event.event_id))
            now = self._clock()
            event = EventRecord(
                event_id=new_event.event_id,
                organizer=normalize_account(new_event.organizer, "organizer"),
                ticket_price=new_event.ticket_price,
                currency=new_event.currency,
                event_end_time=new_event.event_end_time,
                redistribution_percentage=new_event.redistribution_percentage,
                created_at=now,
                updated_at=now,
            )
            self._events[event.event_id] = event
            self._append(event.event_id, SettlementAction.EVENT_CREATED, account=event.organizer)
            return event

    async def get_event(self, event_id: EventId) -> EventRecord:
        return self._require_event(coerce_event_id(event_id))

    async def record_purchase(
        self,
        event_id: EventId,
        account: str,
        amount: int,
        reference: Optional[str] = None
    ) -> ParticipantRecord:
        eid = coerce_event_id(event_id)
        account = normalize_account(account)
        async with self._lock_for(eid):
            event = self._require_event(eid)
            check_purchase(event, self._participants[eid].get(account), amount)

            now = self._clock()
            participant = ParticipantRecord(
                event_id=eid,
                account=account,
                has_paid=True,
                amount_paid=amount,
                payment_reference=reference,
                purchased_at=now,
            )
            total_funds = add(event.total_funds, amount)
            self._participants[eid][account] = participant
            self._save_event(
                event,
                total_funds=total_funds,
                participant_count=event.participant_count + 1,
            )
            self._append(eid, SettlementAction.TICKET_PURCHASED, account, amount, reference)
            return participant

    def _mark_present(self, eid: uuid.UUID, account: str) -> bool:
        participant = self._participants[eid][account]
        if participant.has_attended:
            return False
        self._participants[eid][account] = replace(
            participant, has_attended=True, attended_at=self._clock()
        )
        self._append(eid, SettlementAction.ATTENDANCE_MARKED, account)
        return True

    async def set_attendance(self, event_id: EventId, account: str) -> bool:
        eid = coerce_event_id(event_id)
        account = normalize_account(account)
        async with self._lock_for(eid):
            event = self._require_event(eid)
            check_accepts_changes(event)
            if attendance_rejection(self._participants[eid].get(account)):
                raise NotPaidError(str(eid), account)
            return self._mark_present(eid, account)

    async def set_attendance_batch(self, event_id: EventId, accounts: List[str]) -> List[str]:
        eid = coerce_event_id(event_id)
        async with self._lock_for(eid):
            event = self._require_event(eid)
            check_accepts_changes(event)

            valid: List[str] = []
            rejected = []
            for raw in accounts:
                try:
                    account = normalize_account(raw)
                except ValidationError:
                    rejected.append({"account": str(raw), "reason": "invalid_account"})
                    continue
                reason = attendance_rejection(self._participants[eid].get(account))
                if reason:
                    rejected.append({"account": account, "reason": reason})
                elif account not in valid:
                    valid.append(account)

            if rejected:
                raise BatchAttendanceRejectedError(str(eid), rejected)

            return [account for account in valid if self._mark_present(eid, account)]

    async def begin_finalization(
        self,
        event_id: EventId,
        settlement: Settlement,
        requested_at: datetime
    ) -> EventRecord:
        eid = coerce_event_id(event_id)
        async with self._lock_for(eid):
            event = self._require_event(eid)
            if event.is_finalizing:
                return event
            tally = tally_participants(self._participants[eid].values())
            check_begin_finalization(event, settlement, tally, requested_at)

            finalizing = self._save_event(event, finalization_requested=True, settlement=settlement)
            self._append(
                eid, SettlementAction.FINALIZATION_STARTED,
                event.organizer, settlement.organizer_share
            )
            return finalizing

    async def finalize(
        self,
        event_id: EventId,
        settlement: Settlement,
        finalized_at: datetime,
        reference: Optional[str] = None
    ) -> EventRecord:
        eid = coerce_event_id(event_id)
        async with self._lock_for(eid):
            event = self._require_event(eid)
            tally = tally_participants(self._participants[eid].values())
            check_finalize(event, settlement, tally, finalized_at)

            finalized = self._save_event(
                event,
                status=EventStatus.FINALIZED,
                settlement=settlement,
                finalized_at=finalized_at,
                organizer_payout_reference=reference,
            )
            self._append(eid, SettlementAction.EVENT_FINALIZED, amount=settlement.total_funds)
            if settlement.organizer_share > 0:
                self._append(
                    eid, SettlementAction.ORGANIZER_PAID,
                    event.organizer, settlement.organizer_share, reference
                )
            return finalized

    async def request_cancellation(self, event_id: EventId, requested_by: Optional[str] = None) -> EventRecord:
        eid = coerce_event_id(event_id)
        async with self._lock_for(eid):
            event = self._require_event(eid)
            check_cancellable(event)
            if event.cancellation_requested:
                return event
            closing = self._save_event(event, cancellation_requested=True)
            self._append(eid, SettlementAction.CANCELLATION_REQUESTED, requested_by)
            return closing

    async def record_refund(
        self,
        event_id: EventId,
        account: str,
        reference: Optional[str] = None
    ) -> ParticipantRecord:
        eid = coerce_event_id(event_id)
        account = normalize_account(account)
        async with self._lock_for(eid):
            event = self._require_event(eid)
            participant = self._participants[eid].get(account)
            check_refund(event, participant, account)

            refunded = replace(participant, is_refunded=True, refunded_at=self._clock())
            self._participants[eid][account] = refunded
            self._append(eid, SettlementAction.REFUND_ISSUED, account, participant.amount_paid, reference)
            return refunded

    async def cancel(self, event_id: EventId) -> EventRecord:
        eid = coerce_event_id(event_id)
        async with self._lock_for(eid):
            event = self._require_event(eid)
            check_cancellable(event)
            pending = sorted(
                p.account for p in self._participants[eid].values()
                if p.has_paid and not p.is_refunded
            )
            if pending:
                raise CancellationIncompleteError(str(eid), pending)

            cancelled = self._save_event(
                event,
                status=EventStatus.CANCELLED,
                cancellation_requested=True,
                cancelled_at=self._clock(),
            )
            self._append(eid, SettlementAction.EVENT_CANCELLED)
            return cancelled

    async def record_withdrawal(
        self,
        event_id: EventId,
        account: str,
        amount: int,
        reference: Optional[str] = None
    ) -> ParticipantRecord:
        eid = coerce_event_id(event_id)
        account = normalize_account(account)
        async with self._lock_for(eid):
            event = self._require_event(eid)
            participant = self._participants[eid].get(account)
            check_withdrawal(event, participant, account, amount)

            withdrawn = replace(
                participant,
                has_withdrawn=True,
                withdrawn_amount=amount,
                withdrawn_at=self._clock(),
            )
            self._participants[eid][account] = withdrawn
            self._append(eid, SettlementAction.REDISTRIBUTION_WITHDRAWN, account, amount, reference)
            return withdrawn

    async def get_participant(self, event_id: EventId, account: str) -> ParticipantRecord:
        eid = coerce_event_id(event_id)
        account = normalize_account(account)
        self._require_event(eid)
        return self._participants[eid].get(account) or ParticipantRecord.empty(eid, account)

    async def list_participants(self, event_id: EventId) -> List[ParticipantRecord]:
        eid = coerce_event_id(event_id)
        self._require_event(eid)
        return list(self._participants[eid].values())

    async def stats(self, event_id: EventId) -> ParticipantTally:
        eid = coerce_event_id(event_id)
        self._require_event(eid)
        return tally_participants(self._participants[eid].values())

    async def list_history(self, event_id: EventId) -> List[HistoryEntry]:
        eid = coerce_event_id(event_id)
        self._require_event(eid)
        return list(self._history[eid])

    async def list_events_pending_cancellation(self) -> List[EventRecord]:
        return [event for event in self._events.values() if event.is_closing]

    async def list_events_pending_finalization(self) -> List[EventRecord]:
        return [event for event in self._events.values() if event.is_finalizing]

    async def register(self, event_id: EventId, account: str, registration_code: str) -> RegistrationRecord:
        eid = coerce_event_id(event_id)
        account = normalize_account(account)
        async with self._lock_for(eid):
            event = self._require_event(eid)
            check_registration(event)
            if account in self._registrations[eid]:
                raise AlreadyRegisteredError(str(eid), account)

            registration = RegistrationRecord(
                event_id=eid,
                account=account,
                registration_code=registration_code,
                registered_at=self._clock(),
            )
            self._registrations[eid][account] = registration
            self._append(eid, SettlementAction.REGISTERED, account, reference=registration_code)
            return registration

    async def check_in_registration(self, event_id: EventId, account: str) -> Tuple[RegistrationRecord, bool]:
        eid = coerce_event_id(event_id)
        account = normalize_account(account)
        async with self._lock_for(eid):
            event = self._require_event(eid)
            registration = self._registrations[eid].get(account)
            if registration is None:
                raise RegistrationNotFoundError(str(eid), account)
            if registration.checked_in:
                return registration, False
            check_accepts_changes(event)

            checked_in = replace(registration, checked_in=True, checked_in_at=self._clock())
            self._registrations[eid][account] = checked_in
            self._append(eid, SettlementAction.CHECKED_IN, account, reference=registration.registration_code)
            return checked_in, True

    async def get_registration(self, event_id: EventId, account: str) -> RegistrationRecord:
        eid = coerce_event_id(event_id)
        account = normalize_account(account)
        self._require_event(eid)
        registration = self._registrations[eid].get(account)
        if registration is None:
            raise RegistrationNotFoundError(str(eid), account)
        return registration

    async def list_registrations(self, event_id: EventId) -> List[RegistrationRecord]:
        eid = coerce_event_id(event_id)
        self._require_event(eid)
        return list(self._registrations[eid].values())
