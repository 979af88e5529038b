"""
SQLAlchemy-backed ledger.

Every method runs in its own transaction. Mutations load the event row with
SELECT ... FOR UPDATE, re-validate their preconditions against that fresh
state, and write the audit row in the same transaction as the change.
"""

import logging
import uuid
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import (
    EscrowEvent,
    EventStatus,
    Participant,
    Registration,
    SettlementAction,
    SettlementHistory,
)
from ..money import add
from ..settlement import Settlement
from ..utils.clock import Clock, ensure_utc, utcnow
from ..utils.exceptions import (
    AlreadyPaidError,
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


def to_event_record(row: EscrowEvent) -> EventRecord:
    """Convert an ORM row into an immutable record."""
    settlement = None
    if row.is_settled:
        settlement = Settlement(
            total_funds=row.settled_total_funds,
            participant_count=row.settled_participant_count,
            attendee_count=row.attendee_count,
            absentee_count=row.absentee_count,
            attendee_refund_total=row.attendee_refund_total,
            no_show_pool=row.no_show_pool,
            redistribution_amount=row.redistribution_amount,
            organizer_share=row.organizer_share,
        )
    return EventRecord(
        event_id=row.id,
        organizer=row.organizer,
        ticket_price=row.ticket_price,
        currency=row.currency,
        event_end_time=ensure_utc(row.event_end_time),
        redistribution_percentage=row.redistribution_percentage,
        total_funds=row.total_funds,
        participant_count=row.participant_count,
        status=row.status,
        cancellation_requested=row.cancellation_requested,
        finalization_requested=row.finalization_requested,
        settlement=settlement,
        organizer_payout_reference=row.organizer_payout_reference,
        finalized_at=ensure_utc(row.finalized_at),
        cancelled_at=ensure_utc(row.cancelled_at),
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


def to_participant_record(row: Participant) -> ParticipantRecord:
    return ParticipantRecord(
        event_id=row.event_id,
        account=row.account,
        has_paid=row.has_paid,
        amount_paid=row.amount_paid,
        has_attended=row.has_attended,
        has_withdrawn=row.has_withdrawn,
        withdrawn_amount=row.withdrawn_amount,
        is_refunded=row.is_refunded,
        payment_reference=row.payment_reference,
        purchased_at=ensure_utc(row.created_at),
        attended_at=ensure_utc(row.attended_at),
        withdrawn_at=ensure_utc(row.withdrawn_at),
        refunded_at=ensure_utc(row.refunded_at),
    )


def to_registration_record(row: Registration) -> RegistrationRecord:
    return RegistrationRecord(
        event_id=row.event_id,
        account=row.account,
        registration_code=row.registration_code,
        checked_in=row.checked_in,
        registered_at=ensure_utc(row.created_at),
        checked_in_at=ensure_utc(row.checked_in_at),
    )


def to_history_entry(row: SettlementHistory) -> HistoryEntry:
    return HistoryEntry(
        event_id=row.event_id,
        action=row.action,
        account=row.account,
        amount=row.amount,
        reference=row.reference,
        details=row.details,
        created_at=ensure_utc(row.created_at),
    )


class SqlAlchemyLedger(Ledger):
    """Ledger over the escrow tables of a relational database."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], clock: Optional[Clock] = None):
        self._session_factory = session_factory
        self._clock = clock or utcnow

    async def _load_event(self, session: AsyncSession, event_id: uuid.UUID, for_update: bool = False) -> EscrowEvent:
        query = select(EscrowEvent).where(EscrowEvent.id == event_id)
        if for_update:
            query = query.with_for_update()
        row = (await session.execute(query)).scalar_one_or_none()
        if row is None:
            raise EventNotFoundError(str(event_id))
        return row

    async def _load_participant(self, session: AsyncSession, event_id: uuid.UUID, account: str) -> Optional[Participant]:
        result = await session.execute(
            select(Participant).where(
                Participant.event_id == event_id,
                Participant.account == account
            )
        )
        return result.scalar_one_or_none()

    async def _load_participants(self, session: AsyncSession, event_id: uuid.UUID) -> List[Participant]:
        result = await session.execute(
            select(Participant)
            .where(Participant.event_id == event_id)
            .order_by(Participant.created_at)
        )
        return list(result.scalars().all())

    async def _load_registration(self, session: AsyncSession, event_id: uuid.UUID, account: str) -> Optional[Registration]:
        result = await session.execute(
            select(Registration).where(
                Registration.event_id == event_id,
                Registration.account == account
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _append(
        session: AsyncSession,
        event_id: uuid.UUID,
        action: SettlementAction,
        account: Optional[str] = None,
        amount: Optional[int] = None,
        reference: Optional[str] = None,
        details: Optional[str] = None
    ) -> None:
        session.add(SettlementHistory(
            event_id=event_id,
            action=action,
            account=account,
            amount=amount,
            reference=reference,
            details=details,
        ))

    @staticmethod
    def _touch(row: EscrowEvent) -> None:
        row.version += 1

    async def create_event(self, new_event: NewEvent) -> EventRecord:
        organizer = normalize_account(new_event.organizer, "organizer")
        try:
            async with self._session_factory() as session, session.begin():
                existing = await session.get(EscrowEvent, new_event.event_id)
                if existing is not None:
                    raise DuplicateEventError(str(new_event.event_id))

                row = EscrowEvent(
                    id=new_event.event_id,
                    organizer=organizer,
                    ticket_price=new_event.ticket_price,
                    currency=new_event.currency,
                    event_end_time=new_event.event_end_time,
                    redistribution_percentage=new_event.redistribution_percentage,
                    total_funds=0,
                    participant_count=0,
                    status=EventStatus.OPEN,
                    cancellation_requested=False,
                    finalization_requested=False,
                    version=1,
                )
                session.add(row)
                await session.flush()
                self._append(session, row.id, SettlementAction.EVENT_CREATED, account=organizer)
                record = to_event_record(row)
        except IntegrityError:
            raise DuplicateEventError(str(new_event.event_id))

        logger.info(f"Created escrow event {record.event_id} for organizer {organizer}")
        return record

    async def get_event(self, event_id: EventId) -> EventRecord:
        eid = coerce_event_id(event_id)
        async with self._session_factory() as session:
            return to_event_record(await self._load_event(session, eid))

    async def record_purchase(
        self,
        event_id: EventId,
        account: str,
        amount: int,
        reference: Optional[str] = None
    ) -> ParticipantRecord:
        eid = coerce_event_id(event_id)
        account = normalize_account(account)
        try:
            async with self._session_factory() as session, session.begin():
                event_row = await self._load_event(session, eid, for_update=True)
                existing = await self._load_participant(session, eid, account)
                check_purchase(
                    to_event_record(event_row),
                    to_participant_record(existing) if existing else None,
                    amount
                )

                participant = Participant(
                    event_id=eid,
                    account=account,
                    has_paid=True,
                    amount_paid=amount,
                    payment_reference=reference,
                    has_attended=False,
                    has_withdrawn=False,
                    withdrawn_amount=0,
                    is_refunded=False,
                )
                session.add(participant)
                event_row.total_funds = add(event_row.total_funds, amount)
                event_row.participant_count += 1
                self._touch(event_row)
                self._append(session, eid, SettlementAction.TICKET_PURCHASED, account, amount, reference)
                await session.flush()
                record = to_participant_record(participant)
        except IntegrityError:
            # Unique (event_id, account) lost a race with a concurrent purchase
            raise AlreadyPaidError(str(eid), account)
        return record

    async def set_attendance(self, event_id: EventId, account: str) -> bool:
        eid = coerce_event_id(event_id)
        account = normalize_account(account)
        async with self._session_factory() as session, session.begin():
            event_row = await self._load_event(session, eid, for_update=True)
            check_accepts_changes(to_event_record(event_row))

            participant = await self._load_participant(session, eid, account)
            if attendance_rejection(to_participant_record(participant) if participant else None):
                raise NotPaidError(str(eid), account)
            if participant.has_attended:
                return False

            participant.has_attended = True
            participant.attended_at = self._clock()
            self._append(session, eid, SettlementAction.ATTENDANCE_MARKED, account)
            return True

    async def set_attendance_batch(self, event_id: EventId, accounts: List[str]) -> List[str]:
        eid = coerce_event_id(event_id)
        async with self._session_factory() as session, session.begin():
            event_row = await self._load_event(session, eid, for_update=True)
            check_accepts_changes(to_event_record(event_row))

            normalized: List[str] = []
            rejected = []
            for raw in accounts:
                try:
                    normalized.append(normalize_account(raw))
                except ValidationError:
                    rejected.append({"account": str(raw), "reason": "invalid_account"})

            rows = {}
            if normalized:
                result = await session.execute(
                    select(Participant).where(
                        Participant.event_id == eid,
                        Participant.account.in_(set(normalized))
                    )
                )
                rows = {row.account: row for row in result.scalars().all()}

            valid: List[str] = []
            for account in normalized:
                row = rows.get(account)
                reason = attendance_rejection(to_participant_record(row) if row else None)
                if reason:
                    rejected.append({"account": account, "reason": reason})
                elif account not in valid:
                    valid.append(account)

            if rejected:
                raise BatchAttendanceRejectedError(str(eid), rejected)

            marked = []
            now = self._clock()
            for account in valid:
                row = rows[account]
                if row.has_attended:
                    continue
                row.has_attended = True
                row.attended_at = now
                self._append(session, eid, SettlementAction.ATTENDANCE_MARKED, account)
                marked.append(account)
            return marked

    @staticmethod
    def _write_settlement(event_row: EscrowEvent, settlement: Settlement) -> None:
        event_row.settled_total_funds = settlement.total_funds
        event_row.settled_participant_count = settlement.participant_count
        event_row.attendee_count = settlement.attendee_count
        event_row.absentee_count = settlement.absentee_count
        event_row.attendee_refund_total = settlement.attendee_refund_total
        event_row.no_show_pool = settlement.no_show_pool
        event_row.redistribution_amount = settlement.redistribution_amount
        event_row.organizer_share = settlement.organizer_share

    async def begin_finalization(
        self,
        event_id: EventId,
        settlement: Settlement,
        requested_at: datetime
    ) -> EventRecord:
        eid = coerce_event_id(event_id)
        async with self._session_factory() as session, session.begin():
            event_row = await self._load_event(session, eid, for_update=True)
            event = to_event_record(event_row)
            if event.is_finalizing:
                return event
            participants = await self._load_participants(session, eid)
            tally = tally_participants(to_participant_record(p) for p in participants)
            check_begin_finalization(event, settlement, tally, requested_at)

            event_row.finalization_requested = True
            self._write_settlement(event_row, settlement)
            self._touch(event_row)
            self._append(
                session, eid, SettlementAction.FINALIZATION_STARTED,
                event_row.organizer, settlement.organizer_share
            )
            await session.flush()
            return to_event_record(event_row)

    async def finalize(
        self,
        event_id: EventId,
        settlement: Settlement,
        finalized_at: datetime,
        reference: Optional[str] = None
    ) -> EventRecord:
        eid = coerce_event_id(event_id)
        async with self._session_factory() as session, session.begin():
            event_row = await self._load_event(session, eid, for_update=True)
            participants = await self._load_participants(session, eid)
            tally = tally_participants(to_participant_record(p) for p in participants)
            check_finalize(to_event_record(event_row), settlement, tally, finalized_at)

            event_row.status = EventStatus.FINALIZED
            event_row.finalized_at = finalized_at
            event_row.organizer_payout_reference = reference
            self._write_settlement(event_row, settlement)
            self._touch(event_row)

            self._append(session, eid, SettlementAction.EVENT_FINALIZED, amount=settlement.total_funds)
            if settlement.organizer_share > 0:
                self._append(
                    session, eid, SettlementAction.ORGANIZER_PAID,
                    event_row.organizer, settlement.organizer_share, reference
                )
            await session.flush()
            return to_event_record(event_row)

    async def request_cancellation(self, event_id: EventId, requested_by: Optional[str] = None) -> EventRecord:
        eid = coerce_event_id(event_id)
        async with self._session_factory() as session, session.begin():
            event_row = await self._load_event(session, eid, for_update=True)
            check_cancellable(to_event_record(event_row))
            if not event_row.cancellation_requested:
                event_row.cancellation_requested = True
                self._touch(event_row)
                self._append(session, eid, SettlementAction.CANCELLATION_REQUESTED, requested_by)
                await session.flush()
            return to_event_record(event_row)

    async def record_refund(
        self,
        event_id: EventId,
        account: str,
        reference: Optional[str] = None
    ) -> ParticipantRecord:
        eid = coerce_event_id(event_id)
        account = normalize_account(account)
        async with self._session_factory() as session, session.begin():
            event_row = await self._load_event(session, eid, for_update=True)
            participant = await self._load_participant(session, eid, account)
            check_refund(
                to_event_record(event_row),
                to_participant_record(participant) if participant else None,
                account
            )

            participant.is_refunded = True
            participant.refunded_at = self._clock()
            participant.refund_reference = reference
            self._append(session, eid, SettlementAction.REFUND_ISSUED, account, participant.amount_paid, reference)
            return to_participant_record(participant)

    async def cancel(self, event_id: EventId) -> EventRecord:
        eid = coerce_event_id(event_id)
        async with self._session_factory() as session, session.begin():
            event_row = await self._load_event(session, eid, for_update=True)
            check_cancellable(to_event_record(event_row))

            participants = await self._load_participants(session, eid)
            pending = sorted(p.account for p in participants if p.has_paid and not p.is_refunded)
            if pending:
                raise CancellationIncompleteError(str(eid), pending)

            event_row.status = EventStatus.CANCELLED
            event_row.cancellation_requested = True
            event_row.cancelled_at = self._clock()
            self._touch(event_row)
            self._append(session, eid, SettlementAction.EVENT_CANCELLED)
            await session.flush()
            return to_event_record(event_row)

    async def record_withdrawal(
        self,
        event_id: EventId,
        account: str,
        amount: int,
        reference: Optional[str] = None
    ) -> ParticipantRecord:
        eid = coerce_event_id(event_id)
        account = normalize_account(account)
        async with self._session_factory() as session, session.begin():
            event_row = await self._load_event(session, eid)
            participant = (await session.execute(
                select(Participant)
                .where(Participant.event_id == eid, Participant.account == account)
                .with_for_update()
            )).scalar_one_or_none()
            check_withdrawal(
                to_event_record(event_row),
                to_participant_record(participant) if participant else None,
                account,
                amount
            )

            participant.has_withdrawn = True
            participant.withdrawn_amount = amount
            participant.withdrawn_at = self._clock()
            participant.withdrawal_reference = reference
            self._append(session, eid, SettlementAction.REDISTRIBUTION_WITHDRAWN, account, amount, reference)
            return to_participant_record(participant)

    async def get_participant(self, event_id: EventId, account: str) -> ParticipantRecord:
        eid = coerce_event_id(event_id)
        account = normalize_account(account)
        async with self._session_factory() as session:
            await self._load_event(session, eid)
            participant = await self._load_participant(session, eid, account)
            if participant is None:
                return ParticipantRecord.empty(eid, account)
            return to_participant_record(participant)

    async def list_participants(self, event_id: EventId) -> List[ParticipantRecord]:
        eid = coerce_event_id(event_id)
        async with self._session_factory() as session:
            await self._load_event(session, eid)
            return [to_participant_record(p) for p in await self._load_participants(session, eid)]

    async def stats(self, event_id: EventId) -> ParticipantTally:
        return tally_participants(await self.list_participants(event_id))

    async def list_history(self, event_id: EventId) -> List[HistoryEntry]:
        eid = coerce_event_id(event_id)
        async with self._session_factory() as session:
            await self._load_event(session, eid)
            result = await session.execute(
                select(SettlementHistory)
                .where(SettlementHistory.event_id == eid)
                .order_by(SettlementHistory.created_at)
            )
            return [to_history_entry(row) for row in result.scalars().all()]

    async def list_events_pending_cancellation(self) -> List[EventRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(EscrowEvent).where(
                    EscrowEvent.status == EventStatus.OPEN,
                    EscrowEvent.cancellation_requested.is_(True)
                )
            )
            return [to_event_record(row) for row in result.scalars().all()]

    async def list_events_pending_finalization(self) -> List[EventRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(EscrowEvent).where(
                    EscrowEvent.status == EventStatus.OPEN,
                    EscrowEvent.finalization_requested.is_(True)
                )
            )
            return [to_event_record(row) for row in result.scalars().all()]

    async def register(self, event_id: EventId, account: str, registration_code: str) -> RegistrationRecord:
        eid = coerce_event_id(event_id)
        account = normalize_account(account)
        try:
            async with self._session_factory() as session, session.begin():
                event_row = await self._load_event(session, eid, for_update=True)
                check_registration(to_event_record(event_row))
                if await self._load_registration(session, eid, account) is not None:
                    raise AlreadyRegisteredError(str(eid), account)

                registration = Registration(
                    event_id=eid,
                    account=account,
                    registration_code=registration_code,
                    checked_in=False,
                )
                session.add(registration)
                self._append(session, eid, SettlementAction.REGISTERED, account, reference=registration_code)
                await session.flush()
                record = to_registration_record(registration)
        except IntegrityError:
            raise AlreadyRegisteredError(str(eid), account)
        return record

    async def check_in_registration(self, event_id: EventId, account: str) -> Tuple[RegistrationRecord, bool]:
        eid = coerce_event_id(event_id)
        account = normalize_account(account)
        async with self._session_factory() as session, session.begin():
            event_row = await self._load_event(session, eid, for_update=True)
            registration = await self._load_registration(session, eid, account)
            if registration is None:
                raise RegistrationNotFoundError(str(eid), account)
            if registration.checked_in:
                return to_registration_record(registration), False
            check_accepts_changes(to_event_record(event_row))

            registration.checked_in = True
            registration.checked_in_at = self._clock()
            self._append(
                session, eid, SettlementAction.CHECKED_IN, account,
                reference=registration.registration_code
            )
            return to_registration_record(registration), True

    async def get_registration(self, event_id: EventId, account: str) -> RegistrationRecord:
        eid = coerce_event_id(event_id)
        account = normalize_account(account)
        async with self._session_factory() as session:
            await self._load_event(session, eid)
            registration = await self._load_registration(session, eid, account)
            if registration is None:
                raise RegistrationNotFoundError(str(eid), account)
            return to_registration_record(registration)

    async def list_registrations(self, event_id: EventId) -> List[RegistrationRecord]:
        eid = coerce_event_id(event_id)
        async with self._session_factory() as session:
            await self._load_event(session, eid)
            result = await session.execute(
                select(Registration)
                .where(Registration.event_id == eid)
                .order_by(Registration.created_at)
            )
            return [to_registration_record(row) for row in result.scalars().all()]
