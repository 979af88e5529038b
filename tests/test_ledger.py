"""Contract tests run against both ledger implementations."""

import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from evently_escrow.database import create_session_factory, create_tables
from evently_escrow.ledger import InMemoryLedger, NewEvent, SqlAlchemyLedger
from evently_escrow.settlement import compute_settlement
from evently_escrow.utils.exceptions import (
    AlreadyPaidError,
    AlreadyRefundedError,
    AlreadyRegisteredError,
    AlreadyWithdrawnError,
    BatchAttendanceRejectedError,
    CancellationIncompleteError,
    ConcurrencyError,
    DuplicateEventError,
    EventClosedError,
    EventNotFoundError,
    EventNotYetEndedError,
    FreeEventError,
    InvalidAmountError,
    NotAttendedError,
    NotFinalizedError,
    NotPaidError,
    PaidEventError,
    RegistrationNotFoundError,
)

END_TIME = datetime(2026, 1, 1, 13, 0, tzinfo=timezone.utc)
AFTER_END = END_TIME + timedelta(minutes=5)


@pytest.fixture
async def sql_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def store(request, clock, sql_engine):
    if request.param == "memory":
        return InMemoryLedger(clock=clock)
    return SqlAlchemyLedger(create_session_factory(sql_engine), clock=clock)


async def _create(store, ticket_price: int = 100, percentage: int = 50, organizer: str = "organizer"):
    return await store.create_event(NewEvent(
        event_id=uuid.uuid4(),
        organizer=organizer,
        ticket_price=ticket_price,
        currency="USDC",
        event_end_time=END_TIME,
        redistribution_percentage=percentage,
    ))


async def _settle(store, event_id):
    event = await store.get_event(event_id)
    return compute_settlement(event, await store.stats(event_id))


class TestEvents:
    async def test_create_and_get(self, store) -> None:
        created = await _create(store, organizer="Organizer")
        loaded = await store.get_event(created.event_id)

        assert loaded.event_id == created.event_id
        assert loaded.organizer == "organizer"
        assert loaded.ticket_price == 100
        assert loaded.event_end_time == END_TIME
        assert loaded.total_funds == 0
        assert loaded.state_label == "open"
        assert loaded.settlement is None

    async def test_duplicate_event(self, store) -> None:
        created = await _create(store)
        with pytest.raises(DuplicateEventError):
            await store.create_event(NewEvent(
                event_id=created.event_id,
                organizer="someone",
                ticket_price=1,
                currency="USDC",
                event_end_time=END_TIME,
                redistribution_percentage=0,
            ))

    async def test_unknown_event(self, store) -> None:
        with pytest.raises(EventNotFoundError):
            await store.get_event(uuid.uuid4())
        with pytest.raises(EventNotFoundError):
            await store.get_participant(uuid.uuid4(), "alice")


class TestPurchases:
    async def test_purchase_grows_totals(self, store) -> None:
        event = await _create(store)
        participant = await store.record_purchase(event.event_id, "Alice", 100, "tx-1")
        await store.record_purchase(event.event_id, "bob", 100, "tx-2")

        assert participant.account == "alice"
        assert participant.payment_reference == "tx-1"
        loaded = await store.get_event(event.event_id)
        assert loaded.total_funds == 200
        assert loaded.participant_count == 2

    async def test_double_purchase(self, store) -> None:
        event = await _create(store)
        await store.record_purchase(event.event_id, "alice", 100)
        with pytest.raises(AlreadyPaidError):
            await store.record_purchase(event.event_id, "alice", 100)
        assert (await store.get_event(event.event_id)).total_funds == 100

    async def test_amount_must_match_price(self, store) -> None:
        event = await _create(store)
        with pytest.raises(InvalidAmountError):
            await store.record_purchase(event.event_id, "alice", 99)

    async def test_free_event_takes_no_purchase(self, store) -> None:
        event = await _create(store, ticket_price=0)
        with pytest.raises(FreeEventError):
            await store.record_purchase(event.event_id, "alice", 0)


class TestAttendance:
    async def test_mark_and_re_mark(self, store) -> None:
        event = await _create(store)
        await store.record_purchase(event.event_id, "alice", 100)

        assert await store.set_attendance(event.event_id, "alice") is True
        assert await store.set_attendance(event.event_id, "alice") is False
        assert (await store.get_participant(event.event_id, "alice")).has_attended

    async def test_unpaid_rejected(self, store) -> None:
        event = await _create(store)
        with pytest.raises(NotPaidError):
            await store.set_attendance(event.event_id, "alice")

    async def test_batch_all_or_nothing(self, store) -> None:
        event = await _create(store)
        await store.record_purchase(event.event_id, "alice", 100)
        await store.record_purchase(event.event_id, "bob", 100)

        with pytest.raises(BatchAttendanceRejectedError) as exc_info:
            await store.set_attendance_batch(event.event_id, ["alice", "zed", 42])
        reasons = {entry["account"]: entry["reason"] for entry in exc_info.value.rejected}
        assert reasons == {"zed": "not_paid", "42": "invalid_account"}
        assert not (await store.get_participant(event.event_id, "alice")).has_attended

        marked = await store.set_attendance_batch(event.event_id, ["alice", "BOB", "alice"])
        assert sorted(marked) == ["alice", "bob"]
        assert await store.set_attendance_batch(event.event_id, ["alice"]) == []


class TestFinalize:
    async def test_finalize_freezes_settlement(self, store) -> None:
        event = await _create(store)
        for account in ("alice", "bob", "carol"):
            await store.record_purchase(event.event_id, account, 100)
        await store.set_attendance_batch(event.event_id, ["alice", "bob"])

        settlement = await _settle(store, event.event_id)
        finalized = await store.finalize(event.event_id, settlement, AFTER_END, "payout-1")

        assert finalized.is_finalized
        assert finalized.settlement == settlement
        assert finalized.organizer_payout_reference == "payout-1"
        assert (await store.get_event(event.event_id)).settlement.organizer_share == 50

        with pytest.raises(EventClosedError):
            await store.record_purchase(event.event_id, "dave", 100)

    async def test_stale_snapshot_rejected(self, store) -> None:
        event = await _create(store)
        await store.record_purchase(event.event_id, "alice", 100)
        settlement = await _settle(store, event.event_id)
        await store.record_purchase(event.event_id, "bob", 100)

        with pytest.raises(ConcurrencyError):
            await store.finalize(event.event_id, settlement, AFTER_END)
        assert not (await store.get_event(event.event_id)).is_finalized

    async def test_finalize_before_end(self, store) -> None:
        event = await _create(store)
        settlement = await _settle(store, event.event_id)
        with pytest.raises(EventNotYetEndedError):
            await store.finalize(event.event_id, settlement, END_TIME - timedelta(seconds=1))

    async def test_begin_finalization_closes_event(self, store) -> None:
        event = await _create(store)
        for account in ("alice", "bob", "carol"):
            await store.record_purchase(event.event_id, account, 100)
        await store.set_attendance_batch(event.event_id, ["alice", "bob"])
        settlement = await _settle(store, event.event_id)

        finalizing = await store.begin_finalization(event.event_id, settlement, AFTER_END)

        assert finalizing.is_finalizing
        assert not finalizing.is_finalized
        assert finalizing.state_label == "finalizing"
        assert finalizing.settlement == settlement
        with pytest.raises(EventClosedError):
            await store.set_attendance(event.event_id, "carol")
        with pytest.raises(EventClosedError):
            await store.record_purchase(event.event_id, "dave", 100)
        with pytest.raises(EventClosedError):
            await store.request_cancellation(event.event_id)

        again = await store.begin_finalization(event.event_id, settlement, AFTER_END)
        assert again.settlement == settlement
        pending = await store.list_events_pending_finalization()
        assert [e.event_id for e in pending] == [event.event_id]

        finalized = await store.finalize(event.event_id, settlement, AFTER_END, "payout-1")
        assert finalized.is_finalized
        assert finalized.settlement.organizer_share == 50
        assert await store.list_events_pending_finalization() == []
        actions = [entry.action.value for entry in await store.list_history(event.event_id)]
        assert actions.count("finalization_started") == 1
        assert actions.count("event_finalized") == 1

    async def test_frozen_settlement_cannot_be_swapped(self, store) -> None:
        event = await _create(store)
        for account in ("alice", "bob"):
            await store.record_purchase(event.event_id, account, 100)
        await store.set_attendance(event.event_id, "alice")
        settlement = await _settle(store, event.event_id)
        await store.begin_finalization(event.event_id, settlement, AFTER_END)

        with pytest.raises(ConcurrencyError):
            await store.finalize(event.event_id, replace(settlement, organizer_share=0), AFTER_END)
        assert (await store.get_event(event.event_id)).is_finalizing

    async def test_begin_finalization_before_end(self, store) -> None:
        event = await _create(store)
        settlement = await _settle(store, event.event_id)
        with pytest.raises(EventNotYetEndedError):
            await store.begin_finalization(event.event_id, settlement, END_TIME - timedelta(seconds=1))
        assert not (await store.get_event(event.event_id)).is_finalizing


class TestWithdrawals:
    async def _finalized(self, store):
        event = await _create(store)
        for account in ("alice", "bob"):
            await store.record_purchase(event.event_id, account, 100)
        await store.set_attendance(event.event_id, "alice")
        await store.finalize(event.event_id, await _settle(store, event.event_id), AFTER_END)
        return event

    async def test_withdrawal_recorded_once(self, store) -> None:
        event = await self._finalized(store)
        # pool 100 at 50%: alice is owed 100 + 50
        withdrawn = await store.record_withdrawal(event.event_id, "alice", 150, "tx-w")
        assert withdrawn.has_withdrawn
        assert withdrawn.withdrawn_amount == 150

        with pytest.raises(AlreadyWithdrawnError):
            await store.record_withdrawal(event.event_id, "alice", 150)
        assert (await store.stats(event.event_id)).total_withdrawn == 150

    async def test_amount_must_match_claim(self, store) -> None:
        event = await self._finalized(store)
        with pytest.raises(InvalidAmountError):
            await store.record_withdrawal(event.event_id, "alice", 151)

    async def test_absentee_and_open_event(self, store) -> None:
        event = await self._finalized(store)
        with pytest.raises(NotAttendedError):
            await store.record_withdrawal(event.event_id, "bob", 100)

        other = await _create(store)
        with pytest.raises(NotFinalizedError):
            await store.record_withdrawal(other.event_id, "alice", 100)


class TestCancellation:
    async def test_cancel_requires_every_refund(self, store) -> None:
        event = await _create(store)
        await store.record_purchase(event.event_id, "alice", 100)
        await store.record_purchase(event.event_id, "bob", 100)

        closing = await store.request_cancellation(event.event_id, "organizer")
        again = await store.request_cancellation(event.event_id, "organizer")
        assert closing.is_closing and again.is_closing
        pending = await store.list_events_pending_cancellation()
        assert [e.event_id for e in pending] == [event.event_id]

        await store.record_refund(event.event_id, "alice", "r-1")
        with pytest.raises(AlreadyRefundedError):
            await store.record_refund(event.event_id, "alice")
        with pytest.raises(CancellationIncompleteError) as exc_info:
            await store.cancel(event.event_id)
        assert exc_info.value.pending == ["bob"]

        await store.record_refund(event.event_id, "bob", "r-2")
        cancelled = await store.cancel(event.event_id)
        assert cancelled.is_cancelled
        assert cancelled.cancelled_at is not None
        assert await store.list_events_pending_cancellation() == []
        assert (await store.stats(event.event_id)).total_refunded == 200

    async def test_refund_of_non_participant(self, store) -> None:
        event = await _create(store)
        await store.request_cancellation(event.event_id)
        with pytest.raises(NotPaidError):
            await store.record_refund(event.event_id, "alice")


class TestRegistrations:
    async def test_register_and_check_in(self, store) -> None:
        event = await _create(store, ticket_price=0)
        registration = await store.register(event.event_id, "Alice", "REG-1-ABCD")
        assert registration.account == "alice"
        assert not registration.checked_in

        with pytest.raises(AlreadyRegisteredError):
            await store.register(event.event_id, "alice", "REG-2-ABCD")

        checked, newly = await store.check_in_registration(event.event_id, "alice")
        assert checked.checked_in and newly
        _, newly = await store.check_in_registration(event.event_id, "alice")
        assert not newly

        assert [r.account for r in await store.list_registrations(event.event_id)] == ["alice"]
        assert (await store.get_registration(event.event_id, "alice")).registration_code == "REG-1-ABCD"

    async def test_paid_event_takes_no_registration(self, store) -> None:
        event = await _create(store, ticket_price=100)
        with pytest.raises(PaidEventError):
            await store.register(event.event_id, "alice", "REG-1-ABCD")

    async def test_unknown_registration(self, store) -> None:
        event = await _create(store, ticket_price=0)
        with pytest.raises(RegistrationNotFoundError):
            await store.get_registration(event.event_id, "alice")
        with pytest.raises(RegistrationNotFoundError):
            await store.check_in_registration(event.event_id, "alice")
