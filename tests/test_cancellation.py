"""Tests for cancellation refunds, partial failures and the retry sweep."""

import pytest

from evently_escrow.tasks.settlement_tasks import resume_pending_cancellations
from evently_escrow.utils.exceptions import (
    AlreadyCancelledError,
    CancellationIncompleteError,
    EventClosedError,
)

from .conftest import ORGANIZER, STARTING_BALANCE


async def _event_with_buyers(engine, make_event, buyers=("alice", "bob", "carol")):
    event = await make_event(ticket_price=100)
    for buyer in buyers:
        await engine.purchase_ticket(event.event_id, buyer)
    return event


class TestPartialRefundFailure:
    async def test_failed_refund_does_not_block_others(self, engine, make_event, rail) -> None:
        event = await _event_with_buyers(engine, make_event)
        rail.fail_next("rejected", to_account="bob")

        with pytest.raises(CancellationIncompleteError) as exc_info:
            await engine.cancel_event(event.event_id, ORGANIZER)

        error = exc_info.value
        assert error.pending == ["bob"]
        assert sorted(error.refunded) == ["alice", "carol"]
        assert "bob" in error.failures
        assert error.details["pending"] == ["bob"]

        assert rail.balance_of("alice") == STARTING_BALANCE
        assert rail.balance_of("carol") == STARTING_BALANCE
        assert rail.balance_of("bob") == STARTING_BALANCE - 100

    async def test_incomplete_cancellation_leaves_event_closing(self, engine, make_event, rail) -> None:
        event = await _event_with_buyers(engine, make_event)
        rail.fail_next("rejected", to_account="bob")
        with pytest.raises(CancellationIncompleteError):
            await engine.cancel_event(event.event_id, ORGANIZER)

        stored = await engine.ledger.get_event(event.event_id)
        assert stored.is_closing
        assert not stored.is_cancelled
        assert stored.state_label == "closing"

        with pytest.raises(EventClosedError):
            await engine.purchase_ticket(event.event_id, "dave")
        with pytest.raises(EventClosedError):
            await engine.mark_attendance(event.event_id, "alice")
        with pytest.raises(EventClosedError):
            await engine.finalize_event(event.event_id, ORGANIZER)

    async def test_retry_refunds_only_the_failed_subset(self, engine, make_event, rail) -> None:
        event = await _event_with_buyers(engine, make_event)
        rail.fail_next("rejected", to_account="bob")
        with pytest.raises(CancellationIncompleteError):
            await engine.cancel_event(event.event_id, ORGANIZER)
        attempts_before = len(rail.attempts)

        cancelled = await engine.cancel_event(event.event_id, ORGANIZER)

        assert cancelled.is_cancelled
        retried = rail.attempts[attempts_before:]
        assert [a.to_account for a in retried] == ["bob"]
        for account in ("alice", "bob", "carol"):
            assert rail.balance_of(account) == STARTING_BALANCE

    async def test_timeout_after_commit_is_not_refunded_twice(self, engine, make_event, rail) -> None:
        event = await _event_with_buyers(engine, make_event, buyers=("alice",))
        rail.fail_next("timeout_after_commit", to_account="alice")

        cancelled = await engine.cancel_event(event.event_id, ORGANIZER)

        assert cancelled.is_cancelled
        assert rail.balance_of("alice") == STARTING_BALANCE

    async def test_cancel_without_participants(self, engine, make_event, rail) -> None:
        event = await make_event(ticket_price=100)
        cancelled = await engine.cancel_event(event.event_id, ORGANIZER)
        assert cancelled.is_cancelled
        assert rail.attempts == []

    async def test_history_records_each_refund(self, engine, queries, make_event) -> None:
        event = await _event_with_buyers(engine, make_event, buyers=("alice", "bob"))
        await engine.cancel_event(event.event_id, ORGANIZER)

        actions = [entry.action.value for entry in await queries.get_history(event.event_id)]
        assert actions.count("refund_issued") == 2
        assert actions[-1] == "event_cancelled"
        assert "cancellation_requested" in actions


class TestResumePendingCancellations:
    async def test_nothing_pending(self, engine, ledger) -> None:
        result = await resume_pending_cancellations(ledger, engine)
        assert result == {"pending": 0, "completed": 0, "incomplete": 0, "errors": 0}

    async def test_sweep_completes_cancellation(self, engine, ledger, make_event, rail) -> None:
        event = await _event_with_buyers(engine, make_event)
        rail.fail_next("rejected", to_account="bob")
        with pytest.raises(CancellationIncompleteError):
            await engine.cancel_event(event.event_id, ORGANIZER)

        result = await resume_pending_cancellations(ledger, engine)

        assert result == {"pending": 1, "completed": 1, "incomplete": 0, "errors": 0}
        assert (await ledger.get_event(event.event_id)).is_cancelled
        assert await ledger.list_events_pending_cancellation() == []
        with pytest.raises(AlreadyCancelledError):
            await engine.cancel_event(event.event_id, ORGANIZER)

    async def test_sweep_keeps_failing_event_pending(self, engine, ledger, make_event, rail) -> None:
        event = await _event_with_buyers(engine, make_event)
        rail.fail_next("rejected", times=2, to_account="bob")
        with pytest.raises(CancellationIncompleteError):
            await engine.cancel_event(event.event_id, ORGANIZER)

        result = await resume_pending_cancellations(ledger, engine)
        assert result == {"pending": 1, "completed": 0, "incomplete": 1, "errors": 0}
        assert (await ledger.get_event(event.event_id)).is_closing

        result = await resume_pending_cancellations(ledger, engine)
        assert result["completed"] == 1
