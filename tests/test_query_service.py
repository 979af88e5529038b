"""Tests for EscrowQueryService, the read side of the escrow."""

import uuid

import pytest

from evently_escrow.utils.exceptions import EventNotFoundError

from .conftest import ORGANIZER


async def _three_paid_two_attended(engine, make_event):
    event = await make_event(ticket_price=100, redistribution_percentage=50)
    for buyer in ("alice", "bob", "carol"):
        await engine.purchase_ticket(event.event_id, buyer)
    await engine.mark_attendance_batch(event.event_id, ["alice", "bob"])
    return event


class TestEventInfo:
    async def test_paid_event_info(self, queries, engine, make_event) -> None:
        event = await make_event(ticket_price=100)
        info = await queries.get_event_info(event.event_id)
        assert info.event.event_id == event.event_id
        assert info.registration_count == 0
        assert info.escrow_account == engine.escrow_account(event.event_id)

    async def test_free_event_counts_registrations(self, queries, registrations, make_event) -> None:
        event = await make_event(ticket_price=0)
        await registrations.register(event.event_id, "alice")
        await registrations.register(event.event_id, "bob")
        info = await queries.get_event_info(str(event.event_id))
        assert info.registration_count == 2

    async def test_unknown_event(self, queries) -> None:
        with pytest.raises(EventNotFoundError):
            await queries.get_event_info(uuid.uuid4())


class TestParticipantInfo:
    async def test_unknown_participant_reads_all_false(self, queries, make_event) -> None:
        event = await make_event()
        participant = await queries.get_participant_info(event.event_id, "nobody")
        assert participant.account == "nobody"
        assert not participant.has_paid
        assert not participant.has_attended
        assert not participant.has_withdrawn
        assert participant.amount_paid == 0

    async def test_list_participants(self, queries, engine, make_event) -> None:
        event = await _three_paid_two_attended(engine, make_event)
        accounts = {p.account for p in await queries.list_participants(event.event_id)}
        assert accounts == {"alice", "bob", "carol"}


class TestEventStats:
    async def test_open_event_is_a_projection(self, queries, engine, make_event) -> None:
        event = await _three_paid_two_attended(engine, make_event)
        stats = await queries.get_event_stats(event.event_id)

        assert stats.is_projection
        assert stats.total_funds == 300
        assert stats.total_participants == 3
        assert stats.attendee_count == 2
        assert stats.absentee_count == 1
        assert stats.total_absentee_funds == 100
        assert stats.redistribution_amount == 50
        assert stats.attendee_refund_total == 200
        assert stats.organizer_share == 50
        assert stats.unclaimed_remainder == 0

    async def test_finalized_event_uses_frozen_settlement(self, queries, engine, make_event, end_event) -> None:
        event = await _three_paid_two_attended(engine, make_event)
        end_event()
        await engine.finalize_event(event.event_id, ORGANIZER)
        await engine.withdraw_redistribution(event.event_id, "alice")

        stats = await queries.get_event_stats(event.event_id)

        assert not stats.is_projection
        assert stats.redistribution_amount == 50
        assert stats.organizer_share == 50
        assert stats.total_withdrawn == 125

    async def test_cancelled_event_redistributes_nothing(self, queries, engine, make_event) -> None:
        event = await _three_paid_two_attended(engine, make_event)
        await engine.cancel_event(event.event_id, ORGANIZER)

        stats = await queries.get_event_stats(event.event_id)

        assert not stats.is_projection
        assert stats.redistribution_amount == 0
        assert stats.organizer_share == 0
        assert stats.total_refunded == 300


class TestRedistributionPreview:
    async def test_zero_before_finalization(self, queries, engine, make_event) -> None:
        event = await _three_paid_two_attended(engine, make_event)
        preview = await queries.preview_redistribution(event.event_id, "alice")
        assert preview.total == 0

    async def test_preview_follows_final_partition(self, queries, engine, make_event, end_event) -> None:
        event = await _three_paid_two_attended(engine, make_event)
        # Carol shows up late; the preview must reflect the partition at finalization
        await engine.mark_attendance(event.event_id, "carol")
        end_event()
        await engine.finalize_event(event.event_id, ORGANIZER)

        assert await queries.calculate_potential_redistribution(event.event_id, "carol") == 100
        assert await queries.calculate_potential_redistribution(event.event_id, "alice") == 100

    async def test_zero_after_withdrawal(self, queries, engine, make_event, end_event) -> None:
        event = await _three_paid_two_attended(engine, make_event)
        end_event()
        await engine.finalize_event(event.event_id, ORGANIZER)
        assert await queries.calculate_potential_redistribution(event.event_id, "alice") == 125

        await engine.withdraw_redistribution(event.event_id, "alice")
        assert await queries.calculate_potential_redistribution(event.event_id, "alice") == 0


class TestHistory:
    async def test_history_in_order(self, queries, engine, make_event, end_event) -> None:
        event = await _three_paid_two_attended(engine, make_event)
        end_event()
        await engine.finalize_event(event.event_id, ORGANIZER)

        actions = [entry.action.value for entry in await queries.get_history(event.event_id)]
        assert actions == [
            "event_created",
            "ticket_purchased",
            "ticket_purchased",
            "ticket_purchased",
            "attendance_marked",
            "attendance_marked",
            "finalization_started",
            "event_finalized",
            "organizer_paid",
        ]

    async def test_unknown_event_history(self, queries) -> None:
        with pytest.raises(EventNotFoundError):
            await queries.get_history(uuid.uuid4())
