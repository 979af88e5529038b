"""Tests for QR check-in tokens."""

import uuid
from datetime import timedelta

import pytest

from evently_escrow.services.checkin_service import CHECKIN_TOKEN_TYPE
from evently_escrow.utils.auth import create_access_token, decode_token, encode_token, verify_token
from evently_escrow.utils.exceptions import (
    InvalidCheckinTokenError,
    NotOrganizerError,
    NotPaidError,
    RegistrationNotFoundError,
)

from .conftest import ORGANIZER


class TestIssueToken:
    async def test_token_claims(self, checkin, engine, make_event) -> None:
        event = await make_event(ticket_price=100)
        await engine.purchase_ticket(event.event_id, "alice")

        claims = decode_token(await checkin.issue_token(event.event_id, "Alice"))

        assert claims["sub"] == "alice"
        assert claims["evt"] == str(event.event_id)
        assert claims["typ"] == CHECKIN_TOKEN_TYPE

    async def test_paid_event_requires_ticket(self, checkin, make_event) -> None:
        event = await make_event(ticket_price=100)
        with pytest.raises(NotPaidError):
            await checkin.issue_token(event.event_id, "alice")

    async def test_free_event_requires_registration(self, checkin, make_event) -> None:
        event = await make_event(ticket_price=0)
        with pytest.raises(RegistrationNotFoundError):
            await checkin.issue_token(event.event_id, "alice")

    async def test_check_in_token_is_not_an_access_token(self, checkin, engine, make_event) -> None:
        event = await make_event(ticket_price=100)
        await engine.purchase_ticket(event.event_id, "alice")
        token = await checkin.issue_token(event.event_id, "alice")
        assert verify_token(token) is None


class TestScan:
    async def test_scan_marks_paid_attendee(self, checkin, engine, make_event) -> None:
        event = await make_event(ticket_price=100)
        await engine.purchase_ticket(event.event_id, "alice")
        token = await checkin.issue_token(event.event_id, "alice")

        first = await checkin.scan(event.event_id, token, ORGANIZER)
        second = await checkin.scan(event.event_id, token, ORGANIZER)

        assert first == {"account": "alice", "newly_marked": True}
        assert second == {"account": "alice", "newly_marked": False}
        assert (await engine.ledger.get_participant(event.event_id, "alice")).has_attended

    async def test_scan_checks_in_free_registration(self, checkin, registrations, make_event, ledger) -> None:
        event = await make_event(ticket_price=0)
        await registrations.register(event.event_id, "alice")
        token = await checkin.issue_token(event.event_id, "alice")

        result = await checkin.scan(event.event_id, token, ORGANIZER)

        assert result == {"account": "alice", "newly_marked": True}
        assert (await ledger.get_registration(event.event_id, "alice")).checked_in

    async def test_token_for_other_event(self, checkin, engine, make_event) -> None:
        event = await make_event(ticket_price=100)
        other = await make_event(ticket_price=100)
        await engine.purchase_ticket(event.event_id, "alice")
        token = await checkin.issue_token(event.event_id, "alice")

        with pytest.raises(InvalidCheckinTokenError):
            await checkin.scan(other.event_id, token, ORGANIZER)

    async def test_access_token_rejected(self, checkin, make_event) -> None:
        event = await make_event(ticket_price=100)
        with pytest.raises(InvalidCheckinTokenError):
            await checkin.scan(event.event_id, create_access_token({"sub": "alice"}), ORGANIZER)

    async def test_garbage_token_rejected(self, checkin, make_event) -> None:
        event = await make_event(ticket_price=100)
        with pytest.raises(InvalidCheckinTokenError):
            await checkin.scan(event.event_id, "not-a-jwt", ORGANIZER)

    async def test_expired_token_rejected(self, checkin, engine, make_event) -> None:
        event = await make_event(ticket_price=100)
        await engine.purchase_ticket(event.event_id, "alice")
        token = encode_token(
            {"sub": "alice", "evt": str(event.event_id), "typ": CHECKIN_TOKEN_TYPE},
            timedelta(seconds=-10),
        )
        with pytest.raises(InvalidCheckinTokenError):
            await checkin.scan(event.event_id, token, ORGANIZER)

    async def test_only_organizer_scans(self, checkin, engine, make_event) -> None:
        event = await make_event(ticket_price=100)
        await engine.purchase_ticket(event.event_id, "alice")
        token = await checkin.issue_token(event.event_id, "alice")
        with pytest.raises(NotOrganizerError):
            await checkin.scan(event.event_id, token, "bob")

    async def test_unknown_event_in_token(self, checkin, make_event) -> None:
        event = await make_event(ticket_price=100)
        token = encode_token(
            {"sub": "alice", "evt": str(uuid.uuid4()), "typ": CHECKIN_TOKEN_TYPE},
            timedelta(minutes=5),
        )
        with pytest.raises(InvalidCheckinTokenError):
            await checkin.scan(event.event_id, token, ORGANIZER)
