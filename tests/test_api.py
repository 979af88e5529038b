"""HTTP tests against the FastAPI app wired to in-memory components."""

import pytest
from fastapi.testclient import TestClient

from evently_escrow.ledger import InMemoryLedger
from evently_escrow.locks import LocalLockProvider
from evently_escrow.main import app
from evently_escrow.payments import InMemoryRail
from evently_escrow.utils.auth import create_access_token
from evently_escrow.utils.dependencies import build_components, set_components
from evently_escrow.utils.health_check import check_lock_provider_health, check_payment_rail_health

from .conftest import ORGANIZER

# 100 minor units at six decimals
PRICE = "0.0001"
END_TIME = "2026-01-01T13:00:00+00:00"


def auth(account: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': account})}"}


@pytest.fixture
def components(settings, clock):
    rail = InMemoryRail({account: 10_000 for account in ("alice", "bob", "carol")}, clock=clock)
    built = build_components(
        settings,
        ledger=InMemoryLedger(clock=clock),
        rail=rail,
        locks=LocalLockProvider(),
        clock=clock,
    )
    set_components(built)
    yield built
    set_components(None)


@pytest.fixture
def client(components) -> TestClient:
    return TestClient(app)


def create_event(client: TestClient, price: str = PRICE, percentage: int = 50) -> str:
    response = client.post(
        "/api/v1/events",
        json={
            "ticket_price": price,
            "event_end_time": END_TIME,
            "redistribution_percentage": percentage,
        },
        headers=auth(ORGANIZER),
    )
    assert response.status_code == 201, response.text
    return response.json()["event_id"]


class TestEventEndpoints:
    def test_create_event(self, client) -> None:
        event_id = create_event(client)
        body = client.get(f"/api/v1/events/{event_id}").json()

        assert body["organizer"] == ORGANIZER
        assert body["ticket_price"] == {"minor_units": 100, "display": "0.000100 USDC"}
        assert body["status"] == "open"
        assert body["is_free"] is False
        assert body["escrow_account"].endswith(event_id)

    def test_requires_authentication(self, client) -> None:
        response = client.post(
            "/api/v1/events",
            json={"ticket_price": PRICE, "event_end_time": END_TIME, "redistribution_percentage": 50},
        )
        assert response.status_code == 401
        assert response.json()["error"]["error_code"] == "UNAUTHORIZED"

    def test_rejects_bad_token(self, client) -> None:
        response = client.post(
            "/api/v1/events",
            json={"ticket_price": PRICE, "event_end_time": END_TIME, "redistribution_percentage": 50},
            headers={"Authorization": "Bearer garbage"},
        )
        assert response.status_code == 401

    def test_naive_end_time_is_a_validation_error(self, client) -> None:
        response = client.post(
            "/api/v1/events",
            json={"ticket_price": PRICE, "event_end_time": "2026-01-01T13:00:00", "redistribution_percentage": 50},
            headers=auth(ORGANIZER),
        )
        assert response.status_code == 422
        body = response.json()
        assert body["error"]["error_code"] == "VALIDATION_ERROR"
        assert "error_id" in body and "timestamp" in body

    def test_too_many_decimals_is_an_invalid_price(self, client) -> None:
        response = client.post(
            "/api/v1/events",
            json={"ticket_price": "0.0000001", "event_end_time": END_TIME, "redistribution_percentage": 50},
            headers=auth(ORGANIZER),
        )
        assert response.status_code == 422
        assert response.json()["error"]["error_code"] == "INVALID_PRICE"

    def test_end_time_too_soon(self, client) -> None:
        response = client.post(
            "/api/v1/events",
            json={
                "ticket_price": PRICE,
                "event_end_time": "2026-01-01T12:00:30+00:00",
                "redistribution_percentage": 50,
            },
            headers=auth(ORGANIZER),
        )
        assert response.status_code == 422
        assert response.json()["error"]["error_code"] == "INVALID_END_TIME"

    def test_unknown_event(self, client) -> None:
        response = client.get("/api/v1/events/6f1f6e44-3f3c-4c5e-9d0e-2b8a3f0d6a11")
        assert response.status_code == 404
        assert response.json()["error"]["error_code"] == "NOT_FOUND"

    def test_request_id_is_echoed(self, client) -> None:
        response = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.status_code == 200
        assert response.headers["X-Request-ID"] == "req-123"


class TestSettlementFlow:
    def test_full_lifecycle(self, client, clock, components) -> None:
        event_id = create_event(client)
        for buyer in ("alice", "bob", "carol"):
            response = client.post(f"/api/v1/events/{event_id}/tickets", headers=auth(buyer))
            assert response.status_code == 201, response.text

        again = client.post(f"/api/v1/events/{event_id}/tickets", headers=auth("alice"))
        assert again.status_code == 409
        assert again.json()["error"]["error_code"] == "ALREADY_PAID"

        batch = client.post(
            f"/api/v1/events/{event_id}/attendance/batch",
            json={"accounts": ["alice", "bob"]},
            headers=auth(ORGANIZER),
        )
        assert batch.json() == {"marked": ["alice", "bob"], "submitted": 2}

        stats = client.get(f"/api/v1/events/{event_id}/stats").json()
        assert stats["is_projection"] is True
        assert stats["redistribution_amount"]["minor_units"] == 50

        early = client.post(f"/api/v1/events/{event_id}/finalize", headers=auth(ORGANIZER))
        assert early.status_code == 409
        assert early.json()["error"]["error_code"] == "EVENT_NOT_YET_ENDED"

        clock.advance(hours=2)
        forbidden = client.post(f"/api/v1/events/{event_id}/finalize", headers=auth("alice"))
        assert forbidden.status_code == 403
        assert forbidden.json()["error"]["error_code"] == "NOT_ORGANIZER"

        finalized = client.post(f"/api/v1/events/{event_id}/finalize", headers=auth(ORGANIZER))
        assert finalized.status_code == 200, finalized.text
        settlement = finalized.json()["settlement"]
        assert settlement["organizer_share"]["minor_units"] == 50
        assert settlement["attendee_refund_total"]["minor_units"] == 200

        preview = client.get(f"/api/v1/events/{event_id}/participants/alice/redistribution").json()
        assert preview["total"]["minor_units"] == 125

        withdrawal = client.post(f"/api/v1/events/{event_id}/withdrawals", headers=auth("alice"))
        assert withdrawal.status_code == 200, withdrawal.text
        assert withdrawal.json()["bonus"]["minor_units"] == 25
        assert components.rail.balance_of("alice") == 10_025

        twice = client.post(f"/api/v1/events/{event_id}/withdrawals", headers=auth("alice"))
        assert twice.status_code == 409
        assert twice.json()["error"]["error_code"] == "ALREADY_WITHDRAWN"

        absentee = client.post(f"/api/v1/events/{event_id}/withdrawals", headers=auth("carol"))
        assert absentee.json()["error"]["error_code"] == "NOT_ATTENDED"

        history = client.get(f"/api/v1/events/{event_id}/history").json()
        assert history["entries"][-1]["action"] == "redistribution_withdrawn"

    def test_batch_with_unpaid_account_is_rejected(self, client) -> None:
        event_id = create_event(client)
        client.post(f"/api/v1/events/{event_id}/tickets", headers=auth("alice"))

        response = client.post(
            f"/api/v1/events/{event_id}/attendance/batch",
            json={"accounts": ["alice", "mallory"]},
            headers=auth(ORGANIZER),
        )

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["error_code"] == "BATCH_REJECTED"
        assert error["details"]["rejected"] == [{"account": "mallory", "reason": "not_paid"}]

        participant = client.get(f"/api/v1/events/{event_id}/participants/alice").json()
        assert participant["has_attended"] is False

    def test_single_attendance_mark(self, client) -> None:
        event_id = create_event(client)
        client.post(f"/api/v1/events/{event_id}/tickets", headers=auth("alice"))

        first = client.post(
            f"/api/v1/events/{event_id}/attendance", json={"account": "alice"}, headers=auth(ORGANIZER)
        )
        second = client.post(
            f"/api/v1/events/{event_id}/attendance", json={"account": "alice"}, headers=auth(ORGANIZER)
        )
        assert first.json() == {"account": "alice", "newly_marked": True}
        assert second.json() == {"account": "alice", "newly_marked": False}

    def test_insufficient_funds(self, client) -> None:
        event_id = create_event(client)
        response = client.post(f"/api/v1/events/{event_id}/tickets", headers=auth("pauper"))
        assert response.status_code == 402
        assert response.json()["error"]["error_code"] == "INSUFFICIENT_FUNDS"

    def test_incomplete_cancellation(self, client, components) -> None:
        event_id = create_event(client)
        for buyer in ("alice", "bob"):
            client.post(f"/api/v1/events/{event_id}/tickets", headers=auth(buyer))
        components.rail.fail_next("rejected", to_account="bob")

        response = client.post(f"/api/v1/events/{event_id}/cancel", headers=auth(ORGANIZER))
        assert response.status_code == 409
        assert response.headers["Retry-After"] == "30"
        assert response.json()["error"]["details"]["pending"] == ["bob"]

        retried = client.post(f"/api/v1/events/{event_id}/cancel", headers=auth(ORGANIZER))
        assert retried.status_code == 200, retried.text
        body = retried.json()
        assert body["event"]["status"] == "cancelled"
        assert body["refunded_total"]["minor_units"] == 200


class TestFreeEventEndpoints:
    def test_register_and_check_in(self, client) -> None:
        event_id = create_event(client, price="0")

        ticket = client.post(f"/api/v1/events/{event_id}/tickets", headers=auth("alice"))
        assert ticket.status_code == 400
        assert ticket.json()["error"]["error_code"] == "FREE_EVENT"

        registered = client.post(f"/api/v1/events/{event_id}/registrations", headers=auth("alice"))
        assert registered.status_code == 201
        assert registered.json()["registration_code"].startswith("REG-")

        token = client.get(f"/api/v1/events/{event_id}/checkin-token", headers=auth("alice")).json()["token"]
        scanned = client.post(
            f"/api/v1/events/{event_id}/checkin", json={"token": token}, headers=auth(ORGANIZER)
        )
        assert scanned.json() == {"account": "alice", "newly_marked": True}

        listing = client.get(f"/api/v1/events/{event_id}/registrations").json()
        assert listing["total"] == 1
        assert listing["registrations"][0]["checked_in"] is True

        info = client.get(f"/api/v1/events/{event_id}").json()
        assert info["registration_count"] == 1

    def test_check_in_token_cannot_authenticate(self, client) -> None:
        event_id = create_event(client, price="0")
        client.post(f"/api/v1/events/{event_id}/registrations", headers=auth("alice"))
        token = client.get(f"/api/v1/events/{event_id}/checkin-token", headers=auth("alice")).json()["token"]

        response = client.post(
            f"/api/v1/events/{event_id}/registrations",
            headers={"Authorization": f"Bearer {token}"},
        )
        assert response.status_code == 401


class TestHealthChecks:
    async def test_local_locks_are_healthy(self, components) -> None:
        result = await check_lock_provider_health(components)
        assert result.healthy
        assert result.details["backend"] == "LocalLockProvider"

    def test_payment_rail_reports_breaker(self, components) -> None:
        result = check_payment_rail_health(components)
        assert result.healthy
        assert result.details["circuit_breaker"]["state"] == "closed"
