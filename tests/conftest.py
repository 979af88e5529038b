"""Shared fixtures: an in-memory escrow stack driven by a controllable clock."""

from datetime import datetime, timedelta, timezone

import pytest

from evently_escrow.config import Settings
from evently_escrow.ledger import InMemoryLedger
from evently_escrow.locks import LocalLockProvider
from evently_escrow.payments import InMemoryRail, RailGateway
from evently_escrow.services import (
    CheckinService,
    EscrowQueryService,
    RegistrationService,
    SettlementService,
)
from evently_escrow.utils.circuit_breaker import reset_circuit_breakers

ORGANIZER = "organizer"
STARTING_BALANCE = 10_000


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def _fresh_circuit_breakers():
    reset_circuit_breakers()
    yield
    reset_circuit_breakers()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings() -> Settings:
    return Settings(
        ledger_backend="memory",
        payment_rail_backend="memory",
        lock_backend="local",
        retry_base_delay=0.0,
        rail_timeout_seconds=5.0,
        max_retry_attempts=3,
        circuit_breaker_failure_threshold=5,
    )


@pytest.fixture
def ledger(clock: FakeClock) -> InMemoryLedger:
    return InMemoryLedger(clock=clock)


@pytest.fixture
def rail(clock: FakeClock) -> InMemoryRail:
    return InMemoryRail(
        {account: STARTING_BALANCE for account in ("alice", "bob", "carol", "dave")},
        clock=clock,
    )


@pytest.fixture
def gateway(rail: InMemoryRail, settings: Settings) -> RailGateway:
    return RailGateway(rail, settings=settings)


@pytest.fixture
def locks() -> LocalLockProvider:
    return LocalLockProvider(wait_timeout=1.0)


@pytest.fixture
def engine(ledger, gateway, locks, settings, clock) -> SettlementService:
    return SettlementService(ledger, gateway, locks, settings=settings, clock=clock)


@pytest.fixture
def queries(ledger, settings) -> EscrowQueryService:
    return EscrowQueryService(ledger, settings=settings)


@pytest.fixture
def registrations(ledger, locks, settings) -> RegistrationService:
    return RegistrationService(ledger, locks, settings=settings)


@pytest.fixture
def checkin(ledger, engine, registrations, settings) -> CheckinService:
    return CheckinService(ledger, engine, registrations, settings=settings)


@pytest.fixture
def make_event(engine: SettlementService, clock: FakeClock):
    """Factory creating an event that ends one hour from the current fake time."""

    async def _make(ticket_price: int = 100, redistribution_percentage: int = 50, **kwargs):
        return await engine.create_event(
            kwargs.pop("organizer", ORGANIZER),
            ticket_price,
            clock() + timedelta(hours=1),
            redistribution_percentage,
            **kwargs
        )

    return _make


@pytest.fixture
def end_event(clock: FakeClock):
    """Move the fake clock past every event created by ``make_event``."""

    def _end():
        clock.advance(hours=2)

    return _end
