"""Tests for the payment rails and the gateway in front of them."""

import asyncio

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from evently_escrow.config import Settings
from evently_escrow.database import create_session_factory, create_tables
from evently_escrow.payments import (
    InMemoryRail,
    InsufficientFundsError,
    LedgerBalanceRail,
    RailGateway,
    RailUnavailableError,
    TransferRejectedError,
    TransferTimeoutError,
    escrow_account_for,
    worst_case_transfer_seconds,
)
from evently_escrow.utils.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    get_all_circuit_breaker_stats,
)
from evently_escrow.utils.retry import RetryConfig


class HangingRail:
    """Rail whose transfers never complete."""

    def __init__(self):
        self.calls = 0

    async def transfer(self, from_account, to_account, amount, idempotency_key):
        self.calls += 1
        await asyncio.sleep(3600)


@pytest.fixture
async def ledger_rail():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_tables(engine)
    yield LedgerBalanceRail(create_session_factory(engine))
    await engine.dispose()


class TestInMemoryRail:
    async def test_transfer_moves_balance(self) -> None:
        rail = InMemoryRail({"alice": 500})
        receipt = await rail.transfer("alice", "escrow:1", 200, "k-1")

        assert receipt.amount == 200
        assert not receipt.replayed
        assert rail.balance_of("alice") == 300
        assert rail.balance_of("escrow:1") == 200

    async def test_same_key_replays(self) -> None:
        rail = InMemoryRail({"alice": 500})
        first = await rail.transfer("alice", "bob", 200, "k-1")
        second = await rail.transfer("alice", "bob", 200, "k-1")

        assert second.replayed
        assert second.transfer_id == first.transfer_id
        assert rail.balance_of("alice") == 300

    async def test_key_reuse_for_other_transfer_rejected(self) -> None:
        rail = InMemoryRail({"alice": 500})
        await rail.transfer("alice", "bob", 200, "k-1")
        with pytest.raises(TransferRejectedError):
            await rail.transfer("alice", "bob", 201, "k-1")

    async def test_insufficient_funds(self) -> None:
        rail = InMemoryRail({"alice": 50})
        with pytest.raises(InsufficientFundsError) as exc_info:
            await rail.transfer("alice", "bob", 100, "k-1")
        assert exc_info.value.details["available"] == 50
        assert rail.balance_of("alice") == 50

    @pytest.mark.parametrize("amount", [0, -5, 1.5])
    async def test_non_positive_amount_rejected(self, amount) -> None:
        rail = InMemoryRail({"alice": 50})
        with pytest.raises(TransferRejectedError):
            await rail.transfer("alice", "bob", amount, "k-1")

    async def test_scripted_failures(self) -> None:
        rail = InMemoryRail({"alice": 500})
        rail.fail_next("timeout", to_account="bob")
        with pytest.raises(TransferTimeoutError):
            await rail.transfer("alice", "bob", 100, "k-1")
        assert rail.balance_of("alice") == 500

        rail.fail_next("timeout_after_commit")
        with pytest.raises(TransferTimeoutError):
            await rail.transfer("alice", "bob", 100, "k-2")
        assert rail.balance_of("alice") == 400

    def test_unknown_failure_kind(self) -> None:
        with pytest.raises(ValueError):
            InMemoryRail().fail_next("explode")

    def test_escrow_account_name(self) -> None:
        assert escrow_account_for("abc", "escrow") == "escrow:abc"


class TestLedgerBalanceRail:
    async def test_deposit_and_transfer(self, ledger_rail) -> None:
        assert await ledger_rail.deposit("alice", 500) == 500
        receipt = await ledger_rail.transfer("alice", "bob", 120, "k-1")

        assert receipt.amount == 120
        assert await ledger_rail.balance_of("alice") == 380
        assert await ledger_rail.balance_of("bob") == 120
        assert await ledger_rail.balance_of("nobody") == 0

    async def test_same_key_replays(self, ledger_rail) -> None:
        await ledger_rail.deposit("alice", 500)
        first = await ledger_rail.transfer("alice", "bob", 100, "k-1")
        second = await ledger_rail.transfer("alice", "bob", 100, "k-1")

        assert second.replayed
        assert second.transfer_id == first.transfer_id
        assert await ledger_rail.balance_of("alice") == 400

    async def test_insufficient_funds_rolls_back(self, ledger_rail) -> None:
        await ledger_rail.deposit("alice", 50)
        with pytest.raises(InsufficientFundsError):
            await ledger_rail.transfer("alice", "bob", 100, "k-1")
        assert await ledger_rail.balance_of("alice") == 50
        assert await ledger_rail.balance_of("bob") == 0

    async def test_self_transfer_rejected(self, ledger_rail) -> None:
        await ledger_rail.deposit("alice", 50)
        with pytest.raises(TransferRejectedError):
            await ledger_rail.transfer("alice", "alice", 10, "k-1")


class TestRailGateway:
    def _settings(self, **overrides) -> Settings:
        values = dict(retry_base_delay=0.0, max_retry_attempts=3, rail_timeout_seconds=5.0)
        values.update(overrides)
        return Settings(**values)

    async def test_timeout_is_retried_with_same_key(self) -> None:
        rail = InMemoryRail({"alice": 500})
        gateway = RailGateway(rail, settings=self._settings())
        rail.fail_next("timeout", times=2)

        receipt = await gateway.transfer("alice", "bob", 100, "k-1")

        assert receipt.amount == 100
        assert [a.idempotency_key for a in rail.attempts] == ["k-1", "k-1", "k-1"]
        assert rail.balance_of("alice") == 400

    async def test_timeout_after_commit_does_not_double_charge(self) -> None:
        rail = InMemoryRail({"alice": 500})
        gateway = RailGateway(rail, settings=self._settings())
        rail.fail_next("timeout_after_commit")

        receipt = await gateway.transfer("alice", "bob", 100, "k-1")

        assert receipt.replayed
        assert rail.balance_of("alice") == 400
        assert rail.balance_of("bob") == 100

    async def test_rejection_is_not_retried(self) -> None:
        rail = InMemoryRail({"alice": 500})
        gateway = RailGateway(rail, settings=self._settings())
        rail.fail_next("rejected")

        with pytest.raises(TransferRejectedError):
            await gateway.transfer("alice", "bob", 100, "k-1")
        assert len(rail.attempts) == 1

    async def test_insufficient_funds_is_not_retried(self) -> None:
        rail = InMemoryRail({"alice": 10})
        gateway = RailGateway(rail, settings=self._settings())
        with pytest.raises(InsufficientFundsError):
            await gateway.transfer("alice", "bob", 100, "k-1")
        assert len(rail.attempts) == 1

    async def test_gives_up_after_max_attempts(self) -> None:
        rail = InMemoryRail({"alice": 500})
        gateway = RailGateway(rail, settings=self._settings())
        rail.fail_next("timeout", times=5)

        with pytest.raises(TransferTimeoutError):
            await gateway.transfer("alice", "bob", 100, "k-1")
        assert len(rail.attempts) == 3
        assert rail.balance_of("alice") == 500

    async def test_open_circuit_fails_fast(self) -> None:
        rail = InMemoryRail({"alice": 500})
        breaker = CircuitBreaker("test_rail", CircuitBreakerConfig(
            failure_threshold=2,
            recovery_timeout=60,
            expected_exception=(TransferTimeoutError,),
            timeout=5.0,
        ))
        gateway = RailGateway(
            rail,
            settings=self._settings(),
            breaker=breaker,
            retry_config=RetryConfig(max_attempts=1, base_delay=0.0),
        )
        rail.fail_next("timeout", times=2)

        for key in ("k-1", "k-2"):
            with pytest.raises(TransferTimeoutError):
                await gateway.transfer("alice", "bob", 100, key)

        with pytest.raises(RailUnavailableError):
            await gateway.transfer("alice", "bob", 100, "k-3")
        assert breaker.state is CircuitState.OPEN
        assert len(rail.attempts) == 2

    async def test_breaker_registered_for_health_reporting(self) -> None:
        RailGateway(InMemoryRail(), settings=self._settings())
        assert "payment_rail" in get_all_circuit_breaker_stats()

    async def test_breaker_can_be_disabled(self) -> None:
        rail = InMemoryRail({"alice": 500})
        gateway = RailGateway(rail, settings=self._settings(enable_circuit_breakers=False))
        rail.fail_next("timeout", times=1)
        receipt = await gateway.transfer("alice", "bob", 100, "k-1")
        assert receipt.amount == 100
        assert gateway.breaker.stats.total_requests == 0

    async def test_hanging_rail_times_out_without_breaker(self) -> None:
        rail = HangingRail()
        gateway = RailGateway(rail, settings=self._settings(
            enable_circuit_breakers=False,
            rail_timeout_seconds=0.05,
            max_retry_attempts=2,
        ))

        with pytest.raises(TransferTimeoutError):
            await gateway.transfer("alice", "bob", 100, "k-1")
        assert rail.calls == 2

    def test_worst_case_covers_every_attempt_and_backoff(self) -> None:
        settings = self._settings(rail_timeout_seconds=30.0, max_retry_attempts=3, retry_base_delay=0.5)
        # three 30s timeouts plus 0.5s and 1s of backoff
        assert worst_case_transfer_seconds(settings) == 91.5

        single = self._settings(rail_timeout_seconds=30.0, enable_retry_mechanisms=False)
        assert worst_case_transfer_seconds(single) == 30.0
