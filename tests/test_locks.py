"""Tests for the local and Redis lock providers."""

import asyncio
import gc

import pytest

from evently_escrow.config import Settings
from evently_escrow.ledger import InMemoryLedger
from evently_escrow.locks import DistributedLock, LocalLockProvider, RedisLockProvider
from evently_escrow.payments import worst_case_transfer_seconds
from evently_escrow.services.settlement_service import SettlementService
from evently_escrow.utils.exceptions import ConcurrencyError

from .test_ledger import _create


class RecordingRedis:
    """Just enough of a Redis client for SET NX PX and the lock scripts."""

    def __init__(self):
        self.values = {}
        self.expiries = {}
        self.extensions = 0

    async def set(self, key, value, nx=False, px=None):
        if nx and key in self.values:
            return None
        self.values[key] = value
        self.expiries[key] = px
        return True

    async def eval(self, script, numkeys, key, identifier, *args):
        if self.values.get(key) != identifier:
            return 0
        if "PEXPIRE" in script:
            self.expiries[key] = int(args[0])
            self.extensions += 1
            return 1
        del self.values[key]
        return 1

    async def ping(self):
        return True


class TestLocalLockProvider:
    async def test_released_locks_are_forgotten(self) -> None:
        provider = LocalLockProvider()
        for i in range(50):
            async with provider.lock(f"lock:{i}"):
                pass
        gc.collect()
        assert len(provider._locks) == 0

    async def test_held_lock_blocks_second_holder(self) -> None:
        provider = LocalLockProvider(wait_timeout=0.05)
        async with provider.lock("lock:event"):
            with pytest.raises(ConcurrencyError):
                async with provider.lock("lock:event"):
                    pass
        async with provider.lock("lock:event"):
            pass

    async def test_ledger_locks_are_forgotten(self, clock) -> None:
        ledger = InMemoryLedger(clock=clock)
        for _ in range(20):
            event = await _create(ledger)
            await ledger.record_purchase(event.event_id, "alice", 100)
        gc.collect()
        assert len(ledger._locks) == 0


class TestDistributedLock:
    async def test_extend_resets_expiry(self) -> None:
        client = RecordingRedis()
        lock = DistributedLock(client, "lock:event", timeout=30)
        assert await lock.acquire(wait_timeout=0.1)

        assert await lock.extend()
        assert client.expiries["lock:event"] == 30_000

    async def test_lost_lock_is_neither_extended_nor_released(self) -> None:
        client = RecordingRedis()
        lock = DistributedLock(client, "lock:event", timeout=30)
        await lock.acquire(wait_timeout=0.1)
        client.values["lock:event"] = "another-holder"

        assert not await lock.extend()
        assert not await lock.release()
        assert client.values["lock:event"] == "another-holder"


class TestRedisLockProvider:
    async def test_lock_is_renewed_while_held(self) -> None:
        client = RecordingRedis()
        provider = RedisLockProvider(client=client, wait_timeout=0.1)

        async with provider.lock("lock:event", timeout=1):
            await asyncio.sleep(0.8)
            assert client.extensions >= 1
            assert "lock:event" in client.values

        assert "lock:event" not in client.values
        renewed = client.extensions
        await asyncio.sleep(0.5)
        assert client.extensions == renewed

    async def test_contended_lock_raises(self) -> None:
        client = RecordingRedis()
        provider = RedisLockProvider(client=client, wait_timeout=0.1)
        async with provider.lock("lock:event", timeout=30):
            with pytest.raises(ConcurrencyError):
                async with provider.lock("lock:event", timeout=30):
                    pass

    async def test_uninitialized_provider_raises(self) -> None:
        with pytest.raises(ConcurrencyError):
            async with RedisLockProvider().lock("lock:event"):
                pass


class TestLockTimeToLive:
    def test_event_lock_outlives_slowest_transfer(self, ledger, gateway, locks) -> None:
        settings = Settings(
            ledger_backend="memory",
            payment_rail_backend="memory",
            lock_backend="local",
            lock_timeout_seconds=30,
            rail_timeout_seconds=30.0,
            max_retry_attempts=3,
            retry_base_delay=0.5,
        )
        engine = SettlementService(ledger, gateway, locks, settings=settings)

        assert engine.lock_ttl >= worst_case_transfer_seconds(settings)
        assert engine.lock_ttl > settings.lock_timeout_seconds

    def test_configured_timeout_is_a_floor(self, engine) -> None:
        assert engine.lock_ttl >= engine.settings.lock_timeout_seconds
        assert engine.lock_ttl >= worst_case_transfer_seconds(engine.settings)
