"""
Per-event and per-participant locks for settlement operations.
"""

import asyncio
import logging
import uuid
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Protocol

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import RedisError

from .config import Settings, get_settings
from .utils.exceptions import ConcurrencyError

logger = logging.getLogger(__name__)


class LockKeyBuilder:
    """Helper class for building consistent lock keys."""

    @staticmethod
    def event(event_id) -> str:
        """Lock serializing every mutation of one event."""
        return f"lock:escrow:event:{event_id}"

    @staticmethod
    def participant(event_id, account: str) -> str:
        """Lock serializing one participant's claim."""
        return f"lock:escrow:participant:{event_id}:{account}"


class LockProvider(Protocol):
    def lock(self, key: str, timeout: Optional[int] = None):
        """Async context manager holding ``key``; raises ConcurrencyError if it cannot."""
        ...


class LocalLockProvider:
    """Per-key asyncio locks for a single process."""

    def __init__(self, wait_timeout: float = 10.0):
        self.wait_timeout = wait_timeout
        # Entries vanish once no coroutine holds or awaits the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def lock(self, key: str, timeout: Optional[int] = None) -> AsyncIterator[None]:
        lock = self._lock_for(key)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.wait_timeout)
        except asyncio.TimeoutError:
            raise ConcurrencyError(f"Could not acquire lock {key}", details={"lock": key})
        try:
            yield
        finally:
            lock.release()


class DistributedLock:
    """Distributed lock implementation using Redis."""

    RELEASE_SCRIPT = """
    if redis.call("GET", KEYS[1]) == ARGV[1] then
        return redis.call("DEL", KEYS[1])
    else
        return 0
    end
    """

    EXTEND_SCRIPT = """
    if redis.call("GET", KEYS[1]) == ARGV[1] then
        return redis.call("PEXPIRE", KEYS[1], ARGV[2])
    else
        return 0
    end
    """

    def __init__(self, client: Redis, key: str, timeout: int = 30):
        """
        Initialize distributed lock.

        Args:
            client: Redis client
            key: Lock key
            timeout: Lock expiry in seconds, so a crashed holder cannot block forever
        """
        self.client = client
        self.key = key
        self.timeout = timeout
        self.identifier = uuid.uuid4().hex

    async def acquire(self, wait_timeout: float = 10.0) -> bool:
        """
        Acquire the distributed lock, polling until ``wait_timeout`` passes.

        Returns:
            True if lock acquired, False otherwise
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait_timeout

        while True:
            try:
                acquired = await self.client.set(
                    self.key,
                    self.identifier,
                    nx=True,
                    px=self.timeout * 1000
                )
            except RedisError as e:
                logger.warning(f"Failed to acquire lock {self.key}: {e}")
                return False

            if acquired:
                return True

            if loop.time() >= deadline:
                return False

            await asyncio.sleep(0.05)

    async def extend(self) -> bool:
        """
        Reset the expiry to the full timeout if we still own the lock.

        Returns:
            True if the lock was extended, False if it was lost
        """
        try:
            result = await self.client.eval(
                self.EXTEND_SCRIPT, 1, self.key, self.identifier, self.timeout * 1000
            )
            return bool(result)
        except RedisError as e:
            logger.warning(f"Failed to extend lock {self.key}: {e}")
            return False

    async def keep_alive(self, interval: float) -> None:
        """Extend the lock every ``interval`` seconds until cancelled or lost."""
        while True:
            await asyncio.sleep(interval)
            if not await self.extend():
                logger.error(f"Lock {self.key} expired while held")
                return

    async def release(self) -> bool:
        """
        Release the lock if we still own it.

        Returns:
            True if lock released, False otherwise
        """
        try:
            result = await self.client.eval(self.RELEASE_SCRIPT, 1, self.key, self.identifier)
            return bool(result)
        except RedisError as e:
            logger.warning(f"Failed to release lock {self.key}: {e}")
            return False


class RedisLockProvider:
    """Locks shared by every worker through Redis."""

    def __init__(self, client: Optional[Redis] = None, default_timeout: int = 30, wait_timeout: float = 10.0):
        self.client = client
        self.pool: Optional[redis.ConnectionPool] = None
        self.default_timeout = default_timeout
        self.wait_timeout = wait_timeout

    async def initialize(self) -> None:
        """Initialize Redis connection pool and client."""
        if self.client is not None:
            return
        settings = get_settings()

        self.pool = redis.ConnectionPool.from_url(
            settings.redis_url,
            max_connections=settings.redis_max_connections,
            retry_on_timeout=True,
            socket_keepalive=True,
            health_check_interval=30
        )
        self.client = Redis(connection_pool=self.pool)
        await self.client.ping()
        logger.info("Redis lock provider initialized successfully")

    async def close(self) -> None:
        """Close Redis connections."""
        if self.client:
            await self.client.aclose()
        if self.pool:
            await self.pool.disconnect()
        logger.info("Redis lock provider connections closed")

    async def ping(self) -> bool:
        if not self.client:
            return False
        try:
            return bool(await self.client.ping())
        except RedisError:
            return False

    @asynccontextmanager
    async def lock(self, key: str, timeout: Optional[int] = None) -> AsyncIterator[DistributedLock]:
        if self.client is None:
            raise ConcurrencyError("Lock provider not initialized", details={"lock": key})

        lock = DistributedLock(self.client, key, timeout or self.default_timeout)
        if not await lock.acquire(self.wait_timeout):
            raise ConcurrencyError(f"Could not acquire lock {key}", details={"lock": key})
        renewal = asyncio.create_task(lock.keep_alive(lock.timeout / 3))
        try:
            yield lock
        finally:
            renewal.cancel()
            try:
                await renewal
            except asyncio.CancelledError:
                pass
            await lock.release()


def create_lock_provider(settings: Optional[Settings] = None):
    """Build the lock provider selected by ``lock_backend``."""
    settings = settings or get_settings()
    if settings.lock_backend == "local":
        return LocalLockProvider()
    return RedisLockProvider(default_timeout=settings.lock_timeout_seconds)
