"""
Circuit breaker pattern implementation for external service calls.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Type
from dataclasses import dataclass, field

from ..utils.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Circuit is open, failing fast
    HALF_OPEN = "half_open"  # Testing if service is back


class CircuitOpenError(ExternalServiceError):
    """Raised instead of calling the service while the circuit is open."""

    def __init__(self, name: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            name,
            f"Circuit breaker is OPEN for {name}",
            details=details,
            retry_after=30
        )
        self.breaker_name = name


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""
    failure_threshold: int = 5          # Number of failures to open circuit
    recovery_timeout: int = 60          # Seconds to wait before trying again
    expected_exception: Tuple[Type[BaseException], ...] = (Exception,)  # Counted as failures
    success_threshold: int = 3          # Successes needed to close circuit in half-open state
    timeout: Optional[float] = 30.0     # Request timeout in seconds


@dataclass
class CircuitBreakerStats:
    """Circuit breaker statistics."""
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: Optional[float] = None
    last_success_time: Optional[float] = None
    total_requests: int = 0
    total_failures: int = 0
    total_successes: int = 0
    state_changes: Dict[str, int] = field(default_factory=lambda: {
        "closed_to_open": 0,
        "open_to_half_open": 0,
        "half_open_to_closed": 0,
        "half_open_to_open": 0
    })


class CircuitBreaker:
    """
    Circuit breaker for external service calls.

    Exceptions raised by the protected call propagate unchanged. Those listed
    in ``expected_exception`` (and timeouts) count towards opening the
    circuit; anything else is treated as a normal business outcome.
    """

    def __init__(self, name: str, config: CircuitBreakerConfig):
        self.name = name
        self.config = config
        self.stats = CircuitBreakerStats()
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self.stats.state

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """Execute function with circuit breaker protection."""
        async with self._lock:
            self.stats.total_requests += 1

            if self._should_open_circuit():
                self._open_circuit()

            if self._should_attempt_reset():
                self._half_open_circuit()

            # If circuit is open, fail fast
            if self.stats.state == CircuitState.OPEN:
                raise CircuitOpenError(
                    self.name,
                    details={
                        "state": self.stats.state.value,
                        "failure_count": self.stats.failure_count,
                        "last_failure_time": self.stats.last_failure_time
                    }
                )

        try:
            if self.config.timeout is None:
                result = await func(*args, **kwargs)
            else:
                result = await asyncio.wait_for(
                    func(*args, **kwargs),
                    timeout=self.config.timeout
                )
        except asyncio.TimeoutError:
            await self._record_failure()
            raise
        except self.config.expected_exception:
            await self._record_failure()
            raise

        await self._record_success()
        return result

    async def _record_success(self):
        """Record a successful call."""
        async with self._lock:
            self.stats.success_count += 1
            self.stats.total_successes += 1
            self.stats.last_success_time = time.time()

            # Reset failure count on success
            if self.stats.state == CircuitState.CLOSED:
                self.stats.failure_count = 0

            if (self.stats.state == CircuitState.HALF_OPEN and
                    self.stats.success_count >= self.config.success_threshold):
                self._close_circuit()

            logger.debug(f"Circuit breaker {self.name}: Success recorded")

    async def _record_failure(self):
        """Record a failed call."""
        async with self._lock:
            self.stats.failure_count += 1
            self.stats.total_failures += 1
            self.stats.last_failure_time = time.time()

            if self.stats.state == CircuitState.HALF_OPEN:
                self.stats.success_count = 0
                self._open_circuit()

            logger.warning(f"Circuit breaker {self.name}: Failure recorded ({self.stats.failure_count})")

    def _should_open_circuit(self) -> bool:
        return (self.stats.state == CircuitState.CLOSED and
                self.stats.failure_count >= self.config.failure_threshold)

    def _should_attempt_reset(self) -> bool:
        if self.stats.state != CircuitState.OPEN:
            return False

        if not self.stats.last_failure_time:
            return False

        time_since_failure = time.time() - self.stats.last_failure_time
        return time_since_failure >= self.config.recovery_timeout

    def _open_circuit(self):
        old_state = self.stats.state
        self.stats.state = CircuitState.OPEN

        if old_state == CircuitState.CLOSED:
            self.stats.state_changes["closed_to_open"] += 1
        elif old_state == CircuitState.HALF_OPEN:
            self.stats.state_changes["half_open_to_open"] += 1

        logger.warning(f"Circuit breaker {self.name}: OPENED (failures: {self.stats.failure_count})")

    def _half_open_circuit(self):
        self.stats.state = CircuitState.HALF_OPEN
        self.stats.success_count = 0
        self.stats.state_changes["open_to_half_open"] += 1

        logger.info(f"Circuit breaker {self.name}: HALF-OPEN (attempting recovery)")

    def _close_circuit(self):
        self.stats.state = CircuitState.CLOSED
        self.stats.failure_count = 0
        self.stats.success_count = 0
        self.stats.state_changes["half_open_to_closed"] += 1

        logger.info(f"Circuit breaker {self.name}: CLOSED (service recovered)")

    def reset(self):
        """Forget all recorded failures."""
        self.stats = CircuitBreakerStats()
        logger.info(f"Circuit breaker {self.name} has been reset")

    def get_stats(self) -> Dict[str, Any]:
        """Get circuit breaker statistics."""
        return {
            "name": self.name,
            "state": self.stats.state.value,
            "failure_count": self.stats.failure_count,
            "success_count": self.stats.success_count,
            "total_requests": self.stats.total_requests,
            "total_failures": self.stats.total_failures,
            "total_successes": self.stats.total_successes,
            "success_rate": (
                self.stats.total_successes / self.stats.total_requests
                if self.stats.total_requests > 0 else 0
            ),
            "last_failure_time": self.stats.last_failure_time,
            "last_success_time": self.stats.last_success_time,
            "state_changes": self.stats.state_changes.copy(),
            "config": {
                "failure_threshold": self.config.failure_threshold,
                "recovery_timeout": self.config.recovery_timeout,
                "success_threshold": self.config.success_threshold,
                "timeout": self.config.timeout
            }
        }


class CircuitBreakerRegistry:
    """Registry for managing multiple circuit breakers."""

    def __init__(self):
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get_breaker(self, name: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
        """Get or create a circuit breaker."""
        if name not in self._breakers:
            if config is None:
                config = CircuitBreakerConfig()
            self._breakers[name] = CircuitBreaker(name, config)

        return self._breakers[name]

    def get_all_stats(self) -> Dict[str, Dict[str, Any]]:
        """Get statistics for all circuit breakers."""
        return {name: breaker.get_stats() for name, breaker in self._breakers.items()}

    def clear(self) -> None:
        self._breakers.clear()


# Global registry instance
_registry = CircuitBreakerRegistry()


def get_circuit_breaker(name: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
    """Get a circuit breaker from the global registry."""
    return _registry.get_breaker(name, config)


def get_all_circuit_breaker_stats() -> Dict[str, Dict[str, Any]]:
    """Statistics for every registered breaker, for the detailed health check."""
    return _registry.get_all_stats()


def reset_circuit_breakers() -> None:
    """Forget every registered breaker; new ones start closed."""
    _registry.clear()
