"""
Resilient front for a payment rail.

The settlement engine only ever talks to a ``RailGateway``. It adds a
per-call timeout, a circuit breaker and exponential-backoff retries around
the underlying rail. Only timeouts are retried, always with the original
idempotency key; rejections and insufficient funds surface immediately.
"""

import asyncio
import logging
from typing import Optional

from ..config import Settings, get_settings
from ..utils.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    get_circuit_breaker,
)
from ..utils.retry import RetryConfig, retry_async
from .rail import (
    InsufficientFundsError,
    PaymentRail,
    RailUnavailableError,
    TransferReceipt,
    TransferRejectedError,
    TransferTimeoutError,
)

logger = logging.getLogger(__name__)


def transfer_retry_config(settings: Settings) -> RetryConfig:
    return RetryConfig(
        max_attempts=settings.max_retry_attempts if settings.enable_retry_mechanisms else 1,
        base_delay=settings.retry_base_delay,
        max_delay=10.0,
    )


def worst_case_transfer_seconds(settings: Settings) -> float:
    """Longest one gateway transfer can take: every attempt timing out plus backoff."""
    retry_config = transfer_retry_config(settings)
    return retry_config.max_attempts * settings.rail_timeout_seconds + retry_config.max_total_delay()


class RailGateway:
    """Timeout, circuit breaker and retry around a ``PaymentRail``."""

    def __init__(
        self,
        rail: PaymentRail,
        settings: Optional[Settings] = None,
        breaker: Optional[CircuitBreaker] = None,
        retry_config: Optional[RetryConfig] = None
    ):
        settings = settings or get_settings()
        self.rail = rail
        self.enable_circuit_breaker = settings.enable_circuit_breakers
        self.breaker = breaker or get_circuit_breaker(
            "payment_rail",
            CircuitBreakerConfig(
                failure_threshold=settings.circuit_breaker_failure_threshold,
                recovery_timeout=settings.circuit_breaker_recovery_timeout,
                expected_exception=(TransferTimeoutError, ConnectionError),
                timeout=settings.rail_timeout_seconds,
            )
        )
        self.timeout = settings.rail_timeout_seconds
        self.retry_config = retry_config or transfer_retry_config(settings)

    async def _attempt(
        self,
        from_account: str,
        to_account: str,
        amount: int,
        idempotency_key: str
    ) -> TransferReceipt:
        try:
            if self.enable_circuit_breaker:
                return await self.breaker.call(
                    self.rail.transfer, from_account, to_account, amount, idempotency_key
                )
            return await asyncio.wait_for(
                self.rail.transfer(from_account, to_account, amount, idempotency_key),
                timeout=self.timeout
            )
        except CircuitOpenError as e:
            raise RailUnavailableError(
                "Payment rail is temporarily unavailable",
                details=e.details
            )
        except asyncio.TimeoutError:
            raise TransferTimeoutError(
                f"Transfer {idempotency_key} timed out after {self.timeout}s",
                details={"idempotency_key": idempotency_key}
            )

    async def transfer(
        self,
        from_account: str,
        to_account: str,
        amount: int,
        idempotency_key: str
    ) -> TransferReceipt:
        """
        Transfer with retries on timeout.

        Raises:
            InsufficientFundsError: Not retried
            TransferRejectedError: Not retried
            TransferTimeoutError: After every attempt timed out
            RailUnavailableError: While the circuit breaker is open
        """
        receipt = await retry_async(
            self._attempt,
            self.retry_config,
            from_account,
            to_account,
            amount,
            idempotency_key,
            retryable_exceptions=(TransferTimeoutError,),
            non_retryable_exceptions=(InsufficientFundsError, TransferRejectedError, RailUnavailableError),
        )
        if receipt.replayed:
            logger.info(f"Transfer {idempotency_key} replayed from an earlier attempt")
        return receipt
