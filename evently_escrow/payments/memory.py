"""
In-memory payment rail with scripted failures, for tests and local runs.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..money import add, ensure_amount, subtract
from ..utils.clock import Clock, utcnow
from .rail import (
    InsufficientFundsError,
    TransferReceipt,
    TransferRejectedError,
    TransferTimeoutError,
    check_replay,
)

logger = logging.getLogger(__name__)

FAILURE_KINDS = ("rejected", "timeout", "timeout_after_commit")


@dataclass
class _ScriptedFailure:
    kind: str
    remaining: int
    from_account: Optional[str] = None
    to_account: Optional[str] = None

    def matches(self, from_account: str, to_account: str) -> bool:
        if self.from_account is not None and self.from_account != from_account:
            return False
        if self.to_account is not None and self.to_account != to_account:
            return False
        return self.remaining > 0


@dataclass(frozen=True)
class TransferAttempt:
    from_account: str
    to_account: str
    amount: int
    idempotency_key: str


class InMemoryRail:
    """
    Balance book kept in a dict.

    Only successful transfers are remembered, keyed by idempotency key.
    ``fail_next`` scripts failures: ``rejected`` and ``timeout`` move no
    money, ``timeout_after_commit`` moves it and then reports a timeout.
    """

    def __init__(self, balances: Optional[Dict[str, int]] = None, clock: Optional[Clock] = None):
        self._balances: Dict[str, int] = defaultdict(int)
        for account, amount in (balances or {}).items():
            self._balances[account] = ensure_amount(amount)
        self._receipts: Dict[str, TransferReceipt] = {}
        self._failures: List[_ScriptedFailure] = []
        self._clock = clock or utcnow
        self._lock = asyncio.Lock()
        self.attempts: List[TransferAttempt] = []

    def deposit(self, account: str, amount: int) -> int:
        """Credit an account out of thin air. Returns the new balance."""
        self._balances[account] = add(self._balances[account], amount)
        return self._balances[account]

    def balance_of(self, account: str) -> int:
        return self._balances.get(account, 0)

    @property
    def receipts(self) -> List[TransferReceipt]:
        return list(self._receipts.values())

    def fail_next(
        self,
        kind: str = "rejected",
        times: int = 1,
        from_account: Optional[str] = None,
        to_account: Optional[str] = None
    ) -> None:
        """Script the next ``times`` matching transfers to fail."""
        if kind not in FAILURE_KINDS:
            raise ValueError(f"Unknown failure kind: {kind}")
        self._failures.append(_ScriptedFailure(kind, times, from_account, to_account))

    def _take_failure(self, from_account: str, to_account: str) -> Optional[str]:
        for failure in self._failures:
            if failure.matches(from_account, to_account):
                failure.remaining -= 1
                return failure.kind
        return None

    def _apply(self, from_account: str, to_account: str, amount: int, idempotency_key: str) -> TransferReceipt:
        available = self._balances.get(from_account, 0)
        if available < amount:
            raise InsufficientFundsError(from_account, amount, available)

        self._balances[from_account] = subtract(available, amount)
        self._balances[to_account] = add(self._balances[to_account], amount)
        receipt = TransferReceipt(
            transfer_id=str(uuid.uuid4()),
            idempotency_key=idempotency_key,
            from_account=from_account,
            to_account=to_account,
            amount=amount,
            created_at=self._clock(),
        )
        self._receipts[idempotency_key] = receipt
        return receipt

    async def transfer(
        self,
        from_account: str,
        to_account: str,
        amount: int,
        idempotency_key: str
    ) -> TransferReceipt:
        async with self._lock:
            self.attempts.append(TransferAttempt(from_account, to_account, amount, idempotency_key))

            if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
                raise TransferRejectedError(f"Transfer amount must be positive, got {amount!r}")

            failure = self._take_failure(from_account, to_account)
            if failure == "rejected":
                raise TransferRejectedError(f"Transfer {idempotency_key} rejected by rail")
            if failure == "timeout":
                raise TransferTimeoutError(f"Transfer {idempotency_key} timed out")

            existing = self._receipts.get(idempotency_key)
            if existing is not None:
                return check_replay(existing, from_account, to_account, amount)

            receipt = self._apply(from_account, to_account, amount, idempotency_key)
            logger.debug(f"Transfer {idempotency_key}: {from_account} -> {to_account} ({amount})")

            if failure == "timeout_after_commit":
                raise TransferTimeoutError(f"Transfer {idempotency_key} timed out")
            return receipt
