"""
Off-chain payment rail: a ledger-internal balance move.

Balances live in ``account_balances`` and every completed transfer in
``transfers``. One database transaction covers the debit, the credit and
the transfer row, so a transfer either fully happens or not at all.
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import AccountBalance, TransferRecord
from ..money import add, ensure_amount, subtract
from ..utils.clock import ensure_utc
from .rail import (
    InsufficientFundsError,
    TransferReceipt,
    TransferRejectedError,
    check_replay,
)

logger = logging.getLogger(__name__)


def to_receipt(row: TransferRecord) -> TransferReceipt:
    return TransferReceipt(
        transfer_id=str(row.id),
        idempotency_key=row.idempotency_key,
        from_account=row.from_account,
        to_account=row.to_account,
        amount=row.amount,
        created_at=ensure_utc(row.created_at),
    )


class LedgerBalanceRail:
    """Payment rail over the service's own balance tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def _balance_row(self, session: AsyncSession, account: str, for_update: bool = True) -> AccountBalance:
        query = select(AccountBalance).where(AccountBalance.account == account)
        if for_update:
            query = query.with_for_update()
        row = (await session.execute(query)).scalar_one_or_none()
        if row is None:
            row = AccountBalance(account=account, balance=0)
            session.add(row)
            await session.flush()
        return row

    async def _find_transfer(self, session: AsyncSession, idempotency_key: str) -> Optional[TransferRecord]:
        result = await session.execute(
            select(TransferRecord).where(TransferRecord.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    async def deposit(self, account: str, amount: int) -> int:
        """
        Credit an account from outside the system.

        Returns:
            The new balance
        """
        ensure_amount(amount)
        async with self._session_factory() as session, session.begin():
            row = await self._balance_row(session, account)
            row.balance = add(row.balance, amount)
            balance = row.balance
        logger.info(f"Deposited {amount} into {account}")
        return balance

    async def balance_of(self, account: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AccountBalance.balance).where(AccountBalance.account == account)
            )
            return result.scalar_one_or_none() or 0

    async def transfer(
        self,
        from_account: str,
        to_account: str,
        amount: int,
        idempotency_key: str
    ) -> TransferReceipt:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise TransferRejectedError(f"Transfer amount must be positive, got {amount!r}")
        if from_account == to_account:
            raise TransferRejectedError("Cannot transfer to the same account")

        try:
            async with self._session_factory() as session, session.begin():
                existing = await self._find_transfer(session, idempotency_key)
                if existing is not None:
                    return check_replay(to_receipt(existing), from_account, to_account, amount)

                # Lock both balance rows in a stable order
                first, second = sorted([from_account, to_account])
                rows = {
                    first: await self._balance_row(session, first),
                    second: await self._balance_row(session, second),
                }
                payer, payee = rows[from_account], rows[to_account]

                if payer.balance < amount:
                    raise InsufficientFundsError(from_account, amount, payer.balance)

                payer.balance = subtract(payer.balance, amount)
                payee.balance = add(payee.balance, amount)
                record = TransferRecord(
                    idempotency_key=idempotency_key,
                    from_account=from_account,
                    to_account=to_account,
                    amount=amount,
                )
                session.add(record)
                await session.flush()
                receipt = to_receipt(record)
        except IntegrityError:
            # A concurrent call with the same key committed first
            async with self._session_factory() as session:
                existing = await self._find_transfer(session, idempotency_key)
                if existing is None:
                    raise
                return check_replay(to_receipt(existing), from_account, to_account, amount)

        logger.debug(f"Transfer {idempotency_key}: {from_account} -> {to_account} ({amount})")
        return receipt
