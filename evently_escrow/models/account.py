"""
Account balance and transfer models backing the internal payment rail.
"""

from sqlalchemy import BigInteger, CheckConstraint, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class AccountBalance(Base):
    """Spendable balance of one account (payer, escrow, organizer)."""

    __tablename__ = "account_balances"

    account: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    balance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_account_balances_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<AccountBalance(account='{self.account}', balance={self.balance})>"


class TransferRecord(Base):
    """A completed transfer, keyed by the caller's idempotency key."""

    __tablename__ = "transfers"

    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    from_account: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    to_account: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transfers_amount_positive"),
    )

    def __repr__(self) -> str:
        return (
            f"<TransferRecord(key='{self.idempotency_key}', {self.from_account} -> "
            f"{self.to_account}, amount={self.amount})>"
        )
