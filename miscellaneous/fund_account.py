#!/usr/bin/env python3
"""
Credit an account on the internal payment rail.

The ledger rail only moves balances that already exist; this script is how
money enters it in development and staging.
"""

import asyncio
import sys
import os

# Add the project root to the Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from evently_escrow.config import get_settings  # noqa: E402
from evently_escrow.database import close_database, get_session_factory, init_database  # noqa: E402
from evently_escrow.money import format_amount, to_minor_units  # noqa: E402
from evently_escrow.payments import LedgerBalanceRail  # noqa: E402
from evently_escrow.utils.exceptions import EventlyError  # noqa: E402


async def fund_account(account: str, amount: str) -> int:
    """Deposit a display amount (e.g. "100.50") into an account."""
    settings = get_settings()
    minor_units = to_minor_units(amount, settings.currency_decimals)

    await init_database()
    try:
        rail = LedgerBalanceRail(get_session_factory())
        return await rail.deposit(account.strip().lower(), minor_units)
    finally:
        await close_database()


async def show_balance(account: str) -> int:
    await init_database()
    try:
        rail = LedgerBalanceRail(get_session_factory())
        return await rail.balance_of(account.strip().lower())
    finally:
        await close_database()


async def main():
    """Main function."""
    settings = get_settings()
    if len(sys.argv) == 3 and sys.argv[1] == "balance":
        balance = await show_balance(sys.argv[2])
    elif len(sys.argv) == 3:
        try:
            balance = await fund_account(sys.argv[1], sys.argv[2])
        except EventlyError as e:
            print(f"❌ {e.message}")
            sys.exit(1)
        print(f"✅ Deposited {sys.argv[2]} {settings.default_currency} into {sys.argv[1]}")
    else:
        print("Usage:")
        print("  python fund_account.py <account> <amount>   # Credit an account")
        print("  python fund_account.py balance <account>    # Show a balance")
        sys.exit(1)

    print(f"   Balance: {format_amount(balance, settings.currency_decimals, settings.default_currency)}")


if __name__ == "__main__":
    asyncio.run(main())
