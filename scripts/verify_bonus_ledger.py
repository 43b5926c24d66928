#!/usr/bin/env python3
"""
Bonus Ledger Verification Script

Checks that every bonus account balance equals the sum of its ledger rows.
Exits with status 1 when any account disagrees, so it can gate a cron job.

Usage:
    DATABASE_URL=postgresql+asyncpg://... python scripts/verify_bonus_ledger.py
"""

import asyncio
import sys

import structlog

from fitledger.db.session import close_engines, get_write_session
from fitledger.observability import setup_logging
from fitledger.services.bonus import BonusAccountService

logger = structlog.get_logger()


async def verify() -> int:
    """Return the number of mismatched accounts."""
    async with get_write_session() as session:
        mismatches = await BonusAccountService(session).find_ledger_mismatches()

    for user_id, balance, ledger_sum in mismatches:
        logger.error(
            "bonus_ledger_mismatch",
            user_id=str(user_id),
            balance=balance,
            ledger_sum=ledger_sum,
            difference=balance - ledger_sum,
        )

    if mismatches:
        logger.error("bonus_ledger_verification_failed", mismatched_accounts=len(mismatches))
    else:
        logger.info("bonus_ledger_verified")
    return len(mismatches)


async def main() -> int:
    setup_logging()
    try:
        return 1 if await verify() else 0
    finally:
        await close_engines()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
