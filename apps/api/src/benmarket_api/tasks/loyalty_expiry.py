"""Ad-hoc sweep applying lazy expiry to every loyalty account.

Expiry normally happens when a member reads or redeems; the sweep keeps
balances and admin statistics current for inactive members.

Example:
    python -m benmarket_api.tasks.loyalty_expiry --limit 500
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import datetime
from typing import Any, Callable

from loguru import logger
from sqlalchemy import select

from benmarket_api.db.session import async_session
from benmarket_api.models.loyalty import LoyaltyAccount
from benmarket_api.observability.loyalty import get_loyalty_store
from benmarket_api.services.loyalty import LedgerConflictError, LoyaltyLedger

SessionFactory = Callable[[], Any]


def _default_session_factory() -> Any:
    return async_session()


async def expire_loyalty_points(
    *,
    session_factory: SessionFactory | None = None,
    now: datetime | None = None,
    limit: int | None = None,
) -> dict[str, int]:
    """Expire lapsed earnings account by account, committing each separately."""

    factory = session_factory or _default_session_factory
    summary = {"accounts": 0, "expiredPoints": 0, "conflicts": 0}

    async with factory() as session:
        stmt = select(LoyaltyAccount.id).order_by(LoyaltyAccount.joined_at.asc())
        if limit:
            stmt = stmt.limit(limit)
        account_ids = list((await session.execute(stmt)).scalars().all())

    for account_id in account_ids:
        async with factory() as session:
            account = await session.get(LoyaltyAccount, account_id)
            if account is None:
                continue
            try:
                expired = await LoyaltyLedger(session).cleanup_expired_points(account, now=now)
                await session.commit()
            except LedgerConflictError:
                summary["conflicts"] += 1
                logger.warning("Skipped loyalty account during expiry sweep", account_id=str(account_id))
                continue
        summary["accounts"] += 1
        summary["expiredPoints"] += expired

    get_loyalty_store().record_expiry_sweep(summary["accounts"], summary["expiredPoints"])
    logger.info("Loyalty expiry sweep completed", **summary)
    return summary


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Expire lapsed loyalty points")
    parser.add_argument("--limit", type=int, default=None, help="Maximum number of accounts to sweep.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    summary = asyncio.run(expire_loyalty_points(limit=args.limit))
    logger.success("Loyalty expiry sweep finished", **summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())
