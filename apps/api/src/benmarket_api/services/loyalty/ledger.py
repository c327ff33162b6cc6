"""Points ledger engine: balance mutation, lazy expiry, and tier classification.

Every mutation appends a ``LoyaltyTransaction`` and adjusts the cached
balances on ``LoyaltyAccount`` in the same flush. Historical transactions are
never modified; expiry is recorded as new ``expired`` rows that reference the
earned row they supersede.
"""

from __future__ import annotations

import calendar
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased
from sqlalchemy.orm.exc import StaleDataError

from benmarket_api.core.settings import settings
from benmarket_api.models.loyalty import (
    LoyaltyAccount,
    LoyaltyProgram,
    LoyaltyTier,
    LoyaltyTransaction,
    LoyaltyTransactionType,
)


class LoyaltyError(RuntimeError):
    """Base exception for loyalty ledger failures."""


class LoyaltyValidationError(LoyaltyError):
    """Raised when a ledger request is rejected before any mutation."""


class InsufficientPointsError(LoyaltyValidationError):
    """Raised when a redemption exceeds the spendable balance."""

    def __init__(self, requested: int, available: int, message: str | None = None) -> None:
        super().__init__(message or "Insufficient points")
        self.requested = requested
        self.available = available


class LoyaltyNotFoundError(LoyaltyError):
    """Raised when a user, account, or active program is missing."""


class LedgerConflictError(LoyaltyError):
    """Raised when another writer updated the account first."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    """Shift ``value`` by calendar months, clamping to the last day of the month."""

    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def resolve_tier_name(total_points: int, tiers: Iterable[LoyaltyTier]) -> str:
    """Pick the richest tier whose threshold ``total_points`` reaches.

    Tiers sharing a threshold are ordered by name so the choice is stable.
    """

    ordered = sorted(tiers, key=lambda tier: (-int(tier.min_points or 0), tier.name))
    for tier in ordered:
        if total_points >= int(tier.min_points or 0):
            return tier.name
    return settings.loyalty_default_tier


def _require_positive(points: Any) -> int:
    if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
        raise LoyaltyValidationError("Points must be a positive integer")
    return points


class LoyaltyLedger:
    """Applies earn, redeem, and expiry operations to a single account."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def add_points(
        self,
        account: LoyaltyAccount,
        points: int,
        reason: str,
        *,
        order_id: str | None = None,
        expiry_months: int | None = None,
    ) -> LoyaltyTransaction:
        """Credit ``points`` and append an ``earned`` entry that expires later."""

        points = _require_positive(points)
        months = expiry_months or settings.loyalty_default_expiry_months
        if months < 1:
            raise LoyaltyValidationError("Expiry months must be positive")

        now = utcnow()
        account.total_points = int(account.total_points or 0) + points
        account.available_points = int(account.available_points or 0) + points
        account.lifetime_earned = int(account.lifetime_earned or 0) + points
        account.last_activity = now

        entry = LoyaltyTransaction(
            account_id=account.id,
            type=LoyaltyTransactionType.EARNED,
            points=points,
            reason=reason,
            order_id=order_id,
            expires_at=add_months(now, months),
            created_at=now,
        )
        self._db.add(entry)
        await self._flush(account)
        logger.info(
            "Added loyalty points",
            account_id=str(account.id),
            points=points,
            order_id=order_id,
            available_points=account.available_points,
        )
        return entry

    async def redeem_points(
        self,
        account: LoyaltyAccount,
        points: int,
        reason: str,
        *,
        order_id: str | None = None,
    ) -> LoyaltyTransaction:
        """Debit ``points`` from the spendable balance, all or nothing."""

        points = _require_positive(points)
        available = int(account.available_points or 0)
        if points > available:
            raise InsufficientPointsError(points, available)

        now = utcnow()
        account.available_points = available - points
        account.lifetime_redeemed = int(account.lifetime_redeemed or 0) + points
        account.last_activity = now

        entry = LoyaltyTransaction(
            account_id=account.id,
            type=LoyaltyTransactionType.REDEEMED,
            points=-points,
            reason=reason,
            order_id=order_id,
            created_at=now,
        )
        self._db.add(entry)
        await self._flush(account)
        logger.info(
            "Redeemed loyalty points",
            account_id=str(account.id),
            points=points,
            available_points=account.available_points,
        )
        return entry

    async def cleanup_expired_points(
        self,
        account: LoyaltyAccount,
        *,
        now: datetime | None = None,
    ) -> int:
        """Append ``expired`` entries for lapsed earnings and return the points removed."""

        reference = now or utcnow()
        lapsed = await self.list_lapsed_earnings(account, reference_time=reference)
        if not lapsed:
            return 0

        remaining = int(account.available_points or 0)
        expired_points = 0
        for earned in lapsed:
            amount = min(int(earned.points or 0), remaining)
            remaining -= amount
            expired_points += amount
            self._db.add(
                LoyaltyTransaction(
                    account_id=account.id,
                    type=LoyaltyTransactionType.EXPIRED,
                    points=-amount,
                    reason="Points expired",
                    order_id=earned.order_id,
                    expires_at=reference,
                    expired_transaction_id=earned.id,
                    created_at=reference,
                )
            )

        if expired_points:
            account.available_points = remaining
        await self._flush(account)
        logger.info(
            "Expired loyalty points",
            account_id=str(account.id),
            expired_points=expired_points,
            lapsed_entries=len(lapsed),
        )
        return expired_points

    async def list_lapsed_earnings(
        self,
        account: LoyaltyAccount,
        *,
        reference_time: datetime,
    ) -> list[LoyaltyTransaction]:
        """Earned entries past their expiry that no ``expired`` entry supersedes yet."""

        superseding = aliased(LoyaltyTransaction)
        stmt = (
            select(LoyaltyTransaction)
            .where(
                LoyaltyTransaction.account_id == account.id,
                LoyaltyTransaction.type == LoyaltyTransactionType.EARNED,
                LoyaltyTransaction.expires_at.is_not(None),
                LoyaltyTransaction.expires_at < reference_time,
                ~select(superseding.id)
                .where(superseding.expired_transaction_id == LoyaltyTransaction.id)
                .exists(),
            )
            .order_by(LoyaltyTransaction.expires_at.asc(), LoyaltyTransaction.created_at.asc())
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def update_tier(self, account: LoyaltyAccount, program: LoyaltyProgram) -> bool:
        """Recompute ``current_tier`` from ``total_points``; write only on change."""

        tier_name = resolve_tier_name(int(account.total_points or 0), await self._load_tiers(program))
        if account.current_tier == tier_name:
            return False

        previous = account.current_tier
        account.current_tier = tier_name
        await self._flush(account)
        logger.info(
            "Updated loyalty tier",
            account_id=str(account.id),
            previous_tier=previous,
            current_tier=tier_name,
        )
        return True

    async def get_tier_benefits(self, account: LoyaltyAccount, program: LoyaltyProgram) -> dict[str, Any]:
        """Benefits of the account's cached tier, or an empty mapping when it no longer exists."""

        for tier in await self._load_tiers(program):
            if tier.name == account.current_tier:
                return dict(tier.benefits or {})
        return {}

    async def list_transactions(self, account: LoyaltyAccount) -> list[LoyaltyTransaction]:
        stmt = (
            select(LoyaltyTransaction)
            .where(LoyaltyTransaction.account_id == account.id)
            .order_by(LoyaltyTransaction.created_at.asc())
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def _load_tiers(self, program: LoyaltyProgram) -> Sequence[LoyaltyTier]:
        stmt = select(LoyaltyTier).where(LoyaltyTier.program_id == program.id)
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def _flush(self, account: LoyaltyAccount) -> None:
        account_id = str(account.id)
        try:
            await self._db.flush()
        except StaleDataError as exc:
            await self._db.rollback()
            logger.warning("Concurrent loyalty account update detected", account_id=account_id)
            raise LedgerConflictError("Loyalty account was modified concurrently; retry the request") from exc
