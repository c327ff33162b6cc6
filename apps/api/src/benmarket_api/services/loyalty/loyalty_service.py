"""Service layer orchestrating loyalty accounts, awards, referrals, and reporting."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Any, Optional, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from benmarket_api.core.settings import settings
from benmarket_api.models.loyalty import (
    LoyaltyAccount,
    LoyaltyProgram,
    LoyaltyReferral,
    LoyaltyReferralStatus,
    LoyaltyTier,
    LoyaltyTransaction,
    LoyaltyTransactionType,
    default_tier_benefits,
)
from benmarket_api.models.user import User

from .ledger import (
    LoyaltyLedger,
    LoyaltyNotFoundError,
    LoyaltyValidationError,
    utcnow,
)


WELCOME_BONUS_REASON = "Welcome bonus for registration"
REVIEW_REASON = "Points earned for writing a product review"
DEFAULT_REDEEM_REASON = "Points redeemed"

_BASE36_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


@dataclass
class LoyaltyAccountOverview:
    """Account state returned to members after lazy expiry and tier refresh."""

    account: LoyaltyAccount
    program: Optional[LoyaltyProgram]
    tier_benefits: dict[str, Any]
    created: bool = False


@dataclass
class TierDefinition:
    name: str
    min_points: int
    benefits: dict[str, Any] = field(default_factory=default_tier_benefits)


@dataclass
class ProgramDefinition:
    """Administrator-supplied program fields; ``None`` leaves a field untouched."""

    name: str | None = None
    description: str | None = None
    points_per_currency_unit: int | None = None
    points_for_registration: int | None = None
    points_for_review: int | None = None
    points_for_referral: int | None = None
    expiry_months: int | None = None
    is_active: bool | None = None
    tiers: list[TierDefinition] | None = None


@dataclass
class TopEarner:
    account_id: UUID
    user_name: str
    user_email: str
    total_points: int
    available_points: int
    current_tier: str


@dataclass
class RecentTransaction:
    transaction_id: UUID
    user_name: str
    user_email: str
    type: LoyaltyTransactionType
    points: int
    reason: str
    created_at: datetime


@dataclass
class LoyaltyStats:
    """Read-only aggregate view for administrators."""

    total_users: int
    total_points: int
    active_users: int
    average_points: int
    top_earners: list[TopEarner]
    recent_transactions: list[RecentTransaction]


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


def purchase_points(order_amount: Decimal | float | int, rate: int) -> int:
    """Points earned for an order: ``floor(amount * rate)``."""

    amount = Decimal(str(order_amount)) * Decimal(rate)
    return int(amount.to_integral_value(rounding=ROUND_FLOOR))


class LoyaltyService:
    """Coordinates the ledger with users, programs, and referrals."""

    def __init__(self, db_session: AsyncSession, *, ledger: LoyaltyLedger | None = None) -> None:
        self._db = db_session
        self._ledger = ledger or LoyaltyLedger(db_session)

    @property
    def ledger(self) -> LoyaltyLedger:
        return self._ledger

    async def get_active_program(self) -> LoyaltyProgram | None:
        stmt = (
            select(LoyaltyProgram)
            .options(selectinload(LoyaltyProgram.tiers))
            .where(LoyaltyProgram.is_active.is_(True))
            .order_by(LoyaltyProgram.created_at.asc())
            .limit(1)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_program(self) -> LoyaltyProgram:
        program = await self.get_active_program()
        if program is None:
            raise LoyaltyNotFoundError("No active loyalty program found")
        return program

    async def resolve_user(self, external_id: str) -> User | None:
        stmt = select(User).where(User.external_id == external_id)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def find_account(self, external_id: str) -> LoyaltyAccount | None:
        stmt = select(LoyaltyAccount).where(LoyaltyAccount.external_id == external_id)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def ensure_account(
        self,
        user: User,
        *,
        program: LoyaltyProgram | None = None,
        welcome_bonus: bool = False,
    ) -> tuple[LoyaltyAccount, bool]:
        """Fetch or lazily create the account for ``user``.

        The welcome bonus is only granted when this call creates the account.
        """

        account = await self.find_account(user.external_id)
        if account is not None:
            return account, False

        account = LoyaltyAccount(
            user_id=user.id,
            external_id=user.external_id,
            current_tier=settings.loyalty_default_tier,
        )
        self._db.add(account)
        try:
            await self._db.flush()
        except IntegrityError:
            await self._db.rollback()
            logger.warning("Detected race when creating loyalty account", external_id=user.external_id)
            existing = await self.find_account(user.external_id)
            if existing is None:
                raise
            return existing, False

        logger.info("Created loyalty account", external_id=user.external_id, account_id=str(account.id))
        if welcome_bonus and program is not None and (program.points_for_registration or 0) > 0:
            await self._ledger.add_points(
                account,
                int(program.points_for_registration),
                WELCOME_BONUS_REASON,
                expiry_months=program.expiry_months,
            )
            await self._ledger.update_tier(account, program)
        return account, True

    async def get_account(self, external_id: str) -> LoyaltyAccountOverview:
        """Resolve, lazily create, expire, and re-tier the member's account."""

        user = await self.resolve_user(external_id)
        if user is None:
            raise LoyaltyNotFoundError("User not found")

        program = await self.get_active_program()
        account, created = await self.ensure_account(user, program=program, welcome_bonus=True)

        await self._ledger.cleanup_expired_points(account)
        tier_benefits: dict[str, Any] = {}
        if program is not None:
            await self._ledger.update_tier(account, program)
            tier_benefits = await self._ledger.get_tier_benefits(account, program)

        return LoyaltyAccountOverview(
            account=account,
            program=program,
            tier_benefits=tier_benefits,
            created=created,
        )

    async def redeem(
        self,
        external_id: str,
        points: int,
        reason: str | None = None,
        *,
        order_id: str | None = None,
    ) -> LoyaltyAccount:
        """Redeem points for an existing account after applying lazy expiry."""

        if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
            raise LoyaltyValidationError("Invalid points amount")

        account = await self.find_account(external_id)
        if account is None:
            raise LoyaltyNotFoundError("Loyalty account not found")

        await self._ledger.cleanup_expired_points(account)
        await self._ledger.redeem_points(account, points, reason or DEFAULT_REDEEM_REASON, order_id=order_id)
        return account

    async def generate_referral_code(self, external_id: str) -> LoyaltyReferral:
        """Append a pending ``BEN<base36 ms timestamp>`` referral to the account."""

        account = await self.find_account(external_id)
        if account is None:
            raise LoyaltyNotFoundError("Loyalty account not found")

        code = await self._generate_unique_referral_code()
        referral = LoyaltyReferral(
            account_id=account.id,
            referral_code=code,
            status=LoyaltyReferralStatus.PENDING,
        )
        self._db.add(referral)
        await self._db.flush()
        logger.info("Generated referral code", referral_code=code, account_id=str(account.id))
        return referral

    async def process_referral(self, referral_code: str, new_user_id: UUID) -> LoyaltyReferral | None:
        """Complete a pending referral and credit the referrer exactly once."""

        stmt = select(LoyaltyReferral).where(
            LoyaltyReferral.referral_code == referral_code,
            LoyaltyReferral.status == LoyaltyReferralStatus.PENDING,
        )
        referral = (await self._db.execute(stmt)).scalar_one_or_none()
        if referral is None:
            logger.info("No pending referral for code", referral_code=referral_code)
            return None

        program = await self.get_active_program()
        if program is None or (program.points_for_referral or 0) <= 0:
            logger.info("Referral rewards disabled", referral_code=referral_code)
            return None

        claim = (
            update(LoyaltyReferral)
            .where(
                LoyaltyReferral.id == referral.id,
                LoyaltyReferral.status == LoyaltyReferralStatus.PENDING,
            )
            .values(
                status=LoyaltyReferralStatus.COMPLETED,
                points_awarded=True,
                referred_user_id=new_user_id,
                completed_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(claim)
        if result.rowcount != 1:
            logger.info("Referral already claimed", referral_code=referral_code)
            return None
        await self._db.refresh(referral)

        referrer = await self._db.get(LoyaltyAccount, referral.account_id)
        if referrer is None:
            raise LoyaltyNotFoundError("Referrer account not found")

        await self._ledger.add_points(
            referrer,
            int(program.points_for_referral),
            f"Referral bonus for bringing new user {new_user_id}",
            expiry_months=program.expiry_months,
        )
        await self._ledger.update_tier(referrer, program)
        logger.info(
            "Processed referral",
            referral_code=referral_code,
            referrer=referrer.external_id,
            points=program.points_for_referral,
        )
        return referral

    async def award_purchase_points(
        self,
        external_id: str,
        order_amount: Decimal | float | int,
        order_id: str,
    ) -> LoyaltyTransaction | None:
        program = await self.get_active_program()
        if program is None or (program.points_per_currency_unit or 0) <= 0:
            return None

        points = purchase_points(order_amount, int(program.points_per_currency_unit))
        if points <= 0:
            return None

        account = await self._account_for_award(external_id, program)
        if account is None:
            return None

        if await self._has_purchase_award(account, order_id):
            logger.info("Purchase points already awarded", external_id=external_id, order_id=order_id)
            return None

        entry = await self._ledger.add_points(
            account,
            points,
            f"Points earned from purchase #{order_id}",
            order_id=order_id,
            expiry_months=program.expiry_months,
        )
        await self._ledger.update_tier(account, program)
        logger.info("Awarded purchase points", external_id=external_id, order_id=order_id, points=points)
        return entry

    async def award_review_points(self, external_id: str) -> LoyaltyTransaction | None:
        program = await self.get_active_program()
        if program is None or (program.points_for_review or 0) <= 0:
            return None

        account = await self._account_for_award(external_id, program)
        if account is None:
            return None

        entry = await self._ledger.add_points(
            account,
            int(program.points_for_review),
            REVIEW_REASON,
            expiry_months=program.expiry_months,
        )
        await self._ledger.update_tier(account, program)
        logger.info("Awarded review points", external_id=external_id, points=program.points_for_review)
        return entry

    async def award_registration(
        self,
        external_id: str,
        *,
        referral_code: str | None = None,
    ) -> LoyaltyAccount | None:
        """Open the account with its welcome bonus and settle any referral."""

        user = await self.resolve_user(external_id)
        if user is None:
            logger.warning("Registration for unknown user", external_id=external_id)
            return None

        program = await self.get_active_program()
        account, _ = await self.ensure_account(user, program=program, welcome_bonus=True)
        if referral_code:
            await self.process_referral(referral_code, user.id)
        return account

    async def admin_stats(self) -> LoyaltyStats:
        total_users = int((await self._db.execute(select(func.count(LoyaltyAccount.id)))).scalar_one() or 0)
        total_points = int(
            (await self._db.execute(select(func.coalesce(func.sum(LoyaltyAccount.total_points), 0)))).scalar_one()
            or 0
        )
        active_users = int(
            (
                await self._db.execute(
                    select(func.count(LoyaltyAccount.id)).where(LoyaltyAccount.available_points > 0)
                )
            ).scalar_one()
            or 0
        )
        average_points = 0
        if total_users:
            average_points = int(
                (Decimal(total_points) / Decimal(total_users)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
            )

        top_stmt = (
            select(LoyaltyAccount, User)
            .join(User, User.id == LoyaltyAccount.user_id)
            .order_by(LoyaltyAccount.total_points.desc(), LoyaltyAccount.joined_at.asc())
            .limit(settings.loyalty_top_earners_limit)
        )
        top_earners = [
            TopEarner(
                account_id=account.id,
                user_name=user.name,
                user_email=user.email,
                total_points=int(account.total_points or 0),
                available_points=int(account.available_points or 0),
                current_tier=account.current_tier,
            )
            for account, user in (await self._db.execute(top_stmt)).all()
        ]

        recent_stmt = (
            select(LoyaltyTransaction, User)
            .join(LoyaltyAccount, LoyaltyAccount.id == LoyaltyTransaction.account_id)
            .join(User, User.id == LoyaltyAccount.user_id)
            .order_by(LoyaltyTransaction.created_at.desc())
            .limit(settings.loyalty_recent_transactions_limit)
        )
        recent_transactions = [
            RecentTransaction(
                transaction_id=entry.id,
                user_name=user.name,
                user_email=user.email,
                type=entry.type,
                points=int(entry.points),
                reason=entry.reason,
                created_at=entry.created_at,
            )
            for entry, user in (await self._db.execute(recent_stmt)).all()
        ]

        return LoyaltyStats(
            total_users=total_users,
            total_points=total_points,
            active_users=active_users,
            average_points=average_points,
            top_earners=top_earners,
            recent_transactions=recent_transactions,
        )

    async def manage_program(self, definition: ProgramDefinition) -> LoyaltyProgram:
        """Create the program or update the existing one in place."""

        if definition.tiers is not None:
            _validate_tiers(definition.tiers)
        if definition.expiry_months is not None and definition.expiry_months < 1:
            raise LoyaltyValidationError("expiryMonths must be at least 1")

        stmt = (
            select(LoyaltyProgram)
            .options(selectinload(LoyaltyProgram.tiers))
            .order_by(LoyaltyProgram.created_at.asc())
            .limit(1)
        )
        program = (await self._db.execute(stmt)).scalar_one_or_none()
        fields = _program_fields(definition)

        if program is None:
            if not definition.name or not definition.description:
                raise LoyaltyValidationError("name and description are required to create a program")
            program = LoyaltyProgram(**fields)
            self._db.add(program)
            await self._db.flush()
            logger.info("Created loyalty program", program_id=str(program.id), name=program.name)
        else:
            for key, value in fields.items():
                setattr(program, key, value)
            await self._db.flush()
            logger.info("Updated loyalty program", program_id=str(program.id), fields=sorted(fields))

        if definition.tiers is not None:
            await self._replace_tiers(program, definition.tiers)

        await self._db.refresh(program, attribute_names=["tiers"])
        return program

    async def list_referrals(self, account: LoyaltyAccount) -> list[LoyaltyReferral]:
        stmt = (
            select(LoyaltyReferral)
            .where(LoyaltyReferral.account_id == account.id)
            .order_by(LoyaltyReferral.created_at.asc())
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def _account_for_award(self, external_id: str, program: LoyaltyProgram) -> LoyaltyAccount | None:
        user = await self.resolve_user(external_id)
        if user is None:
            logger.warning("Skipping loyalty award for unknown user", external_id=external_id)
            return None
        account, _ = await self.ensure_account(user, program=program)
        return account

    async def _has_purchase_award(self, account: LoyaltyAccount, order_id: str) -> bool:
        stmt = select(func.count(LoyaltyTransaction.id)).where(
            LoyaltyTransaction.account_id == account.id,
            LoyaltyTransaction.type == LoyaltyTransactionType.EARNED,
            LoyaltyTransaction.order_id == order_id,
        )
        return int((await self._db.execute(stmt)).scalar_one() or 0) > 0

    async def _replace_tiers(self, program: LoyaltyProgram, tiers: Sequence[TierDefinition]) -> None:
        await self._db.execute(
            delete(LoyaltyTier)
            .where(LoyaltyTier.program_id == program.id)
            .execution_options(synchronize_session=False)
        )
        for tier in tiers:
            benefits = {**default_tier_benefits(), **(tier.benefits or {})}
            self._db.add(
                LoyaltyTier(
                    program_id=program.id,
                    name=tier.name,
                    min_points=tier.min_points,
                    benefits=benefits,
                )
            )
        await self._db.flush()

    async def _generate_unique_referral_code(self) -> str:
        timestamp_ms = int(time.time() * 1000)
        while True:
            candidate = f"{settings.loyalty_referral_code_prefix}{to_base36(timestamp_ms)}"
            stmt = select(LoyaltyReferral.id).where(LoyaltyReferral.referral_code == candidate)
            if (await self._db.execute(stmt)).scalar_one_or_none() is None:
                return candidate
            timestamp_ms += 1


def _validate_tiers(tiers: Sequence[TierDefinition]) -> None:
    names = [tier.name for tier in tiers]
    if len(set(names)) != len(names):
        raise LoyaltyValidationError("Tier names must be unique")
    if any(tier.min_points < 0 for tier in tiers):
        raise LoyaltyValidationError("Tier minPoints must be non-negative")


def _program_fields(definition: ProgramDefinition) -> dict[str, Any]:
    values = {
        "name": definition.name,
        "description": definition.description,
        "points_per_currency_unit": definition.points_per_currency_unit,
        "points_for_registration": definition.points_for_registration,
        "points_for_review": definition.points_for_review,
        "points_for_referral": definition.points_for_referral,
        "expiry_months": definition.expiry_months,
        "is_active": definition.is_active,
    }
    for key in ("points_per_currency_unit", "points_for_registration", "points_for_review", "points_for_referral"):
        if values[key] is not None and values[key] < 0:
            raise LoyaltyValidationError(f"{key} must be non-negative")
    return {key: value for key, value in values.items() if value is not None}
