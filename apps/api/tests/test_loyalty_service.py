import importlib.util
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy import select

from benmarket_api.models.loyalty import (
    LoyaltyAccount,
    LoyaltyProgram,
    LoyaltyReferral,
    LoyaltyReferralStatus,
    LoyaltyTransaction,
)
from benmarket_api.models.user import User
from benmarket_api.services.loyalty import (
    InsufficientPointsError,
    LoyaltyNotFoundError,
    LoyaltyService,
    LoyaltyValidationError,
    ProgramDefinition,
    TierDefinition,
)
from benmarket_api.services.loyalty.loyalty_service import purchase_points, to_base36


async def _add_user(session, external_id: str, email: str | None = None) -> User:
    user = User(external_id=external_id, name=external_id.title(), email=email or f"{external_id}@example.com")
    session.add(user)
    await session.flush()
    return user


@pytest.mark.asyncio
async def test_get_account_creates_account_with_welcome_bonus(session_factory, loyalty_program, member) -> None:
    async with session_factory() as session:
        service = LoyaltyService(session)

        overview = await service.get_account(member.external_id)

        assert overview.created is True
        assert overview.account.available_points == 100
        assert overview.account.total_points == 100
        assert overview.account.current_tier == "Bronze"
        assert overview.program.id == loyalty_program.id
        assert overview.tier_benefits["discountPercentage"] == 0

        entries = await service.ledger.list_transactions(overview.account)
        assert [entry.reason for entry in entries] == ["Welcome bonus for registration"]

        again = await service.get_account(member.external_id)
        assert again.created is False
        assert again.account.available_points == 100


@pytest.mark.asyncio
async def test_get_account_without_program_creates_empty_account(session_factory, member) -> None:
    async with session_factory() as session:
        overview = await LoyaltyService(session).get_account(member.external_id)

        assert overview.program is None
        assert overview.tier_benefits == {}
        assert overview.account.available_points == 0
        assert overview.account.current_tier == "Bronze"


@pytest.mark.asyncio
async def test_get_account_rejects_unknown_identity(session_factory) -> None:
    async with session_factory() as session:
        with pytest.raises(LoyaltyNotFoundError):
            await LoyaltyService(session).get_account("nobody")


@pytest.mark.asyncio
async def test_get_program_requires_active_program(session_factory, loyalty_program) -> None:
    async with session_factory() as session:
        program = await LoyaltyService(session).get_program()
        assert [tier.name for tier in program.tiers] == ["Bronze", "Silver", "Gold"]

        stored = await session.get(LoyaltyProgram, loyalty_program.id)
        stored.is_active = False
        await session.flush()

        with pytest.raises(LoyaltyNotFoundError):
            await LoyaltyService(session).get_program()


@pytest.mark.asyncio
async def test_purchase_awards_floor_of_amount_times_rate(session_factory, loyalty_program, member) -> None:
    async with session_factory() as session:
        service = LoyaltyService(session)

        entry = await service.award_purchase_points(member.external_id, Decimal("1000"), "order-1")

        assert entry.points == 1000
        assert entry.reason == "Points earned from purchase #order-1"
        account = await service.find_account(member.external_id)
        assert account.available_points == 1000
        assert account.current_tier == "Silver"

        small = await service.award_purchase_points(member.external_id, Decimal("19.99"), "order-2")
        assert small.points == 19


@pytest.mark.asyncio
async def test_purchase_awarding_skips_duplicate_order(session_factory, loyalty_program, member) -> None:
    async with session_factory() as session:
        service = LoyaltyService(session)

        first = await service.award_purchase_points(member.external_id, 250, "order-9")
        duplicate = await service.award_purchase_points(member.external_id, 250, "order-9")

        assert first is not None
        assert duplicate is None
        account = await service.find_account(member.external_id)
        assert account.available_points == 250


@pytest.mark.asyncio
async def test_purchase_awarding_does_not_grant_welcome_bonus(session_factory, loyalty_program, member) -> None:
    async with session_factory() as session:
        service = LoyaltyService(session)
        await service.award_purchase_points(member.external_id, 10, "order-10")

        account = await service.find_account(member.external_id)
        entries = await service.ledger.list_transactions(account)
        assert [entry.points for entry in entries] == [10]


@pytest.mark.asyncio
async def test_awards_are_noops_without_program_or_user(session_factory, member) -> None:
    async with session_factory() as session:
        service = LoyaltyService(session)

        assert await service.award_purchase_points(member.external_id, 100, "order-1") is None
        assert await service.award_review_points(member.external_id) is None
        assert await service.find_account(member.external_id) is None


@pytest.mark.asyncio
async def test_awards_skip_unknown_user_and_zero_points(session_factory, loyalty_program) -> None:
    async with session_factory() as session:
        service = LoyaltyService(session)

        assert await service.award_review_points("ghost") is None
        assert await service.award_purchase_points("ghost", 100, "order-1") is None
        assert await service.award_purchase_points("ghost", Decimal("0.5"), "order-2") is None


@pytest.mark.asyncio
async def test_review_awards_flat_points(session_factory, loyalty_program, member) -> None:
    async with session_factory() as session:
        service = LoyaltyService(session)

        entry = await service.award_review_points(member.external_id)

        assert entry.points == 50
        assert entry.reason == "Points earned for writing a product review"


@pytest.mark.asyncio
async def test_redeem_applies_expiry_and_balance_checks(session_factory, loyalty_program, member) -> None:
    async with session_factory() as session:
        service = LoyaltyService(session)

        with pytest.raises(LoyaltyNotFoundError):
            await service.redeem(member.external_id, 10)

        await service.get_account(member.external_id)
        account = await service.redeem(member.external_id, 60)
        assert account.available_points == 40
        assert account.total_points == 100

        with pytest.raises(InsufficientPointsError):
            await service.redeem(member.external_id, 41)
        with pytest.raises(LoyaltyValidationError):
            await service.redeem(member.external_id, 0)

        entries = await service.ledger.list_transactions(account)
        assert entries[-1].reason == "Points redeemed"


@pytest.mark.asyncio
async def test_referral_code_format_and_uniqueness(session_factory, loyalty_program, member) -> None:
    async with session_factory() as session:
        service = LoyaltyService(session)
        with pytest.raises(LoyaltyNotFoundError):
            await service.generate_referral_code(member.external_id)

        await service.get_account(member.external_id)
        first = await service.generate_referral_code(member.external_id)
        second = await service.generate_referral_code(member.external_id)

        assert first.referral_code.startswith("BEN")
        assert first.referral_code[3:].isalnum()
        assert first.referral_code[3:] == first.referral_code[3:].upper()
        assert first.referral_code != second.referral_code
        assert first.status == LoyaltyReferralStatus.PENDING


@pytest.mark.asyncio
async def test_referral_completed_twice_awards_once(session_factory, loyalty_program, member) -> None:
    async with session_factory() as session:
        service = LoyaltyService(session)
        await service.get_account(member.external_id)
        referral = await service.generate_referral_code(member.external_id)
        newcomer = await _add_user(session, "newcomer")

        completed = await service.process_referral(referral.referral_code, newcomer.id)
        repeated = await service.process_referral(referral.referral_code, newcomer.id)

        assert completed is not None
        assert completed.status == LoyaltyReferralStatus.COMPLETED
        assert completed.points_awarded is True
        assert completed.referred_user_id == newcomer.id
        assert completed.completed_at is not None
        assert repeated is None

        referrer = await service.find_account(member.external_id)
        assert referrer.available_points == 300
        bonuses = (
            await session.execute(
                select(LoyaltyTransaction).where(LoyaltyTransaction.reason.like("Referral bonus%"))
            )
        ).scalars().all()
        assert len(bonuses) == 1
        assert bonuses[0].reason == f"Referral bonus for bringing new user {newcomer.id}"


@pytest.mark.asyncio
async def test_referral_left_pending_when_rewards_disabled(session_factory, loyalty_program, member) -> None:
    async with session_factory() as session:
        service = LoyaltyService(session)
        await service.get_account(member.external_id)
        referral = await service.generate_referral_code(member.external_id)
        newcomer = await _add_user(session, "late-newcomer")

        program = await session.get(LoyaltyProgram, loyalty_program.id)
        program.points_for_referral = 0
        await session.flush()

        assert await service.process_referral(referral.referral_code, newcomer.id) is None
        assert await service.process_referral("BENUNKNOWN", newcomer.id) is None

        stored = (
            await session.execute(select(LoyaltyReferral).where(LoyaltyReferral.id == referral.id))
        ).scalar_one()
        assert stored.status == LoyaltyReferralStatus.PENDING


@pytest.mark.asyncio
async def test_registration_awards_bonus_and_processes_referral(session_factory, loyalty_program, member) -> None:
    async with session_factory() as session:
        service = LoyaltyService(session)
        await service.get_account(member.external_id)
        referral = await service.generate_referral_code(member.external_id)
        newcomer = await _add_user(session, "referred")

        account = await service.award_registration(newcomer.external_id, referral_code=referral.referral_code)

        assert account.available_points == 100
        assert account.current_tier == "Bronze"
        referrer = await service.find_account(member.external_id)
        assert referrer.available_points == 300
        assert await service.award_registration("ghost") is None


@pytest.mark.asyncio
async def test_admin_stats_overview(session_factory, loyalty_program, member) -> None:
    async with session_factory() as session:
        service = LoyaltyService(session)
        empty = await service.admin_stats()
        assert empty.total_users == 0
        assert empty.average_points == 0

        other = await _add_user(session, "second")
        await service.get_account(member.external_id)
        await service.get_account(other.external_id)
        await service.award_purchase_points(other.external_id, 901, "order-1")
        await service.redeem(member.external_id, 100)

        stats = await service.admin_stats()

        assert stats.total_users == 2
        assert stats.total_points == 1101
        assert stats.active_users == 1
        assert stats.average_points == 551
        assert [earner.user_email for earner in stats.top_earners] == ["second@example.com", "member@example.com"]
        assert len(stats.recent_transactions) == 4
        assert {entry.user_name for entry in stats.recent_transactions} == {"Second", "Loyal Member"}


@pytest.mark.asyncio
async def test_manage_program_creates_then_updates_in_place(session_factory) -> None:
    async with session_factory() as session:
        service = LoyaltyService(session)

        with pytest.raises(LoyaltyValidationError):
            await service.manage_program(ProgramDefinition(points_for_review=10))

        created = await service.manage_program(
            ProgramDefinition(
                name="Spring Rewards",
                description="Seasonal program",
                tiers=[TierDefinition(name="Bronze", min_points=0), TierDefinition(name="Gold", min_points=900)],
            )
        )
        assert created.points_per_currency_unit == 1
        assert [tier.name for tier in created.tiers] == ["Bronze", "Gold"]
        assert created.tiers[0].benefits["freeShipping"] is False

        updated = await service.manage_program(
            ProgramDefinition(
                points_for_review=75,
                tiers=[
                    TierDefinition(name="Bronze", min_points=0),
                    TierDefinition(name="Gold", min_points=1200, benefits={"freeShipping": True}),
                ],
            )
        )
        assert updated.id == created.id
        assert updated.name == "Spring Rewards"
        assert updated.points_for_review == 75
        assert [(tier.name, tier.min_points) for tier in updated.tiers] == [("Bronze", 0), ("Gold", 1200)]
        assert updated.tiers[1].benefits["freeShipping"] is True

        with pytest.raises(LoyaltyValidationError):
            await service.manage_program(
                ProgramDefinition(tiers=[TierDefinition(name="Gold", min_points=0), TierDefinition(name="Gold", min_points=5)])
            )

        programs = (await session.execute(select(LoyaltyProgram))).scalars().all()
        assert len(programs) == 1


@pytest.mark.asyncio
async def test_ensure_account_returns_existing_account(session_factory, member) -> None:
    async with session_factory() as session:
        session.add(LoyaltyAccount(user_id=member.id, external_id=member.external_id))
        await session.commit()

    async with session_factory() as session:
        user = await session.get(User, member.id)
        service = LoyaltyService(session)
        account, created = await service.ensure_account(user)
        assert created is False
        assert account.external_id == member.external_id


def test_base36_and_purchase_point_helpers() -> None:
    assert to_base36(0) == "0"
    assert to_base36(35) == "Z"
    assert to_base36(36) == "10"
    assert purchase_points(Decimal("12.99"), 2) == 25
    assert purchase_points(0, 1) == 0


@pytest.mark.asyncio
async def test_seed_script_creates_default_program_once(session_factory) -> None:
    script = Path(__file__).resolve().parents[1] / "tooling" / "seed_loyalty_program.py"
    spec = importlib.util.spec_from_file_location("seed_loyalty_program", script)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)

    async with session_factory() as session:
        await module.seed_users(session)
        assert await module.seed_program(session) is True
        assert await module.seed_program(session) is False

        program = await LoyaltyService(session).get_program()
        assert program.name == "BenMarket Rewards"
        assert [tier.name for tier in program.tiers] == ["Bronze", "Silver", "Gold", "Platinum"]
        assert program.tiers[-1].benefits["prioritySupport"] is True

        admin = (await session.execute(select(User).where(User.role == "admin"))).scalar_one()
        assert admin.external_id == "dev-admin"
