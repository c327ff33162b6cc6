"""Seed the default BenMarket Rewards program and development users."""

from __future__ import annotations

import asyncio
import os
from typing import TypedDict

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from benmarket_api.core.settings import settings
from benmarket_api.models.loyalty import LoyaltyProgram
from benmarket_api.models.user import User, UserRoleEnum
from benmarket_api.services.loyalty import LoyaltyService, ProgramDefinition, TierDefinition


class SeedUser(TypedDict):
    external_id: str
    email: str
    name: str
    role: str


DEV_USERS: list[SeedUser] = [
    {
        "external_id": os.getenv("DEV_CUSTOMER_EXTERNAL_ID", "dev-customer"),
        "email": os.getenv("DEV_CUSTOMER_EMAIL", "customer@benmarket.dev").lower(),
        "name": "Customer QA",
        "role": UserRoleEnum.USER.value,
    },
    {
        "external_id": os.getenv("DEV_ADMIN_EXTERNAL_ID", "dev-admin"),
        "email": os.getenv("DEV_ADMIN_EMAIL", "admin@benmarket.dev").lower(),
        "name": "Admin QA",
        "role": UserRoleEnum.ADMIN.value,
    },
]


DEFAULT_PROGRAM = ProgramDefinition(
    name="BenMarket Rewards",
    description="Earn points with every purchase and unlock exclusive benefits",
    points_per_currency_unit=1,
    points_for_registration=100,
    points_for_review=50,
    points_for_referral=200,
    expiry_months=24,
    is_active=True,
    tiers=[
        TierDefinition(name="Bronze", min_points=0),
        TierDefinition(name="Silver", min_points=500, benefits={"discountPercentage": 5}),
        TierDefinition(
            name="Gold",
            min_points=1500,
            benefits={"discountPercentage": 10, "freeShipping": True, "earlyAccess": True},
        ),
        TierDefinition(
            name="Platinum",
            min_points=5000,
            benefits={
                "discountPercentage": 15,
                "freeShipping": True,
                "earlyAccess": True,
                "prioritySupport": True,
            },
        ),
    ],
)


async def seed_users(session: AsyncSession) -> None:
    for user in DEV_USERS:
        with session.no_autoflush:
            existing = await session.execute(select(User).where(User.external_id == user["external_id"]))
        record = existing.scalar_one_or_none()

        if record:
            record.name = user["name"]
            record.email = user["email"]
            record.role = user["role"]
        else:
            session.add(User(**user))
    await session.commit()


async def seed_program(session: AsyncSession) -> bool:
    """Create the default program unless one already exists."""

    existing = await session.execute(select(LoyaltyProgram.id).limit(1))
    if existing.scalar_one_or_none() is not None:
        return False
    await LoyaltyService(session).manage_program(DEFAULT_PROGRAM)
    await session.commit()
    return True


async def main() -> None:
    engine = create_async_engine(settings.database_url, future=True)
    session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        async with session_factory() as session:
            await seed_users(session)
            created = await seed_program(session)
        logger.success("Loyalty seed data ready", program_created=created, users=len(DEV_USERS))
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
