import sys
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from benmarket_api.app import create_app  # noqa: E402
from benmarket_api.db.base import Base  # noqa: E402
from benmarket_api.db.session import get_session  # noqa: E402
from benmarket_api.models.loyalty import LoyaltyProgram, LoyaltyTier  # noqa: E402
from benmarket_api.models.user import User  # noqa: E402
from benmarket_api.observability.loyalty import get_loyalty_store  # noqa: E402


DEFAULT_TIERS = [
    ("Bronze", 0, {"discountPercentage": 0, "freeShipping": False, "earlyAccess": False, "prioritySupport": False}),
    ("Silver", 500, {"discountPercentage": 5, "freeShipping": False, "earlyAccess": False, "prioritySupport": False}),
    ("Gold", 1500, {"discountPercentage": 10, "freeShipping": True, "earlyAccess": True, "prioritySupport": False}),
]


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def loyalty_program(session_factory) -> LoyaltyProgram:
    async with session_factory() as session:
        program = LoyaltyProgram(
            name="BenMarket Rewards",
            description="Earn points with every purchase and unlock exclusive benefits",
            points_per_currency_unit=1,
            points_for_registration=100,
            points_for_review=50,
            points_for_referral=200,
            expiry_months=24,
            is_active=True,
        )
        session.add(program)
        await session.flush()
        session.add_all(
            [
                LoyaltyTier(program_id=program.id, name=name, min_points=min_points, benefits=benefits)
                for name, min_points, benefits in DEFAULT_TIERS
            ]
        )
        await session.commit()
        return program


@pytest_asyncio.fixture
async def member(session_factory) -> User:
    async with session_factory() as session:
        user = User(external_id="member-1", name="Loyal Member", email="member@example.com")
        session.add(user)
        await session.commit()
        return user


@pytest_asyncio.fixture
async def admin(session_factory) -> User:
    async with session_factory() as session:
        user = User(external_id="admin-1", name="Admin", email="admin@example.com", role="admin")
        session.add(user)
        await session.commit()
        return user


@pytest.fixture(autouse=True)
def reset_loyalty_store():
    get_loyalty_store().reset()
    yield
    get_loyalty_store().reset()
