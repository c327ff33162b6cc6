from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base shared by every BenMarket model."""


# Import models so Alembic and create_all see the full metadata
try:  # pragma: no cover - import side effects only
    import benmarket_api.models  # noqa: F401
except ImportError:  # pragma: no cover - partial imports during migrations
    pass
