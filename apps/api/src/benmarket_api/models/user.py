from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, String, func
from sqlalchemy.dialects.postgresql import UUID

from benmarket_api.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRoleEnum(str, Enum):
    USER = "user"
    ADMIN = "admin"


class User(Base):
    """Local mirror of an identity issued by the external identity provider."""

    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    external_id = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True, index=True)
    role = Column(String(length=16), nullable=False, default=UserRoleEnum.USER.value, server_default=UserRoleEnum.USER.value)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow, server_default=func.now()
    )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRoleEnum.ADMIN.value
