"""Loyalty program, account ledger, and referral models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    JSON,
    func,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from benmarket_api.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


def default_tier_benefits() -> dict[str, object]:
    return {
        "discountPercentage": 0,
        "freeShipping": False,
        "earlyAccess": False,
        "prioritySupport": False,
    }


class LoyaltyProgram(Base):
    """Earning rates, expiry policy, and tier ladder configured by administrators."""

    __tablename__ = "loyalty_programs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False, unique=True)
    description = Column(Text, nullable=False)
    points_per_currency_unit = Column(Integer, nullable=False, default=1, server_default="1")
    points_for_registration = Column(Integer, nullable=False, default=100, server_default="100")
    points_for_review = Column(Integer, nullable=False, default=50, server_default="50")
    points_for_referral = Column(Integer, nullable=False, default=200, server_default="200")
    expiry_months = Column(Integer, nullable=False, default=24, server_default="24")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow, server_default=func.now()
    )

    tiers = relationship(
        "LoyaltyTier",
        back_populates="program",
        cascade="all, delete-orphan",
        order_by="LoyaltyTier.min_points",
    )


class LoyaltyTier(Base):
    """Named points bracket within a program."""

    __tablename__ = "loyalty_tiers"
    __table_args__ = (
        UniqueConstraint("program_id", "name", name="uq_loyalty_tiers_program_name"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    program_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_programs.id", ondelete="CASCADE"),
        nullable=False,
    )
    name = Column(String, nullable=False)
    min_points = Column(Integer, nullable=False, default=0, server_default="0")
    benefits = Column(JSON, nullable=False, default=default_tier_benefits)

    program = relationship("LoyaltyProgram", back_populates="tiers")


class LoyaltyAccount(Base):
    """Per-user points balance. Rows are never deleted."""

    __tablename__ = "loyalty_accounts"
    __table_args__ = (
        UniqueConstraint("user_id", name="uq_loyalty_accounts_user_id"),
        UniqueConstraint("external_id", name="uq_loyalty_accounts_external_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    external_id = Column(String, nullable=False, index=True)
    total_points = Column(Integer, nullable=False, default=0, server_default="0")
    available_points = Column(Integer, nullable=False, default=0, server_default="0")
    lifetime_earned = Column(Integer, nullable=False, default=0, server_default="0")
    lifetime_redeemed = Column(Integer, nullable=False, default=0, server_default="0")
    current_tier = Column(String, nullable=False, default="Bronze", server_default="Bronze")
    version = Column(Integer, nullable=False, default=1, server_default="1")
    joined_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())
    last_activity = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())

    __mapper_args__ = {"version_id_col": version}

    user = relationship("User")
    transactions = relationship(
        "LoyaltyTransaction",
        back_populates="account",
        order_by="LoyaltyTransaction.created_at",
    )
    referrals = relationship(
        "LoyaltyReferral",
        back_populates="account",
        order_by="LoyaltyReferral.created_at",
    )


class LoyaltyTransactionType(str, Enum):
    """Direction of a ledger entry; the sign of ``points`` matches it."""

    EARNED = "earned"
    REDEEMED = "redeemed"
    EXPIRED = "expired"
    ADJUSTED = "adjusted"


class LoyaltyTransaction(Base):
    """Append-only ledger entry. Expiry adds rows pointing at the earned entry."""

    __tablename__ = "loyalty_transactions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_accounts.id"),
        nullable=False,
        index=True,
    )
    type = Column(
        SqlEnum(LoyaltyTransactionType, name="loyalty_transaction_type", values_callable=_enum_values),
        nullable=False,
    )
    points = Column(Integer, nullable=False)
    reason = Column(String, nullable=False)
    order_id = Column(String, nullable=True, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    expired_transaction_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_transactions.id"),
        nullable=True,
        unique=True,
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())

    account = relationship("LoyaltyAccount", back_populates="transactions")


class LoyaltyReferralStatus(str, Enum):
    """Lifecycle statuses for referral codes."""

    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"


class LoyaltyReferral(Base):
    """Referral code issued by an account holder."""

    __tablename__ = "loyalty_referrals"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_accounts.id"),
        nullable=False,
        index=True,
    )
    referral_code = Column(String, nullable=False, unique=True, index=True)
    status = Column(
        SqlEnum(LoyaltyReferralStatus, name="loyalty_referral_status", values_callable=_enum_values),
        nullable=False,
        default=LoyaltyReferralStatus.PENDING,
        server_default=LoyaltyReferralStatus.PENDING.value,
    )
    referred_user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    points_awarded = Column(Boolean, nullable=False, default=False, server_default="false")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    account = relationship("LoyaltyAccount", back_populates="referrals")
