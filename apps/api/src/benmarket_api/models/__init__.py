"""SQLAlchemy models package."""

from .loyalty import (  # noqa: F401
    LoyaltyAccount,
    LoyaltyProgram,
    LoyaltyReferral,
    LoyaltyReferralStatus,
    LoyaltyTier,
    LoyaltyTransaction,
    LoyaltyTransactionType,
)
from .user import User, UserRoleEnum  # noqa: F401
