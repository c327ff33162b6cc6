"""Loyalty ledger and orchestration services."""

from .events import LoyaltyEvent, LoyaltyEventType
from .ledger import (
    InsufficientPointsError,
    LedgerConflictError,
    LoyaltyError,
    LoyaltyLedger,
    LoyaltyNotFoundError,
    LoyaltyValidationError,
    add_months,
    resolve_tier_name,
)
from .loyalty_service import (
    LoyaltyAccountOverview,
    LoyaltyService,
    LoyaltyStats,
    ProgramDefinition,
    TierDefinition,
)

__all__ = [
    "InsufficientPointsError",
    "LedgerConflictError",
    "LoyaltyAccountOverview",
    "LoyaltyError",
    "LoyaltyEvent",
    "LoyaltyEventType",
    "LoyaltyLedger",
    "LoyaltyNotFoundError",
    "LoyaltyService",
    "LoyaltyStats",
    "LoyaltyValidationError",
    "ProgramDefinition",
    "TierDefinition",
    "add_months",
    "resolve_tier_name",
]
