"""Background workers supporting async processing."""

from .loyalty_events import LoyaltyEventDispatcher

__all__ = ["LoyaltyEventDispatcher"]
