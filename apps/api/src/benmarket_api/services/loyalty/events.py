"""Loyalty events emitted by the order, review, and registration flows."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from .ledger import LoyaltyValidationError


class LoyaltyEventType(str, Enum):
    PURCHASE_COMPLETED = "purchase_completed"
    REVIEW_SUBMITTED = "review_submitted"
    USER_REGISTERED = "user_registered"


@dataclass(frozen=True)
class LoyaltyEvent:
    """A fact reported by another subsystem that may earn points.

    Events are processed independently of the flow that produced them, so a
    failed award never affects the originating order, review, or signup.
    """

    type: LoyaltyEventType
    external_id: str
    order_id: str | None = None
    order_amount: Decimal | None = None
    referral_code: str | None = None
    event_id: UUID = field(default_factory=uuid4)

    def __post_init__(self) -> None:
        if not self.external_id:
            raise LoyaltyValidationError("Loyalty events require a user identity")
        if self.type is LoyaltyEventType.PURCHASE_COMPLETED:
            if not self.order_id:
                raise LoyaltyValidationError("Purchase events require an order id")
            if self.order_amount is None or self.order_amount < 0:
                raise LoyaltyValidationError("Purchase events require a non-negative order amount")

    def to_payload(self) -> dict[str, Any]:
        return {
            "eventId": str(self.event_id),
            "type": self.type.value,
            "externalId": self.external_id,
            "orderId": self.order_id,
            "orderAmount": str(self.order_amount) if self.order_amount is not None else None,
            "referralCode": self.referral_code,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "LoyaltyEvent":
        try:
            event_type = LoyaltyEventType(payload["type"])
        except (KeyError, ValueError) as exc:
            raise LoyaltyValidationError("Unknown loyalty event type") from exc

        amount_raw = payload.get("orderAmount")
        try:
            amount = Decimal(str(amount_raw)) if amount_raw is not None else None
        except InvalidOperation as exc:
            raise LoyaltyValidationError("Invalid order amount") from exc

        event_id = payload.get("eventId")
        return cls(
            type=event_type,
            external_id=str(payload.get("externalId") or ""),
            order_id=payload.get("orderId"),
            order_amount=amount,
            referral_code=payload.get("referralCode"),
            event_id=UUID(str(event_id)) if event_id else uuid4(),
        )


__all__ = ["LoyaltyEvent", "LoyaltyEventType"]
