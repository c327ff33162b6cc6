"""Loyalty event consumer.

These helpers let Celery workers and the in-process dispatcher apply loyalty
events through the same service layer. Processing is best-effort: failures are
rolled back, logged, and counted, never raised to the producer.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable

from loguru import logger

from benmarket_api.db.session import async_session
from benmarket_api.observability.loyalty import get_loyalty_store
from benmarket_api.services.loyalty import LoyaltyEvent, LoyaltyEventType, LoyaltyService

SessionFactory = Callable[[], Any]


def _default_session_factory() -> Any:
    return async_session()


async def process_loyalty_event(
    event: LoyaltyEvent,
    *,
    session_factory: SessionFactory | None = None,
) -> dict[str, Any]:
    """Apply a single event and return a summary with ``processed``, ``skipped`` or ``failed``."""

    factory = session_factory or _default_session_factory
    store = get_loyalty_store()
    summary: dict[str, Any] = {
        "eventId": str(event.event_id),
        "type": event.type.value,
        "status": "skipped",
        "points": 0,
    }

    async with factory() as session:
        service = LoyaltyService(session)
        try:
            summary["points"] = await _apply(service, event)
            await session.commit()
        except Exception as exc:
            await session.rollback()
            summary["status"] = "failed"
            summary["error"] = str(exc)
            store.record_award(event.type.value, "failed")
            logger.exception(
                "Loyalty event processing failed",
                event_id=str(event.event_id),
                event_type=event.type.value,
                external_id=event.external_id,
            )
            return summary

    if summary["points"]:
        summary["status"] = "processed"
    store.record_award(event.type.value, summary["status"])
    logger.info(
        "Loyalty event processed",
        event_id=str(event.event_id),
        event_type=event.type.value,
        external_id=event.external_id,
        status=summary["status"],
        points=summary["points"],
    )
    return summary


async def _apply(service: LoyaltyService, event: LoyaltyEvent) -> int:
    if event.type is LoyaltyEventType.PURCHASE_COMPLETED:
        entry = await service.award_purchase_points(
            event.external_id,
            event.order_amount or 0,
            event.order_id or "",
        )
        return int(entry.points) if entry is not None else 0

    if event.type is LoyaltyEventType.REVIEW_SUBMITTED:
        entry = await service.award_review_points(event.external_id)
        return int(entry.points) if entry is not None else 0

    before = await service.find_account(event.external_id)
    account = await service.award_registration(event.external_id)
    if account is None:
        return 0
    points = 0 if before is not None else int(account.available_points or 0)
    if event.referral_code:
        referral = await service.process_referral(event.referral_code, account.user_id)
        get_loyalty_store().record_referral_event("completed" if referral is not None else "skipped")
    return points


def process_loyalty_event_sync(
    payload: dict[str, Any],
    *,
    session_factory: SessionFactory | None = None,
) -> dict[str, Any]:
    """Convenience wrapper so Celery and cron integrations can call the async consumer."""

    event = LoyaltyEvent.from_payload(payload)
    return asyncio.run(process_loyalty_event(event, session_factory=session_factory))


__all__ = ["process_loyalty_event", "process_loyalty_event_sync"]
