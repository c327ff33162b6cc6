from __future__ import annotations

from typing import Any

from loguru import logger

from benmarket_api.celery_app import celery_app
from benmarket_api.core.settings import settings
from benmarket_api.tasks.loyalty_events import process_loyalty_event_sync

PROCESS_EVENT_TASK = "loyalty.process_event"


@celery_app.task(name=PROCESS_EVENT_TASK, queue=settings.loyalty_event_task_queue)
def process_event(payload: dict[str, Any]) -> dict[str, Any]:
    """Celery entrypoint for applying a single loyalty event."""

    try:
        return process_loyalty_event_sync(payload)
    except Exception as exc:  # pragma: no cover - malformed payloads surface in Celery
        logger.exception("Loyalty event task failed", event_id=payload.get("eventId"))
        raise exc
