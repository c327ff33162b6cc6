"""Celery application setup for loyalty event processing."""

from __future__ import annotations

from celery import Celery

from benmarket_api.core.settings import settings


def _resolve_backend_url() -> str:
    if settings.celery_result_backend:
        return settings.celery_result_backend
    return settings.redis_url


def _resolve_broker_url() -> str:
    if settings.celery_broker_url:
        return settings.celery_broker_url
    return settings.redis_url


celery_app = Celery(
    "benmarket_api",
    broker=_resolve_broker_url(),
    backend=_resolve_backend_url(),
)

celery_app.conf.update(
    task_default_queue=settings.celery_default_queue,
    task_routes={"loyalty.*": {"queue": settings.loyalty_event_task_queue}},
    timezone="UTC",
    broker_connection_retry_on_startup=True,
)

celery_app.autodiscover_tasks(["benmarket_api.celery_tasks"])

__all__ = ["celery_app"]
