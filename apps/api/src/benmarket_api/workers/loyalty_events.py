"""Dispatcher handing loyalty events to Celery or to in-process tasks."""

from __future__ import annotations

import asyncio
from typing import Any, Callable

from loguru import logger

from benmarket_api.core.settings import settings
from benmarket_api.services.loyalty import LoyaltyEvent
from benmarket_api.tasks.loyalty_events import process_loyalty_event

SessionFactory = Callable[[], Any]


class LoyaltyEventDispatcher:
    """Fire-and-forget delivery of loyalty events.

    With a Celery broker configured, events are sent to the loyalty queue.
    Otherwise each event runs as an asyncio task in the current process; the
    tasks are tracked so shutdown can wait for them.
    """

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        *,
        use_celery: bool | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._use_celery = bool(settings.celery_broker_url) if use_celery is None else use_celery
        self._tasks: set[asyncio.Task] = set()
        self._accepting = True

    @property
    def mode(self) -> str:
        return "celery" if self._use_celery else "in-process"

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, event: LoyaltyEvent) -> bool:
        """Queue ``event``; returns ``False`` once the dispatcher is stopped."""

        if not self._accepting:
            logger.warning("Loyalty event dropped after shutdown", event_id=str(event.event_id))
            return False

        if self._use_celery:
            from benmarket_api.celery_app import celery_app
            from benmarket_api.celery_tasks.loyalty_events import PROCESS_EVENT_TASK

            celery_app.send_task(
                PROCESS_EVENT_TASK,
                args=[event.to_payload()],
                queue=settings.loyalty_event_task_queue,
            )
        else:
            task = asyncio.create_task(process_loyalty_event(event, session_factory=self._session_factory))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        logger.info(
            "Loyalty event dispatched",
            event_id=str(event.event_id),
            event_type=event.type.value,
            mode=self.mode,
        )
        return True

    async def drain(self) -> None:
        """Wait for in-flight in-process events to finish."""

        if not self._tasks:
            return
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        self._accepting = False
        pending = self.pending
        await self.drain()
        logger.info("Loyalty event dispatcher stopped", drained=pending)


__all__ = ["LoyaltyEventDispatcher"]
