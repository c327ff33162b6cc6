from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Request
from pydantic import BaseModel

from benmarket_api.core.settings import settings


router = APIRouter()


class LoyaltyDispatcherStatus(BaseModel):
    mode: Literal["celery", "in-process", "disabled"]
    pending: int


class HealthPayload(BaseModel):
    status: Literal["ok"]
    environment: str
    loyaltyEvents: LoyaltyDispatcherStatus


@router.get("/healthz", summary="Service health check", response_model=HealthPayload)
async def service_health(request: Request) -> HealthPayload:
    dispatcher = getattr(request.app.state, "loyalty_event_dispatcher", None)
    if dispatcher is None:
        events = LoyaltyDispatcherStatus(mode="disabled", pending=0)
    else:
        events = LoyaltyDispatcherStatus(mode=dispatcher.mode, pending=dispatcher.pending)
    return HealthPayload(status="ok", environment=settings.environment, loyaltyEvents=events)
