from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from benmarket_api.core.settings import settings
from benmarket_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .workers import LoyaltyEventDispatcher


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


@asynccontextmanager
async def lifespan(app: FastAPI):
    dispatcher = LoyaltyEventDispatcher(session_factory=_session_factory)
    app.state.loyalty_event_dispatcher = dispatcher

    if dispatcher.mode == "celery":
        logger.info(
            "Loyalty events routed to Celery",
            queue=settings.loyalty_event_task_queue,
        )
    else:
        logger.info(
            "Loyalty events processed in-process",
            reason="celery_broker_url is not configured",
        )

    try:
        yield
    finally:
        await dispatcher.stop()


def create_app() -> FastAPI:
    """Application factory for the BenMarket loyalty API."""
    configure_logging(
        service_name="benmarket-api",
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="BenMarket Loyalty API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="benmarket-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
