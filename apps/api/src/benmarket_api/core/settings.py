from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./benmarket.db"
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: str | None = None
    celery_result_backend: str | None = None
    celery_default_queue: str = "benmarket-default"

    # Internal API security (order/review services posting loyalty events)
    loyalty_events_api_key: str = ""
    loyalty_event_task_queue: str = "loyalty-events"

    # Loyalty ledger defaults
    loyalty_default_expiry_months: int = 24
    loyalty_default_tier: str = "Bronze"
    loyalty_referral_code_prefix: str = "BEN"
    loyalty_top_earners_limit: int = 10
    loyalty_recent_transactions_limit: int = 50

    @field_validator("loyalty_default_expiry_months")
    @classmethod
    def _validate_expiry_months(cls, value: int) -> int:
        if value < 1:
            raise ValueError("loyalty_default_expiry_months must be positive")
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
