from fastapi import Header, HTTPException, status

from benmarket_api.core.settings import settings


async def require_loyalty_events_api_key(x_api_key: str = Header("", alias="X-API-Key")) -> None:
    """Guard internal event ingestion; open when no key is configured."""

    if not settings.loyalty_events_api_key:
        return

    if x_api_key != settings.loyalty_events_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )
