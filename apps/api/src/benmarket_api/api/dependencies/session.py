"""Session-aware dependencies for storefront member APIs."""

from __future__ import annotations

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from benmarket_api.db.session import get_session
from benmarket_api.models.user import User


async def require_member_session(
    session_user: str | None = Header(None, alias="X-Session-User"),
    db: AsyncSession = Depends(get_session),
) -> User:
    """Resolve the authenticated user from the forwarded identity-provider key."""

    if not session_user or not session_user.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing session user context",
        )

    stmt = select(User).where(User.external_id == session_user.strip())
    result = await db.execute(stmt)
    user = result.scalar_one_or_none()
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session user not found",
        )

    return user


async def require_admin_session(current_user: User = Depends(require_member_session)) -> User:
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator role required",
        )
    return current_user
