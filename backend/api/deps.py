"""
Offer Index API Dependencies

Dependency injection for DB sessions, Redis, the page cache and auth.
Handles live on ``app.state`` (built in the lifespan) rather than in
module globals.
"""

from collections.abc import AsyncGenerator

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from eligibility.cache import OfferPageCache

settings = get_settings()
security = HTTPBearer(auto_error=not settings.debug)

DEV_USER_ID = "dev-user"


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with request.app.state.session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


def get_redis(request: Request):
    return getattr(request.app.state, "redis", None)


def get_offer_cache(redis=Depends(get_redis)) -> OfferPageCache:
    return OfferPageCache(redis, ttl_seconds=settings.offers_cache_ttl_seconds)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    x_user_id: str | None = Header(None),
) -> dict:
    """Decode JWT and return user payload. Debug mode trusts ``X-User-Id``."""
    if settings.debug:
        return {"sub": x_user_id or DEV_USER_ID}

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    from core.security import decode_access_token

    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return payload


async def get_current_user_id(user: dict = Depends(get_current_user)) -> str:
    user_id = user.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No user context",
        )
    return str(user_id)
