"""
Rate limit dependency for FastAPI routes.
"""
from fastapi import Depends, HTTPException

from flowcredits.config import settings
from flowcredits.dependencies.auth import TokenPayload, get_current_user
from flowcredits.routes.metrics import track_rate_limit_exceeded
from flowcredits.services.rate_limiter import rate_limiter


async def check_rate_limit(current_user: TokenPayload = Depends(get_current_user)) -> TokenPayload:
    """
    Check rate limit for the caller's tenant.

    Raises 429 if limit exceeded.
    """
    if not settings.RATE_LIMIT_ENABLED:
        return current_user

    allowed, retry_after = await rate_limiter.is_allowed(current_user.tenant_id)

    if not allowed:
        track_rate_limit_exceeded(current_user.tenant_id)
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded. Please try again later.",
            headers={"Retry-After": str(retry_after)}
        )

    return current_user
