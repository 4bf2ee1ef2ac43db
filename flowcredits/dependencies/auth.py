"""
Authentication dependencies for FastAPI.

The tenant comes exclusively from the verified token. Routes never read a
tenant id from the path, query or body.
"""
import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from flowcredits.services.jwt_service import JWTService


# Security scheme
security = HTTPBearer()


class TokenPayload(BaseModel):
    """JWT token payload model."""
    sub: str      # caller id
    tenant_id: str
    role: str


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> TokenPayload:
    """
    Dependency that requires valid JWT token.

    Returns token payload if valid, raises 401 if invalid.

    Usage:
        @app.get("/protected")
        async def protected_route(user: TokenPayload = Depends(get_current_user)):
            ...
    """
    jwt_service = JWTService()

    payload = jwt_service.verify_token(credentials.credentials)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = TokenPayload(**payload)

    # Picked up by the logging middleware and every log line in this request
    request.state.tenant_id = token.tenant_id
    request.state.user_id = token.sub
    structlog.contextvars.bind_contextvars(tenant_id=token.tenant_id)

    return token


def require_admin(current_user: TokenPayload = Depends(get_current_user)) -> TokenPayload:
    """
    Dependency that requires admin role.

    Returns user if admin, raises 403 otherwise.
    """
    if current_user.role != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )

    return current_user
