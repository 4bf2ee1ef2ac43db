"""
JWT token service.

Tokens are issued by the authorization service; the ledger only verifies
them. `create_token` exists for that service's shared tooling and tests.
"""
from datetime import datetime, timedelta, timezone
from jose import JWTError, jwt
from flowcredits.config import settings


ROLES = ("admin", "member", "service")


class JWTService:
    """Service for creating and verifying JWT tokens."""

    def create_token(self, subject: str, tenant_id: str, role: str) -> str:
        """
        Create a JWT token carrying the tenant identity.

        Args:
            subject: Caller identity (user or service id)
            tenant_id: Tenant the caller acts for
            role: admin, member or service

        Returns:
            Encoded JWT token string
        """
        expires = datetime.now(timezone.utc) + timedelta(minutes=settings.JWT_EXPIRATION_MINUTES)

        payload = {
            "sub": subject,
            "tenant_id": tenant_id,
            "role": role,
            "exp": expires
        }

        return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

    def verify_token(self, token: str) -> dict | None:
        """
        Verify and decode a JWT token.

        Args:
            token: JWT token string

        Returns:
            Decoded payload dict or None if invalid
        """
        try:
            payload = jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM]
            )
        except JWTError:
            return None
        if not payload.get("tenant_id") or payload.get("role") not in ROLES:
            return None
        return payload
