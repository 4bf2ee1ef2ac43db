"""
Webhook API routes.

Provides endpoints for registering the balance alert notification URL per tenant.
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from flowcredits.database import get_db
from flowcredits.dependencies.auth import TokenPayload, require_admin
from flowcredits.services.tenant_service import TenantService


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


class SetWebhookRequest(BaseModel):
    """Request model for setting webhook URL."""
    url: str = Field(min_length=1)
    secret: str = Field(min_length=1)


@router.post("", response_model=dict)
async def set_webhook(
    request: SetWebhookRequest,
    token: TokenPayload = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """
    Set webhook URL for the tenant.

    The webhook will receive signed POST requests for balance alerts.
    """
    await TenantService(db).set_webhook(token.tenant_id, request.url, request.secret)

    return {
        "message": "Webhook configured successfully",
        "url": request.url
    }


@router.get("", response_model=dict)
async def get_webhook(
    token: TokenPayload = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Get current webhook configuration for the tenant."""
    tenant = await TenantService(db).require_active(token.tenant_id)

    return {
        "url": tenant.webhook_url,
        "configured": tenant.webhook_url is not None
    }


@router.delete("", response_model=dict)
async def delete_webhook(
    token: TokenPayload = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Remove webhook configuration for the tenant."""
    await TenantService(db).set_webhook(token.tenant_id, None, None)

    return {"message": "Webhook removed successfully"}
