"""
Notification Service

Handles outbound balance alert delivery with retry logic.
"""
import json
import hmac
import hashlib
import asyncio
from datetime import timedelta

import httpx

from flowcredits.config import settings
from flowcredits.database import AsyncSessionLocal
from flowcredits.logging_config import get_logger
from flowcredits.models.base import utcnow
from flowcredits.models.notification import NotificationDelivery
from flowcredits.routes.metrics import track_notification
from flowcredits.services.tenant_service import TenantService


def generate_signature(payload: str, secret: str) -> str:
    """Generate HMAC-SHA256 signature for a notification payload."""
    return hmac.new(
        secret.encode(),
        payload.encode(),
        hashlib.sha256
    ).hexdigest()


async def send_notification(
    tenant_id: str,
    alert_type: str,
    url: str,
    payload: dict,
    secret: str,
    delays: list[int] | None = None,
) -> bool:
    """
    Send a notification with retry logic.

    Returns True if delivered, False otherwise.
    """
    delays = settings.NOTIFICATION_RETRY_DELAYS if delays is None else delays
    max_attempts = len(delays)
    log = get_logger(tenant_id=tenant_id, alert_type=alert_type, url=url)

    payload_str = json.dumps(payload, sort_keys=True)
    signature = generate_signature(payload_str, secret)

    headers = {
        "Content-Type": "application/json",
        "X-Webhook-Signature": signature,
        "X-Webhook-Event": "balance_alert",
    }

    async with AsyncSessionLocal() as db:
        delivery = NotificationDelivery(
            tenant_id=tenant_id,
            alert_type=alert_type,
            url=url,
            status="pending",
            attempts=0
        )
        db.add(delivery)
        await db.commit()

        for attempt in range(max_attempts):
            delivery.attempts = attempt + 1
            await db.commit()

            try:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    response = await client.post(url, content=payload_str, headers=headers)

                delivery.response_code = response.status_code
                if 200 <= response.status_code < 300:
                    delivery.status = "delivered"
                    await db.commit()
                    track_notification("delivered")
                    log.info("notification_delivered", attempts=delivery.attempts)
                    return True
                delivery.error_message = f"HTTP {response.status_code}"

            except httpx.HTTPError as e:
                delivery.error_message = str(e)
                log.warning("notification_attempt_failed", attempt=attempt + 1, error=str(e))

            if attempt < max_attempts - 1:
                delay = delays[attempt]
                delivery.next_retry_at = utcnow() + timedelta(seconds=delay)
                delivery.status = "pending"
                await db.commit()
                await asyncio.sleep(delay)
            else:
                delivery.status = "failed"
                await db.commit()
                track_notification("failed")
                log.error("notification_failed", attempts=max_attempts)

        return False


async def notify_balance_alert(tenant_id: str, evaluation: dict):
    """
    Deliver a balance alert to the tenant's webhook.
    Called after the critical section has committed.
    """
    async with AsyncSessionLocal() as db:
        tenant = await TenantService(db).get_by_id(tenant_id)

    if not tenant or not tenant.webhook_url:
        get_logger(tenant_id=tenant_id).info("notification_skipped", reason="no webhook configured")
        return False

    alert_types = [alert["type"] for alert in evaluation.get("alerts", [])]
    payload = {
        "event": "balance_alert",
        "sent_at": utcnow().isoformat(),
        **evaluation,
    }
    return await send_notification(
        tenant_id=tenant_id,
        alert_type=",".join(alert_types) or "balance",
        url=tenant.webhook_url,
        payload=payload,
        secret=tenant.webhook_secret or "",
    )
