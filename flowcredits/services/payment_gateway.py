"""
Payment gateway adapter.

Inbound: verifies signed confirmation callbacks.
Outbound: hands auto-replenish requests to the background worker, which
starts the purchase outside any tenant lock.
"""
import hashlib
import hmac

from arq import create_pool
from arq.connections import RedisSettings

from flowcredits.config import settings
from flowcredits.logging_config import get_logger


SIGNATURE_HEADER = "X-Gateway-Signature"

log = get_logger(component="payment_gateway")


def sign_payload(body: bytes, secret: str | None = None) -> str:
    """HMAC-SHA256 over the raw callback body, hex encoded."""
    key = (secret or settings.PAYMENT_WEBHOOK_SECRET).encode()
    return hmac.new(key, body, hashlib.sha256).hexdigest()


def verify_gateway_signature(body: bytes, signature: str | None, secret: str | None = None) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(body, secret), signature)


async def request_replenishment(request) -> bool:
    """
    Enqueue an auto-replenish purchase for the worker.

    Advisory only: a failed enqueue is logged and the next balance
    mutation below the threshold will ask again.
    """
    try:
        redis = await create_pool(RedisSettings.from_dsn(settings.REDIS_URL))
        try:
            await redis.enqueue_job(
                "process_auto_replenish",
                request.tenant_id,
                request.quantity,
                request.payment_method,
                request.currency,
            )
        finally:
            await redis.close()
    except Exception as e:
        log.error("replenish_enqueue_failed", tenant_id=request.tenant_id, error=str(e))
        return False

    log.info(
        "replenish_requested",
        tenant_id=request.tenant_id,
        quantity=request.quantity,
        payment_method=request.payment_method,
    )
    return True
