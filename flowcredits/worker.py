"""
ARQ Background Worker for Flow Credits.

Runs auto-replenish purchases requested by the alerting monitor and the
periodic balance reconciliation.
"""
import asyncio

from arq import Retry, cron
from arq.connections import RedisSettings

from flowcredits.config import settings
from flowcredits.database import AsyncSessionLocal
from flowcredits.errors import LedgerError
from flowcredits.logging_config import get_logger
from flowcredits.services.credit_service import CreditService


log = get_logger(component="worker")


async def process_auto_replenish(
    ctx: dict,
    tenant_id: str,
    quantity: int,
    payment_method: str,
    currency: str | None = None,
) -> dict:
    """Start an auto-replenish purchase for a tenant."""
    job_try = ctx.get("job_try", 1)
    max_tries = ctx.get("max_tries", 3)
    job_log = log.bind(tenant_id=tenant_id, job_try=job_try)

    async with AsyncSessionLocal() as db:
        service = CreditService(db)
        try:
            result = await service.auto_replenish(tenant_id, quantity, payment_method, currency)
        except LedgerError as e:
            if e.retryable and job_try < max_tries:
                job_log.warning("auto_replenish_retry", code=e.code)
                raise Retry(defer=5 * job_try)
            job_log.error("auto_replenish_failed", **e.to_dict())
            return {"status": "failed", "error": e.code}

    if result is None:
        return {"status": "skipped"}

    job_log.info("auto_replenish_started", payment_id=result.payment.id, credits=quantity)
    return {"status": "pending", "payment_id": result.payment.id}


async def reconcile_balances(ctx: dict) -> dict:
    """Rebuild every balance from its log and flag drift."""
    async with AsyncSessionLocal() as db:
        reports = await CreditService(db).reconcile_all()

    drifted = [report.tenant_id for report in reports if not report.in_sync]
    log.info("reconciliation_completed", tenants=len(reports), drifted=len(drifted))
    return {"tenants": len(reports), "drifted": drifted}


# Register functions for ARQ
ARQ_FUNCTIONS = [
    process_auto_replenish,
    reconcile_balances,
]


async def main():
    """Run the worker using arq cli."""
    print("Use: arq flowcredits.worker.WorkerSettings")
    print(f"Redis: {settings.REDIS_URL}")


class WorkerSettings:
    """Settings for ARQ worker - use with 'arq flowcredits.worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    job_timeout = 300
    max_tries = 3
    functions = ARQ_FUNCTIONS
    cron_jobs = [
        cron(reconcile_balances, minute={0, 30}),
    ]


if __name__ == "__main__":
    asyncio.run(main())
