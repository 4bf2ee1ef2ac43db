"""
Ledger service dependencies for FastAPI routes.
"""
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from flowcredits.database import get_db
from flowcredits.services.alert_service import AlertDispatcher, get_alert_dispatcher
from flowcredits.services.credit_service import CreditService
from flowcredits.services.tenant_lock import TenantLockRegistry, tenant_locks


def get_tenant_locks() -> TenantLockRegistry:
    """Process-wide lock registry; overridden in tests."""
    return tenant_locks


async def get_credit_service(
    db: AsyncSession = Depends(get_db),
    locks: TenantLockRegistry = Depends(get_tenant_locks),
    dispatcher: AlertDispatcher = Depends(get_alert_dispatcher),
) -> CreditService:
    return CreditService(db, locks=locks, dispatcher=dispatcher)
