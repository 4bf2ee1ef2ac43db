"""
Per-tenant critical section.

Serialises balance check-and-mutate sequences for one tenant inside this
process. Cross-process safety comes from the row lock and the balance
version column; this lock keeps contention off the database.
"""
import asyncio
import weakref
from contextlib import asynccontextmanager

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from flowcredits.config import settings
from flowcredits.errors import Busy, ConcurrentModification
from flowcredits.logging_config import get_logger
from flowcredits.routes.metrics import track_ledger_busy


class TenantLockRegistry:
    """One asyncio.Lock per tenant, dropped once nobody references it."""

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[tenant_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, tenant_id: str):
        """
        Hold the tenant's critical section.

        Raises:
            Busy: the lock was not acquired within the timeout
        """
        timeout = settings.TENANT_LOCK_TIMEOUT_SECONDS if self.timeout is None else self.timeout
        lock = self._lock_for(tenant_id)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError:
            track_ledger_busy(tenant_id)
            get_logger(tenant_id=tenant_id).warning("tenant_busy", timeout_seconds=timeout)
            raise Busy(
                "Tenant ledger is busy, retry shortly",
                tenant_id=tenant_id,
            ) from None
        try:
            yield
        finally:
            lock.release()

    @asynccontextmanager
    async def transaction(self, db: AsyncSession, tenant_id: str):
        """
        Hold the critical section and commit the session on exit.

        Anything raised inside the block rolls the session back, so the
        append and the balance update land together or not at all.

        Raises:
            Busy: the lock was not acquired within the timeout
            ConcurrentModification: another writer changed the balance first
        """
        async with self.hold(tenant_id):
            try:
                yield
                await db.commit()
            except (IntegrityError, StaleDataError) as exc:
                await db.rollback()
                get_logger(tenant_id=tenant_id).warning(
                    "concurrent_modification",
                    error=exc.__class__.__name__,
                )
                raise ConcurrentModification(
                    "Tenant balance was modified concurrently, retry the operation",
                    tenant_id=tenant_id,
                ) from exc
            except Exception:
                await db.rollback()
                raise

    def is_locked(self, tenant_id: str) -> bool:
        lock = self._locks.get(tenant_id)
        return bool(lock and lock.locked())


# Singleton instance
tenant_locks = TenantLockRegistry()
