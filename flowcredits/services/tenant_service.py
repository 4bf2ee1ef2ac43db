"""
SECURITY: All queries MUST include tenant_id filter.
Failure to do so will result in data leakage between tenants.
"""
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from flowcredits.errors import UnknownTenant
from flowcredits.models.tenant import Tenant, TenantStatus


class TenantService:
    """Service for the local tenant registry mirror."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, tenant_id: str) -> Tenant | None:
        """
        Get tenant by ID.

        Args:
            tenant_id: Tenant UUID

        Returns:
            Tenant or None if not found
        """
        stmt = select(Tenant).where(Tenant.id == tenant_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def require_active(self, tenant_id: str) -> Tenant:
        """
        Get an active tenant or fail.

        Raises:
            UnknownTenant: tenant does not exist or is suspended
        """
        tenant = await self.get_by_id(tenant_id)
        if tenant is None:
            raise UnknownTenant("Tenant not found", tenant_id=tenant_id)
        if tenant.status != TenantStatus.ACTIVE:
            raise UnknownTenant("Tenant is not active", tenant_id=tenant_id, status=tenant.status.value)
        return tenant

    async def create(self, name: str, tenant_id: str | None = None) -> Tenant:
        """
        Register a tenant.

        Args:
            name: Display name
            tenant_id: Identifier from the upstream registry (generated if omitted)

        Returns:
            Newly created Tenant
        """
        tenant = Tenant(name=name)
        if tenant_id:
            tenant.id = tenant_id
        self.db.add(tenant)
        await self.db.commit()
        await self.db.refresh(tenant)
        return tenant

    async def set_webhook(self, tenant_id: str, url: str | None, secret: str | None) -> Tenant:
        tenant = await self.require_active(tenant_id)
        tenant.webhook_url = url
        tenant.webhook_secret = secret
        await self.db.commit()
        return tenant
