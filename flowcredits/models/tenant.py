"""
Tenant model.

Local mirror of the tenant registry: identity, status and the webhook used
for balance alert notifications.
"""
import uuid
import enum
from sqlalchemy import String, Text, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from flowcredits.models.base import Base, TimestampMixin


class TenantStatus(str, enum.Enum):
    """Tenant lifecycle status."""
    ACTIVE = "active"
    SUSPENDED = "suspended"


class Tenant(Base, TimestampMixin):
    """
    Tenant model representing a customer account.

    Every ledger row is scoped by the tenant id; ledger tables reference it
    without a foreign key so history outlives registry changes.
    """
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[TenantStatus] = mapped_column(
        SQLEnum(TenantStatus, native_enum=False),
        nullable=False,
        default=TenantStatus.ACTIVE
    )
    webhook_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    webhook_secret: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self):
        return f"<Tenant(id={self.id}, name={self.name}, status={self.status})>"
