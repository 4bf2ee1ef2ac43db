"""
Payment model.

A payment is the money side of a purchase. Its status is driven by the
payment gateway callback; the linked purchase transaction only counts
towards the balance once the payment is completed.
"""
import uuid
import enum
from datetime import datetime
from sqlalchemy import BigInteger, DateTime, Integer, String, Text, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from flowcredits.models.base import Base, TimestampMixin


class PaymentStatus(str, enum.Enum):
    """Payment status enum."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, enum.Enum):
    """Accepted payment methods."""
    CREDIT_CARD = "credit_card"
    BANK_TRANSFER = "bank_transfer"
    INVOICE = "invoice"
    PURCHASE_ORDER = "purchase_order"
    STRIPE = "stripe"
    PAYPAL = "paypal"
    SEPA = "sepa"
    WIRE = "wire"


class PaymentInitiator(str, enum.Enum):
    """Who started the purchase."""
    TENANT = "tenant"
    AUTO_REPLENISH = "auto_replenish"


class Payment(Base, TimestampMixin):
    """Payment record for a credit purchase."""
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    credits: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    method: Mapped[PaymentMethod] = mapped_column(
        SQLEnum(PaymentMethod, native_enum=False),
        nullable=False
    )
    status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(PaymentStatus, native_enum=False),
        nullable=False,
        default=PaymentStatus.PENDING,
        index=True
    )
    initiated_by: Mapped[PaymentInitiator] = mapped_column(
        SQLEnum(PaymentInitiator, native_enum=False),
        nullable=False,
        default=PaymentInitiator.TENANT
    )
    gateway_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<Payment(id={self.id}, tenant_id={self.tenant_id}, status={self.status})>"
