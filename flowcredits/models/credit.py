"""
Credit ledger models.

CreditTransaction is the append-only log; ClientBalance is the per-tenant
aggregate maintained in the same database transaction as every append.
All money columns hold integer minor currency units.
"""
import uuid
import enum
from datetime import datetime
from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column
from flowcredits.models.base import Base, CreatedAtMixin, TimestampMixin


class TransactionType(str, enum.Enum):
    """Credit transaction type enum."""
    PURCHASE = "purchase"
    USAGE = "usage"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"
    BONUS = "bonus"
    EXPIRATION = "expiration"


class WorkflowType(str, enum.Enum):
    """Workflow kinds that consume credits."""
    ONBOARDING = "onboarding"
    OFFBOARDING = "offboarding"
    ROLE_CHANGE = "role_change"
    INTERNAL_TRANSFER = "internal_transfer"


class CreditTransaction(Base, CreatedAtMixin):
    """
    Immutable credit transaction.

    Sign convention: purchase, bonus and refund are positive; usage and
    expiration are negative; adjustment may be either sign.
    `sequence` is a per-tenant monotonic position used for replay.
    """
    __tablename__ = "credit_transactions"
    __table_args__ = (
        UniqueConstraint("tenant_id", "sequence", name="uq_credit_transactions_tenant_sequence"),
        Index("ix_credit_transactions_tenant_type_created", "tenant_id", "type", "created_at"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SQLEnum(TransactionType, native_enum=False),
        nullable=False
    )
    credit_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    # Bulk pricing context (purchases only)
    pricing_tier: Mapped[str | None] = mapped_column(String(20), nullable=True)
    base_price_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    discount_pct: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discount_amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    payment_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("payments.id"),
        nullable=True,
        index=True
    )
    workflow_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    workflow_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    reservation_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    description: Mapped[str] = mapped_column(Text, nullable=False)
    created_by: Mapped[str] = mapped_column(String(100), nullable=False, default="ledger")

    def __repr__(self):
        return (
            f"<CreditTransaction(id={self.id}, tenant_id={self.tenant_id}, seq={self.sequence}, "
            f"type={self.type}, credits={self.credit_amount})>"
        )


class ClientBalance(Base, TimestampMixin):
    """
    Per-tenant balance aggregate and alert configuration.

    Created lazily on the first transaction. `version` is the optimistic
    concurrency counter; `last_sequence` is the last log position applied.
    """
    __tablename__ = "client_balances"
    __table_args__ = (
        CheckConstraint(
            "total_purchased >= 0 AND total_used >= 0 AND total_refunded >= 0 "
            "AND total_expired >= 0 AND reserved_credits >= 0",
            name="ck_client_balances_non_negative",
        ),
        CheckConstraint(
            "total_purchased + total_adjustments - total_used - total_refunded "
            "- total_expired - reserved_credits >= 0",
            name="ck_client_balances_available_non_negative",
        ),
        CheckConstraint(
            "critical_balance_threshold >= 0 AND low_balance_threshold >= critical_balance_threshold "
            "AND auto_replenish_threshold >= 0 AND auto_replenish_amount > 0",
            name="ck_client_balances_thresholds",
        ),
    )

    tenant_id: Mapped[str] = mapped_column(String(36), primary_key=True)

    total_purchased: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_refunded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_adjustments: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_expired: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    total_spent_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_refunded_amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    last_sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    # Alerting and automation
    low_balance_threshold: Mapped[int] = mapped_column(Integer, nullable=False)
    critical_balance_threshold: Mapped[int] = mapped_column(Integer, nullable=False)
    auto_replenish_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_replenish_threshold: Mapped[int] = mapped_column(Integer, nullable=False)
    auto_replenish_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    auto_replenish_payment_method: Mapped[str | None] = mapped_column(String(30), nullable=True)

    last_purchase_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_usage_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def current_balance(self) -> int:
        return (
            self.total_purchased
            + self.total_adjustments
            - self.total_used
            - self.total_refunded
            - self.total_expired
        )

    @property
    def available_credits(self) -> int:
        return self.current_balance - self.reserved_credits

    def __repr__(self):
        return (
            f"<ClientBalance(tenant_id={self.tenant_id}, current={self.current_balance}, "
            f"reserved={self.reserved_credits}, version={self.version})>"
        )
