"""
Reservation model.

A provisional hold on credits while a workflow runs. Closed exactly once:
Reserved -> Consumed or Reserved -> Released.
"""
import uuid
import enum
import secrets
from datetime import datetime
from sqlalchemy import BigInteger, DateTime, Integer, String, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from flowcredits.models.base import Base, TimestampMixin


class ReservationState(str, enum.Enum):
    """Reservation state enum."""
    RESERVED = "reserved"
    CONSUMED = "consumed"
    RELEASED = "released"


def new_token() -> str:
    return f"rsv_{secrets.token_urlsafe(24)}"


class Reservation(Base, TimestampMixin):
    """Credit reservation held by one workflow."""
    __tablename__ = "reservations"
    __table_args__ = (
        UniqueConstraint("tenant_id", "workflow_id", name="uq_reservations_tenant_workflow"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )
    token: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, default=new_token)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    workflow_id: Mapped[str] = mapped_column(String(64), nullable=False)
    workflow_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    credits_reserved: Mapped[int] = mapped_column(Integer, nullable=False)
    rate_locked_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    state: Mapped[ReservationState] = mapped_column(
        SQLEnum(ReservationState, native_enum=False),
        nullable=False,
        default=ReservationState.RESERVED,
        index=True
    )
    usage_transaction_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    release_transaction_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<Reservation(token={self.token}, workflow_id={self.workflow_id}, state={self.state})>"
