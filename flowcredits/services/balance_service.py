"""
Balance aggregation and replay.

SECURITY: All queries MUST include tenant_id filter.
Failure to do so will result in data leakage between tenants.

The incremental path (`apply`) and the recovery path (`rebuild`) run the
same `apply_transaction` function over the same transactions, so a rebuilt
snapshot must equal the stored aggregate. `reconcile` checks exactly that.
"""
from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from flowcredits.config import settings
from flowcredits.errors import DataIntegrityViolation
from flowcredits.logging_config import get_logger
from flowcredits.models.base import utcnow
from flowcredits.models.credit import ClientBalance, CreditTransaction, TransactionType
from flowcredits.models.payment import Payment, PaymentStatus
from flowcredits.models.reservation import Reservation, ReservationState
from flowcredits.routes.metrics import track_balance_drift
from flowcredits.sentry_config import capture_message
from flowcredits.services.ledger_store import LedgerStore
from flowcredits.services.pricing import div_round_half_up


# Payment states in which a purchase has been recognised at some point.
RECOGNISED_PAYMENT_STATES = {PaymentStatus.COMPLETED, PaymentStatus.REFUNDED}


@dataclass
class BalanceTotals:
    """Mutable accumulator used while replaying the log."""
    total_purchased: int = 0
    total_used: int = 0
    total_refunded: int = 0
    total_adjustments: int = 0
    total_expired: int = 0
    reserved_credits: int = 0
    total_spent_minor: int = 0
    total_refunded_amount_minor: int = 0
    last_sequence: int = 0


@dataclass(frozen=True)
class BalanceSnapshot:
    """Comparable, serialisable view of a tenant balance."""
    tenant_id: str
    total_purchased: int = 0
    total_used: int = 0
    total_refunded: int = 0
    total_adjustments: int = 0
    total_expired: int = 0
    reserved_credits: int = 0
    total_spent_minor: int = 0
    total_refunded_amount_minor: int = 0
    last_sequence: int = 0

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

    def to_dict(self) -> dict:
        return asdict(self)

    def canonical_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":")).encode()

    def fingerprint(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


@dataclass
class ReconciliationReport:
    tenant_id: str
    stored: BalanceSnapshot
    rebuilt: BalanceSnapshot
    drift: dict[str, dict[str, int]] = field(default_factory=dict)

    @property
    def in_sync(self) -> bool:
        return not self.drift

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "in_sync": self.in_sync,
            "stored": self.stored.to_dict(),
            "rebuilt": self.rebuilt.to_dict(),
            "drift": self.drift,
        }


# ============================================
# Pure aggregation
# ============================================

def credit_purchase(target, txn: CreditTransaction) -> None:
    """Recognise a purchase whose payment has completed."""
    target.total_purchased += txn.credit_amount
    target.total_spent_minor += txn.total_amount_minor


def apply_transaction(target, txn: CreditTransaction, purchase_effective: bool) -> None:
    """
    Fold one transaction into a balance-like target.

    `target` is either a ClientBalance row or a BalanceTotals accumulator.
    Purchases only move totals when their payment is effective.
    """
    txn_type = TransactionType(txn.type)
    amount = txn.credit_amount

    if txn_type == TransactionType.PURCHASE:
        if purchase_effective:
            credit_purchase(target, txn)
    elif txn_type == TransactionType.BONUS:
        # Bonus credits count as a free purchase
        target.total_purchased += amount
    elif txn_type == TransactionType.USAGE:
        target.total_used += -amount
    elif txn_type == TransactionType.REFUND:
        target.total_refunded += amount
        target.total_refunded_amount_minor += txn.total_amount_minor
    elif txn_type == TransactionType.ADJUSTMENT:
        target.total_adjustments += amount
    elif txn_type == TransactionType.EXPIRATION:
        target.total_expired += -amount

    target.last_sequence = txn.sequence


def check_invariants(target, tenant_id: str) -> None:
    """
    Raises:
        DataIntegrityViolation: a total or the available balance is negative
    """
    for name in ("total_purchased", "total_used", "total_refunded", "total_expired", "reserved_credits"):
        if getattr(target, name) < 0:
            raise DataIntegrityViolation(f"{name} would become negative", tenant_id=tenant_id)
    current = (
        target.total_purchased
        + target.total_adjustments
        - target.total_used
        - target.total_refunded
        - target.total_expired
    )
    if current - target.reserved_credits < 0:
        raise DataIntegrityViolation(
            "Available credits would become negative",
            tenant_id=tenant_id,
            available=current - target.reserved_credits,
        )


def average_credit_price_minor(target) -> int:
    """Weighted average price paid per credit; base price before any purchase."""
    if target.total_purchased > 0:
        return div_round_half_up(target.total_spent_minor, target.total_purchased)
    return settings.BASE_PRICE_MINOR


def snapshot_of(tenant_id: str, target) -> BalanceSnapshot:
    return BalanceSnapshot(
        tenant_id=tenant_id,
        total_purchased=target.total_purchased,
        total_used=target.total_used,
        total_refunded=target.total_refunded,
        total_adjustments=target.total_adjustments,
        total_expired=target.total_expired,
        reserved_credits=target.reserved_credits,
        total_spent_minor=target.total_spent_minor,
        total_refunded_amount_minor=target.total_refunded_amount_minor,
        last_sequence=target.last_sequence,
    )


def new_balance(tenant_id: str) -> ClientBalance:
    """A zeroed balance row carrying the default alert configuration."""
    return ClientBalance(
        tenant_id=tenant_id,
        total_purchased=0,
        total_used=0,
        total_refunded=0,
        total_adjustments=0,
        total_expired=0,
        reserved_credits=0,
        total_spent_minor=0,
        total_refunded_amount_minor=0,
        last_sequence=0,
        currency=settings.DEFAULT_CURRENCY,
        low_balance_threshold=settings.DEFAULT_LOW_BALANCE_THRESHOLD,
        critical_balance_threshold=settings.DEFAULT_CRITICAL_BALANCE_THRESHOLD,
        auto_replenish_enabled=False,
        auto_replenish_threshold=settings.DEFAULT_AUTO_REPLENISH_THRESHOLD,
        auto_replenish_amount=settings.DEFAULT_AUTO_REPLENISH_AMOUNT,
    )


# ============================================
# Aggregator
# ============================================

class BalanceAggregator:
    """Maintains and re-derives per-tenant balances."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.store = LedgerStore(db)

    async def get(self, tenant_id: str) -> ClientBalance | None:
        stmt = select(ClientBalance).where(ClientBalance.tenant_id == tenant_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_for_update(self, tenant_id: str) -> ClientBalance | None:
        """Load the balance row locked, bypassing any stale identity-map copy."""
        stmt = (
            select(ClientBalance)
            .where(ClientBalance.tenant_id == tenant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create_for_update(self, tenant_id: str) -> ClientBalance:
        balance = await self.get_for_update(tenant_id)
        if balance is None:
            balance = new_balance(tenant_id)
            self.db.add(balance)
            await self.db.flush()
        return balance

    def apply(
        self,
        balance: ClientBalance,
        txn: CreditTransaction,
        purchase_effective: bool = False,
    ) -> ClientBalance:
        """
        Fold a freshly appended transaction into the stored balance.

        Must run in the same database transaction as the append.
        """
        if txn.sequence != balance.last_sequence + 1:
            raise DataIntegrityViolation(
                "Transaction sequence is not contiguous with the balance",
                tenant_id=balance.tenant_id,
                sequence=txn.sequence,
                last_sequence=balance.last_sequence,
            )
        apply_transaction(balance, txn, purchase_effective=purchase_effective)
        check_invariants(balance, balance.tenant_id)

        txn_type = TransactionType(txn.type)
        if txn_type == TransactionType.USAGE:
            balance.last_usage_at = utcnow()
        elif txn_type == TransactionType.PURCHASE and purchase_effective:
            balance.last_purchase_at = utcnow()
        return balance

    def recognize_purchase(self, balance: ClientBalance, txn: CreditTransaction) -> ClientBalance:
        """Count an already appended purchase once its payment completes."""
        if TransactionType(txn.type) != TransactionType.PURCHASE:
            raise DataIntegrityViolation("Only purchases can be recognised", tenant_id=balance.tenant_id)
        credit_purchase(balance, txn)
        check_invariants(balance, balance.tenant_id)
        balance.last_purchase_at = utcnow()
        return balance

    def adjust_reserved(self, balance: ClientBalance, delta: int) -> ClientBalance:
        balance.reserved_credits += delta
        check_invariants(balance, balance.tenant_id)
        return balance

    async def snapshot(self, tenant_id: str) -> BalanceSnapshot:
        balance = await self.get(tenant_id)
        if balance is None:
            return BalanceSnapshot(tenant_id=tenant_id)
        return snapshot_of(tenant_id, balance)

    async def rebuild(self, tenant_id: str) -> BalanceSnapshot:
        """
        Re-derive the balance by replaying the full transaction log.

        Purchases count when their payment was recognised; reserved credits
        come from reservations still open.
        """
        transactions = await self.store.replay(tenant_id)

        payments_stmt = select(Payment.id, Payment.status).where(Payment.tenant_id == tenant_id)
        payment_rows = await self.db.execute(payments_stmt)
        payment_status = {row.id: PaymentStatus(row.status) for row in payment_rows}

        totals = BalanceTotals()
        for txn in transactions:
            effective = payment_status.get(txn.payment_id) in RECOGNISED_PAYMENT_STATES
            apply_transaction(totals, txn, purchase_effective=effective)

        reserved_stmt = select(func.coalesce(func.sum(Reservation.credits_reserved), 0)).where(
            Reservation.tenant_id == tenant_id,
            Reservation.state == ReservationState.RESERVED,
        )
        totals.reserved_credits = int((await self.db.execute(reserved_stmt)).scalar() or 0)

        return snapshot_of(tenant_id, totals)

    async def reconcile(self, tenant_id: str) -> ReconciliationReport:
        """
        Compare the stored aggregate with a full replay and flag drift.

        The stored row is never rewritten here; drift is logged, counted
        and reported to Sentry for manual investigation.
        """
        stored = await self.snapshot(tenant_id)
        rebuilt = await self.rebuild(tenant_id)
        report = ReconciliationReport(tenant_id=tenant_id, stored=stored, rebuilt=rebuilt)

        if stored.canonical_bytes() != rebuilt.canonical_bytes():
            stored_values = stored.to_dict()
            for key, value in rebuilt.to_dict().items():
                if stored_values[key] != value:
                    report.drift[key] = {"stored": stored_values[key], "rebuilt": value}

            track_balance_drift(tenant_id)
            get_logger(tenant_id=tenant_id).error("balance_drift_detected", drift=report.drift)
            capture_message(f"Balance drift detected for tenant {tenant_id}", level="error")

        return report

    async def tenant_ids(self) -> list[str]:
        """All tenants that have a balance row (used by the reconciliation job)."""
        result = await self.db.execute(select(ClientBalance.tenant_id).order_by(ClientBalance.tenant_id))
        return list(result.scalars().all())
