"""
SECURITY: All queries MUST include tenant_id filter.
Failure to do so will result in data leakage between tenants.

Ledger operations exposed to routes and the worker. Each mutation runs in
the tenant critical section (append + balance update commit together);
alert evaluation and dispatch happen after the commit, outside the lock.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from flowcredits.config import settings
from flowcredits.errors import (
    DataIntegrityViolation,
    InsufficientCredits,
    InvalidCurrency,
    InvalidQuantity,
    InvalidSettings,
    InvalidState,
    PaymentFailed,
    PaymentNotFound,
)
from flowcredits.logging_config import get_logger
from flowcredits.models.base import utcnow
from flowcredits.models.credit import ClientBalance, CreditTransaction, TransactionType, WorkflowType
from flowcredits.models.payment import Payment, PaymentInitiator, PaymentMethod, PaymentStatus
from flowcredits.models.reservation import Reservation
from flowcredits.routes.metrics import (
    track_credits_purchased,
    track_payment,
    update_available_credits,
)
from flowcredits.sentry_config import capture_exception
from flowcredits.services.alert_service import (
    AlertDispatcher,
    BalanceEvaluation,
    alert_dispatcher,
    evaluate_balance,
    validate_alert_settings,
)
from flowcredits.services.balance_service import (
    BalanceAggregator,
    BalanceSnapshot,
    ReconciliationReport,
    average_credit_price_minor,
    new_balance,
)
from flowcredits.services.ledger_store import LedgerStore
from flowcredits.services.pricing import PriceQuote, format_minor, price_per_unit, validate_quantity
from flowcredits.services.reservation_service import ReservationManager, ReservationOutcome
from flowcredits.services.tenant_lock import TenantLockRegistry, tenant_locks
from flowcredits.services.tenant_service import TenantService


@dataclass
class PurchaseResult:
    payment: Payment
    transaction: CreditTransaction
    quote: PriceQuote

    def to_dict(self) -> dict:
        return {
            "payment_id": self.payment.id,
            "transaction_id": self.transaction.id,
            "status": self.payment.status.value,
            "credits": self.quote.quantity,
            "pricing_tier": self.quote.tier,
            "base_price": format_minor(self.quote.base_price_minor),
            "unit_price": format_minor(self.quote.unit_price_minor),
            "discount_pct": self.quote.discount_pct,
            "discount_amount": format_minor(self.quote.discount_amount_minor),
            "total_amount": format_minor(self.quote.total_amount_minor),
            "currency": self.payment.currency,
            "payment_method": self.payment.method.value,
        }


@dataclass
class PaymentResult:
    payment: Payment
    balance: ClientBalance | None
    changed: bool
    transaction: CreditTransaction | None = None

    def to_dict(self) -> dict:
        data = {
            "payment_id": self.payment.id,
            "status": self.payment.status.value,
            "credits": self.payment.credits,
            "amount": format_minor(self.payment.amount_minor),
            "currency": self.payment.currency,
            "changed": self.changed,
        }
        if self.transaction is not None:
            data["transaction_id"] = self.transaction.id
        if self.balance is not None:
            data["available_credits"] = self.balance.available_credits
        return data


@dataclass
class BalanceReport:
    tenant_id: str
    balance: ClientBalance
    evaluation: BalanceEvaluation

    def to_dict(self) -> dict:
        b = self.balance
        return {
            "tenant_id": self.tenant_id,
            "available_credits": b.available_credits,
            "current_balance": b.current_balance,
            "reserved_credits": b.reserved_credits,
            "total_purchased": b.total_purchased,
            "total_used": b.total_used,
            "total_refunded": b.total_refunded,
            "total_adjustments": b.total_adjustments,
            "total_expired": b.total_expired,
            "total_spent": format_minor(b.total_spent_minor),
            "total_refunded_amount": format_minor(b.total_refunded_amount_minor),
            "average_credit_price": format_minor(average_credit_price_minor(b)),
            "currency": b.currency,
            "status": self.evaluation.status.value,
            "alerts": [alert.to_dict() for alert in self.evaluation.alerts],
            "settings": {
                "low_balance_threshold": b.low_balance_threshold,
                "critical_balance_threshold": b.critical_balance_threshold,
                "auto_replenish_enabled": b.auto_replenish_enabled,
                "auto_replenish_threshold": b.auto_replenish_threshold,
                "auto_replenish_amount": b.auto_replenish_amount,
                "auto_replenish_payment_method": b.auto_replenish_payment_method,
            },
            "last_purchase_at": b.last_purchase_at.isoformat() if b.last_purchase_at else None,
            "last_usage_at": b.last_usage_at.isoformat() if b.last_usage_at else None,
        }


def _payment_method(value) -> PaymentMethod:
    try:
        return PaymentMethod(value)
    except ValueError:
        raise InvalidSettings("Unknown payment method", payment_method=value) from None


def _currency(value: str) -> str:
    currency = value.upper()
    if currency not in settings.SUPPORTED_CURRENCIES:
        raise InvalidCurrency(
            f"Currency must be one of {', '.join(settings.SUPPORTED_CURRENCIES)}",
            currency=value,
        )
    return currency


def _ledger_currency(balance: ClientBalance, currency: str | None) -> str:
    """
    Money totals are kept in one currency per tenant. It can only change
    before the first ledger entry.
    """
    if currency is None or currency == balance.currency:
        return balance.currency
    if balance.last_sequence > 0:
        raise InvalidCurrency(
            f"Tenant ledger is kept in {balance.currency}",
            tenant_id=balance.tenant_id,
            currency=currency,
            ledger_currency=balance.currency,
        )
    balance.currency = currency
    return currency


def _as_utc(value: datetime | None) -> datetime | None:
    # Query parameters without an offset are taken as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class CreditService:
    """Service for tenant credit purchases, usage and balances."""

    def __init__(
        self,
        db: AsyncSession,
        locks: TenantLockRegistry | None = None,
        dispatcher: AlertDispatcher | None = None,
    ):
        self.db = db
        self.locks = locks or tenant_locks
        self.dispatcher = dispatcher or alert_dispatcher
        self.tenants = TenantService(db)
        self.store = LedgerStore(db)
        self.aggregator = BalanceAggregator(db)
        self.reservations = ReservationManager(db, self.locks, self.aggregator)

    # ============================================
    # Post-commit hooks
    # ============================================

    async def _after_mutation(self, tenant_id: str, balance: ClientBalance) -> BalanceEvaluation:
        """Evaluate alerts on the committed balance and hand them off."""
        update_available_credits(tenant_id, balance.available_credits)
        evaluation = evaluate_balance(tenant_id, balance)
        try:
            await self.dispatcher.dispatch(evaluation)
        except Exception as exc:
            # The mutation is already committed; alerts are re-evaluated on the next one
            get_logger(tenant_id=tenant_id).error("alert_dispatch_failed", error=str(exc))
            capture_exception(exc)
        return evaluation

    # ============================================
    # Purchases & payments
    # ============================================

    async def purchase_credits(
        self,
        tenant_id: str,
        quantity: int,
        payment_method: PaymentMethod | str,
        currency: str | None = None,
        initiated_by: PaymentInitiator = PaymentInitiator.TENANT,
        reference: str | None = None,
        created_by: str = "tenant",
    ) -> PurchaseResult:
        """
        Create a pending payment and its purchase transaction.

        The balance does not change until the payment is confirmed.

        Raises:
            InvalidQuantity, InvalidCurrency: rejected at the boundary
            InvalidCurrency: currency differs from the tenant's ledger currency
            UnknownTenant: tenant missing or suspended
        """
        quote = price_per_unit(quantity)
        method = _payment_method(payment_method)
        if currency is not None:
            currency = _currency(currency)
        await self.tenants.require_active(tenant_id)

        async with self.locks.transaction(self.db, tenant_id):
            balance = await self.aggregator.get_or_create_for_update(tenant_id)
            result = await self._record_purchase(
                balance,
                quote,
                method,
                currency,
                initiated_by=initiated_by,
                reference=reference,
                created_by=created_by,
            )

        self._purchase_started(result, initiated_by)
        return result

    async def _record_purchase(
        self,
        balance: ClientBalance,
        quote: PriceQuote,
        method: PaymentMethod,
        currency: str | None,
        initiated_by: PaymentInitiator,
        reference: str | None,
        created_by: str,
    ) -> PurchaseResult:
        """Append the pending purchase. Caller holds the tenant critical section."""
        tenant_id = balance.tenant_id
        currency = _ledger_currency(balance, currency)

        payment = Payment(
            tenant_id=tenant_id,
            credits=quote.quantity,
            amount_minor=quote.total_amount_minor,
            currency=currency,
            method=method,
            status=PaymentStatus.PENDING,
            initiated_by=initiated_by,
            reference=reference,
            description=f"Purchase of {quote.quantity} credits ({quote.tier})",
        )
        self.db.add(payment)
        await self.db.flush()

        transaction = CreditTransaction(
            tenant_id=tenant_id,
            type=TransactionType.PURCHASE,
            credit_amount=quote.quantity,
            unit_price_minor=quote.unit_price_minor,
            total_amount_minor=quote.total_amount_minor,
            currency=currency,
            pricing_tier=quote.tier,
            base_price_minor=quote.base_price_minor,
            discount_pct=quote.discount_pct,
            discount_amount_minor=quote.discount_amount_minor,
            payment_id=payment.id,
            description=payment.description,
            created_by=created_by,
        )
        await self.store.append(transaction, balance.last_sequence + 1)
        self.aggregator.apply(balance, transaction, purchase_effective=False)
        return PurchaseResult(payment=payment, transaction=transaction, quote=quote)

    def _purchase_started(self, result: PurchaseResult, initiated_by: PaymentInitiator) -> None:
        track_payment(PaymentStatus.PENDING.value)
        get_logger(tenant_id=result.payment.tenant_id, payment_id=result.payment.id).info(
            "credits_purchased",
            credits=result.quote.quantity,
            pricing_tier=result.quote.tier,
            unit_price_minor=result.quote.unit_price_minor,
            total_amount_minor=result.quote.total_amount_minor,
            currency=result.payment.currency,
            initiated_by=initiated_by.value,
        )

    async def _get_payment(self, tenant_id: str, payment_id: str, for_update: bool = False) -> Payment:
        stmt = select(Payment).where(Payment.tenant_id == tenant_id, Payment.id == payment_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        payment = result.scalar_one_or_none()
        if payment is None:
            raise PaymentNotFound("Payment not found", tenant_id=tenant_id, payment_id=payment_id)
        return payment

    async def get_payment(self, tenant_id: str, payment_id: str) -> Payment:
        return await self._get_payment(tenant_id, payment_id)

    async def resolve_payment_tenant(self, payment_id: str) -> str:
        """
        Find the owning tenant of a payment.

        Only used for gateway callbacks, which are authenticated by signature
        and carry no tenant identity.
        """
        stmt = select(Payment.tenant_id).where(Payment.id == payment_id)
        tenant_id = (await self.db.execute(stmt)).scalar_one_or_none()
        if tenant_id is None:
            raise PaymentNotFound("Payment not found", payment_id=payment_id)
        return tenant_id

    async def confirm_payment(
        self,
        payment_id: str,
        status: PaymentStatus | str,
        gateway_reference: str | None = None,
        failure_reason: str | None = None,
    ) -> PaymentResult:
        """
        Apply the gateway outcome for a pending payment.

        Completion recognises the purchase in the balance. Repeating the
        same outcome is a no-op; a conflicting outcome is rejected.

        Raises:
            PaymentNotFound: unknown payment
            InvalidState: outcome conflicts with the recorded status
        """
        status = PaymentStatus(status)
        if status not in (PaymentStatus.COMPLETED, PaymentStatus.FAILED):
            raise InvalidState("Gateway outcome must be completed or failed", payment_id=payment_id)

        tenant_id = await self.resolve_payment_tenant(payment_id)
        log = get_logger(tenant_id=tenant_id, payment_id=payment_id)

        async with self.locks.transaction(self.db, tenant_id):
            payment = await self._get_payment(tenant_id, payment_id, for_update=True)
            current = PaymentStatus(payment.status)

            already_applied = current == status or (
                status == PaymentStatus.COMPLETED and current == PaymentStatus.REFUNDED
            )
            if already_applied:
                log.info("payment_callback_replayed", status=status.value)
                balance = await self.aggregator.get(tenant_id)
                return PaymentResult(payment=payment, balance=balance, changed=False)
            if current != PaymentStatus.PENDING:
                raise InvalidState(
                    f"Payment is already {current.value}",
                    tenant_id=tenant_id,
                    payment_id=payment_id,
                    requested=status.value,
                )

            if gateway_reference:
                payment.gateway_reference = gateway_reference
            balance = await self.aggregator.get_for_update(tenant_id)
            transaction = None

            if status == PaymentStatus.COMPLETED:
                transaction = await self.store.find_by_payment(tenant_id, payment_id, TransactionType.PURCHASE)
                if transaction is None or balance is None:
                    raise DataIntegrityViolation(
                        "Payment has no purchase transaction",
                        tenant_id=tenant_id,
                        payment_id=payment_id,
                    )
                self.aggregator.recognize_purchase(balance, transaction)
                payment.status = PaymentStatus.COMPLETED
                payment.completed_at = utcnow()
            else:
                payment.status = PaymentStatus.FAILED
                payment.failed_at = utcnow()
                payment.failure_reason = failure_reason or "Payment declined by gateway"

        track_payment(status.value)
        if status == PaymentStatus.COMPLETED:
            track_credits_purchased(payment.currency, payment.credits)
            log.info(
                "payment_confirmed",
                credits=payment.credits,
                amount_minor=payment.amount_minor,
                available=balance.available_credits,
            )
            await self._after_mutation(tenant_id, balance)
        else:
            log.warning("payment_failed", reason=payment.failure_reason)

        return PaymentResult(payment=payment, balance=balance, changed=True, transaction=transaction)

    async def refund_payment(
        self,
        tenant_id: str,
        payment_id: str,
        reason: str | None = None,
        created_by: str = "admin",
    ) -> PaymentResult:
        """
        Refund a completed purchase at the unit price it was bought at.

        The purchased credits must still be available. Refunding twice
        returns the original refund transaction.

        Raises:
            PaymentNotFound: unknown payment
            PaymentFailed: the payment never completed
            InvalidState: the payment is still pending
            InsufficientCredits: purchased credits are no longer available
        """
        log = get_logger(tenant_id=tenant_id, payment_id=payment_id)

        async with self.locks.transaction(self.db, tenant_id):
            payment = await self._get_payment(tenant_id, payment_id, for_update=True)
            current = PaymentStatus(payment.status)

            if current == PaymentStatus.REFUNDED:
                existing = await self.store.find_by_payment(tenant_id, payment_id, TransactionType.REFUND)
                balance = await self.aggregator.get(tenant_id)
                return PaymentResult(payment=payment, balance=balance, changed=False, transaction=existing)
            if current == PaymentStatus.FAILED:
                raise PaymentFailed("Payment failed and cannot be refunded", tenant_id=tenant_id, payment_id=payment_id)
            if current == PaymentStatus.PENDING:
                raise InvalidState("Payment is still pending", tenant_id=tenant_id, payment_id=payment_id)

            purchase = await self.store.find_by_payment(tenant_id, payment_id, TransactionType.PURCHASE)
            balance = await self.aggregator.get_for_update(tenant_id)
            if purchase is None or balance is None:
                raise DataIntegrityViolation(
                    "Completed payment has no purchase transaction",
                    tenant_id=tenant_id,
                    payment_id=payment_id,
                )
            if balance.available_credits < payment.credits:
                raise InsufficientCredits(
                    available=balance.available_credits,
                    required=payment.credits,
                    tenant_id=tenant_id,
                    payment_id=payment_id,
                )

            refund = CreditTransaction(
                tenant_id=tenant_id,
                type=TransactionType.REFUND,
                credit_amount=payment.credits,
                unit_price_minor=purchase.unit_price_minor,
                total_amount_minor=payment.credits * purchase.unit_price_minor,
                currency=purchase.currency,
                payment_id=payment_id,
                description=reason or f"Refund of payment {payment_id}",
                created_by=created_by,
            )
            await self.store.append(refund, balance.last_sequence + 1)
            self.aggregator.apply(balance, refund)

            payment.status = PaymentStatus.REFUNDED
            payment.refunded_at = utcnow()

        track_payment(PaymentStatus.REFUNDED.value)
        log.info(
            "credits_refunded",
            credits=payment.credits,
            amount_minor=refund.total_amount_minor,
            available=balance.available_credits,
        )
        await self._after_mutation(tenant_id, balance)
        return PaymentResult(payment=payment, balance=balance, changed=True, transaction=refund)

    async def auto_replenish(
        self,
        tenant_id: str,
        quantity: int,
        payment_method: str,
        currency: str | None = None,
    ) -> PurchaseResult | None:
        """
        Start an auto-replenish purchase unless one is already in flight or
        the balance has recovered since the request was made.

        Both checks run in the critical section that creates the payment,
        so overlapping requests start at most one purchase.
        """
        quote = price_per_unit(quantity)
        method = _payment_method(payment_method)
        if currency is not None:
            currency = _currency(currency)
        log = get_logger(tenant_id=tenant_id)

        async with self.locks.transaction(self.db, tenant_id):
            balance = await self.aggregator.get_for_update(tenant_id)
            if balance is None or not balance.auto_replenish_enabled:
                log.info("auto_replenish_skipped", reason="auto-replenish disabled")
                return None
            if balance.available_credits > balance.auto_replenish_threshold:
                log.info("auto_replenish_skipped", reason="balance recovered", available=balance.available_credits)
                return None

            pending_stmt = select(func.count(Payment.id)).where(
                Payment.tenant_id == tenant_id,
                Payment.initiated_by == PaymentInitiator.AUTO_REPLENISH,
                Payment.status == PaymentStatus.PENDING,
            )
            if (await self.db.execute(pending_stmt)).scalar():
                log.info("auto_replenish_skipped", reason="pending auto-replenish payment")
                return None

            await self.tenants.require_active(tenant_id)
            result = await self._record_purchase(
                balance,
                quote,
                method,
                currency,
                initiated_by=PaymentInitiator.AUTO_REPLENISH,
                reference="auto-replenish",
                created_by="auto_replenish",
            )

        self._purchase_started(result, PaymentInitiator.AUTO_REPLENISH)
        return result

    # ============================================
    # Reservations
    # ============================================

    async def reserve(
        self,
        tenant_id: str,
        workflow_id: str,
        credits_needed: int,
        workflow_type: WorkflowType | None = None,
    ) -> ReservationOutcome:
        await self.tenants.require_active(tenant_id)
        outcome = await self.reservations.reserve(tenant_id, workflow_id, credits_needed, workflow_type)
        if outcome.changed:
            await self._after_mutation(tenant_id, outcome.balance)
        return outcome

    async def consume(self, tenant_id: str, token: str) -> ReservationOutcome:
        outcome = await self.reservations.consume(tenant_id, token)
        if outcome.changed:
            await self._after_mutation(tenant_id, outcome.balance)
        return outcome

    async def release(self, tenant_id: str, token: str) -> ReservationOutcome:
        outcome = await self.reservations.release(tenant_id, token)
        if outcome.changed:
            await self._after_mutation(tenant_id, outcome.balance)
        return outcome

    async def get_reservation(self, tenant_id: str, token: str) -> Reservation:
        return await self.reservations.get(tenant_id, token)

    # ============================================
    # Administrative entries
    # ============================================

    async def grant_bonus(self, tenant_id: str, credits: int, description: str, created_by: str = "admin") -> CreditTransaction:
        """Free credits; counted as purchased but not as money spent."""
        validate_quantity(credits)
        return await self._append_entry(tenant_id, TransactionType.BONUS, credits, description, created_by)

    async def adjust(self, tenant_id: str, credits: int, description: str, created_by: str = "admin") -> CreditTransaction:
        """Signed manual correction."""
        if isinstance(credits, bool) or not isinstance(credits, int) or credits == 0:
            raise InvalidQuantity("Adjustment must be a non-zero integer", quantity=credits)
        return await self._append_entry(tenant_id, TransactionType.ADJUSTMENT, credits, description, created_by)

    async def expire(self, tenant_id: str, credits: int, description: str, created_by: str = "admin") -> CreditTransaction:
        """Write off unused credits."""
        validate_quantity(credits)
        return await self._append_entry(tenant_id, TransactionType.EXPIRATION, -credits, description, created_by)

    async def _append_entry(
        self,
        tenant_id: str,
        txn_type: TransactionType,
        credit_amount: int,
        description: str,
        created_by: str,
    ) -> CreditTransaction:
        await self.tenants.require_active(tenant_id)

        async with self.locks.transaction(self.db, tenant_id):
            balance = await self.aggregator.get_or_create_for_update(tenant_id)
            if credit_amount < 0 and balance.available_credits < -credit_amount:
                raise InsufficientCredits(
                    available=balance.available_credits,
                    required=-credit_amount,
                    tenant_id=tenant_id,
                )
            transaction = CreditTransaction(
                tenant_id=tenant_id,
                type=txn_type,
                credit_amount=credit_amount,
                unit_price_minor=0,
                total_amount_minor=0,
                currency=balance.currency,
                description=description,
                created_by=created_by,
            )
            await self.store.append(transaction, balance.last_sequence + 1)
            self.aggregator.apply(balance, transaction)

        get_logger(tenant_id=tenant_id).info(
            "balance_adjusted",
            type=txn_type.value,
            credits=credit_amount,
            available=balance.available_credits,
            created_by=created_by,
        )
        await self._after_mutation(tenant_id, balance)
        return transaction

    # ============================================
    # Balance & settings
    # ============================================

    async def get_balance(self, tenant_id: str) -> BalanceReport:
        """Current balance with alert status. Evaluates but never dispatches."""
        balance = await self.aggregator.get(tenant_id)
        if balance is None:
            balance = new_balance(tenant_id)
        return BalanceReport(
            tenant_id=tenant_id,
            balance=balance,
            evaluation=evaluate_balance(tenant_id, balance),
        )

    async def update_alert_settings(
        self,
        tenant_id: str,
        low_balance_threshold: int | None = None,
        critical_balance_threshold: int | None = None,
        auto_replenish_enabled: bool | None = None,
        auto_replenish_threshold: int | None = None,
        auto_replenish_amount: int | None = None,
        auto_replenish_payment_method: str | None = None,
        currency: str | None = None,
    ) -> BalanceReport:
        """
        Update thresholds and auto-replenish configuration.

        Unset fields keep their current value.

        Raises:
            InvalidSettings: resulting configuration is inconsistent
            InvalidCurrency: unsupported currency, or a change after the first ledger entry
        """
        if currency is not None:
            currency = _currency(currency)
        await self.tenants.require_active(tenant_id)

        async with self.locks.transaction(self.db, tenant_id):
            balance = await self.aggregator.get_or_create_for_update(tenant_id)

            def pick(value, current):
                return current if value is None else value

            merged = {
                "low_threshold": pick(low_balance_threshold, balance.low_balance_threshold),
                "critical_threshold": pick(critical_balance_threshold, balance.critical_balance_threshold),
                "auto_replenish_enabled": pick(auto_replenish_enabled, balance.auto_replenish_enabled),
                "auto_replenish_threshold": pick(auto_replenish_threshold, balance.auto_replenish_threshold),
                "auto_replenish_amount": pick(auto_replenish_amount, balance.auto_replenish_amount),
                "auto_replenish_payment_method": pick(
                    auto_replenish_payment_method, balance.auto_replenish_payment_method
                ),
            }
            validate_alert_settings(**merged)
            _ledger_currency(balance, currency)

            balance.low_balance_threshold = merged["low_threshold"]
            balance.critical_balance_threshold = merged["critical_threshold"]
            balance.auto_replenish_enabled = merged["auto_replenish_enabled"]
            balance.auto_replenish_threshold = merged["auto_replenish_threshold"]
            balance.auto_replenish_amount = merged["auto_replenish_amount"]
            balance.auto_replenish_payment_method = merged["auto_replenish_payment_method"]

        get_logger(tenant_id=tenant_id).info("alert_settings_updated", **merged)
        return BalanceReport(
            tenant_id=tenant_id,
            balance=balance,
            evaluation=evaluate_balance(tenant_id, balance),
        )

    # ============================================
    # History & analytics
    # ============================================

    async def list_transactions(
        self,
        tenant_id: str,
        limit: int = 50,
        txn_type: TransactionType | None = None,
    ) -> list[CreditTransaction]:
        return await self.store.list_recent(tenant_id, limit=limit, txn_type=txn_type)

    async def usage_analytics(
        self,
        tenant_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> dict:
        """
        Consumed credits per workflow type over a date window.

        Defaults to the last 30 days.
        """
        end = _as_utc(end) or utcnow()
        start = _as_utc(start) or end - timedelta(days=30)

        stmt = (
            select(
                CreditTransaction.workflow_type,
                func.count(CreditTransaction.id),
                func.coalesce(func.sum(-CreditTransaction.credit_amount), 0),
                func.coalesce(func.sum(CreditTransaction.total_amount_minor), 0),
            )
            .where(
                CreditTransaction.tenant_id == tenant_id,
                CreditTransaction.type == TransactionType.USAGE,
                CreditTransaction.created_at >= start,
                CreditTransaction.created_at <= end,
            )
            .group_by(CreditTransaction.workflow_type)
            .order_by(CreditTransaction.workflow_type)
        )
        rows = (await self.db.execute(stmt)).all()

        breakdown = []
        total_credits = 0
        total_cost = 0
        for workflow_type, count, credits, cost in rows:
            total_credits += int(credits)
            total_cost += int(cost)
            breakdown.append({
                "workflow_type": workflow_type or "unspecified",
                "workflows": int(count),
                "credits_used": int(credits),
                "cost": format_minor(int(cost)),
            })

        return {
            "tenant_id": tenant_id,
            "period": {"start": start.isoformat(), "end": end.isoformat()},
            "total_credits_used": total_credits,
            "total_cost": format_minor(total_cost),
            "by_workflow_type": breakdown,
        }

    # ============================================
    # Recovery
    # ============================================

    async def rebuild(self, tenant_id: str) -> BalanceSnapshot:
        return await self.aggregator.rebuild(tenant_id)

    async def reconcile(self, tenant_id: str) -> ReconciliationReport:
        # Under the lock so no mutation lands between the two reads
        async with self.locks.hold(tenant_id):
            return await self.aggregator.reconcile(tenant_id)

    async def reconcile_all(self) -> list[ReconciliationReport]:
        reports = []
        for tenant_id in await self.aggregator.tenant_ids():
            reports.append(await self.reconcile(tenant_id))
        return reports
