"""
Balance alerting.

`evaluate_balance` is pure and runs after every balance mutation on the
committed snapshot. Dispatching (notifications, auto-replenish) happens
outside the tenant critical section and never mutates the ledger itself.
"""
from __future__ import annotations

import asyncio
import enum
from dataclasses import asdict, dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from flowcredits.config import settings
from flowcredits.errors import InvalidSettings
from flowcredits.logging_config import get_logger
from flowcredits.models.credit import ClientBalance
from flowcredits.models.payment import PaymentMethod
from flowcredits.routes.metrics import track_balance_alert
from flowcredits.services.balance_service import BalanceAggregator, new_balance
from flowcredits.services.notification_service import notify_balance_alert
from flowcredits.services.payment_gateway import request_replenishment


class BalanceStatus(str, enum.Enum):
    HEALTHY = "healthy"
    LOW = "low"
    CRITICAL = "critical"


class AlertType(str, enum.Enum):
    CRITICAL_BALANCE = "critical_balance"
    LOW_BALANCE = "low_balance"
    AUTO_REPLENISH_TRIGGER = "auto_replenish_trigger"


@dataclass(frozen=True)
class BalanceAlert:
    type: AlertType
    severity: str
    message: str
    available_credits: int
    threshold: int | None = None
    recommended_action: str | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["type"] = self.type.value
        return data


@dataclass(frozen=True)
class ReplenishRequest:
    """Advisory purchase request handed to the payment gateway adapter."""
    tenant_id: str
    quantity: int
    payment_method: str
    currency: str


@dataclass(frozen=True)
class BalanceEvaluation:
    tenant_id: str
    status: BalanceStatus
    available_credits: int
    alerts: tuple[BalanceAlert, ...] = ()
    replenish_request: ReplenishRequest | None = None

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "status": self.status.value,
            "available_credits": self.available_credits,
            "alerts": [alert.to_dict() for alert in self.alerts],
        }


def evaluate_balance(tenant_id: str, balance: ClientBalance) -> BalanceEvaluation:
    """
    Classify a balance against its thresholds.

    A threshold is crossed when available credits are at or below it.
    Critical takes precedence over low; auto-replenish is evaluated
    independently.
    """
    available = balance.available_credits
    alerts: list[BalanceAlert] = []

    if available <= balance.critical_balance_threshold:
        status = BalanceStatus.CRITICAL
        alerts.append(BalanceAlert(
            type=AlertType.CRITICAL_BALANCE,
            severity="high",
            message=f"Critical: Only {available} credits remaining",
            available_credits=available,
            threshold=balance.critical_balance_threshold,
            recommended_action="Purchase credits immediately to continue workflows",
        ))
    elif available <= balance.low_balance_threshold:
        status = BalanceStatus.LOW
        alerts.append(BalanceAlert(
            type=AlertType.LOW_BALANCE,
            severity="medium",
            message=f"Low balance: {available} credits remaining",
            available_credits=available,
            threshold=balance.low_balance_threshold,
            recommended_action="Consider purchasing more credits",
        ))
    else:
        status = BalanceStatus.HEALTHY

    replenish = None
    if balance.auto_replenish_enabled and available <= balance.auto_replenish_threshold:
        replenish = ReplenishRequest(
            tenant_id=tenant_id,
            quantity=balance.auto_replenish_amount,
            payment_method=balance.auto_replenish_payment_method,
            currency=balance.currency,
        )
        alerts.append(BalanceAlert(
            type=AlertType.AUTO_REPLENISH_TRIGGER,
            severity="info",
            message=f"Auto-replenish triggered for {balance.auto_replenish_amount} credits",
            available_credits=available,
            threshold=balance.auto_replenish_threshold,
        ))

    return BalanceEvaluation(
        tenant_id=tenant_id,
        status=status,
        available_credits=available,
        alerts=tuple(alerts),
        replenish_request=replenish,
    )


def validate_alert_settings(
    low_threshold: int,
    critical_threshold: int,
    auto_replenish_enabled: bool,
    auto_replenish_threshold: int,
    auto_replenish_amount: int,
    auto_replenish_payment_method: str | None,
) -> None:
    """
    Raises:
        InvalidSettings: thresholds inconsistent or replenish config incomplete
    """
    if critical_threshold < 0 or low_threshold < 0 or auto_replenish_threshold < 0:
        raise InvalidSettings("Thresholds must be zero or greater")
    if critical_threshold > low_threshold:
        raise InvalidSettings(
            "Critical threshold cannot exceed the low balance threshold",
            low_threshold=low_threshold,
            critical_threshold=critical_threshold,
        )
    if auto_replenish_amount <= 0:
        raise InvalidSettings("Auto-replenish amount must be greater than 0")
    if auto_replenish_amount > settings.MAX_PURCHASE_QUANTITY:
        raise InvalidSettings(
            f"Auto-replenish amount exceeds the maximum of {settings.MAX_PURCHASE_QUANTITY}"
        )
    if auto_replenish_payment_method is not None:
        try:
            PaymentMethod(auto_replenish_payment_method)
        except ValueError:
            raise InvalidSettings(
                "Unknown payment method",
                payment_method=auto_replenish_payment_method,
            ) from None
    if auto_replenish_enabled and not auto_replenish_payment_method:
        raise InvalidSettings("A payment method is required when auto-replenish is enabled")


class AlertingMonitor:
    """Evaluates the stored balance of a tenant."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def evaluate(self, tenant_id: str) -> BalanceEvaluation:
        balance = await BalanceAggregator(self.db).get(tenant_id)
        if balance is None:
            balance = new_balance(tenant_id)
        return evaluate_balance(tenant_id, balance)


# Strong references to in-flight deliveries; the loop only keeps weak ones
_notification_tasks: set[asyncio.Task] = set()


def _notification_done(task: asyncio.Task) -> None:
    _notification_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        get_logger(component="alerting").error("balance_alert_delivery_crashed", error=str(exc))


class AlertDispatcher:
    """
    Delivers alerts to the notification webhook and replenish requests to
    the payment gateway adapter. Never called while a tenant lock is held.
    """

    async def dispatch(self, evaluation: BalanceEvaluation) -> None:
        if not evaluation.alerts:
            return

        log = get_logger(tenant_id=evaluation.tenant_id)
        for alert in evaluation.alerts:
            track_balance_alert(alert.type.value)
        log.info(
            "balance_alert",
            status=evaluation.status.value,
            available_credits=evaluation.available_credits,
            alerts=[alert.type.value for alert in evaluation.alerts],
        )

        # Delivery retries with backoff; don't block the request on it
        task = asyncio.create_task(notify_balance_alert(evaluation.tenant_id, evaluation.to_dict()))
        _notification_tasks.add(task)
        task.add_done_callback(_notification_done)

        if evaluation.replenish_request is not None:
            await request_replenishment(evaluation.replenish_request)


# Singleton instance
alert_dispatcher = AlertDispatcher()


def get_alert_dispatcher() -> AlertDispatcher:
    """FastAPI dependency; overridden in tests."""
    return alert_dispatcher
