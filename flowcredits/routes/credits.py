"""
Credit API routes.

Provides endpoints for pricing, balance, history, purchases and the
administrative ledger entries.
"""
from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from flowcredits.config import settings
from flowcredits.dependencies.auth import TokenPayload, require_admin
from flowcredits.dependencies.ledger import get_credit_service
from flowcredits.dependencies.rate_limit import check_rate_limit
from flowcredits.models.credit import CreditTransaction, TransactionType
from flowcredits.models.payment import PaymentMethod
from flowcredits.services.credit_service import CreditService
from flowcredits.services.pricing import format_minor, price_per_unit, tier_table


router = APIRouter(prefix="/api/credits", tags=["credits"])


class PurchaseRequest(BaseModel):
    """Request model for buying credits."""
    quantity: int
    payment_method: PaymentMethod
    currency: Optional[str] = None
    reference: Optional[str] = Field(default=None, max_length=255)


class AlertSettingsRequest(BaseModel):
    """Request model for alert and auto-replenish settings. Omitted fields are unchanged."""
    low_balance_threshold: Optional[int] = None
    critical_balance_threshold: Optional[int] = None
    auto_replenish_enabled: Optional[bool] = None
    auto_replenish_threshold: Optional[int] = None
    auto_replenish_amount: Optional[int] = None
    auto_replenish_payment_method: Optional[PaymentMethod] = None
    currency: Optional[str] = None


class AdjustmentRequest(BaseModel):
    """Request model for bonus, manual adjustment and expiration entries."""
    type: Literal["bonus", "adjustment", "expiration"]
    credits: int
    description: str = Field(min_length=1, max_length=500)


def transaction_to_dict(t: CreditTransaction) -> dict:
    return {
        "id": t.id,
        "sequence": t.sequence,
        "type": t.type.value if hasattr(t.type, 'value') else str(t.type),
        "credit_amount": t.credit_amount,
        "unit_price": format_minor(t.unit_price_minor),
        "total_amount": format_minor(t.total_amount_minor),
        "currency": t.currency,
        "pricing_tier": t.pricing_tier,
        "discount_pct": t.discount_pct,
        "payment_id": t.payment_id,
        "workflow_id": t.workflow_id,
        "workflow_type": t.workflow_type,
        "description": t.description,
        "created_by": t.created_by,
        "created_at": t.created_at.isoformat() if t.created_at else None,
    }


@router.get("/pricing", response_model=dict)
async def get_pricing(quantity: Optional[int] = Query(default=None)):
    """Bulk pricing table, plus a quote when a quantity is given."""
    response = {
        "currency": settings.DEFAULT_CURRENCY,
        "supported_currencies": settings.SUPPORTED_CURRENCIES,
        "base_price": format_minor(settings.BASE_PRICE_MINOR),
        "tiers": tier_table(),
    }
    if quantity is not None:
        quote = price_per_unit(quantity)
        response["quote"] = {
            "quantity": quote.quantity,
            "pricing_tier": quote.tier,
            "unit_price": format_minor(quote.unit_price_minor),
            "discount_pct": quote.discount_pct,
            "discount_amount": format_minor(quote.discount_amount_minor),
            "total_amount": format_minor(quote.total_amount_minor),
        }
    return response


@router.get("/balance", response_model=dict)
async def get_balance(
    user: TokenPayload = Depends(check_rate_limit),
    service: CreditService = Depends(get_credit_service),
):
    """Balance summary and alert status for the caller's tenant."""
    report = await service.get_balance(user.tenant_id)
    return report.to_dict()


@router.get("/transactions", response_model=dict)
async def list_transactions(
    limit: int = Query(default=50, ge=1, le=500),
    type: Optional[TransactionType] = Query(default=None),
    user: TokenPayload = Depends(check_rate_limit),
    service: CreditService = Depends(get_credit_service),
):
    """Transaction history, newest first."""
    transactions = await service.list_transactions(user.tenant_id, limit=limit, txn_type=type)
    return {
        "tenant_id": user.tenant_id,
        "transactions": [transaction_to_dict(t) for t in transactions],
    }


@router.get("/usage", response_model=dict)
async def usage_analytics(
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    user: TokenPayload = Depends(check_rate_limit),
    service: CreditService = Depends(get_credit_service),
):
    """Credits consumed per workflow type (default: last 30 days)."""
    return await service.usage_analytics(user.tenant_id, start=start, end=end)


@router.post(
    "/purchase",
    response_model=dict,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(check_rate_limit)],
)
async def purchase_credits(
    request: PurchaseRequest,
    user: TokenPayload = Depends(require_admin),
    service: CreditService = Depends(get_credit_service),
):
    """
    Buy credits.

    Creates a pending payment; the balance grows once the payment gateway
    confirms it.
    """
    result = await service.purchase_credits(
        tenant_id=user.tenant_id,
        quantity=request.quantity,
        payment_method=request.payment_method,
        currency=request.currency,
        reference=request.reference,
        created_by=user.sub,
    )
    return result.to_dict()


@router.put("/settings", response_model=dict, dependencies=[Depends(check_rate_limit)])
async def update_settings(
    request: AlertSettingsRequest,
    user: TokenPayload = Depends(require_admin),
    service: CreditService = Depends(get_credit_service),
):
    """Update balance alert thresholds and auto-replenish configuration."""
    method = request.auto_replenish_payment_method
    report = await service.update_alert_settings(
        tenant_id=user.tenant_id,
        low_balance_threshold=request.low_balance_threshold,
        critical_balance_threshold=request.critical_balance_threshold,
        auto_replenish_enabled=request.auto_replenish_enabled,
        auto_replenish_threshold=request.auto_replenish_threshold,
        auto_replenish_amount=request.auto_replenish_amount,
        auto_replenish_payment_method=method.value if method else None,
        currency=request.currency,
    )
    return report.to_dict()


@router.post(
    "/adjustments",
    response_model=dict,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(check_rate_limit)],
)
async def create_adjustment(
    request: AdjustmentRequest,
    user: TokenPayload = Depends(require_admin),
    service: CreditService = Depends(get_credit_service),
):
    """Record a bonus, a signed manual adjustment or an expiration."""
    if request.type == "bonus":
        transaction = await service.grant_bonus(user.tenant_id, request.credits, request.description, user.sub)
    elif request.type == "expiration":
        transaction = await service.expire(user.tenant_id, request.credits, request.description, user.sub)
    else:
        transaction = await service.adjust(user.tenant_id, request.credits, request.description, user.sub)
    return transaction_to_dict(transaction)


@router.post("/reconcile", response_model=dict)
async def reconcile(
    user: TokenPayload = Depends(require_admin),
    service: CreditService = Depends(get_credit_service),
):
    """Rebuild the balance from the transaction log and report any drift."""
    report = await service.reconcile(user.tenant_id)
    return report.to_dict()
