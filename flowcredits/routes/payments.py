"""
Payment API routes.

The callback is the inbound side of the payment gateway adapter and is
authenticated by an HMAC signature over the raw body, not by a tenant token.
"""
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, ValidationError

from flowcredits.dependencies.auth import TokenPayload, require_admin
from flowcredits.dependencies.ledger import get_credit_service
from flowcredits.logging_config import get_logger
from flowcredits.services.credit_service import CreditService
from flowcredits.services.payment_gateway import SIGNATURE_HEADER, verify_gateway_signature


router = APIRouter(prefix="/api/payments", tags=["payments"])


class PaymentCallback(BaseModel):
    """Gateway outcome for a pending payment."""
    payment_id: str
    status: Literal["completed", "failed"]
    gateway_reference: Optional[str] = None
    failure_reason: Optional[str] = None


class RefundRequest(BaseModel):
    reason: Optional[str] = None


@router.post("/callback", response_model=dict)
async def payment_callback(
    request: Request,
    service: CreditService = Depends(get_credit_service),
):
    """Confirm or fail a pending payment."""
    body = await request.body()

    if not verify_gateway_signature(body, request.headers.get(SIGNATURE_HEADER)):
        get_logger(component="payment_gateway").warning("gateway_signature_invalid")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid gateway signature"
        )

    try:
        callback = PaymentCallback.model_validate_json(body)
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=e.errors(include_url=False)
        )

    result = await service.confirm_payment(
        payment_id=callback.payment_id,
        status=callback.status,
        gateway_reference=callback.gateway_reference,
        failure_reason=callback.failure_reason,
    )
    return result.to_dict()


@router.post("/{payment_id}/refund", response_model=dict)
async def refund_payment(
    payment_id: str,
    request: RefundRequest,
    user: TokenPayload = Depends(require_admin),
    service: CreditService = Depends(get_credit_service),
):
    """Refund a completed purchase at the unit price it was bought at."""
    result = await service.refund_payment(
        tenant_id=user.tenant_id,
        payment_id=payment_id,
        reason=request.reason,
        created_by=user.sub,
    )
    return result.to_dict()


@router.get("/{payment_id}", response_model=dict)
async def get_payment(
    payment_id: str,
    user: TokenPayload = Depends(require_admin),
    service: CreditService = Depends(get_credit_service),
):
    payment = await service.get_payment(user.tenant_id, payment_id)
    return {
        "payment_id": payment.id,
        "status": payment.status.value,
        "credits": payment.credits,
        "amount_minor": payment.amount_minor,
        "currency": payment.currency,
        "method": payment.method.value,
        "initiated_by": payment.initiated_by.value,
        "failure_reason": payment.failure_reason,
    }
