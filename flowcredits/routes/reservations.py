"""
Reservation API routes.

Called by the workflow layer: reserve on activation, then consume on
completion or release on cancellation.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field

from flowcredits.dependencies.auth import TokenPayload
from flowcredits.dependencies.ledger import get_credit_service
from flowcredits.dependencies.rate_limit import check_rate_limit
from flowcredits.models.credit import WorkflowType
from flowcredits.models.reservation import Reservation
from flowcredits.services.credit_service import CreditService
from flowcredits.services.pricing import format_minor


router = APIRouter(prefix="/api/reservations", tags=["reservations"])


class ReserveRequest(BaseModel):
    """Request model for reserving credits."""
    workflow_id: str = Field(min_length=1, max_length=64)
    credits: int = 1
    workflow_type: Optional[WorkflowType] = None


def reservation_to_dict(r: Reservation) -> dict:
    return {
        "token": r.token,
        "workflow_id": r.workflow_id,
        "workflow_type": r.workflow_type,
        "credits_reserved": r.credits_reserved,
        "rate_locked": format_minor(r.rate_locked_minor),
        "currency": r.currency,
        "state": r.state.value,
        "usage_transaction_id": r.usage_transaction_id,
        "created_at": r.created_at.isoformat() if r.created_at else None,
        "consumed_at": r.consumed_at.isoformat() if r.consumed_at else None,
        "released_at": r.released_at.isoformat() if r.released_at else None,
    }


@router.post("", response_model=dict, status_code=status.HTTP_201_CREATED)
async def reserve_credits(
    request: ReserveRequest,
    response: Response,
    user: TokenPayload = Depends(check_rate_limit),
    service: CreditService = Depends(get_credit_service),
):
    """
    Reserve credits for a workflow.

    Returns 201 for a new reservation and 200 when the workflow already
    holds one.
    """
    outcome = await service.reserve(
        tenant_id=user.tenant_id,
        workflow_id=request.workflow_id,
        credits_needed=request.credits,
        workflow_type=request.workflow_type,
    )
    if not outcome.changed:
        response.status_code = status.HTTP_200_OK
    body = reservation_to_dict(outcome.reservation)
    if outcome.balance is not None:
        body["available_credits"] = outcome.balance.available_credits
    return body


@router.get("/{token}", response_model=dict)
async def get_reservation(
    token: str,
    user: TokenPayload = Depends(check_rate_limit),
    service: CreditService = Depends(get_credit_service),
):
    reservation = await service.get_reservation(user.tenant_id, token)
    return reservation_to_dict(reservation)


@router.post("/{token}/consume", response_model=dict)
async def consume_reservation(
    token: str,
    user: TokenPayload = Depends(check_rate_limit),
    service: CreditService = Depends(get_credit_service),
):
    """Charge the reservation at its locked rate. Safe to repeat."""
    outcome = await service.consume(user.tenant_id, token)
    body = reservation_to_dict(outcome.reservation)
    body["replayed"] = not outcome.changed
    return body


@router.post("/{token}/release", response_model=dict)
async def release_reservation(
    token: str,
    user: TokenPayload = Depends(check_rate_limit),
    service: CreditService = Depends(get_credit_service),
):
    """Return held credits. A closed reservation is reported unchanged."""
    outcome = await service.release(user.tenant_id, token)
    body = reservation_to_dict(outcome.reservation)
    body["changed"] = outcome.changed
    return body
