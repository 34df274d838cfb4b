"""Orders API endpoints."""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from auth import get_current_actor
from orders import Actor, ActorRole, DisputeResolution
from ..errors import HANDLED_ERRORS, to_http_exception
from ..services import Services, get_services

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(
    prefix="/orders",
    tags=["Orders"]
)

class RefundRequest(BaseModel):
    """Request model for issuing a refund."""
    amount: Optional[int] = Field(None, gt=0)
    reason: Optional[str] = None

class DisputeRequest(BaseModel):
    """Request model for opening a dispute."""
    reason: str = Field(min_length=1)
    notes: Optional[str] = None
    evidence: List[str] = Field(default_factory=list)

class ResolveDisputeRequest(BaseModel):
    """Request model for resolving a dispute."""
    resolution: DisputeResolution
    amount: Optional[int] = Field(None, gt=0)
    notes: Optional[str] = None
    mark_fraudulent: bool = False

def present_order(order: Dict[str, Any], actor: Actor) -> Dict[str, Any]:
    """Shape an order document for the caller.

    The pickup code is for the seller to hand over; buyers never see it.
    """
    result = dict(order)
    pickup = result.get('pickup')
    can_see_code = actor.is_admin or (
        actor.role == ActorRole.SELLER and actor.actor_id == order.get('seller_id')
    )
    if pickup and not can_see_code:
        result['pickup'] = {key: value for key, value in pickup.items() if key != 'code'}
    return result

@router.get("/{order_id}")
async def get_order(
    order_id: str,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services)
):
    """Get an order with its effective status."""
    try:
        order = await services.fulfillment.get_order(order_id, actor)
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)
    return present_order(order, actor)

@router.post("/{order_id}/refund")
async def refund_order(
    order_id: str,
    request: RefundRequest,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services)
):
    """Refund part or all of an order (admin only)."""
    try:
        order = await services.refunds.refund(
            order_id,
            actor,
            amount=request.amount,
            reason=request.reason
        )
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)
    return present_order(order, actor)

@router.post("/{order_id}/dispute")
async def open_dispute(
    order_id: str,
    request: DisputeRequest,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services)
):
    """Open a dispute on an order as its buyer or seller."""
    try:
        order = await services.fulfillment.open_dispute(
            order_id,
            actor,
            reason=request.reason,
            notes=request.notes,
            evidence=request.evidence
        )
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)
    return present_order(order, actor)

@router.post("/{order_id}/dispute/resolve")
async def resolve_dispute(
    order_id: str,
    request: ResolveDisputeRequest,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services)
):
    """Resolve an open dispute (admin only)."""
    if request.resolution == DisputeResolution.PARTIAL_REFUND and request.amount is None:
        raise HTTPException(status_code=400, detail="amount is required for a partial refund")
    try:
        order = await services.refunds.resolve_dispute(
            order_id,
            actor,
            resolution=request.resolution,
            amount=request.amount,
            notes=request.notes,
            mark_fraudulent=request.mark_fraudulent
        )
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)
    return present_order(order, actor)
