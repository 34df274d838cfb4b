"""Fulfillment endpoints for both transport branches."""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from auth import get_current_actor
from orders import Actor, PickupWindow
from . import present_order
from ..errors import HANDLED_ERRORS, to_http_exception
from ..services import Services, get_services

router = APIRouter(
    prefix="/orders/{order_id}/fulfillment",
    tags=["Fulfillment"]
)

class ScheduleDeliveryRequest(BaseModel):
    """Request model for scheduling a carrier delivery."""
    eta: datetime
    carrier: str = Field(min_length=1)
    tracking_number: Optional[str] = None
    notes: Optional[str] = None

class MarkDeliveredRequest(BaseModel):
    proof_refs: List[str] = Field(default_factory=list)

class SetPickupInfoRequest(BaseModel):
    """Request model for publishing pickup location and windows."""
    location: str = Field(min_length=1)
    windows: List[PickupWindow] = Field(min_length=1)

class SelectPickupWindowRequest(BaseModel):
    window_index: int = Field(ge=0)

class ConfirmPickupRequest(BaseModel):
    code: str = Field(min_length=1)

# Carrier delivery

@router.post("/schedule-delivery")
async def schedule_delivery(
    order_id: str,
    request: ScheduleDeliveryRequest,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services)
):
    """Seller schedules the delivery with a carrier and ETA."""
    try:
        order = await services.fulfillment.schedule_delivery(
            order_id,
            actor,
            eta=request.eta,
            carrier=request.carrier,
            tracking_number=request.tracking_number,
            notes=request.notes
        )
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)
    return present_order(order, actor)

@router.post("/mark-out-for-delivery")
async def mark_out_for_delivery(
    order_id: str,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services)
):
    try:
        order = await services.fulfillment.mark_out_for_delivery(order_id, actor)
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)
    return present_order(order, actor)

@router.post("/mark-delivered")
async def mark_delivered(
    order_id: str,
    request: Optional[MarkDeliveredRequest] = None,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services)
):
    """Seller marks the item delivered, optionally with proof references."""
    proof_refs = request.proof_refs if request else []
    try:
        order = await services.fulfillment.mark_delivered(order_id, actor, proof_refs=proof_refs)
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)
    return present_order(order, actor)

@router.post("/confirm-receipt")
async def confirm_receipt(
    order_id: str,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services)
):
    """Buyer confirms the delivered item arrived."""
    try:
        order = await services.fulfillment.confirm_receipt(order_id, actor)
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)
    return present_order(order, actor)

# Buyer pickup

@router.post("/set-pickup-info")
async def set_pickup_info(
    order_id: str,
    request: SetPickupInfoRequest,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services)
):
    """Seller publishes the pickup location and available windows."""
    try:
        order = await services.fulfillment.set_pickup_info(
            order_id,
            actor,
            location=request.location,
            windows=request.windows
        )
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)
    return present_order(order, actor)

@router.post("/select-pickup-window")
async def select_pickup_window(
    order_id: str,
    request: SelectPickupWindowRequest,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services)
):
    try:
        order = await services.fulfillment.select_pickup_window(order_id, actor, request.window_index)
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)
    return present_order(order, actor)

@router.post("/confirm-pickup")
async def confirm_pickup(
    order_id: str,
    request: ConfirmPickupRequest,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services)
):
    """Confirm the handover with the code the seller holds."""
    try:
        order = await services.fulfillment.confirm_pickup(order_id, actor, request.code)
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)
    return present_order(order, actor)
