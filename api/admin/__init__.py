"""Administrative endpoints."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from auth import get_admin_actor
from orders import Actor
from ..errors import HANDLED_ERRORS, to_http_exception
from ..services import Services, get_services

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(
    prefix="/admin",
    tags=["Admin"]
)

class FreezeSellerRequest(BaseModel):
    """Request model for freezing a seller."""
    reason: str = Field(min_length=1)
    notes: Optional[str] = None

class AdminNoteRequest(BaseModel):
    note: str = Field(min_length=1)

class MarkReviewedRequest(BaseModel):
    notes: Optional[str] = None

@router.post("/sellers/{seller_id}/freeze")
async def freeze_seller(
    seller_id: str,
    request: FreezeSellerRequest,
    actor: Actor = Depends(get_admin_actor),
    services: Services = Depends(get_services)
):
    """Disable selling for a seller and flag their open orders."""
    try:
        return await services.admin.freeze_seller(
            seller_id,
            actor,
            reason=request.reason,
            notes=request.notes
        )
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)

@router.post("/orders/{order_id}/notes")
async def add_admin_note(
    order_id: str,
    request: AdminNoteRequest,
    actor: Actor = Depends(get_admin_actor),
    services: Services = Depends(get_services)
):
    """Append an internal note to an order."""
    try:
        return await services.admin.add_admin_note(order_id, actor, request.note)
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)

@router.post("/orders/{order_id}/mark-reviewed")
async def mark_reviewed(
    order_id: str,
    request: Optional[MarkReviewedRequest] = None,
    actor: Actor = Depends(get_admin_actor),
    services: Services = Depends(get_services)
):
    """Clear the needs-review flag on an order."""
    try:
        return await services.admin.mark_reviewed(
            order_id,
            actor,
            notes=request.notes if request else None
        )
    except HANDLED_ERRORS as e:
        raise to_http_exception(e)
