"""Payment gateway webhook endpoint."""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from database.exceptions import StoreUnavailableError
from payments import EventAdmissionError, WebhookSignatureError
from ..services import Services, get_services

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(
    prefix="/payments",
    tags=["Payments"]
)

@router.post("/webhook")
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Receive a payment event.

    A 2xx response tells the gateway the event is handled; anything else
    makes it redeliver, which the idempotency gate absorbs.
    """
    payload = await request.body()
    try:
        event = services.gateway.parse_event(payload, stripe_signature)
    except WebhookSignatureError as e:
        logger.warning(f"Rejected webhook: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature"
        )

    if not isinstance(event, dict) or not event.get('id') or not event.get('type'):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Event is missing id or type"
        )

    try:
        return await services.processor.process(event)
    except (EventAdmissionError, StoreUnavailableError) as e:
        logger.error(f"Could not admit event {event['id']}: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Event could not be recorded, retry later"
        )
    except Exception as e:
        logger.error(f"Event {event['id']} ({event['type']}) failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Event processing failed"
        )
