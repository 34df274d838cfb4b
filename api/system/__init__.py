"""System health endpoint."""
import logging
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from database import collections
from ..services import Services, get_services

logger = logging.getLogger(__name__)

START_TIME = time.time()

# Create router
router = APIRouter(
    prefix="/system",
    tags=["System"]
)

class SystemHealth(BaseModel):
    """Model for system health data."""
    status: str
    uptime: float
    database_status: str
    last_sweep: Optional[Dict[str, Any]] = None
    last_webhook: Optional[Dict[str, Any]] = None

@router.get("/health")
async def get_system_health(services: Services = Depends(get_services)) -> SystemHealth:
    """Get system health status.

    Reports store reachability and the last recorded sweep and webhook runs.
    """
    last_sweep = None
    last_webhook = None
    try:
        last_sweep = await services.store.get(collections.OPS_HEALTH, 'reconciliation')
        last_webhook = await services.store.get(collections.OPS_HEALTH, 'webhook')
        database_status = "connected"
    except Exception as e:
        logger.error(f"Health check could not reach the store: {e}")
        database_status = "unavailable"

    degraded = database_status != "connected" or bool(last_sweep and last_sweep.get('budget_exhausted'))
    return SystemHealth(
        status="degraded" if degraded else "healthy",
        uptime=time.time() - START_TIME,
        database_status=database_status,
        last_sweep=last_sweep,
        last_webhook=last_webhook
    )
