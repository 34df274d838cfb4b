"""Translation of core exceptions into HTTP responses."""
import logging

from fastapi import HTTPException, status

from database.exceptions import StoreUnavailableError
from orders.errors import (
    ConcurrentMutationError,
    ForbiddenActionError,
    OrderError,
    OrderNotFoundError,
    OrderValidationError,
    TransitionConflictError,
)
from payments.gateway import GatewayError

logger = logging.getLogger(__name__)

CONFLICT_DETAIL = "This order is no longer in a state that allows that action."
IN_PROGRESS_DETAIL = "Already in progress, try again shortly."
RETRY_AFTER_SECONDS = 5

def to_http_exception(error: Exception) -> HTTPException:
    """Map an order, gateway or store error to the response the caller sees."""
    if isinstance(error, OrderNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, ForbiddenActionError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(error))
    if isinstance(error, TransitionConflictError):
        logger.info(f"Transition conflict: {error}")
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=CONFLICT_DETAIL)
    if isinstance(error, ConcurrentMutationError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=IN_PROGRESS_DETAIL,
            headers={'Retry-After': str(RETRY_AFTER_SECONDS)}
        )
    if isinstance(error, OrderValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    if isinstance(error, GatewayError):
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Payment provider error: {error}"
        )
    if isinstance(error, StoreUnavailableError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Storage temporarily unavailable",
            headers={'Retry-After': str(RETRY_AFTER_SECONDS)}
        )
    if isinstance(error, OrderError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))

    logger.error(f"Unhandled error: {type(error).__name__}: {error}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Internal server error"
    )

# Errors routes translate; anything else propagates
HANDLED_ERRORS = (OrderError, GatewayError, StoreUnavailableError)
