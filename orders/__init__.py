"""Orders module.

This module provides:
- The canonical status model and legacy status inference
- The transport-aware fulfillment state machine and the dispute overlay
- Guarded refund and dispute-resolution mutators
- Administrative annotations
"""
from .admin import AdminManager
from .errors import (
    ConcurrentMutationError,
    ForbiddenActionError,
    OrderError,
    OrderNotFoundError,
    OrderValidationError,
    TransitionConflictError,
)
from .fulfillment import FulfillmentManager
from .models import (
    SYSTEM_ACTOR,
    Actor,
    ActorRole,
    DisputeResolution,
    Order,
    PickupWindow,
)
from .refunds import RefundManager
from .status import (
    TransactionStatus,
    TransportMode,
    allowed_transitions,
    get_effective_status,
    is_terminal,
)

__all__ = [
    'SYSTEM_ACTOR',
    'Actor',
    'ActorRole',
    'AdminManager',
    'ConcurrentMutationError',
    'DisputeResolution',
    'ForbiddenActionError',
    'FulfillmentManager',
    'Order',
    'OrderError',
    'OrderNotFoundError',
    'OrderValidationError',
    'PickupWindow',
    'RefundManager',
    'TransactionStatus',
    'TransportMode',
    'TransitionConflictError',
    'allowed_transitions',
    'get_effective_status',
    'is_terminal',
]
