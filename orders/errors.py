"""Order error taxonomy.

Every rejection a caller can act on has its own type: a transition
conflict means the order moved on, a validation error means the input was
wrong, and a concurrent-mutation conflict means another actor holds the
order right now and the call can be retried.
"""
from typing import Optional

class OrderError(Exception):
    """Base class for order-related errors."""
    pass

class OrderNotFoundError(OrderError):
    """Raised when an order does not exist."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")

class TransitionConflictError(OrderError):
    """Raised when an order is not in a status that allows the action."""

    def __init__(self, order_id: str, current_status: str, action: str):
        self.order_id = order_id
        self.current_status = current_status
        self.action = action
        super().__init__(
            f"Cannot {action} order {order_id} in status {current_status}"
        )

class OrderValidationError(OrderError):
    """Raised when the request does not satisfy the transition's preconditions."""

    def __init__(self, order_id: Optional[str], message: str):
        self.order_id = order_id
        super().__init__(message)

class ForbiddenActionError(OrderError):
    """Raised when the actor is not a party allowed to perform the action."""

    def __init__(self, order_id: str, actor_id: str, action: str):
        self.order_id = order_id
        self.actor_id = actor_id
        self.action = action
        super().__init__(f"Actor {actor_id} may not {action} order {order_id}")

class ConcurrentMutationError(OrderError):
    """Raised when another refund or resolution holds the order."""

    def __init__(self, order_id: str, action: str):
        self.order_id = order_id
        self.action = action
        super().__init__(f"Another {action} is already in progress for order {order_id}")
