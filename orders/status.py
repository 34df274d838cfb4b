"""Order Status Model.

One canonical ``TransactionStatus`` per order, derived by
``get_effective_status`` from either the canonical ``transaction_status``
field or, for orders written before that field existed, from the legacy
``status`` string plus auxiliary fields. Everything that needs an order's
status calls ``get_effective_status``; nothing re-implements the mapping.

All functions here are pure.
"""
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional

class TransactionStatus(str, Enum):
    PENDING_PAYMENT = 'PENDING_PAYMENT'
    PAID = 'PAID'
    FULFILLMENT_REQUIRED = 'FULFILLMENT_REQUIRED'
    READY_FOR_PICKUP = 'READY_FOR_PICKUP'
    PICKUP_SCHEDULED = 'PICKUP_SCHEDULED'
    PICKED_UP = 'PICKED_UP'
    DELIVERY_SCHEDULED = 'DELIVERY_SCHEDULED'
    OUT_FOR_DELIVERY = 'OUT_FOR_DELIVERY'
    DELIVERED_PENDING_CONFIRMATION = 'DELIVERED_PENDING_CONFIRMATION'
    COMPLETED = 'COMPLETED'
    DISPUTE_OPENED = 'DISPUTE_OPENED'
    SELLER_NONCOMPLIANT = 'SELLER_NONCOMPLIANT'
    REFUNDED = 'REFUNDED'
    CANCELLED = 'CANCELLED'

class TransportMode(str, Enum):
    CARRIER_DELIVERY = 'carrier_delivery'
    BUYER_PICKUP = 'buyer_pickup'

S = TransactionStatus

TERMINAL_STATUSES: FrozenSet[TransactionStatus] = frozenset({
    S.COMPLETED,
    S.REFUNDED,
    S.CANCELLED,
})

# Older records store the transport choice under a different name and spelling
LEGACY_TRANSPORT_MODES = {
    'SELLER_TRANSPORT': TransportMode.CARRIER_DELIVERY,
    'BUYER_TRANSPORT': TransportMode.BUYER_PICKUP,
}

LEGACY_STATUS_MAP = {
    'pending': S.PENDING_PAYMENT,
    'awaiting_bank_transfer': S.PENDING_PAYMENT,
    'awaiting_wire': S.PENDING_PAYMENT,
    'delivered': S.DELIVERED_PENDING_CONFIRMATION,
    'picked_up': S.PICKED_UP,
    'buyer_confirmed': S.COMPLETED,
    'accepted': S.COMPLETED,
    'ready_to_release': S.COMPLETED,
    'released': S.COMPLETED,
    'completed': S.COMPLETED,
    'disputed': S.DISPUTE_OPENED,
    'refunded': S.REFUNDED,
    'cancelled': S.CANCELLED,
}

# Fulfillment transitions per branch; the dispute overlay, refunds and
# cancellation are added by ``allowed_transitions``
_DELIVERY_FLOW: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = {
    S.PENDING_PAYMENT: frozenset({S.PAID, S.FULFILLMENT_REQUIRED}),
    S.PAID: frozenset({S.FULFILLMENT_REQUIRED, S.DELIVERY_SCHEDULED}),
    S.FULFILLMENT_REQUIRED: frozenset({S.DELIVERY_SCHEDULED, S.SELLER_NONCOMPLIANT}),
    S.SELLER_NONCOMPLIANT: frozenset({S.DELIVERY_SCHEDULED}),
    S.DELIVERY_SCHEDULED: frozenset({S.OUT_FOR_DELIVERY, S.DELIVERED_PENDING_CONFIRMATION}),
    S.OUT_FOR_DELIVERY: frozenset({S.DELIVERED_PENDING_CONFIRMATION}),
    S.DELIVERED_PENDING_CONFIRMATION: frozenset({S.COMPLETED}),
    S.DISPUTE_OPENED: frozenset({S.COMPLETED}),
}

_PICKUP_FLOW: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = {
    S.PENDING_PAYMENT: frozenset({S.PAID, S.FULFILLMENT_REQUIRED}),
    S.PAID: frozenset({S.FULFILLMENT_REQUIRED, S.READY_FOR_PICKUP}),
    S.FULFILLMENT_REQUIRED: frozenset({S.READY_FOR_PICKUP, S.SELLER_NONCOMPLIANT}),
    S.SELLER_NONCOMPLIANT: frozenset({S.READY_FOR_PICKUP}),
    S.READY_FOR_PICKUP: frozenset({S.PICKUP_SCHEDULED}),
    S.PICKUP_SCHEDULED: frozenset({S.PICKED_UP, S.COMPLETED}),
    S.PICKED_UP: frozenset({S.COMPLETED}),
    S.DISPUTE_OPENED: frozenset({S.COMPLETED}),
}

# Statuses from which a paid order can still be reversed or disputed
_PAID_NON_TERMINAL = frozenset(
    status for status in TransactionStatus
    if status not in TERMINAL_STATUSES and status != S.PENDING_PAYMENT
)

def get_transport_mode(record: Mapping[str, Any]) -> Optional[TransportMode]:
    """Return the order's transport mode, reading legacy spellings too."""
    raw = record.get('transport_mode') or record.get('transport_type')
    if raw is None:
        return None
    if isinstance(raw, TransportMode):
        return raw
    if raw in LEGACY_TRANSPORT_MODES:
        return LEGACY_TRANSPORT_MODES[raw]
    try:
        return TransportMode(raw)
    except ValueError:
        return None

def _is_paid(record: Mapping[str, Any]) -> bool:
    return bool(record.get('paid_at'))

def _has_selected_window(record: Mapping[str, Any]) -> bool:
    pickup = record.get('pickup') or {}
    return pickup.get('selected_window_index') is not None

def get_effective_status(record: Mapping[str, Any]) -> TransactionStatus:
    """Derive the canonical status of a stored order.

    Fallback chain:
        1. ``transaction_status`` when present and recognised.
        2. The legacy ``status`` string, interpreted with ``paid_at``, the
           transport mode and the selected pickup window where the legacy
           value alone is ambiguous.
        3. ``FULFILLMENT_REQUIRED`` if the order was paid, else
           ``PENDING_PAYMENT``.

    Args:
        record: Stored order document (current or legacy shape)

    Returns:
        The canonical status
    """
    canonical = record.get('transaction_status')
    if canonical:
        try:
            return TransactionStatus(canonical)
        except ValueError:
            pass

    legacy = record.get('status')

    if legacy in ('paid', 'paid_held'):
        return S.FULFILLMENT_REQUIRED if _is_paid(record) else S.PENDING_PAYMENT

    if legacy == 'in_transit':
        if get_transport_mode(record) == TransportMode.BUYER_PICKUP:
            if _has_selected_window(record):
                return S.PICKUP_SCHEDULED
            return S.READY_FOR_PICKUP
        return S.OUT_FOR_DELIVERY

    if legacy in LEGACY_STATUS_MAP:
        return LEGACY_STATUS_MAP[legacy]

    return S.FULFILLMENT_REQUIRED if _is_paid(record) else S.PENDING_PAYMENT

def is_terminal(status: TransactionStatus) -> bool:
    return status in TERMINAL_STATUSES

def allowed_transitions(
    status: TransactionStatus,
    transport_mode: Optional[TransportMode]
) -> FrozenSet[TransactionStatus]:
    """Statuses reachable from ``status`` for an order on the given branch."""
    if is_terminal(status):
        return frozenset()

    if transport_mode == TransportMode.CARRIER_DELIVERY:
        allowed = set(_DELIVERY_FLOW.get(status, ()))
    elif transport_mode == TransportMode.BUYER_PICKUP:
        allowed = set(_PICKUP_FLOW.get(status, ()))
    else:
        allowed = {
            target for target in _DELIVERY_FLOW.get(status, frozenset()) | _PICKUP_FLOW.get(status, frozenset())
            if target in (S.PAID, S.FULFILLMENT_REQUIRED, S.SELLER_NONCOMPLIANT, S.COMPLETED)
        }

    if status in _PAID_NON_TERMINAL:
        allowed.add(S.REFUNDED)
        if status != S.DISPUTE_OPENED:
            allowed.add(S.DISPUTE_OPENED)
    if status in (S.PENDING_PAYMENT, S.PAID, S.SELLER_NONCOMPLIANT):
        allowed.add(S.CANCELLED)

    return frozenset(allowed)

def can_transition(
    status: TransactionStatus,
    target: TransactionStatus,
    transport_mode: Optional[TransportMode]
) -> bool:
    return target in allowed_transitions(status, transport_mode)

def requires_seller_action(status: TransactionStatus) -> bool:
    """Whether the seller has the next move."""
    return status in (
        S.FULFILLMENT_REQUIRED,
        S.SELLER_NONCOMPLIANT,
        S.DELIVERY_SCHEDULED,
        S.OUT_FOR_DELIVERY,
    )

def requires_buyer_action(status: TransactionStatus) -> bool:
    """Whether the buyer has the next move."""
    return status in (
        S.PENDING_PAYMENT,
        S.READY_FOR_PICKUP,
        S.PICKUP_SCHEDULED,
        S.PICKED_UP,
        S.DELIVERED_PENDING_CONFIRMATION,
    )
