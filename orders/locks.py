"""Refund-in-progress marker helpers.

The marker (``refund_in_progress_at`` + ``refund_lock_id``) is set by a
guarded mutator inside a transaction before it calls the gateway, and
cleared by that same mutator afterwards. While it is fresh, no other writer
may move the order. A marker older than the configured timeout is treated
as abandoned.
"""
from datetime import datetime, timedelta
from typing import Any, Dict

from database.store import from_timestamp

MARKER_FIELDS = ('refund_in_progress_at', 'refund_lock_id', 'refund_lock_action')

def marker_age(order: Dict[str, Any], now: datetime) -> timedelta:
    return now - from_timestamp(order['refund_in_progress_at'])

def refund_lock_active(order: Dict[str, Any], now: datetime, timeout: timedelta) -> bool:
    """True while a non-stale refund marker is set on the order."""
    if not order.get('refund_in_progress_at'):
        return False
    return marker_age(order, now) < timeout

def cleared_marker() -> Dict[str, Any]:
    return {name: None for name in MARKER_FIELDS}
