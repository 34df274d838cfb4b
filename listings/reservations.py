"""Listing reservation helpers.

A listing can be held by an accepted offer (``offer_reserved_*`` fields) or
by an in-progress checkout (``purchase_reserved_*`` fields). Every release
runs inside the caller's transaction and first re-reads the listing to check
that the hold still belongs to the caller; a hold since taken by another
offer or order is left alone.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from database import collections
from database.store import Transaction, to_timestamp

logger = logging.getLogger(__name__)

OFFER_RESERVATION_FIELDS = {
    'offer_reserved_by_offer_id': None,
    'offer_reserved_at': None,
    'offer_reserved_until': None,
}

PURCHASE_RESERVATION_FIELDS = {
    'purchase_reserved_by_order_id': None,
    'purchase_reserved_at': None,
    'purchase_reserved_until': None,
}

async def release_offer_reservation(
    tx: Transaction,
    listing_id: Optional[str],
    offer_id: str,
    now: datetime
) -> bool:
    """Clear the listing's offer hold if it still points at ``offer_id``.

    Returns:
        bool: True if the hold was cleared
    """
    if not listing_id:
        return False
    listing = await tx.get(collections.LISTINGS, listing_id)
    if listing is None:
        logger.warning(f"Listing {listing_id} not found while releasing offer {offer_id}")
        return False
    if listing.get('offer_reserved_by_offer_id') != offer_id:
        return False

    await tx.update(collections.LISTINGS, listing_id, {
        **OFFER_RESERVATION_FIELDS,
        'updated_at': to_timestamp(now),
    })
    return True

async def release_purchase_reservation(
    tx: Transaction,
    listing_id: Optional[str],
    order_id: str,
    now: datetime
) -> bool:
    """Clear the listing's purchase hold if it still points at ``order_id``."""
    if not listing_id:
        return False
    listing = await tx.get(collections.LISTINGS, listing_id)
    if listing is None:
        return False
    if listing.get('purchase_reserved_by_order_id') != order_id:
        return False

    await tx.update(collections.LISTINGS, listing_id, {
        **PURCHASE_RESERVATION_FIELDS,
        'updated_at': to_timestamp(now),
    })
    return True

async def mark_sold(
    tx: Transaction,
    listing_id: str,
    order_id: str,
    now: datetime
) -> Optional[Dict[str, Any]]:
    """Mark a listing sold to ``order_id`` and drop every hold on it.

    Returns:
        The listing as it was before the update, or None if it does not exist
    """
    listing = await tx.get(collections.LISTINGS, listing_id)
    if listing is None:
        logger.warning(f"Listing {listing_id} not found while marking sold for order {order_id}")
        return None

    await tx.update(collections.LISTINGS, listing_id, {
        'status': 'sold',
        'sold_at': listing.get('sold_at') or to_timestamp(now),
        'sold_to_order_id': order_id,
        **OFFER_RESERVATION_FIELDS,
        **PURCHASE_RESERVATION_FIELDS,
        'updated_at': to_timestamp(now),
    })
    return listing
