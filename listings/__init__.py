"""Listings module.

Only the reservation side of listings lives here: holds taken by accepted
offers and in-progress purchases, their guarded release, and marking a
listing sold when payment is confirmed.
"""
from .reservations import (
    OFFER_RESERVATION_FIELDS,
    PURCHASE_RESERVATION_FIELDS,
    mark_sold,
    release_offer_reservation,
    release_purchase_reservation,
)

__all__ = [
    'OFFER_RESERVATION_FIELDS',
    'PURCHASE_RESERVATION_FIELDS',
    'mark_sold',
    'release_offer_reservation',
    'release_purchase_reservation',
]
