"""Tests for canonical status derivation and the transition table."""

import pytest

from orders.status import (
    TERMINAL_STATUSES,
    TransactionStatus as S,
    TransportMode,
    allowed_transitions,
    can_transition,
    get_effective_status,
    get_transport_mode,
    is_terminal,
    requires_buyer_action,
    requires_seller_action,
)

def test_canonical_field_wins_over_legacy_status():
    """Test that transaction_status is used whenever it is present."""
    record = {'transaction_status': 'DELIVERY_SCHEDULED', 'status': 'completed'}
    assert get_effective_status(record) == S.DELIVERY_SCHEDULED

def test_unknown_canonical_value_falls_back_to_legacy():
    """Test that an unrecognised canonical value is ignored."""
    record = {'transaction_status': 'SHIPPED_MAYBE', 'status': 'refunded'}
    assert get_effective_status(record) == S.REFUNDED

@pytest.mark.parametrize("legacy,paid_at,expected", [
    ('paid', '2026-01-01T00:00:00.000000Z', S.FULFILLMENT_REQUIRED),
    ('paid', None, S.PENDING_PAYMENT),
    ('paid_held', '2026-01-01T00:00:00.000000Z', S.FULFILLMENT_REQUIRED),
    ('awaiting_bank_transfer', None, S.PENDING_PAYMENT),
    ('delivered', '2026-01-01T00:00:00.000000Z', S.DELIVERED_PENDING_CONFIRMATION),
    ('buyer_confirmed', '2026-01-01T00:00:00.000000Z', S.COMPLETED),
    ('released', '2026-01-01T00:00:00.000000Z', S.COMPLETED),
    ('disputed', '2026-01-01T00:00:00.000000Z', S.DISPUTE_OPENED),
    ('cancelled', None, S.CANCELLED),
])
def test_legacy_status_mapping(legacy, paid_at, expected):
    """Test inference from legacy status strings and the paid flag."""
    record = {'status': legacy, 'paid_at': paid_at}
    assert get_effective_status(record) == expected

def test_legacy_in_transit_depends_on_transport():
    """Test that in_transit maps differently per branch."""
    assert get_effective_status(
        {'status': 'in_transit', 'transport_type': 'SELLER_TRANSPORT'}
    ) == S.OUT_FOR_DELIVERY
    assert get_effective_status(
        {'status': 'in_transit', 'transport_type': 'BUYER_TRANSPORT'}
    ) == S.READY_FOR_PICKUP
    assert get_effective_status({
        'status': 'in_transit',
        'transport_type': 'BUYER_TRANSPORT',
        'pickup': {'selected_window_index': 0},
    }) == S.PICKUP_SCHEDULED

def test_missing_status_defaults_on_paid_flag():
    """Test the final fallback of the chain."""
    assert get_effective_status({}) == S.PENDING_PAYMENT
    assert get_effective_status({'paid_at': '2026-01-01T00:00:00.000000Z'}) == S.FULFILLMENT_REQUIRED

def test_status_derivation_is_pure():
    """Test that deriving a status does not touch the record."""
    record = {'status': 'paid', 'paid_at': '2026-01-01T00:00:00.000000Z'}
    snapshot = dict(record)
    get_effective_status(record)
    get_effective_status(record)
    assert record == snapshot

def test_transport_mode_reads_legacy_names():
    """Test both the canonical and the legacy transport field."""
    assert get_transport_mode({'transport_mode': 'buyer_pickup'}) == TransportMode.BUYER_PICKUP
    assert get_transport_mode({'transport_type': 'SELLER_TRANSPORT'}) == TransportMode.CARRIER_DELIVERY
    assert get_transport_mode({'transport_mode': 'teleport'}) is None
    assert get_transport_mode({}) is None

def test_terminal_statuses_allow_nothing():
    """Test that terminal statuses have no outgoing transitions."""
    assert TERMINAL_STATUSES == {S.COMPLETED, S.REFUNDED, S.CANCELLED}
    for status in TERMINAL_STATUSES:
        assert is_terminal(status)
        for mode in TransportMode:
            assert allowed_transitions(status, mode) == frozenset()

def test_branches_do_not_cross():
    """Test that pickup statuses are unreachable on the delivery branch and vice versa."""
    delivery = TransportMode.CARRIER_DELIVERY
    pickup = TransportMode.BUYER_PICKUP

    assert can_transition(S.FULFILLMENT_REQUIRED, S.DELIVERY_SCHEDULED, delivery)
    assert not can_transition(S.FULFILLMENT_REQUIRED, S.READY_FOR_PICKUP, delivery)
    assert can_transition(S.FULFILLMENT_REQUIRED, S.READY_FOR_PICKUP, pickup)
    assert not can_transition(S.FULFILLMENT_REQUIRED, S.DELIVERY_SCHEDULED, pickup)
    assert can_transition(S.PICKUP_SCHEDULED, S.COMPLETED, pickup)
    assert not can_transition(S.DELIVERY_SCHEDULED, S.COMPLETED, delivery)

def test_dispute_overlay_and_refunds():
    """Test that paid non-terminal statuses can be disputed and refunded."""
    for status in (S.FULFILLMENT_REQUIRED, S.OUT_FOR_DELIVERY, S.PICKUP_SCHEDULED):
        allowed = allowed_transitions(status, None)
        assert S.DISPUTE_OPENED in allowed
        assert S.REFUNDED in allowed

    assert S.DISPUTE_OPENED not in allowed_transitions(S.PENDING_PAYMENT, None)
    assert S.REFUNDED not in allowed_transitions(S.PENDING_PAYMENT, None)
    assert S.CANCELLED in allowed_transitions(S.PENDING_PAYMENT, None)
    assert S.COMPLETED in allowed_transitions(S.DISPUTE_OPENED, TransportMode.CARRIER_DELIVERY)

def test_seller_noncompliant_can_still_fulfil():
    """Test that a late seller can still schedule the delivery."""
    assert can_transition(S.SELLER_NONCOMPLIANT, S.DELIVERY_SCHEDULED, TransportMode.CARRIER_DELIVERY)
    assert can_transition(S.SELLER_NONCOMPLIANT, S.CANCELLED, TransportMode.CARRIER_DELIVERY)

def test_next_actor():
    """Test who owes the next move."""
    assert requires_seller_action(S.FULFILLMENT_REQUIRED)
    assert not requires_buyer_action(S.FULFILLMENT_REQUIRED)
    assert requires_buyer_action(S.DELIVERED_PENDING_CONFIRMATION)
    assert requires_buyer_action(S.PICKUP_SCHEDULED)
    assert not requires_seller_action(S.COMPLETED)
    assert not requires_buyer_action(S.COMPLETED)
