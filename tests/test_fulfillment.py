"""Tests for the fulfillment state machine and the dispute overlay."""

from datetime import timedelta

import pytest

from conftest import BUYER_ID, NOW, SELLER_ID
from database import collections, to_timestamp
from orders import (
    ConcurrentMutationError,
    ForbiddenActionError,
    OrderNotFoundError,
    OrderValidationError,
    PickupWindow,
    TransactionStatus,
    TransitionConflictError,
    TransportMode,
)

S = TransactionStatus

def audit_actions(store, order_id):
    return [
        entry['action_type'] for entry in store.all(collections.AUDIT_LOGS).values()
        if entry['order_id'] == order_id
    ]

def windows():
    return [
        PickupWindow(start=NOW + timedelta(days=1), end=NOW + timedelta(days=1, hours=2)),
        PickupWindow(start=NOW + timedelta(days=2), end=NOW + timedelta(days=2, hours=2)),
    ]

@pytest.mark.asyncio
async def test_delivery_flow_to_completion(store, fulfillment, order_factory, seller, buyer, emitter):
    """Test schedule, out for delivery, delivered and confirmed on the carrier branch."""
    await order_factory("order_1")

    order = await fulfillment.schedule_delivery(
        "order_1", seller, eta=NOW + timedelta(days=2), carrier="UPS", tracking_number="1Z999"
    )
    assert order['transaction_status'] == S.DELIVERY_SCHEDULED.value
    assert order['delivery']['carrier'] == "UPS"

    await fulfillment.mark_out_for_delivery("order_1", seller)
    order = await fulfillment.mark_delivered("order_1", seller, proof_refs=["photo_1"])
    assert order['transaction_status'] == S.DELIVERED_PENDING_CONFIRMATION.value
    assert order['delivered_at'] == to_timestamp(NOW)

    order = await fulfillment.confirm_receipt("order_1", buyer)
    assert order['transaction_status'] == S.COMPLETED.value
    assert order['completed_at'] == to_timestamp(NOW)

    stored = await store.get(collections.ORDERS, "order_1")
    assert stored['transaction_status'] == S.COMPLETED.value
    assert audit_actions(store, "order_1") == [
        'schedule_delivery', 'mark_out_for_delivery', 'mark_delivered', 'confirm_receipt'
    ]
    assert [e['target_user_id'] for e in emitter.of_type('Order.ReceiptConfirmed')] == [SELLER_ID]

@pytest.mark.asyncio
async def test_delivered_directly_from_scheduled(fulfillment, order_factory, seller, buyer):
    """Test that out-for-delivery is optional and a second confirmation conflicts."""
    await order_factory("order_1", status=S.DELIVERY_SCHEDULED)

    await fulfillment.mark_delivered("order_1", seller)
    await fulfillment.confirm_receipt("order_1", buyer)

    with pytest.raises(TransitionConflictError):
        await fulfillment.confirm_receipt("order_1", buyer)

@pytest.mark.asyncio
async def test_repeated_action_is_a_no_op(store, fulfillment, order_factory, seller, emitter):
    """Test that repeating mark_delivered writes nothing new."""
    await order_factory("order_1", status=S.DELIVERY_SCHEDULED)

    await fulfillment.mark_delivered("order_1", seller)
    first = await store.get(collections.ORDERS, "order_1")
    again = await fulfillment.mark_delivered("order_1", seller)

    assert again == first
    assert audit_actions(store, "order_1") == ['mark_delivered']
    assert len(emitter.of_type('Order.Delivered')) == 1

@pytest.mark.asyncio
async def test_reschedule_updates_eta(fulfillment, order_factory, seller, emitter):
    """Test that scheduling again with a new ETA reschedules."""
    await order_factory("order_1")

    await fulfillment.schedule_delivery("order_1", seller, eta=NOW + timedelta(days=2), carrier="UPS")
    order = await fulfillment.schedule_delivery("order_1", seller, eta=NOW + timedelta(days=3), carrier="UPS")

    assert order['delivery']['eta'] == to_timestamp(NOW + timedelta(days=3))
    assert len(emitter.of_type('Order.DeliveryScheduled')) == 2

@pytest.mark.asyncio
async def test_schedule_delivery_requires_carrier_and_aware_eta(fulfillment, order_factory, seller):
    """Test payload validation for scheduling."""
    await order_factory("order_1")

    with pytest.raises(OrderValidationError):
        await fulfillment.schedule_delivery("order_1", seller, eta=NOW, carrier="  ")
    with pytest.raises(OrderValidationError):
        await fulfillment.schedule_delivery("order_1", seller, eta=NOW.replace(tzinfo=None), carrier="UPS")

@pytest.mark.asyncio
async def test_branch_mismatch_is_a_validation_error(fulfillment, order_factory, seller):
    """Test that pickup actions are rejected on a carrier-delivery order and vice versa."""
    await order_factory("order_1")
    await order_factory("order_2", transport=TransportMode.BUYER_PICKUP)

    with pytest.raises(OrderValidationError):
        await fulfillment.set_pickup_info("order_1", seller, "Main St 1", windows())
    with pytest.raises(OrderValidationError):
        await fulfillment.schedule_delivery("order_2", seller, eta=NOW + timedelta(days=1), carrier="UPS")

@pytest.mark.asyncio
async def test_pickup_flow_with_code(store, fulfillment, order_factory, seller, buyer):
    """Test set pickup info, window selection and code confirmation on the pickup branch."""
    await order_factory("order_1", transport=TransportMode.BUYER_PICKUP)

    order = await fulfillment.set_pickup_info("order_1", seller, "Main St 1", windows())
    assert order['transaction_status'] == S.READY_FOR_PICKUP.value
    code = order['pickup']['code']
    assert len(code) == 6 and code.isdigit()

    order = await fulfillment.select_pickup_window("order_1", buyer, 1)
    assert order['transaction_status'] == S.PICKUP_SCHEDULED.value
    assert order['pickup']['selected_window_index'] == 1

    with pytest.raises(OrderValidationError, match="Invalid pickup code"):
        await fulfillment.confirm_pickup("order_1", buyer, "not-the-code")

    order = await fulfillment.confirm_pickup("order_1", buyer, code)
    assert order['transaction_status'] == S.COMPLETED.value

    stored = await store.get(collections.ORDERS, "order_1")
    assert stored['pickup']['confirmed_at'] == to_timestamp(NOW)

@pytest.mark.asyncio
async def test_pickup_code_survives_updates(fulfillment, order_factory, seller):
    """Test that changing the pickup windows keeps the confirmation code."""
    await order_factory("order_1", transport=TransportMode.BUYER_PICKUP)

    first = await fulfillment.set_pickup_info("order_1", seller, "Main St 1", windows())
    second = await fulfillment.set_pickup_info("order_1", seller, "Main St 1", windows()[:1])

    assert second['pickup']['code'] == first['pickup']['code']
    assert len(second['pickup']['windows']) == 1

@pytest.mark.asyncio
async def test_invalid_window_index(fulfillment, order_factory, seller, buyer):
    """Test that selecting a window that does not exist is rejected."""
    await order_factory("order_1", transport=TransportMode.BUYER_PICKUP)
    await fulfillment.set_pickup_info("order_1", seller, "Main St 1", windows())

    with pytest.raises(OrderValidationError):
        await fulfillment.select_pickup_window("order_1", buyer, 5)

@pytest.mark.asyncio
async def test_only_the_right_party_may_act(fulfillment, order_factory, seller, buyer, stranger):
    """Test that buyers cannot do seller actions and strangers cannot do either."""
    await order_factory("order_1")

    with pytest.raises(ForbiddenActionError):
        await fulfillment.schedule_delivery("order_1", buyer, eta=NOW + timedelta(days=1), carrier="UPS")
    with pytest.raises(ForbiddenActionError):
        await fulfillment.open_dispute("order_1", stranger, "not mine")
    with pytest.raises(ForbiddenActionError):
        await fulfillment.get_order("order_1", stranger)

@pytest.mark.asyncio
async def test_admin_may_act_for_a_party(fulfillment, order_factory, admin):
    """Test that an administrator can move an order on a seller's behalf."""
    await order_factory("order_1")

    order = await fulfillment.schedule_delivery("order_1", admin, eta=NOW + timedelta(days=1), carrier="DHL")

    assert order['transaction_status'] == S.DELIVERY_SCHEDULED.value

@pytest.mark.asyncio
async def test_unknown_order(fulfillment, seller):
    """Test that acting on a missing order raises OrderNotFoundError."""
    with pytest.raises(OrderNotFoundError):
        await fulfillment.mark_delivered("missing", seller)

@pytest.mark.asyncio
async def test_terminal_orders_reject_transitions(fulfillment, order_factory, seller, buyer):
    """Test that refunded and cancelled orders cannot move."""
    await order_factory("order_1", status=S.REFUNDED)
    await order_factory("order_2", status=S.CANCELLED)

    with pytest.raises(TransitionConflictError):
        await fulfillment.schedule_delivery("order_1", seller, eta=NOW + timedelta(days=1), carrier="UPS")
    with pytest.raises(TransitionConflictError):
        await fulfillment.open_dispute("order_2", buyer, "never arrived")

@pytest.mark.asyncio
async def test_fresh_refund_marker_blocks_fulfillment(fulfillment, order_factory, seller):
    """Test that a refund in progress makes fulfillment actions retryable conflicts."""
    await order_factory(
        "order_1",
        refund_in_progress_at=to_timestamp(NOW - timedelta(seconds=10)),
        refund_lock_id="lock_1",
    )

    with pytest.raises(ConcurrentMutationError):
        await fulfillment.schedule_delivery("order_1", seller, eta=NOW + timedelta(days=1), carrier="UPS")

@pytest.mark.asyncio
async def test_stale_refund_marker_does_not_block(fulfillment, order_factory, seller):
    """Test that an abandoned marker no longer blocks fulfillment."""
    await order_factory(
        "order_1",
        refund_in_progress_at=to_timestamp(NOW - timedelta(hours=1)),
        refund_lock_id="lock_1",
    )

    order = await fulfillment.schedule_delivery("order_1", seller, eta=NOW + timedelta(days=1), carrier="UPS")

    assert order['transaction_status'] == S.DELIVERY_SCHEDULED.value

@pytest.mark.asyncio
async def test_legacy_order_is_read_through_effective_status(fulfillment, store, seller):
    """Test that an order with only a legacy status can still be fulfilled."""
    await store.put(collections.ORDERS, "legacy_1", {
        'order_id': "legacy_1",
        'buyer_id': BUYER_ID,
        'seller_id': SELLER_ID,
        'listing_id': "listing_1",
        'amount': 5000,
        'status': 'in_transit',
        'transport_type': 'SELLER_TRANSPORT',
        'paid_at': to_timestamp(NOW - timedelta(days=3)),
    })

    order = await fulfillment.mark_delivered("legacy_1", seller)

    assert order['transaction_status'] == S.DELIVERED_PENDING_CONFIRMATION.value

@pytest.mark.asyncio
async def test_open_dispute_from_any_paid_status(store, fulfillment, order_factory, buyer, emitter):
    """Test that a buyer can dispute mid-fulfillment and the seller is told."""
    await order_factory("order_1", status=S.OUT_FOR_DELIVERY)

    order = await fulfillment.open_dispute("order_1", buyer, "item damaged", evidence=["img_1"])

    assert order['transaction_status'] == S.DISPUTE_OPENED.value
    assert order['dispute']['previous_status'] == S.OUT_FOR_DELIVERY.value
    assert order['dispute']['opened_by'] == BUYER_ID
    assert [e['target_user_id'] for e in emitter.of_type('Dispute.Opened')] == [SELLER_ID]

    # Same dispute again is a no-op; a different one conflicts
    await fulfillment.open_dispute("order_1", buyer, "item damaged")
    with pytest.raises(TransitionConflictError):
        await fulfillment.open_dispute("order_1", buyer, "wrong colour")

@pytest.mark.asyncio
async def test_cannot_dispute_unpaid_order(fulfillment, order_factory, buyer):
    """Test that disputes need a paid order."""
    await order_factory("order_1", status=S.PENDING_PAYMENT, paid_at=None)

    with pytest.raises(TransitionConflictError):
        await fulfillment.open_dispute("order_1", buyer, "changed my mind")

@pytest.mark.asyncio
async def test_notification_failure_does_not_fail_transition(store, fulfillment, order_factory, seller, emitter):
    """Test that an emitter outage is logged and the transition still commits."""
    await order_factory("order_1", status=S.DELIVERY_SCHEDULED)
    emitter.fail = True

    order = await fulfillment.mark_delivered("order_1", seller)

    assert order['transaction_status'] == S.DELIVERED_PENDING_CONFIRMATION.value
    stored = await store.get(collections.ORDERS, "order_1")
    assert stored['transaction_status'] == S.DELIVERED_PENDING_CONFIRMATION.value

@pytest.mark.asyncio
async def test_get_order_reports_next_actor(fulfillment, order_factory, buyer):
    """Test the read model returned to a party."""
    await order_factory("order_1", status=S.DELIVERED_PENDING_CONFIRMATION)

    order = await fulfillment.get_order("order_1", buyer)

    assert order['effective_status'] == S.DELIVERED_PENDING_CONFIRMATION.value
    assert order['awaiting_buyer'] is True
    assert order['awaiting_seller'] is False
