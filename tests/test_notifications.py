"""Tests for the notification emitter boundary."""

import logging

import pytest

from conftest import BUYER_ID, NOW
from database import collections, to_timestamp
from notifications import StoreNotificationEmitter, make_dedupe_hash, non_fatal

@pytest.fixture
def store_emitter(store, clock):
    return StoreNotificationEmitter(store, clock=clock)

def test_dedupe_hash_is_stable_per_recipient():
    """Test that the hash depends on entity, event and recipient only."""
    first = make_dedupe_hash("order:1", "Order.Delivered", "buyer_1")

    assert first == make_dedupe_hash("order:1", "Order.Delivered", "buyer_1")
    assert first != make_dedupe_hash("order:1", "Order.Delivered", "seller_1")
    assert first != make_dedupe_hash("order:2", "Order.Delivered", "buyer_1")

@pytest.mark.asyncio
async def test_store_emitter_queues_event(store, store_emitter):
    """Test that an emitted event is queued under its dedupe hash."""
    emitted = await store_emitter.notify("Order.Delivered", BUYER_ID, "order:1", {'order_id': "1"})

    assert emitted is True
    dedupe_hash = make_dedupe_hash("order:1", "Order.Delivered", BUYER_ID)
    queued = store.all(collections.NOTIFICATION_EVENTS)[dedupe_hash]
    assert queued['status'] == 'queued'
    assert queued['target_user_id'] == BUYER_ID
    assert queued['payload'] == {'order_id': "1"}
    assert queued['created_at'] == to_timestamp(NOW)

@pytest.mark.asyncio
async def test_store_emitter_dedupes(store, store_emitter):
    """Test that the same logical event is queued only once."""
    await store_emitter.notify("Offer.Expired", BUYER_ID, "offer:1:expired")
    again = await store_emitter.notify("Offer.Expired", BUYER_ID, "offer:1:expired")

    assert again is False
    assert len(store.all(collections.NOTIFICATION_EVENTS)) == 1

@pytest.mark.asyncio
async def test_missing_recipient_is_skipped(store, store_emitter):
    """Test that an event without a recipient is not queued."""
    assert await store_emitter.notify("Order.Delivered", None, "order:1") is False
    assert store.all(collections.NOTIFICATION_EVENTS) == {}

@pytest.mark.asyncio
async def test_non_fatal_swallows_and_logs(caplog):
    """Test that a failing side effect is logged with its entity and returns None."""
    async def failing():
        raise RuntimeError("queue down")

    with caplog.at_level(logging.WARNING):
        result = await non_fatal('notify Order.Delivered', "order_1", failing())

    assert result is None
    assert "operation=notify Order.Delivered" in caplog.text
    assert "entity_id=order_1" in caplog.text

@pytest.mark.asyncio
async def test_non_fatal_returns_result():
    """Test that a successful side effect passes its result through."""
    async def succeeding():
        return 42

    assert await non_fatal('noop', "order_1", succeeding()) == 42
