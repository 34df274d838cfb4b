"""Tests for the payment event idempotency gate."""

import asyncio

import pytest

from database import collections
from payments import EventAdmissionError

@pytest.mark.asyncio
async def test_first_delivery_is_admitted(store, gate):
    """Test that a new event id is admitted and recorded as processing."""
    admission = await gate.admit_event("evt_1", {'type': 'checkout.session.completed'})

    assert admission.admitted is True
    assert admission.reason == 'new'
    record = await store.get(collections.PAYMENT_EVENTS, "evt_1")
    assert record['status'] == 'processing'
    assert record['type'] == 'checkout.session.completed'
    assert record['attempts'] == 1

@pytest.mark.asyncio
async def test_redelivery_while_processing(gate):
    """Test that a second delivery during processing is not admitted."""
    await gate.admit_event("evt_1", {})

    admission = await gate.admit_event("evt_1", {})

    assert admission.admitted is False
    assert admission.reason == 'in_progress'

@pytest.mark.asyncio
async def test_redelivery_after_processed(store, gate):
    """Test that processed events are duplicates forever."""
    await gate.admit_event("evt_1", {})
    await gate.mark_processed("evt_1", {'order_id': "order_1"})

    admission = await gate.admit_event("evt_1", {})

    assert admission.admitted is False
    assert admission.reason == 'duplicate'
    record = await store.get(collections.PAYMENT_EVENTS, "evt_1")
    assert record['affected'] == {'order_id': "order_1"}

@pytest.mark.asyncio
async def test_failed_event_is_retried(store, gate):
    """Test that a failed event is admitted again on redelivery."""
    await gate.admit_event("evt_1", {})
    await gate.mark_failed("evt_1", "boom")

    admission = await gate.admit_event("evt_1", {})

    assert admission.admitted is True
    assert admission.reason == 'retry'
    assert admission.attempts == 2
    record = await store.get(collections.PAYMENT_EVENTS, "evt_1")
    assert record['status'] == 'processing'
    assert record['last_error'] == "boom"

@pytest.mark.asyncio
async def test_stale_processing_record_is_reclaimed(gate, clock):
    """Test that a delivery whose handler died can be re-admitted after the timeout."""
    await gate.admit_event("evt_1", {})

    clock.advance(seconds=299)
    assert (await gate.admit_event("evt_1", {})).admitted is False

    clock.advance(seconds=2)
    admission = await gate.admit_event("evt_1", {})
    assert admission.admitted is True
    assert admission.reason == 'retry'

@pytest.mark.asyncio
async def test_concurrent_deliveries_admit_one(gate):
    """Test that racing deliveries of one event admit exactly one caller."""
    admissions = await asyncio.gather(*(gate.admit_event("evt_1", {}) for _ in range(10)))

    assert sum(1 for admission in admissions if admission.admitted) == 1

@pytest.mark.asyncio
async def test_store_failure_without_record_raises(store, gate):
    """Test that an event that could not be recorded is not treated as handled."""
    store.fail_next()

    with pytest.raises(EventAdmissionError):
        await gate.admit_event("evt_1", {})

@pytest.mark.asyncio
async def test_store_failure_with_existing_record(store, gate):
    """Test the fallback read when the transaction fails but a record exists."""
    await gate.admit_event("evt_1", {})
    await gate.mark_processed("evt_1")
    store.fail_next()

    admission = await gate.admit_event("evt_1", {})

    assert admission.admitted is False
    assert admission.reason == 'duplicate'
