"""Shared fixtures: in-memory store, fake gateway, recording emitter and a fixed clock."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import pytest
import pytest_asyncio

from config import DEFAULTS, validate_settings
from database import MemoryStore, collections, to_timestamp
from notifications import NotificationEmitter
from orders import (
    Actor,
    ActorRole,
    AdminManager,
    FulfillmentManager,
    Order,
    RefundManager,
    TransactionStatus,
    TransportMode,
)
from payments import FakeGateway, IdempotencyGate, PaymentEventProcessor

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

BUYER_ID = "buyer_1"
SELLER_ID = "seller_1"
ADMIN_ID = "admin_1"
LISTING_ID = "listing_1"

class FixedClock:
    """Clock that only moves when a test moves it."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)

class RecordingEmitter(NotificationEmitter):
    """Keeps every emitted event; honors dedupe hashes like the real queue."""

    def __init__(self):
        self.events: List[Dict[str, Any]] = []
        self.hashes = set()
        self.fail = False

    async def emit(self, event_type, target_user_id, entity_ref, payload, dedupe_hash) -> bool:
        if self.fail:
            raise RuntimeError("notification service down")
        if dedupe_hash in self.hashes:
            return False
        self.hashes.add(dedupe_hash)
        self.events.append({
            'event_type': event_type,
            'target_user_id': target_user_id,
            'entity_ref': entity_ref,
            'payload': payload,
            'dedupe_hash': dedupe_hash,
        })
        return True

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [event for event in self.events if event['event_type'] == event_type]

def build_order(
    order_id: str = "order_1",
    status: TransactionStatus = TransactionStatus.FULFILLMENT_REQUIRED,
    transport: TransportMode = TransportMode.CARRIER_DELIVERY,
    **overrides
) -> Dict[str, Any]:
    """Stored order document; ``overrides`` are applied to the JSON form."""
    order = Order(
        order_id=order_id,
        buyer_id=BUYER_ID,
        seller_id=SELLER_ID,
        listing_id=LISTING_ID,
        amount=20000,
        platform_fee=1000,
        seller_amount=19000,
        transaction_status=status,
        transport_mode=transport,
        checkout_session_id=f"cs_{order_id}",
        payment_intent_id=f"pi_{order_id}",
        paid_at=NOW - timedelta(days=1),
        created_at=NOW - timedelta(days=1),
        updated_at=NOW - timedelta(days=1),
    )
    document = order.to_document()
    document.update(overrides)
    return document

def build_offer(offer_id: str = "offer_1", status: str = "open", **overrides) -> Dict[str, Any]:
    offer = {
        'offer_id': offer_id,
        'listing_id': LISTING_ID,
        'buyer_id': BUYER_ID,
        'seller_id': SELLER_ID,
        'amount': 15000,
        'status': status,
        'expires_at': to_timestamp(NOW + timedelta(days=1)),
        'history': [],
        'created_at': to_timestamp(NOW - timedelta(days=2)),
    }
    offer.update(overrides)
    return offer

@pytest_asyncio.fixture
async def store():
    """Create and return an empty in-memory store."""
    return MemoryStore()

@pytest.fixture
def clock():
    return FixedClock()

@pytest.fixture
def emitter():
    return RecordingEmitter()

@pytest.fixture
def gateway():
    return FakeGateway()

@pytest.fixture
def settings():
    """Default settings, validated the way the services receive them."""
    return validate_settings(DEFAULTS)

@pytest.fixture
def buyer():
    return Actor(actor_id=BUYER_ID, role=ActorRole.BUYER)

@pytest.fixture
def seller():
    return Actor(actor_id=SELLER_ID, role=ActorRole.SELLER)

@pytest.fixture
def admin():
    return Actor(actor_id=ADMIN_ID, role=ActorRole.ADMIN)

@pytest.fixture
def stranger():
    return Actor(actor_id="someone_else", role=ActorRole.BUYER)

@pytest.fixture
def order_factory(store):
    """Store an order built by ``build_order`` and return its document."""
    async def _create(order_id: str = "order_1", **kwargs) -> Dict[str, Any]:
        document = build_order(order_id, **kwargs)
        await store.put(collections.ORDERS, order_id, document)
        return document
    return _create

@pytest.fixture
def offer_factory(store):
    async def _create(offer_id: str = "offer_1", **kwargs) -> Dict[str, Any]:
        document = build_offer(offer_id, **kwargs)
        await store.put(collections.OFFERS, offer_id, document)
        return document
    return _create

@pytest.fixture
def listing_factory(store):
    async def _create(listing_id: str = LISTING_ID, **kwargs) -> Dict[str, Any]:
        document = {
            'listing_id': listing_id,
            'seller_id': SELLER_ID,
            'status': 'active',
            'price': 20000,
            'transport_mode': TransportMode.CARRIER_DELIVERY.value,
        }
        document.update(kwargs)
        await store.put(collections.LISTINGS, listing_id, document)
        return document
    return _create

@pytest.fixture
def fulfillment(store, emitter, clock, settings):
    return FulfillmentManager(
        store, emitter,
        lock_timeout_seconds=settings['refund_lock_timeout_seconds'],
        clock=clock
    )

@pytest.fixture
def refunds(store, gateway, emitter, clock, settings):
    return RefundManager(
        store, gateway, emitter,
        lock_timeout_seconds=settings['refund_lock_timeout_seconds'],
        clock=clock
    )

@pytest.fixture
def admin_manager(store, clock):
    return AdminManager(store, clock=clock)

@pytest.fixture
def gate(store, clock, settings):
    return IdempotencyGate(
        store,
        processing_timeout_seconds=settings['event_processing_timeout_seconds'],
        clock=clock
    )

@pytest.fixture
def processor(store, gate, emitter, settings, clock):
    return PaymentEventProcessor(store, gate, emitter, settings, clock=clock)
