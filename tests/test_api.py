"""Integration tests for the HTTP API via TestClient."""

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from api.errors import CONFLICT_DETAIL, IN_PROGRESS_DETAIL
from api.main import create_app
from api.services import build_services
from conftest import (
    ADMIN_ID,
    BUYER_ID,
    LISTING_ID,
    NOW,
    SELLER_ID,
    RecordingEmitter,
    build_order,
)
from database import MemoryStore, collections, to_timestamp
from orders import TransactionStatus, TransportMode
from payments import FakeGateway

S = TransactionStatus

BUYER = {'X-Actor-Id': BUYER_ID, 'X-Actor-Role': 'buyer'}
SELLER = {'X-Actor-Id': SELLER_ID, 'X-Actor-Role': 'seller'}
ADMIN = {'X-Actor-Id': ADMIN_ID, 'X-Actor-Role': 'admin'}
STRANGER = {'X-Actor-Id': 'someone_else', 'X-Actor-Role': 'buyer'}

@pytest.fixture
def memory_store():
    return MemoryStore()

@pytest.fixture
def services(memory_store, settings, clock):
    return build_services(
        memory_store, settings, gateway=FakeGateway(), emitter=RecordingEmitter(), clock=clock
    )

@pytest.fixture
def client(services):
    return TestClient(create_app(services))

def seed_order(store, order_id: str = "order_1", **kwargs):
    asyncio.run(store.put(collections.ORDERS, order_id, build_order(order_id, **kwargs)))

def get_order(store, order_id: str = "order_1"):
    return asyncio.run(store.get(collections.ORDERS, order_id))

def test_root(client):
    """Test the service banner."""
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()['status'] == "running"

# Identity

def test_missing_identity_headers(client, memory_store):
    """Test that requests without an actor are rejected."""
    seed_order(memory_store)

    assert client.get("/orders/order_1").status_code == 401
    assert client.get("/orders/order_1", headers={'X-Actor-Id': BUYER_ID}).status_code == 401

def test_internal_roles_cannot_be_claimed(client, memory_store):
    """Test that callers cannot pose as the system or the webhook."""
    seed_order(memory_store)

    response = client.get("/orders/order_1", headers={'X-Actor-Id': 'x', 'X-Actor-Role': 'system'})

    assert response.status_code == 401

def test_get_order(client, memory_store):
    """Test reading an order as a party, a stranger and for a missing id."""
    seed_order(memory_store)

    response = client.get("/orders/order_1", headers=BUYER)
    assert response.status_code == 200
    assert response.json()['effective_status'] == S.FULFILLMENT_REQUIRED.value
    assert response.json()['awaiting_seller'] is True

    assert client.get("/orders/order_1", headers=STRANGER).status_code == 403
    assert client.get("/orders/missing", headers=BUYER).status_code == 404

# Fulfillment

def test_delivery_flow(client, memory_store):
    """Test the carrier branch end to end over HTTP."""
    seed_order(memory_store)
    base = "/orders/order_1/fulfillment"

    response = client.post(f"{base}/schedule-delivery", headers=SELLER, json={
        'eta': "2026-03-04T12:00:00Z",
        'carrier': "UPS",
        'tracking_number': "1Z999",
    })
    assert response.status_code == 200
    assert response.json()['transaction_status'] == S.DELIVERY_SCHEDULED.value

    response = client.post(f"{base}/confirm-receipt", headers=BUYER)
    assert response.status_code == 409
    assert response.json()['detail'] == CONFLICT_DETAIL

    response = client.post(f"{base}/mark-delivered", headers=SELLER)
    assert response.status_code == 200
    assert response.json()['transaction_status'] == S.DELIVERED_PENDING_CONFIRMATION.value

    response = client.post(f"{base}/confirm-receipt", headers=BUYER)
    assert response.status_code == 200
    assert response.json()['transaction_status'] == S.COMPLETED.value

def test_wrong_branch_is_a_bad_request(client, memory_store):
    """Test that a pickup action on a delivery order returns 400."""
    seed_order(memory_store)

    response = client.post("/orders/order_1/fulfillment/set-pickup-info", headers=SELLER, json={
        'location': "Main St 1",
        'windows': [{'start': "2026-03-03T10:00:00Z", 'end': "2026-03-03T12:00:00Z"}],
    })

    assert response.status_code == 400

def test_pickup_code_is_only_shown_to_the_seller(client, memory_store):
    """Test that the buyer never receives the code and can confirm with it."""
    seed_order(memory_store, transport=TransportMode.BUYER_PICKUP)
    base = "/orders/order_1/fulfillment"

    response = client.post(f"{base}/set-pickup-info", headers=SELLER, json={
        'location': "Main St 1",
        'windows': [{'start': "2026-03-03T10:00:00Z", 'end': "2026-03-03T12:00:00Z"}],
    })
    assert response.status_code == 200
    code = response.json()['pickup']['code']

    buyer_view = client.get("/orders/order_1", headers=BUYER).json()
    assert 'code' not in buyer_view['pickup']
    assert buyer_view['pickup']['location'] == "Main St 1"

    response = client.post(f"{base}/select-pickup-window", headers=BUYER, json={'window_index': 0})
    assert response.status_code == 200
    assert 'code' not in response.json()['pickup']

    assert client.post(f"{base}/confirm-pickup", headers=BUYER, json={'code': "000000x"}).status_code == 400

    response = client.post(f"{base}/confirm-pickup", headers=BUYER, json={'code': code})
    assert response.status_code == 200
    assert response.json()['transaction_status'] == S.COMPLETED.value

def test_invalid_pickup_window_payload(client, memory_store):
    """Test request validation of pickup windows."""
    seed_order(memory_store, transport=TransportMode.BUYER_PICKUP)

    response = client.post("/orders/order_1/fulfillment/set-pickup-info", headers=SELLER, json={
        'location': "Main St 1",
        'windows': [{'start': "2026-03-03T12:00:00Z", 'end': "2026-03-03T10:00:00Z"}],
    })

    assert response.status_code == 422

# Refunds and disputes

def test_refund(client, memory_store):
    """Test that only admins can refund and the order ends refunded."""
    seed_order(memory_store)

    assert client.post("/orders/order_1/refund", headers=BUYER, json={}).status_code == 403

    response = client.post("/orders/order_1/refund", headers=ADMIN, json={'reason': "out of stock"})
    assert response.status_code == 200
    assert response.json()['transaction_status'] == S.REFUNDED.value

    assert client.post("/orders/order_1/refund", headers=ADMIN, json={}).status_code == 409

def test_refund_in_progress_returns_retry_after(client, memory_store):
    """Test that a held order answers 409 with Retry-After."""
    seed_order(memory_store, refund_in_progress_at=to_timestamp(NOW), refund_lock_id="lock_1")

    response = client.post("/orders/order_1/refund", headers=ADMIN, json={'amount': 500})

    assert response.status_code == 409
    assert response.json()['detail'] == IN_PROGRESS_DETAIL
    assert response.headers['Retry-After'] == "5"

def test_refund_amount_must_be_positive(client, memory_store):
    """Test request validation of refund amounts."""
    seed_order(memory_store)

    assert client.post("/orders/order_1/refund", headers=ADMIN, json={'amount': 0}).status_code == 422

def test_gateway_failure_is_bad_gateway(client, services, memory_store):
    """Test that a gateway error surfaces as 502 and leaves no marker."""
    seed_order(memory_store)
    services.gateway.configure(should_succeed=False)

    response = client.post("/orders/order_1/refund", headers=ADMIN, json={})

    assert response.status_code == 502
    assert get_order(memory_store)['refund_in_progress_at'] is None

def test_dispute_open_and_resolve(client, services, memory_store):
    """Test opening a dispute as the buyer and a partial resolution by an admin."""
    seed_order(memory_store, status=S.DELIVERED_PENDING_CONFIRMATION)

    response = client.post("/orders/order_1/dispute", headers=BUYER, json={'reason': "scratched"})
    assert response.status_code == 200
    assert response.json()['transaction_status'] == S.DISPUTE_OPENED.value

    response = client.post("/orders/order_1/dispute/resolve", headers=ADMIN,
                           json={'resolution': "partial_refund"})
    assert response.status_code == 400

    response = client.post("/orders/order_1/dispute/resolve", headers=BUYER,
                           json={'resolution': "refund"})
    assert response.status_code == 403

    response = client.post("/orders/order_1/dispute/resolve", headers=ADMIN,
                           json={'resolution': "partial_refund", 'amount': 5000})
    assert response.status_code == 200
    assert response.json()['transaction_status'] == S.COMPLETED.value
    assert services.gateway.refunded_total == 5000

# Webhook

def checkout_payload(event_id: str = "evt_1") -> str:
    return json.dumps({
        'id': event_id,
        'type': "checkout.session.completed",
        'data': {'object': {
            'id': "cs_1",
            'payment_status': "paid",
            'amount_total': 20000,
            'payment_intent': "pi_1",
            'metadata': {
                'listing_id': LISTING_ID,
                'buyer_id': BUYER_ID,
                'seller_id': SELLER_ID,
                'transport_mode': "carrier_delivery",
            },
        }},
    })

def post_webhook(client, payload: str, signature: str = "test-signature"):
    return client.post(
        "/payments/webhook",
        content=payload,
        headers={'Stripe-Signature': signature, 'Content-Type': 'application/json'}
    )

def test_webhook_rejects_bad_signature(client):
    """Test that unsigned payloads are refused."""
    response = post_webhook(client, checkout_payload(), signature="forged")

    assert response.status_code == 400
    assert response.json()['detail'] == "Invalid webhook signature"

def test_webhook_processes_once(client, memory_store):
    """Test that the first delivery applies and a redelivery is acknowledged as idempotent."""
    first = post_webhook(client, checkout_payload())
    second = post_webhook(client, checkout_payload())

    assert first.status_code == 200
    assert first.json()['idempotent'] is False
    assert second.status_code == 200
    assert second.json()['idempotent'] is True
    assert get_order(memory_store, "order_cs_1")['transaction_status'] == S.FULFILLMENT_REQUIRED.value

def test_webhook_requires_event_id(client):
    """Test that an authentic payload without an id is refused."""
    response = post_webhook(client, json.dumps({'type': "checkout.session.completed"}))

    assert response.status_code == 400

def test_webhook_store_outage_asks_for_redelivery(client, memory_store):
    """Test that an event that could not be recorded gets a 5xx."""
    memory_store.fail_next()

    response = post_webhook(client, checkout_payload())

    assert response.status_code == 503
    assert asyncio.run(memory_store.get(collections.PAYMENT_EVENTS, "evt_1")) is None

# Admin

def test_admin_routes_require_admin(client, memory_store):
    """Test that parties get 403 on admin routes."""
    seed_order(memory_store)

    assert client.post(f"/admin/sellers/{SELLER_ID}/freeze", headers=SELLER,
                       json={'reason': "x"}).status_code == 403
    assert client.post("/admin/orders/order_1/notes", headers=BUYER,
                       json={'note': "x"}).status_code == 403

def test_admin_routes(client, memory_store):
    """Test freeze, note and review over HTTP."""
    seed_order(memory_store, admin_flags=['needs_review'])

    response = client.post(f"/admin/sellers/{SELLER_ID}/freeze", headers=ADMIN,
                           json={'reason': "chargebacks"})
    assert response.status_code == 200
    assert response.json()['orders_flagged'] == 1

    response = client.post("/admin/orders/order_1/notes", headers=ADMIN, json={'note': "called seller"})
    assert response.status_code == 200
    assert response.json()['admin_notes'][0]['note'] == "called seller"

    response = client.post("/admin/orders/order_1/mark-reviewed", headers=ADMIN)
    assert response.status_code == 200
    assert response.json()['admin_flags'] == ['frozen_seller']

    assert client.post("/admin/orders/missing/notes", headers=ADMIN,
                       json={'note': "x"}).status_code == 404

# Health

def test_health_reports_last_runs(client, services):
    """Test that health reflects the last sweep and the last webhook."""
    response = client.get("/system/health")
    assert response.status_code == 200
    assert response.json()['status'] == "healthy"
    assert response.json()['last_sweep'] is None

    asyncio.run(services.sweep.run_once())
    post_webhook(client, checkout_payload())

    body = client.get("/system/health").json()
    assert body['database_status'] == "connected"
    assert body['last_sweep']['budget_exhausted'] is False
    assert body['last_webhook']['last_event_id'] == "evt_1"
