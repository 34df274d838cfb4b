"""Service container shared by the API routes and the background sweep."""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from fastapi import Request

from database.store import Store, utcnow
from notifications import NotificationEmitter, StoreNotificationEmitter
from orders import AdminManager, FulfillmentManager, RefundManager
from payments import IdempotencyGate, PaymentEventProcessor, PaymentGateway, StripeGateway
from workers.reconciliation import ReconciliationSweep

@dataclass
class Services:
    store: Store
    settings: Dict[str, Any]
    gateway: PaymentGateway
    emitter: NotificationEmitter
    gate: IdempotencyGate
    processor: PaymentEventProcessor
    fulfillment: FulfillmentManager
    refunds: RefundManager
    admin: AdminManager
    sweep: ReconciliationSweep

def build_services(
    store: Store,
    settings: Dict[str, Any],
    gateway: Optional[PaymentGateway] = None,
    emitter: Optional[NotificationEmitter] = None,
    clock: Callable[[], datetime] = utcnow
) -> Services:
    """Wire every component against one store.

    Args:
        store: Document store
        settings: Validated settings
        gateway: Payment gateway, defaults to Stripe with the configured keys
        emitter: Notification emitter, defaults to the store-backed queue
        clock: Shared clock
    """
    if gateway is None:
        gateway = StripeGateway(settings['stripe_api_key'], settings['stripe_webhook_secret'])
    if emitter is None:
        emitter = StoreNotificationEmitter(store, clock=clock)

    lock_timeout = settings['refund_lock_timeout_seconds']
    gate = IdempotencyGate(
        store,
        processing_timeout_seconds=settings['event_processing_timeout_seconds'],
        clock=clock
    )
    return Services(
        store=store,
        settings=settings,
        gateway=gateway,
        emitter=emitter,
        gate=gate,
        processor=PaymentEventProcessor(store, gate, emitter, settings, clock=clock),
        fulfillment=FulfillmentManager(store, emitter, lock_timeout_seconds=lock_timeout, clock=clock),
        refunds=RefundManager(store, gateway, emitter, lock_timeout_seconds=lock_timeout, clock=clock),
        admin=AdminManager(store, clock=clock),
        sweep=ReconciliationSweep(store, emitter, settings, clock=clock),
    )

def get_services(request: Request) -> Services:
    """FastAPI dependency returning the app's service container."""
    return request.app.state.services
