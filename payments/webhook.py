"""Payment event dispatch.

``PaymentEventProcessor.process`` takes an authenticated gateway event,
passes it through the idempotency gate and, for the delivery that is
admitted, applies the matching order transition. The caller may report
success only once ``process`` returns; any exception means the event was
not (fully) handled and the gateway must redeliver it.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from database import collections
from database.store import Store, Transaction, to_timestamp, utcnow
from listings import mark_sold, release_purchase_reservation
from notifications import NotificationEmitter, non_fatal
from orders.audit import record_audit
from orders.models import ActorRole, AuditSource, DisputeInfo, Order
from orders.status import (
    TransactionStatus,
    TransportMode,
    get_effective_status,
    get_transport_mode,
    is_terminal,
)
from .idempotency import IdempotencyGate

logger = logging.getLogger(__name__)

WEBHOOK_ACTOR = 'stripe_webhook'
PAID_AFTER_CANCEL_FLAG = 'paid_after_cancel'

Handler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]

class InvalidEventError(Exception):
    """Raised for an authentic event that cannot be applied (missing data).

    Redelivering such an event cannot help, so it is recorded and acknowledged.
    """
    pass

def event_metadata(event: Dict[str, Any]) -> Dict[str, Any]:
    """Event type and related ids stored on the idempotency record."""
    event_type = event.get('type', '')
    obj = (event.get('data') or {}).get('object') or {}
    metadata: Dict[str, Any] = {'type': event_type}

    if event_type.startswith('checkout.session.'):
        metadata['checkout_session_id'] = obj.get('id')
        metadata['payment_intent_id'] = obj.get('payment_intent')
    elif event_type.startswith('charge.dispute.'):
        metadata['dispute_id'] = obj.get('id')
        metadata['charge_id'] = obj.get('charge')
        metadata['payment_intent_id'] = obj.get('payment_intent')

    return metadata

def listing_claimed_elsewhere(listing: Optional[Dict[str, Any]], order_id: str) -> bool:
    """True if the listing is sold to, or held for, a different order."""
    if listing is None:
        return False
    for field in ('sold_to_order_id', 'purchase_reserved_by_order_id'):
        owner = listing.get(field)
        if owner and owner != order_id:
            return True
    return False

def order_id_for_session(session: Dict[str, Any]) -> str:
    """Order id for a checkout session: explicit metadata, else derived from the session id."""
    metadata = session.get('metadata') or {}
    return metadata.get('order_id') or f"order_{session['id']}"

class PaymentEventProcessor:
    """Applies admitted payment events to orders, listings and offers."""

    def __init__(
        self,
        store: Store,
        gate: IdempotencyGate,
        emitter: NotificationEmitter,
        settings: Dict[str, Any],
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.gate = gate
        self.emitter = emitter
        self.settings = settings
        self.clock = clock
        self._handlers: Dict[str, Handler] = {
            'checkout.session.completed': self._on_checkout_completed,
            'checkout.session.async_payment_succeeded': self._confirm_payment,
            'checkout.session.async_payment_failed': self._cancel_pending_order,
            'checkout.session.expired': self._cancel_pending_order,
            'charge.dispute.created': self._on_chargeback_created,
            'charge.dispute.updated': self._on_chargeback_changed,
            'charge.dispute.closed': self._on_chargeback_changed,
            'charge.dispute.funds_withdrawn': self._on_chargeback_changed,
            'charge.dispute.funds_reinstated': self._on_chargeback_changed,
        }

    async def process(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Admit and apply one event.

        Returns:
            Dict with ``received`` and ``idempotent`` plus the affected ids

        Raises:
            EventAdmissionError: If the event could not be durably admitted
            Exception: Whatever the handler raised; the record is marked failed
        """
        event_id = event['id']
        event_type = event['type']

        admission = await self.gate.admit_event(event_id, event_metadata(event))
        if not admission.admitted:
            return {'received': True, 'idempotent': True, 'reason': admission.reason}

        handler = self._handlers.get(event_type)
        obj = (event.get('data') or {}).get('object') or {}

        try:
            affected = await handler(obj) if handler else {'ignored': 'unhandled event type'}
        except InvalidEventError as e:
            logger.error(f"Event {event_id} ({event_type}) cannot be applied: {e}")
            affected = {'ignored': str(e)}
        except Exception as e:
            logger.error(f"Handler for event {event_id} ({event_type}) failed: {e}")
            await non_fatal('mark_event_failed', event_id, self.gate.mark_failed(event_id, str(e)))
            raise

        # Effects are committed; a failure here leaves a processing record that
        # the gate treats as in progress until it goes stale
        await non_fatal('mark_event_processed', event_id, self.gate.mark_processed(event_id, affected))
        await non_fatal('record_webhook_health', event_id, self._record_health(event_id, event_type))

        logger.info(f"Processed event {event_id} ({event_type})")
        return {'received': True, 'idempotent': False, **affected}

    async def _record_health(self, event_id: str, event_type: str) -> None:
        now = to_timestamp(self.clock())

        async def _write(tx: Transaction) -> None:
            await tx.set(collections.OPS_HEALTH, 'webhook', {
                'last_event_id': event_id,
                'last_event_type': event_type,
                'last_processed_at': now,
            })

        await self.store.run_transaction(_write)

    # Checkout sessions

    async def _on_checkout_completed(self, session: Dict[str, Any]) -> Dict[str, Any]:
        if session.get('payment_status') in ('paid', 'no_payment_required'):
            return await self._confirm_payment(session)
        return await self._create_pending_order(session)

    def _order_fields(self, session: Dict[str, Any], listing: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        metadata = session.get('metadata') or {}
        listing = listing or {}

        missing = [
            key for key in ('listing_id', 'buyer_id', 'seller_id')
            if not metadata.get(key) and not (key == 'seller_id' and listing.get('seller_id'))
        ]
        if missing:
            raise InvalidEventError(f"Checkout session {session.get('id')} missing metadata: {missing}")

        transport = get_transport_mode(metadata) or get_transport_mode(listing)
        if transport is None:
            raise InvalidEventError(f"Checkout session {session.get('id')} has no transport mode")

        amount = session.get('amount_total')
        if amount is None:
            raise InvalidEventError(f"Checkout session {session.get('id')} has no amount")

        if metadata.get('platform_fee') is not None:
            platform_fee = int(metadata['platform_fee'])
        else:
            platform_fee = amount * self.settings['platform_fee_percent'] // 100

        return {
            'order_id': order_id_for_session(session),
            'buyer_id': metadata['buyer_id'],
            'seller_id': metadata.get('seller_id') or listing['seller_id'],
            'listing_id': metadata['listing_id'],
            'offer_id': metadata.get('offer_id'),
            'currency': session.get('currency') or 'usd',
            'amount': amount,
            'platform_fee': platform_fee,
            'seller_amount': amount - platform_fee,
            'transport_mode': transport,
            'checkout_session_id': session['id'],
            'payment_intent_id': session.get('payment_intent'),
        }

    async def _confirm_payment(self, session: Dict[str, Any]) -> Dict[str, Any]:
        now = self.clock()
        metadata = session.get('metadata') or {}
        order_id = order_id_for_session(session)

        async def _apply(tx: Transaction) -> Optional[Dict[str, Any]]:
            existing = await tx.get(collections.ORDERS, order_id)
            previous_status = get_effective_status(existing) if existing is not None else None
            # A captured payment outranks an expiry that cancelled the order first
            reinstated = (
                previous_status == TransactionStatus.CANCELLED and not existing.get('paid_at')
            )
            if previous_status not in (None, TransactionStatus.PENDING_PAYMENT) and not reinstated:
                logger.info(f"Order {order_id} already past payment ({previous_status.value}), nothing to confirm")
                return None

            listing = None
            if metadata.get('listing_id'):
                listing = await tx.get(collections.LISTINGS, metadata['listing_id'])
            fields = self._order_fields(session, listing)
            claimed = listing_claimed_elsewhere(listing, order_id)

            payment_fields = {
                'transaction_status': TransactionStatus.FULFILLMENT_REQUIRED,
                'status': 'paid',
                'paid_at': now,
                'fulfillment_sla_started_at': now,
                'fulfillment_start_deadline_at': now + timedelta(
                    hours=self.settings['fulfillment_start_sla_hours']
                ),
                'fulfillment_sla_deadline_at': now + timedelta(
                    days=self.settings['fulfillment_sla_days']
                ),
                'updated_at': now,
            }

            if reinstated:
                payment_fields.update({'cancelled_at': None, 'cancellation_reason': None})
            if claimed:
                flags = list((existing or {}).get('admin_flags') or [])
                if PAID_AFTER_CANCEL_FLAG not in flags:
                    flags.append(PAID_AFTER_CANCEL_FLAG)
                payment_fields.update({
                    'admin_flags': flags,
                    'admin_hold': True,
                    'payout_hold_reason': PAID_AFTER_CANCEL_FLAG,
                })

            if existing is None:
                order = Order(**fields, **payment_fields, created_at=now)
                await tx.create(collections.ORDERS, order_id, order.to_document())
            else:
                document = Order.model_validate({**existing, **fields, **payment_fields}).to_document()
                await tx.set(collections.ORDERS, order_id, document)

            if claimed:
                # The listing went to another order while this one was cancelled
                logger.warning(
                    f"Order {order_id} paid after listing {fields['listing_id']} was taken "
                    f"by another order, holding payout for review"
                )
                await record_audit(
                    tx,
                    actor_id=WEBHOOK_ACTOR,
                    actor_role=ActorRole.WEBHOOK,
                    action_type=PAID_AFTER_CANCEL_FLAG,
                    entity_type='order',
                    entity_id=order_id,
                    order_id=order_id,
                    listing_id=fields['listing_id'],
                    before_state={'transaction_status': previous_status.value if previous_status else None},
                    after_state={'admin_hold': True, 'admin_flags': payment_fields['admin_flags']},
                    metadata={
                        'checkout_session_id': session['id'],
                        'sold_to_order_id': listing.get('sold_to_order_id'),
                        'purchase_reserved_by_order_id': listing.get('purchase_reserved_by_order_id'),
                    },
                    source=AuditSource.WEBHOOK,
                    now=now,
                )
            else:
                await mark_sold(tx, fields['listing_id'], order_id, now)

            if fields['offer_id']:
                offer = await tx.get(collections.OFFERS, fields['offer_id'])
                if offer is not None:
                    await tx.update(collections.OFFERS, fields['offer_id'], {
                        'order_id': order_id,
                        'paid_at': to_timestamp(now),
                        'updated_at': to_timestamp(now),
                    })

            await record_audit(
                tx,
                actor_id=WEBHOOK_ACTOR,
                actor_role=ActorRole.WEBHOOK,
                action_type='payment_confirmed',
                entity_type='order',
                entity_id=order_id,
                order_id=order_id,
                listing_id=fields['listing_id'],
                before_state={'transaction_status': previous_status.value if previous_status else None},
                after_state={'transaction_status': TransactionStatus.FULFILLMENT_REQUIRED.value},
                metadata={
                    'checkout_session_id': session['id'],
                    'amount': fields['amount'],
                    'reinstated': reinstated,
                },
                source=AuditSource.WEBHOOK,
                now=now,
            )
            return fields

        fields = await self.store.run_transaction(_apply)
        if fields is None:
            return {'order_id': order_id, 'noop': True}

        logger.info(f"Payment confirmed for order {order_id}")
        ref = f"order:{order_id}"
        await non_fatal('notify_buyer_order_confirmed', order_id, self.emitter.notify(
            'Order.Confirmed', fields['buyer_id'], ref, {'order_id': order_id}
        ))
        await non_fatal('notify_seller_payment_received', order_id, self.emitter.notify(
            'Order.PaymentReceived', fields['seller_id'], ref,
            {'order_id': order_id, 'seller_amount': fields['seller_amount']}
        ))
        return {'order_id': order_id}

    async def _create_pending_order(self, session: Dict[str, Any]) -> Dict[str, Any]:
        now = self.clock()
        order_id = order_id_for_session(session)
        metadata = session.get('metadata') or {}

        async def _apply(tx: Transaction) -> bool:
            if await tx.get(collections.ORDERS, order_id) is not None:
                return False
            listing = None
            if metadata.get('listing_id'):
                listing = await tx.get(collections.LISTINGS, metadata['listing_id'])
            order = Order(
                **self._order_fields(session, listing),
                transaction_status=TransactionStatus.PENDING_PAYMENT,
                created_at=now,
                updated_at=now,
            )
            await tx.create(collections.ORDERS, order_id, {**order.to_document(), 'status': 'pending'})
            if order.offer_id:
                # The sweep reads this link to leave offers with a payment in flight alone
                offer = await tx.get(collections.OFFERS, order.offer_id)
                if offer is not None and not offer.get('order_id'):
                    await tx.update(collections.OFFERS, order.offer_id, {
                        'order_id': order_id,
                        'updated_at': to_timestamp(now),
                    })
            await record_audit(
                tx,
                actor_id=WEBHOOK_ACTOR,
                actor_role=ActorRole.WEBHOOK,
                action_type='order_created_pending_payment',
                entity_type='order',
                entity_id=order_id,
                order_id=order_id,
                listing_id=order.listing_id,
                after_state={'transaction_status': TransactionStatus.PENDING_PAYMENT.value},
                metadata={'checkout_session_id': session['id']},
                source=AuditSource.WEBHOOK,
                now=now,
            )
            return True

        created = await self.store.run_transaction(_apply)
        return {'order_id': order_id, 'noop': not created}

    async def _cancel_pending_order(self, session: Dict[str, Any]) -> Dict[str, Any]:
        now = self.clock()
        order_id = order_id_for_session(session)

        async def _apply(tx: Transaction) -> Optional[Dict[str, Any]]:
            order = await tx.get(collections.ORDERS, order_id)
            if order is None:
                return None
            status = get_effective_status(order)
            if status != TransactionStatus.PENDING_PAYMENT:
                logger.info(f"Order {order_id} is {status.value}, not cancelling")
                return None

            await tx.update(collections.ORDERS, order_id, {
                'transaction_status': TransactionStatus.CANCELLED.value,
                'status': 'cancelled',
                'cancelled_at': to_timestamp(now),
                'cancellation_reason': 'payment_not_completed',
                'updated_at': to_timestamp(now),
            })
            released = await release_purchase_reservation(tx, order.get('listing_id'), order_id, now)
            await record_audit(
                tx,
                actor_id=WEBHOOK_ACTOR,
                actor_role=ActorRole.WEBHOOK,
                action_type='order_cancelled',
                entity_type='order',
                entity_id=order_id,
                order_id=order_id,
                listing_id=order.get('listing_id'),
                before_state={'transaction_status': status.value},
                after_state={'transaction_status': TransactionStatus.CANCELLED.value},
                metadata={'checkout_session_id': session.get('id'), 'reservation_released': released},
                source=AuditSource.WEBHOOK,
                now=now,
            )
            return order

        order = await self.store.run_transaction(_apply)
        if order is None:
            return {'order_id': order_id, 'noop': True}

        await non_fatal('notify_buyer_payment_failed', order_id, self.emitter.notify(
            'Order.PaymentFailed', order.get('buyer_id'), f"order:{order_id}", {'order_id': order_id}
        ))
        return {'order_id': order_id}

    # Chargebacks

    async def _find_order_id(self, dispute: Dict[str, Any]) -> str:
        payment_intent = dispute.get('payment_intent')
        if not payment_intent:
            raise InvalidEventError(f"Dispute {dispute.get('id')} has no payment intent")
        matches = await self.store.query(
            collections.ORDERS,
            [('payment_intent_id', '==', payment_intent)],
            limit=1,
        )
        if not matches:
            raise InvalidEventError(f"No order for payment intent {payment_intent}")
        return matches[0][0]

    async def _on_chargeback_created(self, dispute: Dict[str, Any]) -> Dict[str, Any]:
        now = self.clock()
        order_id = await self._find_order_id(dispute)

        async def _apply(tx: Transaction) -> Dict[str, Any]:
            order = await tx.get(collections.ORDERS, order_id)
            if order is None:
                raise InvalidEventError(f"Order {order_id} disappeared before chargeback could be recorded")
            status = get_effective_status(order)
            flags = list(order.get('admin_flags') or [])
            if 'chargeback' not in flags:
                flags.append('chargeback')

            fields: Dict[str, Any] = {
                'chargeback': {
                    'dispute_id': dispute['id'],
                    'status': 'open',
                    'amount': dispute.get('amount'),
                    'reason': dispute.get('reason'),
                    'created_at': to_timestamp(now),
                },
                'admin_hold': True,
                'payout_hold_reason': 'chargeback',
                'admin_flags': flags,
                'updated_at': to_timestamp(now),
            }
            # Terminal orders only get the chargeback annotation
            if not is_terminal(status) and status != TransactionStatus.DISPUTE_OPENED:
                fields['transaction_status'] = TransactionStatus.DISPUTE_OPENED.value
                fields['dispute'] = DisputeInfo(
                    reason=f"chargeback:{dispute.get('reason') or 'unknown'}",
                    opened_by=WEBHOOK_ACTOR,
                    opened_by_role=ActorRole.WEBHOOK,
                    opened_at=now,
                    previous_status=status,
                ).model_dump(mode='json')

            await tx.update(collections.ORDERS, order_id, fields)
            await record_audit(
                tx,
                actor_id=WEBHOOK_ACTOR,
                actor_role=ActorRole.WEBHOOK,
                action_type='chargeback_created',
                entity_type='order',
                entity_id=order_id,
                order_id=order_id,
                before_state={'transaction_status': status.value},
                after_state={'transaction_status': fields.get('transaction_status', status.value)},
                metadata={'dispute_id': dispute['id'], 'amount': dispute.get('amount')},
                source=AuditSource.WEBHOOK,
                now=now,
            )
            return order

        order = await self.store.run_transaction(_apply)
        await non_fatal('notify_seller_chargeback', order_id, self.emitter.notify(
            'Order.ChargebackOpened', order.get('seller_id'), f"order:{order_id}",
            {'order_id': order_id, 'dispute_id': dispute['id']}
        ))
        return {'order_id': order_id, 'dispute_id': dispute['id']}

    async def _on_chargeback_changed(self, dispute: Dict[str, Any]) -> Dict[str, Any]:
        now = self.clock()
        order_id = await self._find_order_id(dispute)
        new_status = dispute.get('status') or 'updated'

        async def _apply(tx: Transaction) -> None:
            order = await tx.get(collections.ORDERS, order_id)
            if order is None:
                raise InvalidEventError(f"Order {order_id} disappeared before chargeback could be updated")
            chargeback = dict(order.get('chargeback') or {'dispute_id': dispute['id']})
            previous = chargeback.get('status')
            chargeback.update({'status': new_status, 'updated_at': to_timestamp(now)})
            fields: Dict[str, Any] = {'chargeback': chargeback, 'updated_at': to_timestamp(now)}
            if new_status == 'won':
                fields['payout_hold_reason'] = None
            await tx.update(collections.ORDERS, order_id, fields)
            await record_audit(
                tx,
                actor_id=WEBHOOK_ACTOR,
                actor_role=ActorRole.WEBHOOK,
                action_type='chargeback_updated',
                entity_type='order',
                entity_id=order_id,
                order_id=order_id,
                before_state={'chargeback_status': previous},
                after_state={'chargeback_status': new_status},
                metadata={'dispute_id': dispute['id']},
                source=AuditSource.WEBHOOK,
                now=now,
            )

        await self.store.run_transaction(_apply)
        return {'order_id': order_id, 'dispute_id': dispute['id'], 'chargeback_status': new_status}
