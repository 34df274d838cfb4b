"""Reconciliation sweep.

Applies the time-based transitions nothing else triggers: expiring offers,
releasing holds whose payment window has passed, flagging sellers who miss
their fulfillment SLA and clearing abandoned purchase reservations. Orders
stalled in a fulfillment state get reminders, escalation to admin review or,
for unconfirmed deliveries, auto-completion.

Every item is re-read and re-checked inside the transaction that mutates
it, so overlapping runs only re-confirm state that is already applied.
Paging stops once the wall-clock budget is spent; the next run picks up
where this one left off.
"""
import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from database import collections
from database.store import Filter, Store, Transaction, cursor_for, from_timestamp, to_timestamp, utcnow
from listings import PURCHASE_RESERVATION_FIELDS, release_offer_reservation
from notifications import NotificationEmitter, non_fatal
from orders.admin import FROZEN_SELLER_CANDIDATE_FLAG, NEEDS_REVIEW_FLAG
from orders.audit import record_audit
from orders.locks import refund_lock_active
from orders.models import SYSTEM_ACTOR, ActorRole, AuditSource, OfferHistoryEntry, OfferStatus
from orders.status import TransactionStatus, get_effective_status

logger = logging.getLogger(__name__)

OPEN_OFFER_STATUSES = (OfferStatus.OPEN.value, OfferStatus.COUNTERED.value)

ESCALATED_FLAG = 'escalated'

# status -> (reminder kind, event type, recipient field, anchor timestamp field)
REMINDER_RULES = {
    TransactionStatus.FULFILLMENT_REQUIRED: ('fulfillment', 'Order.FulfillmentReminder', 'seller_id', 'paid_at'),
    TransactionStatus.DELIVERY_SCHEDULED: ('fulfillment', 'Order.FulfillmentReminder', 'seller_id', 'paid_at'),
    TransactionStatus.DELIVERED_PENDING_CONFIRMATION: (
        'receipt', 'Order.DeliveryCheckIn', 'buyer_id', 'delivered_at'
    ),
    TransactionStatus.READY_FOR_PICKUP: ('pickup', 'Order.PickupReminder', 'buyer_id', 'paid_at'),
    TransactionStatus.PICKUP_SCHEDULED: ('pickup', 'Order.PickupReminder', 'buyer_id', 'paid_at'),
}
STALL_STATUSES = tuple(REMINDER_RULES)

Page = List[Tuple[str, Dict[str, Any]]]
ItemHandler = Callable[[Transaction, str, datetime], Awaitable[Optional[Any]]]

@dataclass
class PassResult:
    scanned: int = 0
    expired: int = 0
    released: int = 0
    flagged: int = 0
    cleared: int = 0
    cancelled: int = 0
    completed: int = 0
    escalated: int = 0
    reminded: int = 0
    skipped: int = 0
    errors: int = 0

@dataclass
class Reminder:
    kind: str
    event_type: str
    recipient_id: Optional[str]
    step: str

@dataclass
class SweepResult:
    """Counts for one ``run_once`` invocation."""
    started_at: datetime
    passes: Dict[str, PassResult] = field(default_factory=dict)
    budget_exhausted: bool = False
    duration_seconds: float = 0.0

    def total(self, counter: str) -> int:
        return sum(getattr(result, counter) for result in self.passes.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'started_at': to_timestamp(self.started_at),
            'budget_exhausted': self.budget_exhausted,
            'duration_seconds': round(self.duration_seconds, 3),
            'passes': {name: asdict(result) for name, result in self.passes.items()},
        }

class ReconciliationSweep:
    """Scheduled sweep over offers, orders and listings."""

    def __init__(
        self,
        store: Store,
        emitter: NotificationEmitter,
        settings: Dict[str, Any],
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        page_size: Optional[int] = None,
        time_budget_seconds: Optional[float] = None
    ):
        """Initialize the sweep.

        Args:
            store: Document store
            emitter: Notification emitter
            settings: Validated settings (see ``config.get_settings``)
            clock: Returns the current aware UTC datetime
            monotonic: Returns seconds for the time budget
            page_size: Items per page, defaults to ``sweep_page_size``
            time_budget_seconds: Soft budget, defaults to ``sweep_time_budget_seconds``
        """
        self.store = store
        self.emitter = emitter
        self.clock = clock
        self.monotonic = monotonic
        self.page_size = page_size or settings['sweep_page_size']
        self.time_budget_seconds = (
            time_budget_seconds if time_budget_seconds is not None
            else settings['sweep_time_budget_seconds']
        )
        self.interval_seconds = settings['sweep_interval_seconds']
        self.accepted_window = timedelta(hours=settings['offer_accepted_window_hours'])
        self.delivered_review_window = timedelta(days=settings['delivered_review_days'])
        self.lock_timeout = timedelta(seconds=settings['refund_lock_timeout_seconds'])
        self.auto_complete_window = timedelta(days=settings['auto_complete_delivered_days'])
        self.escalation_window = timedelta(days=settings['escalate_to_admin_days'])
        self.sla_warning = timedelta(hours=settings['sla_warning_hours'])
        self.reminder_hours = {
            'fulfillment': settings['fulfillment_reminder_hours'],
            'receipt': settings['receipt_reminder_hours'],
            'pickup': settings['pickup_reminder_hours'],
        }
        self._deadline = 0.0
        self._stop_requested = False
        self._wake = asyncio.Event()

    def stop(self):
        """Signal ``run_forever`` to stop after the current run."""
        self._stop_requested = True
        self._wake.set()

    async def run_forever(self) -> None:
        """Run the sweep every ``sweep_interval_seconds`` until stopped."""
        logger.info(f"Starting reconciliation sweep (every {self.interval_seconds}s)")

        while not self._stop_requested:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in reconciliation sweep: {e}")

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

        logger.info("Reconciliation sweep stopped")

    async def run_once(self) -> SweepResult:
        """Run every pass once within the time budget.

        Returns:
            SweepResult: Per-pass counts and whether the budget ran out
        """
        started = self.monotonic()
        self._deadline = started + self.time_budget_seconds
        now = self.clock()
        result = SweepResult(started_at=now)

        passes = (
            ('offer_expiry', self._offer_expiry_pass),
            ('accepted_window', self._accepted_window_pass),
            ('fulfillment_sla', self._fulfillment_sla_pass),
            ('delivered_review', self._delivered_review_pass),
            ('purchase_reservations', self._purchase_reservation_pass),
            ('stalled_orders', self._stalled_orders_pass),
        )
        for name, run_pass in passes:
            if result.budget_exhausted:
                break
            stats = result.passes.setdefault(name, PassResult())
            try:
                await run_pass(now, stats, result)
            except Exception as e:
                stats.errors += 1
                logger.error(f"Sweep pass {name} failed: {e}")

        result.duration_seconds = self.monotonic() - started
        if result.budget_exhausted:
            logger.warning(
                f"Sweep stopped at time budget ({self.time_budget_seconds}s); "
                f"remaining items are left for the next run"
            )
        logger.info(
            f"Sweep complete: expired={result.total('expired')} released={result.total('released')} "
            f"flagged={result.total('flagged')} cleared={result.total('cleared')} "
            f"completed={result.total('completed')} escalated={result.total('escalated')} "
            f"reminded={result.total('reminded')} errors={result.total('errors')}"
        )
        await non_fatal('ops_health', 'reconciliation', self._record_health(result))
        return result

    def _budget_exhausted(self) -> bool:
        return self.monotonic() >= self._deadline

    async def _paginate(
        self,
        collection: str,
        filters: Sequence[Filter],
        order_by: str,
        stats: PassResult,
        result: SweepResult,
        handle_page: Callable[[Page, PassResult], Awaitable[None]]
    ) -> None:
        """Feed due items to ``handle_page`` a page at a time.

        The budget is checked before every page. The cursor moves past items
        the handler skipped, so a run never loops on the same page.
        """
        cursor = None
        while True:
            if self._budget_exhausted():
                result.budget_exhausted = True
                return

            page = await self.store.query(
                collection,
                filters,
                order_by=order_by,
                limit=self.page_size,
                start_after=cursor
            )
            if not page:
                return

            stats.scanned += len(page)
            await handle_page(page, stats)

            if len(page) < self.page_size:
                return
            doc_id, data = page[-1]
            cursor = cursor_for(doc_id, data, order_by)

    async def _apply_each(
        self,
        page: Page,
        stats: PassResult,
        now: datetime,
        handler: ItemHandler
    ) -> List[Any]:
        """Run ``handler`` for each item in its own transaction.

        A handler returns None when its re-check finds nothing to do.
        """
        applied = []
        for doc_id, _ in page:
            try:
                outcome = await self.store.run_transaction(partial(handler, doc_id=doc_id, now=now))
            except Exception as e:
                stats.errors += 1
                logger.error(f"Sweep failed on {doc_id}: {e}")
                continue
            if outcome is None:
                stats.skipped += 1
            else:
                applied.append(outcome)
        return applied

    # Offers

    async def _offer_expiry_pass(self, now: datetime, stats: PassResult, result: SweepResult) -> None:
        filters = [
            ('status', 'in', list(OPEN_OFFER_STATUSES)),
            ('expires_at', '<=', to_timestamp(now)),
        ]

        async def _page(page: Page, stats: PassResult) -> None:
            offer_ids = [offer_id for offer_id, _ in page]

            # One batch per page
            async def _expire_page(tx: Transaction) -> List[Dict[str, Any]]:
                expired = []
                for offer_id in offer_ids:
                    offer = await tx.get(collections.OFFERS, offer_id)
                    if offer is None or offer.get('status') not in OPEN_OFFER_STATUSES:
                        continue
                    if not offer.get('expires_at') or offer['expires_at'] > to_timestamp(now):
                        continue
                    released = await release_offer_reservation(tx, offer.get('listing_id'), offer_id, now)
                    await self._expire_offer(
                        tx, offer_id, offer, now,
                        history_type='expire',
                        action_type='offer_expired',
                        metadata={'listing_released': released}
                    )
                    expired.append({**offer, 'offer_id': offer_id, '_released': released})
                return expired

            try:
                expired = await self.store.run_transaction(_expire_page)
            except Exception as e:
                stats.errors += len(page)
                logger.error(f"Failed to expire page of {len(page)} offers: {e}")
                return

            stats.expired += len(expired)
            stats.released += sum(1 for offer in expired if offer['_released'])
            stats.skipped += len(page) - len(expired)
            for offer in expired:
                await self._notify_offer_expired(offer)

        await self._paginate(collections.OFFERS, filters, 'expires_at', stats, result, _page)

    async def _accepted_window_pass(self, now: datetime, stats: PassResult, result: SweepResult) -> None:
        cutoff = to_timestamp(now - self.accepted_window)
        filters = [
            ('status', '==', OfferStatus.ACCEPTED.value),
            ('accepted_at', '<=', cutoff),
        ]

        async def _expire_accepted(tx: Transaction, doc_id: str, now: datetime) -> Optional[Dict[str, Any]]:
            offer = await tx.get(collections.OFFERS, doc_id)
            if offer is None or offer.get('status') != OfferStatus.ACCEPTED.value:
                return None
            if not offer.get('accepted_at') or offer['accepted_at'] > cutoff:
                return None
            if await self._payment_in_flight(tx, offer):
                logger.info(f"Offer {doc_id} has a payment in flight, leaving it accepted")
                return None

            released = await release_offer_reservation(tx, offer.get('listing_id'), doc_id, now)
            await self._expire_offer(
                tx, doc_id, offer, now,
                history_type='accepted_window_expired',
                action_type='offer_accepted_window_expired',
                metadata={'listing_released': released, 'accepted_at': offer['accepted_at']}
            )
            return {**offer, 'offer_id': doc_id, '_released': released}

        async def _page(page: Page, stats: PassResult) -> None:
            expired = await self._apply_each(page, stats, now, _expire_accepted)
            stats.expired += len(expired)
            stats.released += sum(1 for offer in expired if offer['_released'])
            for offer in expired:
                await self._notify_offer_expired(offer)

        await self._paginate(collections.OFFERS, filters, 'accepted_at', stats, result, _page)

    async def _payment_in_flight(self, tx: Transaction, offer: Dict[str, Any]) -> bool:
        """True if the offer is linked to an order that is paid or awaiting payment."""
        order_id = offer.get('order_id')
        if not order_id:
            return False
        order = await tx.get(collections.ORDERS, order_id)
        if order is None:
            return False
        return get_effective_status(order) != TransactionStatus.CANCELLED

    async def _expire_offer(
        self,
        tx: Transaction,
        offer_id: str,
        offer: Dict[str, Any],
        now: datetime,
        history_type: str,
        action_type: str,
        metadata: Dict[str, Any]
    ) -> None:
        entry = OfferHistoryEntry(
            type=history_type,
            actor_id=SYSTEM_ACTOR.actor_id,
            actor_role=ActorRole.SYSTEM,
            created_at=now,
        )
        history = list(offer.get('history') or [])
        history.append(entry.model_dump(mode='json', exclude_none=True))

        await tx.update(collections.OFFERS, offer_id, {
            'status': OfferStatus.EXPIRED.value,
            'last_actor_role': ActorRole.SYSTEM.value,
            'history': history,
            'expired_at': to_timestamp(now),
            'updated_at': to_timestamp(now),
        })
        await record_audit(
            tx,
            actor_id=SYSTEM_ACTOR.actor_id,
            actor_role=ActorRole.SYSTEM,
            action_type=action_type,
            entity_type='offer',
            entity_id=offer_id,
            listing_id=offer.get('listing_id'),
            before_state={'status': offer.get('status')},
            after_state={'status': OfferStatus.EXPIRED.value},
            metadata=metadata,
            source=AuditSource.CRON,
            now=now,
        )

    async def _notify_offer_expired(self, offer: Dict[str, Any]) -> None:
        ref = f"offer:{offer['offer_id']}:expired"
        payload = {'offer_id': offer['offer_id'], 'listing_id': offer.get('listing_id')}
        for recipient in (offer.get('buyer_id'), offer.get('seller_id')):
            await non_fatal(
                'notify:Offer.Expired', offer['offer_id'],
                self.emitter.notify('Offer.Expired', recipient, ref, payload)
            )

    # Orders

    async def _fulfillment_sla_pass(self, now: datetime, stats: PassResult, result: SweepResult) -> None:
        now_ts = to_timestamp(now)

        async def _mark_noncompliant(tx: Transaction, doc_id: str, now: datetime) -> Optional[Dict[str, Any]]:
            order = await tx.get(collections.ORDERS, doc_id)
            if order is None or get_effective_status(order) != TransactionStatus.FULFILLMENT_REQUIRED:
                return None
            reason = sla_breach(order, now_ts)
            if reason is None:
                return None
            if refund_lock_active(order, now, self.lock_timeout):
                return None

            flags = list(order.get('admin_flags') or [])
            for flag in (NEEDS_REVIEW_FLAG, FROZEN_SELLER_CANDIDATE_FLAG):
                if flag not in flags:
                    flags.append(flag)

            await tx.update(collections.ORDERS, doc_id, {
                'transaction_status': TransactionStatus.SELLER_NONCOMPLIANT.value,
                'seller_noncompliance_reason': reason,
                'seller_noncompliant_at': now_ts,
                'admin_flags': flags,
                'updated_at': now_ts,
            })
            await record_audit(
                tx,
                actor_id=SYSTEM_ACTOR.actor_id,
                actor_role=ActorRole.SYSTEM,
                action_type='seller_noncompliant',
                entity_type='order',
                entity_id=doc_id,
                order_id=doc_id,
                listing_id=order.get('listing_id'),
                before_state={'transaction_status': TransactionStatus.FULFILLMENT_REQUIRED.value},
                after_state={'transaction_status': TransactionStatus.SELLER_NONCOMPLIANT.value},
                metadata={'reason': reason},
                source=AuditSource.CRON,
                now=now,
            )
            return {**order, 'order_id': doc_id, '_reason': reason}

        async def _page(page: Page, stats: PassResult) -> None:
            flagged = await self._apply_each(page, stats, now, _mark_noncompliant)
            stats.flagged += len(flagged)
            for order in flagged:
                logger.warning(f"Order {order['order_id']} marked seller non-compliant: {order['_reason']}")
                await non_fatal(
                    'notify:Order.SellerNonCompliant', order['order_id'],
                    self.emitter.notify(
                        'Order.SellerNonCompliant', order.get('seller_id'),
                        f"order:{order['order_id']}:seller_noncompliant",
                        {'order_id': order['order_id'], 'reason': order['_reason']}
                    )
                )

        # Either deadline passing is a breach; the re-check makes the overlap harmless
        for deadline_field in ('fulfillment_start_deadline_at', 'fulfillment_sla_deadline_at'):
            if result.budget_exhausted:
                return
            filters = [
                ('transaction_status', '==', TransactionStatus.FULFILLMENT_REQUIRED.value),
                (deadline_field, '<=', now_ts),
            ]
            await self._paginate(collections.ORDERS, filters, deadline_field, stats, result, _page)

    async def _delivered_review_pass(self, now: datetime, stats: PassResult, result: SweepResult) -> None:
        cutoff = to_timestamp(now - self.delivered_review_window)
        filters = [
            ('transaction_status', '==', TransactionStatus.DELIVERED_PENDING_CONFIRMATION.value),
            ('delivered_at', '<=', cutoff),
        ]

        async def _flag(tx: Transaction, doc_id: str, now: datetime) -> Optional[str]:
            order = await tx.get(collections.ORDERS, doc_id)
            if order is None:
                return None
            if get_effective_status(order) != TransactionStatus.DELIVERED_PENDING_CONFIRMATION:
                return None
            if order.get('delivered_review_flagged_at'):
                return None

            flags = list(order.get('admin_flags') or [])
            if NEEDS_REVIEW_FLAG not in flags:
                flags.append(NEEDS_REVIEW_FLAG)
            await tx.update(collections.ORDERS, doc_id, {
                'admin_flags': flags,
                'delivered_review_flagged_at': to_timestamp(now),
                'updated_at': to_timestamp(now),
            })
            await record_audit(
                tx,
                actor_id=SYSTEM_ACTOR.actor_id,
                actor_role=ActorRole.SYSTEM,
                action_type='delivered_unconfirmed_flagged',
                entity_type='order',
                entity_id=doc_id,
                order_id=doc_id,
                metadata={'delivered_at': order.get('delivered_at')},
                source=AuditSource.CRON,
                now=now,
            )
            return doc_id

        async def _page(page: Page, stats: PassResult) -> None:
            stats.flagged += len(await self._apply_each(page, stats, now, _flag))

        await self._paginate(collections.ORDERS, filters, 'delivered_at', stats, result, _page)

    # Listings

    async def _purchase_reservation_pass(self, now: datetime, stats: PassResult, result: SweepResult) -> None:
        now_ts = to_timestamp(now)
        filters = [('purchase_reserved_until', '<=', now_ts)]

        async def _clear(tx: Transaction, doc_id: str, now: datetime) -> Optional[Dict[str, Any]]:
            listing = await tx.get(collections.LISTINGS, doc_id)
            if listing is None:
                return None
            until = listing.get('purchase_reserved_until')
            if not until or until > now_ts:
                return None

            order_id = listing.get('purchase_reserved_by_order_id')
            await tx.update(collections.LISTINGS, doc_id, {
                **PURCHASE_RESERVATION_FIELDS,
                'updated_at': now_ts,
            })

            cancelled = None
            if order_id:
                order = await tx.get(collections.ORDERS, order_id)
                if order is not None and get_effective_status(order) == TransactionStatus.PENDING_PAYMENT:
                    await tx.update(collections.ORDERS, order_id, {
                        'transaction_status': TransactionStatus.CANCELLED.value,
                        'cancellation_reason': 'purchase_reservation_expired',
                        'cancelled_at': now_ts,
                        'updated_at': now_ts,
                    })
                    await record_audit(
                        tx,
                        actor_id=SYSTEM_ACTOR.actor_id,
                        actor_role=ActorRole.SYSTEM,
                        action_type='order_cancelled',
                        entity_type='order',
                        entity_id=order_id,
                        order_id=order_id,
                        listing_id=doc_id,
                        before_state={'transaction_status': TransactionStatus.PENDING_PAYMENT.value},
                        after_state={'transaction_status': TransactionStatus.CANCELLED.value},
                        metadata={'reason': 'purchase_reservation_expired'},
                        source=AuditSource.CRON,
                        now=now,
                    )
                    cancelled = {**order, 'order_id': order_id}

            await record_audit(
                tx,
                actor_id=SYSTEM_ACTOR.actor_id,
                actor_role=ActorRole.SYSTEM,
                action_type='purchase_reservation_expired',
                entity_type='listing',
                entity_id=doc_id,
                listing_id=doc_id,
                order_id=order_id,
                before_state={'purchase_reserved_by_order_id': order_id, 'purchase_reserved_until': until},
                after_state={'purchase_reserved_by_order_id': None},
                source=AuditSource.CRON,
                now=now,
            )
            return {'listing_id': doc_id, 'cancelled': cancelled}

        async def _page(page: Page, stats: PassResult) -> None:
            cleared = await self._apply_each(page, stats, now, _clear)
            stats.cleared += len(cleared)
            for item in cleared:
                order = item['cancelled']
                if order is None:
                    continue
                stats.cancelled += 1
                await non_fatal(
                    'notify:Order.Cancelled', order['order_id'],
                    self.emitter.notify(
                        'Order.Cancelled', order.get('buyer_id'),
                        f"order:{order['order_id']}:cancelled",
                        {'order_id': order['order_id'], 'reason': 'purchase_reservation_expired'}
                    )
                )

        await self._paginate(collections.LISTINGS, filters, 'purchase_reserved_until', stats, result, _page)

    # Stalled orders

    async def _stalled_orders_pass(self, now: datetime, stats: PassResult, result: SweepResult) -> None:
        now_ts = to_timestamp(now)
        filters = [
            ('transaction_status', 'in', [status.value for status in STALL_STATUSES]),
            ('paid_at', '<=', now_ts),
        ]

        async def _resolve(tx: Transaction, doc_id: str, now: datetime) -> Optional[Dict[str, Any]]:
            order = await tx.get(collections.ORDERS, doc_id)
            if order is None:
                return None
            status = get_effective_status(order)
            if status not in STALL_STATUSES:
                return None
            if refund_lock_active(order, now, self.lock_timeout):
                return None
            order = {**order, 'order_id': doc_id}

            if self._should_auto_complete(order, status, now):
                await self._auto_complete(tx, order, now)
                return {'action': 'completed', 'order': order}
            if self._should_escalate(order, now):
                await self._escalate(tx, order, status, now)
                return {'action': 'escalated', 'order': order}

            reminder = due_reminder(order, status, now, self.reminder_hours, self.sla_warning)
            if reminder is None:
                return None
            return {'action': 'reminder', 'order': order, 'reminder': reminder}

        async def _page(page: Page, stats: PassResult) -> None:
            for item in await self._apply_each(page, stats, now, _resolve):
                order = item['order']
                order_id = order['order_id']
                if item['action'] == 'completed':
                    stats.completed += 1
                    logger.info(f"Order {order_id} auto-completed after unconfirmed delivery")
                    for recipient in (order.get('buyer_id'), order.get('seller_id')):
                        await non_fatal(
                            'notify:Order.AutoCompleted', order_id,
                            self.emitter.notify(
                                'Order.AutoCompleted', recipient,
                                f"order:{order_id}:auto_completed", {'order_id': order_id}
                            )
                        )
                elif item['action'] == 'escalated':
                    stats.escalated += 1
                    logger.warning(f"Order {order_id} escalated to admin review")
                else:
                    reminder = item['reminder']
                    sent = await non_fatal(
                        f"notify:{reminder.event_type}", order_id,
                        self.emitter.notify(
                            reminder.event_type, reminder.recipient_id,
                            f"order:{order_id}:reminder:{reminder.kind}:{reminder.step}",
                            {'order_id': order_id, 'reminder': reminder.kind, 'step': reminder.step}
                        )
                    )
                    if sent:
                        stats.reminded += 1

        await self._paginate(collections.ORDERS, filters, 'paid_at', stats, result, _page)

    def _should_auto_complete(self, order: Dict[str, Any], status: TransactionStatus, now: datetime) -> bool:
        if status != TransactionStatus.DELIVERED_PENDING_CONFIRMATION:
            return False
        if order.get('admin_hold') or dispute_open(order):
            return False
        delivered_at = order.get('delivered_at')
        return bool(delivered_at) and from_timestamp(delivered_at) <= now - self.auto_complete_window

    def _should_escalate(self, order: Dict[str, Any], now: datetime) -> bool:
        if order.get('escalated_to_admin') or order.get('admin_hold') or dispute_open(order):
            return False
        paid_at = order.get('paid_at')
        return bool(paid_at) and from_timestamp(paid_at) <= now - self.escalation_window

    async def _auto_complete(self, tx: Transaction, order: Dict[str, Any], now: datetime) -> None:
        now_ts = to_timestamp(now)
        await tx.update(collections.ORDERS, order['order_id'], {
            'transaction_status': TransactionStatus.COMPLETED.value,
            'completed_at': now_ts,
            'auto_completed_at': now_ts,
            'auto_completed_reason': 'delivered_pending_confirmation_timeout',
            'updated_at': now_ts,
        })
        await record_audit(
            tx,
            actor_id=SYSTEM_ACTOR.actor_id,
            actor_role=ActorRole.SYSTEM,
            action_type='order_auto_completed',
            entity_type='order',
            entity_id=order['order_id'],
            order_id=order['order_id'],
            listing_id=order.get('listing_id'),
            before_state={'transaction_status': TransactionStatus.DELIVERED_PENDING_CONFIRMATION.value},
            after_state={'transaction_status': TransactionStatus.COMPLETED.value},
            metadata={
                'reason': 'delivered_pending_confirmation_timeout',
                'delivered_at': order.get('delivered_at'),
            },
            source=AuditSource.CRON,
            now=now,
        )

    async def _escalate(self, tx: Transaction, order: Dict[str, Any], status: TransactionStatus, now: datetime) -> None:
        now_ts = to_timestamp(now)
        flags = list(order.get('admin_flags') or [])
        for flag in (NEEDS_REVIEW_FLAG, ESCALATED_FLAG):
            if flag not in flags:
                flags.append(flag)
        # Status is unchanged; the order only joins the admin queue
        await tx.update(collections.ORDERS, order['order_id'], {
            'escalated_to_admin': True,
            'escalated_at': now_ts,
            'admin_flags': flags,
            'updated_at': now_ts,
        })
        await record_audit(
            tx,
            actor_id=SYSTEM_ACTOR.actor_id,
            actor_role=ActorRole.SYSTEM,
            action_type='order_escalated_to_admin',
            entity_type='order',
            entity_id=order['order_id'],
            order_id=order['order_id'],
            listing_id=order.get('listing_id'),
            before_state={'transaction_status': status.value},
            after_state={'transaction_status': status.value, 'escalated_to_admin': True},
            metadata={'reason': 'unresponsive_timeout', 'paid_at': order.get('paid_at')},
            source=AuditSource.CRON,
            now=now,
        )

    async def _record_health(self, result: SweepResult) -> None:
        async def _write(tx: Transaction) -> None:
            await tx.set(collections.OPS_HEALTH, 'reconciliation', {
                'last_run_at': to_timestamp(result.started_at),
                **result.to_dict(),
            })

        await self.store.run_transaction(_write)

def sla_breach(order: Dict[str, Any], now_ts: str) -> Optional[str]:
    """Name the missed fulfillment deadline, or None if neither has passed."""
    complete_by = order.get('fulfillment_sla_deadline_at')
    if complete_by and complete_by <= now_ts:
        return 'fulfillment_deadline_missed'
    start_by = order.get('fulfillment_start_deadline_at')
    if start_by and start_by <= now_ts:
        return 'fulfillment_not_started'
    return None

def dispute_open(order: Dict[str, Any]) -> bool:
    dispute = order.get('dispute')
    return bool(dispute) and dispute.get('is_open', True) and not dispute.get('resolution')

def due_reminder(
    order: Dict[str, Any],
    status: TransactionStatus,
    now: datetime,
    reminder_hours: Dict[str, List[int]],
    sla_warning: timedelta
) -> Optional[Reminder]:
    """Latest reminder step the order has reached, or None.

    Each step has its own notification dedupe key, so a step is sent once no
    matter how many runs see it; an order found late skips straight to its
    latest step.
    """
    rule = REMINDER_RULES.get(status)
    if rule is None:
        return None
    kind, event_type, recipient_field, anchor_field = rule

    deadline = order.get('fulfillment_sla_deadline_at')
    if status == TransactionStatus.FULFILLMENT_REQUIRED and deadline:
        if from_timestamp(deadline) - sla_warning <= now < from_timestamp(deadline):
            return Reminder('sla_approaching', 'Order.SlaApproaching', order.get('seller_id'), 'sla')

    anchor = order.get(anchor_field)
    if not anchor:
        return None
    elapsed = now - from_timestamp(anchor)
    reached = [hours for hours in reminder_hours.get(kind, []) if elapsed >= timedelta(hours=hours)]
    if not reached:
        return None
    return Reminder(kind, event_type, order.get(recipient_field), f"{max(reached)}h")
